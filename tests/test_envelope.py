"""Envelope identity, canonical encoding and topic matching."""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pytest

from contentops.core.broker import topic_matches, validate_subscription_pattern
from contentops.core.envelope import CommandEnvelope, DeadLetterRecord, EventEnvelope, new_id
from contentops.core.errors import ValidationError


def test_ids_are_lowercase_base32_of_128_bits() -> None:
    ids = {new_id() for _ in range(200)}
    assert len(ids) == 200
    for value in ids:
        assert re.fullmatch(r"[a-z2-7]{26}", value)


def test_command_round_trip_is_byte_stable() -> None:
    command = CommandEnvelope(
        type="generate_seo",
        target_agent="optimisation",
        payload={"content_id": "x", "keywords": ["b", "a"], "nested": {"z": 1, "a": None}},
        correlation_id="k1",
        issued_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2))),
    )
    raw = command.to_json()
    decoded = CommandEnvelope.from_json(raw)
    assert decoded == command
    assert decoded.to_json() == raw
    assert decoded.issued_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert b'"a":null' in raw


def test_command_defaults() -> None:
    command = CommandEnvelope(type="create_content", target_agent="creation")
    assert command.attempt == 1
    assert command.reply_to is None
    assert command.correlation_id
    assert command.routing_key == "cmd.creation.create_content"
    assert command.with_attempt(3).attempt == 3
    assert command.with_attempt(3).id == command.id


@pytest.mark.parametrize(
    "fields",
    [
        {"type": "Generate", "target_agent": "optimisation"},
        {"type": "generate_seo", "target_agent": "opt.imisation"},
        {"type": "generate_seo", "target_agent": "optimisation", "attempt": 0},
        {"type": "generate_seo", "target_agent": "optimisation", "surprise": True},
    ],
)
def test_invalid_commands_are_rejected(fields) -> None:
    with pytest.raises(ValueError):
        CommandEnvelope(**fields)


def test_malformed_json_raises_core_validation_error() -> None:
    with pytest.raises(ValidationError) as info:
        CommandEnvelope.from_json(b'{"type": "generate_seo"}')
    assert info.value.code == "ValidationError"
    assert info.value.context["errors"]


def test_event_type_is_prefixed_with_source() -> None:
    event = EventEnvelope(type="optimisation.seo_recommendations", source_agent="optimisation")
    assert event.name == "seo_recommendations"
    assert event.routing_key == "evt.optimisation.seo_recommendations"

    with pytest.raises(ValueError):
        EventEnvelope(type="creation.content_created", source_agent="optimisation")
    with pytest.raises(ValueError):
        EventEnvelope(type="content_created", source_agent="creation")


def test_dead_letter_record_restores_original() -> None:
    command = CommandEnvelope(type="generate_seo", target_agent="optimisation", payload={"content_id": "x"})
    record = DeadLetterRecord(
        kind="command",
        envelope=command.model_dump(mode="json"),
        failure_reason="ValidationError",
        attempt=1,
        last_error={"code": "ValidationError"},
    )
    assert record.envelope_id == command.id
    assert record.original() == command


@pytest.mark.parametrize(
    ("pattern", "key", "expected"),
    [
        ("cmd.*.create_content", "cmd.creation.create_content", True),
        ("cmd.*.create_content", "cmd.creation.generate_seo", False),
        ("cmd.*.create_content", "cmd.creation.extra.create_content", False),
        ("cmd.creation.#", "cmd.creation.create_content", True),
        ("cmd.creation.#", "cmd.creation.bulk.create_content", True),
        ("cmd.creation.#", "cmd.creation", False),
        ("evt.creation.*", "evt.creation.content_created", True),
        ("evt.*.*", "evt.creation", False),
    ],
)
def test_topic_matching(pattern: str, key: str, expected: bool) -> None:
    assert topic_matches(pattern, key) is expected


def test_subscription_patterns_allow_a_single_wildcard() -> None:
    assert validate_subscription_pattern("creation.*") == "creation.*"
    for pattern in ("creation.#", "*.*", "creation..x", ""):
        with pytest.raises(ValidationError):
            validate_subscription_pattern(pattern)
