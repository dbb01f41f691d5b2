"""Command and event envelopes exchanged over the bus."""
from __future__ import annotations

import base64
import json
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from .errors import ValidationError

_SEGMENT = r"[a-z][a-z0-9_]*"
_DOTTED = re.compile(rf"^{_SEGMENT}(\.{_SEGMENT})*$")
_NAME = re.compile(rf"^{_SEGMENT}$")


def new_id() -> str:
    """Return 128 random bits encoded as lowercase, unpadded base-32."""
    return base64.b32encode(secrets.token_bytes(16)).decode("ascii").rstrip("=").lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def canonical_json(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Envelope(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id, min_length=1)
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: str = Field(default_factory=new_id, min_length=1)

    def to_json(self) -> bytes:
        """Canonical JSON encoding; stable across decode/encode round trips."""
        return canonical_json(self.model_dump(mode="json"))

    @classmethod
    def from_json(cls, raw: Union[bytes, str]):
        try:
            return cls.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"malformed {cls.__name__}: {exc.error_count()} error(s)",
                context={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc


class CommandEnvelope(_Envelope):
    """A request for one agent to perform work."""

    target_agent: str
    reply_to: Optional[str] = None
    issued_at: datetime = Field(default_factory=utcnow)
    attempt: int = Field(default=1, ge=1)

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if not _DOTTED.match(value):
            raise ValueError("command type must be dotted lower_snake_case")
        return value

    @field_validator("target_agent")
    @classmethod
    def _check_target(cls, value: str) -> str:
        if not _NAME.match(value):
            raise ValueError("target_agent must be lower_snake_case")
        return value

    @field_validator("issued_at")
    @classmethod
    def _check_issued_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def routing_key(self) -> str:
        return f"cmd.{self.target_agent}.{self.type}"

    def with_attempt(self, attempt: int, issued_at: Optional[datetime] = None) -> "CommandEnvelope":
        """Copy for another delivery attempt, optionally restarting its deadline."""
        update: Dict[str, Any] = {"attempt": attempt}
        if issued_at is not None:
            update["issued_at"] = _as_utc(issued_at)
        return self.model_copy(update=update)


class EventEnvelope(_Envelope):
    """A fact published by an agent after its work completed."""

    source_agent: str
    occurred_at: datetime = Field(default_factory=utcnow)

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if not _DOTTED.match(value) or "." not in value:
            raise ValueError("event type must be <agent>.<event> in lower_snake_case")
        return value

    @field_validator("occurred_at")
    @classmethod
    def _check_occurred_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_source(self) -> "EventEnvelope":
        if self.type.split(".", 1)[0] != self.source_agent:
            raise ValueError("event type must be prefixed with its source_agent")
        return self

    @property
    def name(self) -> str:
        """Event name without the agent prefix."""
        return self.type.split(".", 1)[1]

    @property
    def routing_key(self) -> str:
        return f"evt.{self.type}"


class DeadLetterRecord(BaseModel):
    """Original envelope plus the reason it could not be processed."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["command", "event"]
    envelope: Dict[str, Any]
    failure_reason: str
    attempt: int
    last_error: Dict[str, Any]
    dead_lettered_at: datetime = Field(default_factory=utcnow)

    @property
    def envelope_id(self) -> str:
        return self.envelope.get("id", "")

    def original(self) -> Union[CommandEnvelope, EventEnvelope]:
        model = CommandEnvelope if self.kind == "command" else EventEnvelope
        return model.model_validate(self.envelope)
