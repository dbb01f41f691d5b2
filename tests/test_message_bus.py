"""Broker delivery semantics and the message bus adapter."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from contentops.core.broker import UNROUTABLE_QUEUE, InMemoryBroker
from contentops.core.envelope import CommandEnvelope, EventEnvelope, utcnow
from contentops.core.errors import AlreadyRegistered, ConfigError, NotFound, Timeout, ValidationError
from contentops.core.message_bus import MessageBus, command_queue, dead_letter_queue
from support import wait_until


@pytest.mark.anyio
async def test_messages_without_binding_are_parked() -> None:
    broker = InMemoryBroker()
    routed = await broker.publish("cmd.nobody.ping", b"{}")
    assert routed == 1
    assert broker.depth(UNROUTABLE_QUEUE) == 1
    await broker.close()


@pytest.mark.anyio
async def test_prefetch_bounds_unacknowledged_deliveries() -> None:
    broker = InMemoryBroker(prefetch=2)
    broker.declare_queue("work")
    broker.bind("work", "job.#")
    for index in range(3):
        await broker.publish(f"job.{index}", b"x")

    first = await broker.get("work", timeout=0.1)
    second = await broker.get("work", timeout=0.1)
    assert first is not None and second is not None
    assert await broker.get("work", timeout=0.05) is None
    assert broker.in_flight("work") == 2

    await first.ack()
    third = await broker.get("work", timeout=0.1)
    assert third is not None and third.routing_key == "job.2"
    await broker.close()


@pytest.mark.anyio
async def test_nack_requeues_or_dead_letters() -> None:
    broker = InMemoryBroker()
    broker.declare_queue("dead")
    broker.bind("dead", "dlq.work")
    broker.declare_queue("work", dead_letter_key="dlq.work")
    broker.bind("work", "job.*")
    await broker.publish("job.a", b"a")
    await broker.publish("job.b", b"b")

    delivery = await broker.get("work", timeout=0.1)
    await delivery.nack(requeue=True)
    again = await broker.get("work", timeout=0.1)
    assert again.body == b"a"
    assert again.message.redelivered

    await again.nack(requeue=False, reason="AgentUnavailable")
    [parked] = broker.peek("dead")
    assert parked.body == b"a"
    assert parked.headers["x-death-reason"] == "AgentUnavailable"
    assert parked.headers["x-original-routing-key"] == "job.a"
    await broker.close()


@pytest.mark.anyio
async def test_delayed_enqueue_becomes_visible_later() -> None:
    broker = InMemoryBroker()
    broker.declare_queue("work")
    await broker.enqueue("work", "job.a", b"a", delay=0.05)
    assert broker.depth("work") == 0
    delivery = await broker.get("work", timeout=1.0)
    assert delivery is not None and delivery.body == b"a"
    await broker.close()


@pytest.mark.anyio
async def test_unknown_queue_is_a_validation_error() -> None:
    broker = InMemoryBroker()
    with pytest.raises(ValidationError):
        await broker.get("missing", timeout=0.01)
    await broker.close()


def test_only_memory_transport_is_supported() -> None:
    with pytest.raises(ConfigError):
        MessageBus.from_url("amqp://guest@localhost//")


@pytest.mark.anyio
async def test_one_command_consumer_group_per_agent() -> None:
    bus = MessageBus.from_url("memory://")

    async def handler(delivery) -> None:
        return None

    subscription = await bus.subscribe_commands("creation", handler, workers=2)
    with pytest.raises(AlreadyRegistered):
        await bus.subscribe_commands("creation", handler)
    await subscription.stop()
    await bus.subscribe_commands("creation", handler)
    await bus.close()


@pytest.mark.anyio
async def test_events_fan_out_to_matching_subscribers() -> None:
    bus = MessageBus.from_url("memory://")
    seen = []

    async def handler(delivery) -> None:
        seen.append((delivery.queue, EventEnvelope.from_json(delivery.body).type))

    await bus.subscribe_events("creation.*", handler, consumer="optimisation")
    await bus.subscribe_events("creation.content_created", handler, consumer="analytics")
    await bus.publish_event(EventEnvelope(type="creation.content_created", source_agent="creation"))
    await bus.publish_event(EventEnvelope(type="creation.content_archived", source_agent="creation"))

    await wait_until(lambda: len(seen) == 3)
    assert sorted(seen) == [
        ("analytics.events.creation.content_created", "creation.content_created"),
        ("optimisation.events.creation.*", "creation.content_archived"),
        ("optimisation.events.creation.*", "creation.content_created"),
    ]
    await bus.close()


@pytest.mark.anyio
async def test_unhandled_consumer_error_dead_letters_the_message() -> None:
    bus = MessageBus.from_url("memory://")

    async def handler(delivery) -> None:
        raise RuntimeError("boom")

    await bus.subscribe_commands("creation", handler, workers=1)
    command = CommandEnvelope(type="create_content", target_agent="creation")
    await bus.publish_command(command)

    await wait_until(lambda: len(bus.dead_letters("creation")) == 1)
    [record] = bus.dead_letters("creation")
    assert record.kind == "command"
    assert record.envelope_id == command.id
    assert record.failure_reason == "InternalError"
    await bus.close()


@pytest.mark.anyio
async def test_request_returns_reply_and_cleans_up() -> None:
    bus = MessageBus.from_url("memory://")

    async def handler(delivery) -> None:
        command = CommandEnvelope.from_json(delivery.body)
        reply = EventEnvelope(
            type="creation.reply",
            source_agent="creation",
            payload={"result": {"echo": command.payload["text"]}},
            correlation_id=command.correlation_id,
        )
        await bus.publish_reply(command.reply_to, reply)

    await bus.subscribe_commands("creation", handler)
    command = CommandEnvelope(type="echo", target_agent="creation", payload={"text": "hi"}, correlation_id="k9")
    reply = await bus.request(command, timeout=1.0)
    assert reply.payload == {"result": {"echo": "hi"}}
    assert reply.correlation_id == "k9"
    assert not bus.broker.has_queue(f"reply.{command.id}")
    await bus.close()


@pytest.mark.anyio
async def test_request_raises_replied_error_and_times_out() -> None:
    bus = MessageBus.from_url("memory://")

    async def handler(delivery) -> None:
        command = CommandEnvelope.from_json(delivery.body)
        if command.type == "silent":
            return
        error = NotFound("content item 'x' does not exist").to_dict()
        await bus.publish_reply(
            command.reply_to,
            EventEnvelope(type="creation.reply", source_agent="creation", payload={"error": error}),
        )

    await bus.subscribe_commands("creation", handler)
    with pytest.raises(NotFound):
        await bus.request(CommandEnvelope(type="lookup", target_agent="creation"), timeout=1.0)
    with pytest.raises(Timeout):
        await bus.request(CommandEnvelope(type="silent", target_agent="creation"), timeout=0.05)
    await bus.close()


@pytest.mark.anyio
async def test_replay_dead_letter_resets_attempt_and_deadline() -> None:
    bus = MessageBus.from_url("memory://")
    bus.ensure_agent_queues("creation")
    issued = utcnow() - timedelta(hours=1)
    command = CommandEnvelope(type="create_content", target_agent="creation", attempt=5, issued_at=issued)
    await bus.publish_command(command)
    delivery = await bus.broker.get(command_queue("creation"), timeout=0.1)
    await delivery.nack(requeue=False, reason="AgentUnavailable")
    assert bus.broker.depth(dead_letter_queue("creation")) == 1

    record = await bus.replay_dead_letter("creation", command.id)
    assert record.failure_reason == "AgentUnavailable"
    assert record.attempt == 5
    assert bus.dead_letters("creation") == []

    replayed = await bus.broker.get(command_queue("creation"), timeout=0.1)
    envelope = CommandEnvelope.from_json(replayed.body)
    assert envelope.id == command.id
    assert envelope.attempt == 1
    assert envelope.issued_at > issued + timedelta(minutes=59)
    assert replayed.attempt == 1

    with pytest.raises(NotFound):
        await bus.replay_dead_letter("creation", "nope")
    await bus.close()


@pytest.mark.anyio
async def test_subscription_stop_requeues_cancelled_work() -> None:
    bus = MessageBus.from_url("memory://")
    started = asyncio.Event()

    async def handler(delivery) -> None:
        started.set()
        await asyncio.sleep(10)

    subscription = await bus.subscribe_commands("creation", handler, workers=1)
    await bus.publish_command(CommandEnvelope(type="slow", target_agent="creation"))
    await asyncio.wait_for(started.wait(), timeout=1.0)

    await subscription.stop(grace=0.05)
    assert bus.broker.depth(command_queue("creation")) == 1
    assert bus.broker.in_flight(command_queue("creation")) == 0
    await bus.close()
