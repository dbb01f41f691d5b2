"""Message bus adapter: envelopes, subscriptions and dead letters over a broker."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Dict, List, Optional

from . import errors
from .broker import Delivery, InMemoryBroker, validate_subscription_pattern
from .envelope import CommandEnvelope, DeadLetterRecord, EventEnvelope, utcnow
from .errors import AlreadyRegistered, CapabilityUnavailable, ConfigError, NotFound, Timeout

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[Delivery], Awaitable[None]]

_POLL_INTERVAL = 0.5


def command_queue(agent: str) -> str:
    return f"{agent}.commands"


def event_queue(consumer: str, pattern: str) -> str:
    return f"{consumer}.events.{pattern}"


def dead_letter_queue(agent: str) -> str:
    return f"{agent}.dead_letter"


def dead_letter_key(agent: str) -> str:
    return f"dlq.{agent}"


class Subscription:
    """A consumer group of worker tasks draining one queue."""

    def __init__(self, bus: "MessageBus", queue: str, handler: DeliveryHandler, workers: int) -> None:
        self.queue = queue
        self._bus = bus
        self._handler = handler
        self._stopping = asyncio.Event()
        self._busy = 0
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"{queue}#{index}") for index in range(workers)
        ]

    @property
    def in_flight(self) -> int:
        return self._busy

    @property
    def active(self) -> bool:
        return not self._stopping.is_set()

    async def stop(self, grace: float = 0.0) -> None:
        """Stop fetching; wait up to ``grace`` seconds for in-flight work, then cancel it."""
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=max(grace, 0.0))
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._bus._forget(self)

    async def _consume(self) -> None:
        broker = self._bus.broker
        while not self._stopping.is_set():
            try:
                delivery = await broker.get(self.queue, timeout=_POLL_INTERVAL)
            except CapabilityUnavailable:
                logger.warning("Broker unavailable; consumer on %s pausing", self.queue)
                await asyncio.sleep(_POLL_INTERVAL)
                continue
            if delivery is None:
                continue
            if self._stopping.is_set():
                await delivery.nack(requeue=True)
                break
            self._busy += 1
            try:
                await self._handler(delivery)
            except asyncio.CancelledError:
                if not delivery.settled:
                    await delivery.nack(requeue=True)
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Unhandled error consuming %s from %s", delivery.routing_key, self.queue)
                if not delivery.settled:
                    await delivery.nack(requeue=False, reason="InternalError")
            else:
                if not delivery.settled:
                    await delivery.ack()
            finally:
                self._busy -= 1


class MessageBus:
    """Publish and consume command/event envelopes over a topic broker."""

    def __init__(
        self,
        broker: InMemoryBroker,
        *,
        heartbeat_interval: float = 5.0,
    ) -> None:
        self.broker = broker
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat: Optional[asyncio.Task[None]] = None
        self._healthy = True
        self._subscriptions: List[Subscription] = []
        self._command_consumers: Dict[str, Subscription] = {}

    @classmethod
    def from_url(cls, url: str, *, prefetch: int = 10, heartbeat_interval: float = 5.0) -> "MessageBus":
        if not url.startswith("memory://"):
            raise ConfigError(f"unsupported broker url {url!r}")
        return cls(InMemoryBroker(prefetch=prefetch), heartbeat_interval=heartbeat_interval)

    async def connect(self) -> None:
        """Start the heartbeat loop."""
        await self.broker.ping()
        if self._heartbeat is None:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name="bus-heartbeat")

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.stop()
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await self._heartbeat
            self._heartbeat = None
        await self.broker.close()
        self._healthy = False

    def healthy(self) -> bool:
        return self._healthy and self.broker.healthy()

    async def publish_command(self, envelope: CommandEnvelope) -> None:
        """Publish a command on ``cmd.<target_agent>.<type>``."""
        await self.broker.publish(envelope.routing_key, envelope.to_json(), {"x-attempt": envelope.attempt})

    async def publish_event(self, envelope: EventEnvelope) -> None:
        """Publish an event on ``evt.<source_agent>.<event>``."""
        await self.broker.publish(envelope.routing_key, envelope.to_json())

    async def publish_reply(self, reply_to: str, envelope: EventEnvelope) -> None:
        await self.broker.publish(reply_to, envelope.to_json())

    def ensure_agent_queues(self, agent: str) -> None:
        """Declare the durable command and dead-letter queues of an agent."""
        self.broker.declare_queue(dead_letter_queue(agent))
        self.broker.bind(dead_letter_queue(agent), dead_letter_key(agent))
        self.broker.declare_queue(command_queue(agent), dead_letter_key=dead_letter_key(agent))
        self.broker.bind(command_queue(agent), f"cmd.{agent}.#")

    async def subscribe_commands(self, agent: str, handler: DeliveryHandler, *, workers: int = 4) -> Subscription:
        """Consume ``cmd.<agent>.*`` with ``workers`` tasks; one consumer group per agent."""
        current = self._command_consumers.get(agent)
        if current is not None and current.active:
            raise AlreadyRegistered(f"commands for agent {agent!r} already have a consumer")
        self.ensure_agent_queues(agent)
        subscription = self._track(Subscription(self, command_queue(agent), handler, workers))
        self._command_consumers[agent] = subscription
        return subscription

    async def subscribe_events(
        self,
        pattern: str,
        handler: DeliveryHandler,
        *,
        consumer: str,
        workers: int = 1,
    ) -> Subscription:
        """Consume events whose routing key matches ``evt.<pattern>``."""
        validate_subscription_pattern(pattern)
        queue = event_queue(consumer, pattern)
        self.broker.declare_queue(dead_letter_queue(consumer))
        self.broker.bind(dead_letter_queue(consumer), dead_letter_key(consumer))
        self.broker.declare_queue(queue, dead_letter_key=dead_letter_key(consumer))
        self.broker.bind(queue, f"evt.{pattern}")
        return self._track(Subscription(self, queue, handler, workers))

    async def request(self, envelope: CommandEnvelope, timeout: float) -> EventEnvelope:
        """Publish a command and wait for its reply event."""
        reply_to = f"rpl.{envelope.id}"
        queue = f"reply.{envelope.id}"
        self.broker.declare_queue(queue, durable=False)
        self.broker.bind(queue, reply_to)
        try:
            await self.publish_command(envelope.model_copy(update={"reply_to": reply_to}))
            delivery = await self.broker.get(queue, timeout=timeout)
            if delivery is None:
                raise Timeout(f"no reply to {envelope.type} within {timeout}s", context={"id": envelope.id})
            await delivery.ack()
        finally:
            self.broker.delete_queue(queue)
        reply = EventEnvelope.from_json(delivery.body)
        if "error" in reply.payload:
            raise errors.from_dict(reply.payload["error"])
        return reply

    async def requeue(self, delivery: Delivery, body: bytes, *, attempt: int, delay: float) -> None:
        """Settle ``delivery`` and put a new attempt back on the same queue after ``delay``."""
        headers = dict(delivery.headers)
        headers["x-attempt"] = attempt
        await self.broker.enqueue(delivery.queue, delivery.routing_key, body, headers, delay=delay)
        await delivery.ack()

    async def restore(self, queue: str, routing_key: str, body: bytes) -> None:
        """Put an already-acknowledged message back on its queue."""
        if self.broker.closed:
            logger.warning("Broker closed; cannot restore message to %s", queue)
            return
        await self.broker.enqueue(queue, routing_key, body)

    async def dead_letter(self, agent: str, record: DeadLetterRecord) -> None:
        self.broker.declare_queue(dead_letter_queue(agent))
        self.broker.bind(dead_letter_queue(agent), dead_letter_key(agent))
        await self.broker.publish(
            dead_letter_key(agent),
            record.model_dump_json().encode("utf-8"),
            {"x-dead-letter": "record"},
        )

    def dead_letters(self, agent: str) -> List[DeadLetterRecord]:
        """Records currently parked in an agent's dead-letter queue."""
        if not self.broker.has_queue(dead_letter_queue(agent)):
            return []
        return [self._as_record(message) for message in self.broker.peek(dead_letter_queue(agent))]

    async def replay_dead_letter(self, agent: str, envelope_id: str) -> DeadLetterRecord:
        """Remove a record from the dead-letter queue and republish its envelope."""
        queue = dead_letter_queue(agent)
        if self.broker.has_queue(queue):
            for message in self.broker.peek(queue):
                record = self._as_record(message)
                if record.envelope_id != envelope_id:
                    continue
                self.broker.remove(queue, message.tag)
                original = record.original()
                if isinstance(original, CommandEnvelope):
                    await self.publish_command(original.with_attempt(1, issued_at=utcnow()))
                else:
                    await self.publish_event(original)
                logger.info("Replayed dead letter %s for agent %s", envelope_id, agent)
                return record
        raise NotFound(f"no dead letter {envelope_id!r} for agent {agent!r}")

    def _as_record(self, message) -> DeadLetterRecord:
        if message.headers.get("x-dead-letter") == "record":
            return DeadLetterRecord.model_validate_json(message.body)
        # Rejected by the broker without a record, e.g. an unhandled consumer error.
        original_key = message.headers.get("x-original-routing-key", message.routing_key)
        kind = "command" if original_key.startswith("cmd.") else "event"
        model = CommandEnvelope if kind == "command" else EventEnvelope
        try:
            envelope = model.from_json(message.body).model_dump(mode="json")
        except errors.ValidationError:
            envelope = {"raw": message.body.decode("utf-8", errors="replace")}
        reason = message.headers.get("x-death-reason", "rejected")
        return DeadLetterRecord(
            kind=kind,
            envelope=envelope,
            failure_reason=reason,
            attempt=int(message.headers.get("x-attempt", 1)),
            last_error={"code": reason, "message": "rejected by consumer"},
        )

    def _track(self, subscription: Subscription) -> Subscription:
        self._subscriptions.append(subscription)
        return subscription

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.broker.ping()
            except CapabilityUnavailable as exc:
                if self._healthy:
                    logger.warning("Broker heartbeat failed: %s", exc)
                self._healthy = False
            else:
                if not self._healthy:
                    logger.info("Broker heartbeat recovered")
                self._healthy = True
