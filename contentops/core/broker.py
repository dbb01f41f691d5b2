"""In-memory topic exchange with durable queues and manual acknowledgement."""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Set

from .errors import CapabilityUnavailable, ValidationError

logger = logging.getLogger(__name__)

UNROUTABLE_QUEUE = "unroutable"


def topic_matches(pattern: str, routing_key: str) -> bool:
    """Match a dotted routing key against a binding pattern.

    ``*`` matches exactly one segment; a trailing ``#`` matches one or more.
    """
    parts = pattern.split(".")
    segments = routing_key.split(".")
    for index, part in enumerate(parts):
        if part == "#":
            return len(segments) > index
        if index >= len(segments):
            return False
        if part != "*" and part != segments[index]:
            return False
    return len(parts) == len(segments)


def validate_subscription_pattern(pattern: str) -> str:
    """Reject patterns with empty segments, ``#`` or more than one ``*``."""
    parts = pattern.split(".")
    if any(not part for part in parts) or "#" in parts:
        raise ValidationError(f"invalid subscription pattern {pattern!r}")
    if parts.count("*") > 1:
        raise ValidationError(f"pattern {pattern!r} may contain at most one wildcard segment")
    return pattern


@dataclass(slots=True)
class Message:
    """A published message as stored in a queue."""

    tag: int
    routing_key: str
    body: bytes
    headers: Dict[str, Any] = field(default_factory=dict)
    redelivered: bool = False


@dataclass(slots=True)
class Delivery:
    """A message handed to a consumer and awaiting ack or nack."""

    queue: str
    message: Message
    _broker: "InMemoryBroker"
    settled: bool = False

    @property
    def body(self) -> bytes:
        return self.message.body

    @property
    def routing_key(self) -> str:
        return self.message.routing_key

    @property
    def headers(self) -> Dict[str, Any]:
        return self.message.headers

    @property
    def attempt(self) -> int:
        return int(self.message.headers.get("x-attempt", 1))

    async def ack(self) -> None:
        await self._broker.ack(self)

    async def nack(self, *, requeue: bool, delay: float = 0.0, reason: str = "rejected") -> None:
        await self._broker.nack(self, requeue=requeue, delay=delay, reason=reason)


class _Queue:
    def __init__(self, name: str, *, durable: bool, dead_letter_key: Optional[str], prefetch: int) -> None:
        self.name = name
        self.durable = durable
        self.dead_letter_key = dead_letter_key
        self.prefetch = prefetch
        self.bindings: Set[str] = set()
        self.ready: Deque[Message] = deque()
        self.unacked: Dict[int, Message] = {}
        self.changed = asyncio.Condition()

    def can_deliver(self) -> bool:
        return bool(self.ready) and len(self.unacked) < self.prefetch


class InMemoryBroker:
    """Topic exchange routing to named queues.

    Queues are durable for the lifetime of the broker, deliveries must be
    acknowledged, and each queue bounds its unacknowledged deliveries by
    ``prefetch``. Messages matching no binding land in ``unroutable``.
    """

    def __init__(self, *, prefetch: int = 10) -> None:
        self._queues: Dict[str, _Queue] = {}
        self._prefetch = prefetch
        self._tags = itertools.count(1)
        self._timers: Set[asyncio.TimerHandle] = set()
        self._wakeups: Set[asyncio.Task[None]] = set()
        self._closed = False
        self.declare_queue(UNROUTABLE_QUEUE)

    @property
    def closed(self) -> bool:
        return self._closed

    def declare_queue(
        self,
        name: str,
        *,
        durable: bool = True,
        dead_letter_key: Optional[str] = None,
        prefetch: Optional[int] = None,
    ) -> None:
        """Create the queue if missing; redeclaring is a no-op."""
        if name in self._queues:
            return
        self._queues[name] = _Queue(
            name,
            durable=durable,
            dead_letter_key=dead_letter_key,
            prefetch=prefetch or self._prefetch,
        )

    def delete_queue(self, name: str) -> None:
        self._queues.pop(name, None)

    def bind(self, queue: str, pattern: str) -> None:
        self._queue(queue).bindings.add(pattern)

    def unbind(self, queue: str, pattern: str) -> None:
        self._queue(queue).bindings.discard(pattern)

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    async def publish(self, routing_key: str, body: bytes, headers: Optional[Dict[str, Any]] = None) -> int:
        """Route ``body`` to every queue bound to a matching pattern."""
        self._ensure_open()
        targets = [
            queue
            for queue in self._queues.values()
            if any(topic_matches(pattern, routing_key) for pattern in queue.bindings)
        ]
        if not targets:
            logger.warning("No binding for routing key %s; parking message", routing_key)
            targets = [self._queues[UNROUTABLE_QUEUE]]
        for queue in targets:
            await self._put(queue, Message(next(self._tags), routing_key, body, dict(headers or {})))
        return len(targets)

    async def enqueue(
        self,
        queue: str,
        routing_key: str,
        body: bytes,
        headers: Optional[Dict[str, Any]] = None,
        *,
        delay: float = 0.0,
    ) -> None:
        """Place a message directly on one queue, optionally after ``delay`` seconds."""
        self._ensure_open()
        message = Message(next(self._tags), routing_key, body, dict(headers or {}))
        target = self._queue(queue)
        if delay > 0:
            self._schedule(target, message, delay)
        else:
            await self._put(target, message)

    async def get(self, queue: str, timeout: Optional[float] = None) -> Optional[Delivery]:
        """Wait for the next deliverable message; ``None`` on timeout."""
        self._ensure_open()
        target = self._queue(queue)
        async with target.changed:
            try:
                await asyncio.wait_for(
                    target.changed.wait_for(lambda: self._closed or target.can_deliver()),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            self._ensure_open()
            message = target.ready.popleft()
            target.unacked[message.tag] = message
        return Delivery(queue=queue, message=message, _broker=self)

    async def ack(self, delivery: Delivery) -> None:
        target = self._settle(delivery)
        if target is not None:
            await self._notify(target)

    async def nack(self, delivery: Delivery, *, requeue: bool, delay: float = 0.0, reason: str = "rejected") -> None:
        target = self._settle(delivery)
        if target is None:
            return
        message = delivery.message
        if requeue:
            message.redelivered = True
            if delay > 0 and not self._closed:
                self._schedule(target, message, delay)
                await self._notify(target)
            else:
                target.ready.appendleft(message)
                await self._notify(target)
            return
        await self._notify(target)
        if target.dead_letter_key and not self._closed:
            headers = dict(message.headers)
            headers.update({"x-death-reason": reason, "x-original-routing-key": message.routing_key})
            await self.publish(target.dead_letter_key, message.body, headers)
        else:
            logger.warning("Dropping rejected message %s from %s", message.tag, target.name)

    def peek(self, queue: str) -> List[Message]:
        """Snapshot of the ready messages of a queue."""
        return list(self._queue(queue).ready)

    def remove(self, queue: str, tag: int) -> Optional[Message]:
        target = self._queue(queue)
        for message in target.ready:
            if message.tag == tag:
                target.ready.remove(message)
                return message
        return None

    def depth(self, queue: str) -> int:
        return len(self._queue(queue).ready)

    def in_flight(self, queue: str) -> int:
        return len(self._queue(queue).unacked)

    async def ping(self) -> None:
        self._ensure_open()

    def healthy(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        """Stop accepting work and wake every waiting consumer."""
        if self._closed:
            return
        self._closed = True
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        for queue in list(self._queues.values()):
            await self._notify(queue)

    def _queue(self, name: str) -> _Queue:
        try:
            return self._queues[name]
        except KeyError:
            raise ValidationError(f"unknown queue {name!r}") from None

    def _settle(self, delivery: Delivery) -> Optional[_Queue]:
        if delivery.settled:
            return None
        delivery.settled = True
        target = self._queues.get(delivery.queue)
        if target is None:
            return None
        target.unacked.pop(delivery.message.tag, None)
        return target

    def _schedule(self, target: _Queue, message: Message, delay: float) -> None:
        loop = asyncio.get_running_loop()

        def _release() -> None:
            self._timers.discard(handle)
            if self._closed or target.name not in self._queues:
                return
            target.ready.append(message)
            task = loop.create_task(self._notify(target))
            self._wakeups.add(task)
            task.add_done_callback(self._wakeups.discard)

        handle = loop.call_later(delay, _release)
        self._timers.add(handle)

    async def _put(self, target: _Queue, message: Message) -> None:
        target.ready.append(message)
        await self._notify(target)

    async def _notify(self, target: _Queue) -> None:
        async with target.changed:
            target.changed.notify_all()

    def _ensure_open(self) -> None:
        if self._closed:
            raise CapabilityUnavailable("message broker is closed")
