"""Routing of command deliveries to an agent's handlers under the failure policy."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import Any, Awaitable, Callable, List

from .broker import Delivery
from .envelope import CommandEnvelope, DeadLetterRecord, EventEnvelope
from .errors import CoreError, ErrorClass, Timeout, ValidationError, as_core_error
from .message_bus import MessageBus
from .models import AgentCounters
from .retry import DedupWindow, RetryPolicy

logger = logging.getLogger(__name__)


class Admission(Enum):
    """What to do with a delivery given the agent's current state."""

    ACCEPT = auto()
    REQUEUE = auto()
    REJECT = auto()
    BUFFER = auto()


@dataclass(slots=True)
class HandlerOutcome:
    result: Any = None
    events: List[EventEnvelope] = field(default_factory=list)
    commands: List[CommandEnvelope] = field(default_factory=list)


def failure_reason(error: CoreError) -> str:
    """Transient errors only reach a dead letter once retries ran out."""
    if error.error_class is ErrorClass.TRANSIENT:
        return "RetryExhausted"
    return error.code


class CommandRouter:
    """Delivers commands addressed to one agent.

    Drops duplicates seen within the dedup window, enforces the per-type
    deadline, publishes staged events only after the handler returned, and
    retries or dead-letters failures.
    """

    def __init__(
        self,
        agent: str,
        *,
        bus: MessageBus,
        retry: RetryPolicy,
        dedup: DedupWindow,
        counters: AgentCounters,
        admission: Callable[[], Admission],
        execute: Callable[[CommandEnvelope], Awaitable[HandlerOutcome]],
        timeout_for: Callable[[str], float],
        requeue_delay: float,
        now: Callable[[], datetime],
    ) -> None:
        self.agent = agent
        self._bus = bus
        self._retry = retry
        self._dedup = dedup
        self._counters = counters
        self._admission = admission
        self._execute = execute
        self._timeout_for = timeout_for
        self._requeue_delay = requeue_delay
        self._now = now

    async def dispatch(self, delivery: Delivery) -> None:
        try:
            envelope = CommandEnvelope.from_json(delivery.body)
        except ValidationError as exc:
            logger.error("Malformed command on %s: %s", delivery.routing_key, exc)
            await self._dead_letter(
                DeadLetterRecord(
                    kind="command",
                    envelope={"raw": delivery.body.decode("utf-8", errors="replace")},
                    failure_reason=exc.code,
                    attempt=delivery.attempt,
                    last_error=exc.to_dict(),
                )
            )
            await delivery.ack()
            return

        if envelope.target_agent != self.agent:
            logger.error("Command %s for %s delivered to %s", envelope.id, envelope.target_agent, self.agent)
            self._counters.dead_lettered += 1
            await delivery.nack(requeue=False, reason="MisroutedCommand")
            return

        admission = self._admission()
        if admission is Admission.REQUEUE:
            self._counters.commands_requeued += 1
            await self._bus.requeue(delivery, delivery.body, attempt=envelope.attempt, delay=self._requeue_delay)
            return
        if admission is Admission.REJECT:
            logger.warning("Agent %s not accepting commands; rejecting %s %s", self.agent, envelope.type, envelope.id)
            self._counters.dead_lettered += 1
            await delivery.nack(requeue=False, reason="AgentUnavailable")
            return

        if not self._dedup.claim(envelope.id):
            self._counters.duplicates_skipped += 1
            logger.info("Skipping duplicate command %s (%s)", envelope.id, envelope.type)
            await delivery.ack()
            return

        remaining = (self._deadline(envelope) - self._now()).total_seconds()
        if remaining <= 0:
            logger.warning("Command %s (%s) expired before handling", envelope.id, envelope.type)
            error = Timeout(f"command {envelope.type} expired before handling", context={"id": envelope.id})
            await self._give_up(delivery, envelope, error, reason=error.code)
            return

        try:
            outcome = await self._run(envelope, remaining)
            for event in outcome.events:
                await self._bus.publish_event(event)
                self._counters.events_published += 1
            for command in outcome.commands:
                await self._bus.publish_command(command)
        except asyncio.CancelledError:
            self._dedup.release(envelope.id)
            raise
        except Exception as exc:  # noqa: BLE001
            await self._on_failure(delivery, envelope, exc)
            return

        self._dedup.complete(envelope.id)
        self._counters.commands_handled += 1
        if envelope.reply_to:
            await self._reply(envelope, {"result": outcome.result})
        await delivery.ack()

    def _deadline(self, envelope: CommandEnvelope) -> datetime:
        return envelope.issued_at + timedelta(seconds=self._timeout_for(envelope.type))

    async def _run(self, envelope: CommandEnvelope, remaining: float) -> HandlerOutcome:
        try:
            return await asyncio.wait_for(self._execute(envelope), timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise Timeout(
                f"command {envelope.type} exceeded its deadline", context={"id": envelope.id}
            ) from exc

    async def _on_failure(self, delivery: Delivery, envelope: CommandEnvelope, exc: Exception) -> None:
        error = as_core_error(exc)
        self._dedup.release(envelope.id)
        if self._retry.should_retry(error, envelope.attempt):
            delay = self._retry.delay(envelope.attempt)
            self._counters.commands_retried += 1
            logger.warning(
                "Command %s (%s) attempt %d failed with %s; retrying in %.2fs",
                envelope.id, envelope.type, envelope.attempt, error.code, delay,
            )
            # Each attempt gets a full deadline, counted from when it was requeued.
            retry = envelope.with_attempt(envelope.attempt + 1, issued_at=self._now())
            await self._bus.requeue(delivery, retry.to_json(), attempt=retry.attempt, delay=delay)
            return

        if error.error_class is ErrorClass.INTERNAL:
            logger.error("Command %s (%s) hit an internal error", envelope.id, envelope.type, exc_info=exc)
        else:
            logger.error("Command %s (%s) failed permanently: %s", envelope.id, envelope.type, error.message)
        await self._give_up(delivery, envelope, error, reason=failure_reason(error))

    async def _give_up(self, delivery: Delivery, envelope: CommandEnvelope, error: CoreError, *, reason: str) -> None:
        self._dedup.complete(envelope.id)
        self._counters.commands_failed += 1
        await self._dead_letter(
            DeadLetterRecord(
                kind="command",
                envelope=envelope.model_dump(mode="json"),
                failure_reason=reason,
                attempt=envelope.attempt,
                last_error=error.to_dict(),
            )
        )
        if envelope.reply_to:
            await self._reply(envelope, {"error": error.to_dict()})
        await delivery.ack()

    async def _dead_letter(self, record: DeadLetterRecord) -> None:
        self._counters.dead_lettered += 1
        await self._bus.dead_letter(self.agent, record)

    async def _reply(self, envelope: CommandEnvelope, payload: dict) -> None:
        reply = EventEnvelope(
            type=f"{self.agent}.reply",
            source_agent=self.agent,
            payload=payload,
            correlation_id=envelope.correlation_id,
            occurred_at=self._now(),
        )
        await self._bus.publish_reply(envelope.reply_to, reply)


async def settle_event_failure(
    delivery: Delivery,
    envelope: EventEnvelope,
    exc: BaseException,
    *,
    agent: str,
    bus: MessageBus,
    retry: RetryPolicy,
    counters: AgentCounters,
) -> None:
    """Retry a failed event delivery on its own queue or dead-letter it."""
    error = as_core_error(exc)
    attempt = delivery.attempt
    if retry.should_retry(error, attempt):
        delay = retry.delay(attempt)
        logger.warning(
            "Event %s (%s) for %s failed with %s; retrying in %.2fs",
            envelope.id, envelope.type, agent, error.code, delay,
        )
        await bus.requeue(delivery, delivery.body, attempt=attempt + 1, delay=delay)
        return
    if error.error_class is ErrorClass.INTERNAL:
        logger.error("Event %s (%s) handler for %s hit an internal error", envelope.id, envelope.type, agent, exc_info=exc)
    else:
        logger.error("Event %s (%s) handler for %s failed: %s", envelope.id, envelope.type, agent, error.message)
    counters.dead_lettered += 1
    await bus.dead_letter(
        agent,
        DeadLetterRecord(
            kind="event",
            envelope=envelope.model_dump(mode="json"),
            failure_reason=failure_reason(error),
            attempt=attempt,
            last_error=error.to_dict(),
        ),
    )
    await delivery.ack()
