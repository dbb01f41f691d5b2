"""Agent runtime: hosts one agent's modules, handlers, workers and lifecycle."""
from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from contentops.agents.blueprint import AgentBlueprint, EventHandler, HandlerContext
from contentops.core.capabilities import CLOCK
from contentops.core.broker import Delivery
from contentops.core.envelope import CommandEnvelope, DeadLetterRecord, EventEnvelope
from contentops.core.errors import CapabilityUnavailable, InternalError, NotFound, ValidationError, as_core_error
from contentops.core.locks import KeyedLock
from contentops.core.message_bus import MessageBus, Subscription
from contentops.core.models import TRANSITIONS, AgentDescriptor, AgentState, AgentStatus
from contentops.core.module_host import CapabilitySet, ModuleHost, ResourceLedger
from contentops.core.registry import CapabilityRegistry
from contentops.core.retry import DedupWindow, RetryPolicy
from contentops.core.router import Admission, CommandRouter, HandlerOutcome, failure_reason, settle_event_failure


class AgentRuntime:
    """Runs one agent described by ``descriptor`` using ``blueprint``'s handlers.

    Commands are consumed by ``descriptor.workers`` tasks and routed through a
    :class:`CommandRouter`; each subscription pattern gets its own consumer.
    """

    def __init__(
        self,
        descriptor: AgentDescriptor,
        blueprint: AgentBlueprint,
        *,
        registry: CapabilityRegistry,
        bus: MessageBus,
        resources: ResourceLedger,
        retry: RetryPolicy,
        dedup: DedupWindow,
    ) -> None:
        self.descriptor = descriptor
        self.blueprint = blueprint
        self.status = AgentStatus()
        self.logger = logging.getLogger(f"contentops.agent.{descriptor.name}")
        self.locks = KeyedLock()
        self._registry = registry
        self._bus = bus
        self._retry = retry
        self._modules: Dict[str, ModuleHost] = {
            name: ModuleHost(
                blueprint.modules[name],
                descriptor.module_settings.get(name),
                agent=descriptor.name,
                registry=registry,
                resources=resources,
            )
            for name in descriptor.modules
        }
        self._subscriptions: List[Subscription] = []
        self._buffer: Deque[Tuple[str, EventHandler, EventEnvelope]] = deque()
        self._router = CommandRouter(
            descriptor.name,
            bus=bus,
            retry=retry,
            dedup=dedup,
            counters=self.status.counters,
            admission=self._command_admission,
            execute=self._execute_command,
            timeout_for=descriptor.timeout_for,
            requeue_delay=descriptor.requeue_delay,
            now=self.now,
        )

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def state(self) -> AgentState:
        return self.status.state

    @property
    def required_capabilities(self) -> set:
        return self.blueprint.capabilities(self.descriptor.modules)

    def module(self, name: str) -> ModuleHost:
        try:
            return self._modules[name]
        except KeyError:
            raise NotFound(f"agent {self.name!r} hosts no module {name!r}") from None

    @property
    def modules(self) -> Iterable[ModuleHost]:
        return self._modules.values()

    async def initialise(self) -> None:
        """Initialise every module in declared order."""
        self._transition(AgentState.INITIALISING)
        for host in self._modules.values():
            try:
                await host.initialise()
            except Exception as exc:
                self._transition(AgentState.FAILED, f"module {host.name} failed to initialise: {exc}")
                await self._stop_modules()
                raise

    async def start(self) -> None:
        """Start modules, then open the command and event subscriptions."""
        if self.state is not AgentState.INITIALISING:
            raise InternalError(f"agent {self.name!r} cannot start from {self.state.name}")
        try:
            for host in self._modules.values():
                await host.start()
            self.status.started_at = self.now()
            self._transition(AgentState.RUNNING)
            self._subscriptions.append(
                await self._bus.subscribe_commands(self.name, self.handle_command, workers=self.descriptor.workers)
            )
            for pattern, handler in self.blueprint.subscriptions.items():
                self._subscriptions.append(
                    await self._bus.subscribe_events(
                        pattern,
                        functools.partial(self._on_event, handler),
                        consumer=self.name,
                        workers=self.descriptor.event_workers,
                    )
                )
        except Exception as exc:
            self._transition(AgentState.FAILED, f"failed to start: {exc}")
            await self._release(0.0)
            raise

    async def stop(self, grace: float) -> None:
        """Drain in-flight work for up to ``grace`` seconds, then stop modules."""
        state = self.state
        if state in (AgentState.CREATED, AgentState.STOPPED):
            return
        if state in (AgentState.FAILED, AgentState.STOPPING):
            await self._release(grace)
            return
        self._transition(AgentState.STOPPING)
        await self._release(grace)
        self._transition(AgentState.STOPPED)

    def degrade(self, capability: str) -> bool:
        if self.state is not AgentState.RUNNING:
            return False
        self.status.degraded_since = self._monotonic()
        self._transition(AgentState.DEGRADED, f"capability {capability} unavailable")
        return True

    async def recover(self) -> bool:
        """Return to RUNNING and replay the events buffered while degraded."""
        if self.state is not AgentState.DEGRADED:
            return False
        self.status.degraded_since = None
        self._transition(AgentState.RUNNING)
        while self._buffer and self.state is AgentState.RUNNING:
            _, handler, envelope = self._buffer.popleft()
            try:
                await self._handle_event(handler, envelope)
            except Exception as exc:  # noqa: BLE001
                await self._dead_letter_event(envelope, exc)
            else:
                self.status.counters.events_handled += 1
        return True

    def fail(self, reason: str) -> None:
        if self.state in (AgentState.RUNNING, AgentState.DEGRADED):
            self._transition(AgentState.FAILED, reason)

    def snapshot(self) -> Dict[str, Any]:
        data = self.status.to_dict()
        data["name"] = self.name
        data["modules"] = [host.status() for host in self._modules.values()]
        data["buffered_events"] = len(self._buffer)
        return data

    async def handle_command(self, delivery: Delivery) -> None:
        """Route one command delivery through dedup, deadline and failure policy."""
        await self._router.dispatch(delivery)

    def _command_admission(self) -> Admission:
        state = self.state
        if state in (AgentState.CREATED, AgentState.INITIALISING):
            return Admission.REQUEUE
        if state in (AgentState.RUNNING, AgentState.DEGRADED):
            return Admission.ACCEPT
        return Admission.REJECT

    async def _execute_command(self, envelope: CommandEnvelope) -> HandlerOutcome:
        handler = self.blueprint.commands.get(envelope.type)
        if handler is None or envelope.type not in self.descriptor.command_table:
            raise ValidationError(f"agent {self.name!r} has no handler for {envelope.type!r}")
        payload: Any = dict(envelope.payload)
        if handler.payload is not None:
            payload = handler.payload.model_validate(envelope.payload)
        self._check_circuits(handler.requires)
        context = HandlerContext(self, envelope, self._capabilities(handler.requires))
        result = await handler.fn(context, payload)
        return HandlerOutcome(result=result, events=context.events, commands=context.commands)

    async def _on_event(self, handler: EventHandler, delivery: Delivery) -> None:
        try:
            envelope = EventEnvelope.from_json(delivery.body)
        except ValidationError as exc:
            self.logger.error("Malformed event on %s: %s", delivery.routing_key, exc)
            await delivery.nack(requeue=False, reason=exc.code)
            return

        state = self.state
        if state is AgentState.DEGRADED:
            self._buffer_event(delivery.queue, handler, envelope)
            await delivery.ack()
            return
        if state is not AgentState.RUNNING:
            await delivery.nack(requeue=state is AgentState.STOPPING, reason="AgentUnavailable")
            return

        try:
            await self._handle_event(handler, envelope)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            await settle_event_failure(
                delivery,
                envelope,
                exc,
                agent=self.name,
                bus=self._bus,
                retry=self._retry,
                counters=self.status.counters,
            )
            return
        self.status.counters.events_handled += 1
        await delivery.ack()

    async def _handle_event(self, handler: EventHandler, envelope: EventEnvelope) -> None:
        self._check_circuits(handler.requires)
        context = HandlerContext(self, envelope, self._capabilities(handler.requires))
        await handler.fn(context, envelope)
        for event in context.events:
            await self._bus.publish_event(event)
            self.status.counters.events_published += 1
        for command in context.commands:
            await self._bus.publish_command(command)

    def _buffer_event(self, queue: str, handler: EventHandler, envelope: EventEnvelope) -> None:
        if len(self._buffer) >= self.descriptor.event_buffer:
            self.status.counters.events_dropped += 1
            self.logger.warning("Event buffer of %s full; dropping %s %s", self.name, envelope.type, envelope.id)
            return
        self._buffer.append((queue, handler, envelope))
        self.status.counters.events_buffered += 1

    async def _dead_letter_event(self, envelope: EventEnvelope, exc: BaseException) -> None:
        error = as_core_error(exc)
        self.logger.error("Buffered event %s (%s) failed: %s", envelope.id, envelope.type, error.message)
        self.status.counters.dead_lettered += 1
        await self._bus.dead_letter(
            self.name,
            DeadLetterRecord(
                kind="event",
                envelope=envelope.model_dump(mode="json"),
                failure_reason=failure_reason(error),
                attempt=1,
                last_error=error.to_dict(),
            ),
        )

    def _check_circuits(self, capabilities: Iterable[str]) -> None:
        for name in capabilities:
            breaker = self._registry.breaker(name)
            if breaker is not None and breaker.is_open():
                raise CapabilityUnavailable(f"capability {name!r} circuit is open", context={"capability": name})

    def _capabilities(self, names: Iterable[str]) -> CapabilitySet:
        return CapabilitySet(self._registry, names, owner=f"agent.{self.name}")

    async def _release(self, grace: float) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        await asyncio.gather(*(subscription.stop(grace) for subscription in subscriptions))
        # Events buffered while degraded go back to their durable queues.
        while self._buffer:
            queue, _, envelope = self._buffer.popleft()
            await self._bus.restore(queue, envelope.routing_key, envelope.to_json())
        await self._stop_modules()

    async def _stop_modules(self) -> None:
        for host in reversed(list(self._modules.values())):
            try:
                await host.stop()
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("Module %s.%s failed to stop: %s", self.name, host.name, exc)

    def _transition(self, state: AgentState, reason: Optional[str] = None) -> None:
        current = self.status.state
        if state not in TRANSITIONS[current]:
            raise InternalError(f"agent {self.name!r} cannot move from {current.name} to {state.name}")
        self.status.state = state
        if reason is not None:
            self.status.last_error = reason
        log = self.logger.warning if state in (AgentState.DEGRADED, AgentState.FAILED) else self.logger.info
        log("Agent %s %s -> %s%s", self.name, current.name, state.name, f" ({reason})" if reason else "")

    def now(self) -> datetime:
        if self._registry.is_initialised(CLOCK):
            return self._registry.resolve(CLOCK).now()
        return datetime.now(timezone.utc)

    def _monotonic(self) -> float:
        if self._registry.is_initialised(CLOCK):
            return self._registry.resolve(CLOCK).monotonic()
        return time.monotonic()
