"""Declarative agent definitions: command handlers, subscriptions and modules."""
from __future__ import annotations

import re
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Type

from pydantic import BaseModel

from contentops.core.broker import validate_subscription_pattern
from contentops.core.envelope import CommandEnvelope, EventEnvelope
from contentops.core.errors import AlreadyRegistered, ConfigError
from contentops.core.module_host import CapabilitySet, ModuleSpec

if TYPE_CHECKING:
    from contentops.agents.runtime import AgentRuntime

_COMMAND_TYPE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")

CommandFn = Callable[["HandlerContext", Any], Awaitable[Any]]
EventFn = Callable[["HandlerContext", EventEnvelope], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class CommandHandler:
    type: str
    fn: CommandFn
    payload: Optional[Type[BaseModel]] = None
    requires: Tuple[str, ...] = ()

    @property
    def handler_id(self) -> str:
        return f"{self.fn.__module__}.{self.fn.__qualname__}"


@dataclass(frozen=True, slots=True)
class EventHandler:
    pattern: str
    fn: EventFn
    requires: Tuple[str, ...] = ()

    @property
    def handler_id(self) -> str:
        return f"{self.fn.__module__}.{self.fn.__qualname__}"


class AgentBlueprint:
    """Handler and subscription tables plus the modules an agent may host.

    Usage::

        blueprint = AgentBlueprint("optimisation", modules=[SEO_OPTIMIZER])

        @blueprint.command("generate_seo", payload=GenerateSeo, requires=("storage",))
        async def generate_seo(ctx, payload): ...
    """

    def __init__(
        self,
        name: str,
        *,
        modules: Iterable[ModuleSpec] = (),
        required_modules: Iterable[str] = (),
    ) -> None:
        self.name = name
        self.modules: Dict[str, ModuleSpec] = {}
        for spec in modules:
            if spec.name in self.modules:
                raise AlreadyRegistered(f"module {spec.name!r} listed twice for {name!r}")
            self.modules[spec.name] = spec
        self.required_modules = tuple(required_modules)
        unknown = set(self.required_modules) - set(self.modules)
        if unknown:
            raise ConfigError(f"agent {name!r} requires unknown modules {sorted(unknown)}")
        self.commands: Dict[str, CommandHandler] = {}
        self.subscriptions: Dict[str, EventHandler] = {}

    def command(
        self,
        command_type: str,
        *,
        payload: Optional[Type[BaseModel]] = None,
        requires: Iterable[str] = (),
    ) -> Callable[[CommandFn], CommandFn]:
        if not _COMMAND_TYPE.match(command_type):
            raise ConfigError(f"invalid command type {command_type!r}")

        def register(fn: CommandFn) -> CommandFn:
            if command_type in self.commands:
                raise AlreadyRegistered(f"{self.name!r} already handles {command_type!r}")
            self.commands[command_type] = CommandHandler(command_type, fn, payload, tuple(requires))
            return fn

        return register

    def on_event(self, pattern: str, *, requires: Iterable[str] = ()) -> Callable[[EventFn], EventFn]:
        validate_subscription_pattern(pattern)

        def register(fn: EventFn) -> EventFn:
            if pattern in self.subscriptions:
                raise AlreadyRegistered(f"{self.name!r} already subscribes to {pattern!r}")
            self.subscriptions[pattern] = EventHandler(pattern, fn, tuple(requires))
            return fn

        return register

    def capabilities(self, modules: Optional[Iterable[str]] = None) -> Set[str]:
        """Capability names needed by the handlers and the selected modules."""
        names: Set[str] = set()
        for handler in self.commands.values():
            names.update(handler.requires)
        for subscription in self.subscriptions.values():
            names.update(subscription.requires)
        for module in modules if modules is not None else self.modules:
            names.update(self.modules[module].requires)
        return names


class HandlerContext:
    """What a handler sees: its envelope, capabilities, modules and outbox.

    Events and follow-up commands are staged and only published once the
    handler returned successfully.
    """

    def __init__(
        self,
        runtime: "AgentRuntime",
        envelope: Any,
        capabilities: CapabilitySet,
    ) -> None:
        self._runtime = runtime
        self.envelope = envelope
        self.capabilities = capabilities
        self.events: List[EventEnvelope] = []
        self.commands: List[CommandEnvelope] = []

    @property
    def agent(self) -> str:
        return self._runtime.name

    @property
    def correlation_id(self) -> str:
        return self.envelope.correlation_id

    @property
    def logger(self):
        return self._runtime.logger

    @property
    def storage(self) -> Any:
        return self.capabilities.storage

    @property
    def ai(self) -> Any:
        return self.capabilities.ai

    @property
    def clock(self) -> Any:
        return self.capabilities.clock

    async def invoke(self, module: str, operation: str, *args: Any, **kwargs: Any) -> Any:
        return await self._runtime.module(module).invoke(operation, *args, **kwargs)

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> EventEnvelope:
        envelope = EventEnvelope(
            type=f"{self.agent}.{event}",
            source_agent=self.agent,
            payload=payload or {},
            correlation_id=self.correlation_id,
            occurred_at=self._runtime.now(),
        )
        self.events.append(envelope)
        return envelope

    def send(self, target_agent: str, command_type: str, payload: Optional[Dict[str, Any]] = None) -> CommandEnvelope:
        envelope = CommandEnvelope(
            type=command_type,
            target_agent=target_agent,
            payload=payload or {},
            correlation_id=self.correlation_id,
        )
        self.commands.append(envelope)
        return envelope

    def lock(self, key: Any) -> AbstractAsyncContextManager:
        """Serialise handlers of this agent on ``key``."""
        return self._runtime.locks.hold(key)
