"""Agent container: builds, starts, supervises and stops agents and capabilities."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from contentops.agents.blueprint import AgentBlueprint
from contentops.agents.runtime import AgentRuntime
from contentops.config import AgentConfig, ContainerConfig
from contentops.core.capabilities import MESSAGING
from contentops.core.errors import ConfigError, InternalError, NotFound
from contentops.core.message_bus import MessageBus
from contentops.core.models import AgentDescriptor, AgentState
from contentops.core.module_host import ResourceLedger
from contentops.core.registry import CapabilityFactory, CapabilityHealth, CapabilityRegistry
from contentops.core.retry import DedupWindow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HealthReport:
    status: str
    agents: Dict[str, str] = field(default_factory=dict)
    capabilities: Dict[str, CapabilityHealth] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "agents": dict(self.agents),
            "capabilities": {
                name: {"ok": health.ok, "circuit": health.circuit} for name, health in self.capabilities.items()
            },
        }


def describe_agent(config: AgentConfig, blueprint: AgentBlueprint) -> AgentDescriptor:
    """Validate an agent's configuration against its blueprint."""
    modules = tuple(module.name for module in config.modules)
    unknown = [name for name in modules if name not in blueprint.modules]
    if unknown:
        raise ConfigError(f"agent {config.name!r} has no module(s) {', '.join(unknown)}")
    missing = [name for name in blueprint.required_modules if name not in modules]
    if missing:
        raise ConfigError(f"agent {config.name!r} needs module(s) {', '.join(missing)}")
    settings = {}
    for module in config.modules:
        spec = blueprint.modules[module.name]
        spec.validate_settings(module.settings)
        settings[module.name] = dict(module.settings)
    return AgentDescriptor(
        name=config.name,
        modules=modules,
        module_settings=settings,
        command_table={kind: handler.handler_id for kind, handler in blueprint.commands.items()},
        subscription_table={
            pattern: handler.handler_id for pattern, handler in blueprint.subscriptions.items()
        },
        workers=config.workers,
        event_workers=config.event_workers,
        command_timeouts={kind: value / 1000 for kind, value in config.command_timeouts.items()},
        default_timeout=config.default_timeout_ms / 1000,
        event_buffer=config.event_buffer,
        requeue_delay=config.requeue_delay_ms / 1000,
    )


class AgentContainer:
    """Owns the capability registry, the bus and every agent runtime of a process."""

    def __init__(
        self,
        config: ContainerConfig,
        descriptors: Iterable[AgentDescriptor],
        blueprints: Mapping[str, AgentBlueprint],
        factories: Mapping[str, CapabilityFactory],
    ) -> None:
        self.config = config
        self._descriptors: Dict[str, AgentDescriptor] = {d.name: d for d in descriptors}
        self._blueprints = dict(blueprints)
        self._factories = dict(factories)
        self._lock = asyncio.Lock()
        self._supervisor: Optional[asyncio.Task[None]] = None
        self._started = False
        self._assemble()

    @classmethod
    def build(
        cls,
        config: ContainerConfig,
        *,
        blueprints: Mapping[str, AgentBlueprint],
        capabilities: Mapping[str, CapabilityFactory],
    ) -> "AgentContainer":
        """Validate the dependency graph and create every runtime in CREATED."""
        descriptors = []
        for agent in config.agents:
            blueprint = blueprints.get(agent.name)
            if blueprint is None:
                raise ConfigError(f"no agent blueprint named {agent.name!r}")
            descriptors.append(describe_agent(agent, blueprint))
            available = set(capabilities) | {MESSAGING}
            needed = blueprint.capabilities([module.name for module in agent.modules])
            unknown = sorted(needed - available)
            if unknown:
                raise ConfigError(f"agent {agent.name!r} references unknown capabilities: {', '.join(unknown)}")
        return cls(config, descriptors, blueprints, capabilities)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def agents(self) -> List[AgentRuntime]:
        return list(self._runtimes.values())

    def agent(self, name: str) -> AgentRuntime:
        try:
            return self._runtimes[name]
        except KeyError:
            raise NotFound(f"no agent named {name!r}") from None

    async def start(self) -> None:
        """Initialise capabilities, then each agent in declared order.

        A failure stops whatever already started, releases the capabilities
        and leaves the container as it was before ``start``.
        """
        async with self._lock:
            if self._started:
                return
            if any(runtime.state is not AgentState.CREATED for runtime in self._runtimes.values()):
                self._assemble()
            try:
                await self.registry.initialise_all()
            except Exception:
                self._assemble()
                raise
            started: List[AgentRuntime] = []
            for runtime in self._runtimes.values():
                try:
                    await runtime.initialise()
                    await runtime.start()
                except Exception as exc:
                    logger.error("Agent %s failed to start: %s", runtime.name, exc)
                    await self._rollback(started + [runtime])
                    raise
                started.append(runtime)
            self._started = True
            self._supervisor = asyncio.create_task(self._supervise(), name="container-supervisor")
            logger.info("Container started with agents: %s", ", ".join(self._runtimes))

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop agents in reverse order sharing one ``grace`` deadline, then capabilities."""
        async with self._lock:
            if not self._started:
                return
            if grace is None:
                grace = self.config.shutdown_grace_ms / 1000
            await self._cancel_supervisor()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + grace
            for runtime in reversed(list(self._runtimes.values())):
                await runtime.stop(max(deadline - loop.time(), 0.0))
            for error in await self.registry.shutdown_all():
                logger.warning("Capability shutdown error: %s", error)
            self._started = False
            logger.info("Container stopped")

    async def restart_agent(self, name: str) -> AgentRuntime:
        """Replace an agent's runtime with a freshly initialised one."""
        async with self._lock:
            if not self._started:
                raise InternalError("container is not running")
            current = self.agent(name)
            await current.stop(self.config.shutdown_grace_ms / 1000)
            fresh = self._make_runtime(self._descriptors[name])
            self._runtimes[name] = fresh
            await fresh.initialise()
            await fresh.start()
            logger.info("Agent %s restarted", name)
            return fresh

    def health(self) -> HealthReport:
        capabilities = self.registry.health()
        agents = {name: runtime.state.name for name, runtime in self._runtimes.items()}
        if any(runtime.state is AgentState.FAILED for runtime in self._runtimes.values()):
            status = "FAILED"
        elif all(runtime.state is AgentState.RUNNING for runtime in self._runtimes.values()) and all(
            health.ok for health in capabilities.values()
        ):
            status = "OK"
        else:
            status = "DEGRADED"
        return HealthReport(status=status, agents=agents, capabilities=capabilities)

    async def supervise_once(self) -> None:
        """Move agents between RUNNING, DEGRADED and FAILED from capability health."""
        health = self.registry.health()
        timeout = self.config.supervisor.degraded_timeout_ms / 1000
        now = self.registry.monotonic()
        for runtime in list(self._runtimes.values()):
            lost = sorted(name for name in runtime.required_capabilities if name in health and not health[name].ok)
            if runtime.state is AgentState.RUNNING and lost:
                runtime.degrade(lost[0])
            elif runtime.state is AgentState.DEGRADED:
                if not lost:
                    await runtime.recover()
                elif now - (runtime.status.degraded_since or now) >= timeout:
                    runtime.fail(f"degraded for more than {timeout:.0f}s")

    @property
    def bus(self) -> MessageBus:
        return self._bus

    def _assemble(self) -> None:
        self.registry = CapabilityRegistry(circuit=self.config.circuit.policy())
        messaging = self.config.messaging
        self._bus = MessageBus.from_url(
            messaging.url,
            prefetch=messaging.prefetch,
            heartbeat_interval=messaging.heartbeat_ms / 1000,
        )
        for name, factory in self._factories.items():
            self.registry.register(name, factory)
        if not self.registry.is_registered(MESSAGING):
            self.registry.register(MESSAGING, self._connect_bus)
        self._resources = ResourceLedger()
        self._runtimes: Dict[str, AgentRuntime] = {}
        for name, descriptor in self._descriptors.items():
            self._bus.ensure_agent_queues(name)
            self._runtimes[name] = self._make_runtime(descriptor)

    async def _connect_bus(self, registry: CapabilityRegistry) -> MessageBus:
        await self._bus.connect()
        return self._bus

    def _make_runtime(self, descriptor: AgentDescriptor) -> AgentRuntime:
        return AgentRuntime(
            descriptor,
            self._blueprints[descriptor.name],
            registry=self.registry,
            bus=self._bus,
            resources=self._resources,
            retry=self.config.retry.policy(),
            dedup=DedupWindow(self.config.dedup.window_ms / 1000, self.registry.monotonic),
        )

    async def _rollback(self, runtimes: List[AgentRuntime]) -> None:
        for runtime in reversed(runtimes):
            try:
                await runtime.stop(0.0)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Agent %s failed to stop during rollback: %s", runtime.name, exc)
        for error in await self.registry.shutdown_all():
            logger.warning("Capability shutdown error during rollback: %s", error)
        self._assemble()

    async def _supervise(self) -> None:
        interval = self.config.supervisor.interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.supervise_once()
            except Exception:  # noqa: BLE001
                logger.exception("Supervisor pass failed")

    async def _cancel_supervisor(self) -> None:
        if self._supervisor is None:
            return
        self._supervisor.cancel()
        with suppress(asyncio.CancelledError):
            await self._supervisor
        self._supervisor = None
