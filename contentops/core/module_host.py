"""Loading, configuring and running the modules owned by an agent."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Set, Tuple, Type

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

from .capabilities import AI, CLOCK, INFRASTRUCTURE, LOGGER, MESSAGING, STORAGE
from .errors import CapabilityMissing, CapabilityUnavailable, ConfigError, NotFound
from .registry import CapabilityRegistry

logger = logging.getLogger(__name__)


class ModuleState(Enum):
    CREATED = auto()
    INITIALISED = auto()
    RUNNING = auto()
    STOPPED = auto()
    FAILED = auto()


class EmptySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


@dataclass(frozen=True, slots=True)
class Collection:
    """A durable collection a module needs, with its unique keys and indices."""

    name: str
    unique: Tuple[Tuple[str, ...], ...] = ()
    indexes: Tuple[Tuple[str, ...], ...] = ()


@dataclass(frozen=True, slots=True)
class ModuleSpec:
    """Static description of a module: how to build it and what it needs."""

    name: str
    factory: Callable[[Any, "CapabilitySet"], Any]
    settings: Type[BaseModel] = EmptySettings
    requires: Tuple[str, ...] = ()
    resources: Tuple[Collection, ...] = ()
    operations: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.resources and STORAGE not in self.requires:
            raise ConfigError(f"module {self.name!r} declares resources but does not require storage")

    def validate_settings(self, raw: Optional[Mapping[str, Any]]) -> BaseModel:
        """Apply defaults and reject unknown or invalid keys."""
        try:
            return self.settings.model_validate(dict(raw or {}))
        except PydanticValidationError as exc:
            raise ConfigError(f"invalid settings for module {self.name!r}: {exc}") from exc


class CapabilitySet:
    """Guarded handles to the capabilities a consumer declared.

    ``logger`` and ``clock`` are always available.
    """

    def __init__(self, registry: CapabilityRegistry, names: Iterable[str], *, owner: str) -> None:
        self._registry = registry
        self._names = set(names) | INFRASTRUCTURE
        self._owner = owner

    def get(self, name: str) -> Any:
        if name not in self._names:
            raise CapabilityMissing(f"{self._owner} did not declare capability {name!r}")
        return self._registry.guarded(name)

    @property
    def logger(self) -> logging.Logger:
        if not self._registry.is_initialised(LOGGER):
            return logging.getLogger(f"contentops.{self._owner}")
        return self.get(LOGGER).get(self._owner)

    @property
    def clock(self) -> Any:
        return self.get(CLOCK)

    @property
    def storage(self) -> Any:
        return self.get(STORAGE)

    @property
    def ai(self) -> Any:
        return self.get(AI)

    @property
    def messaging(self) -> Any:
        return self.get(MESSAGING)


class ResourceLedger:
    """Remembers which collections were ensured in this process."""

    def __init__(self) -> None:
        self._ensured: Set[str] = set()
        self._lock = asyncio.Lock()

    async def ensure(self, storage: Any, collection: Collection) -> bool:
        """Create ``collection`` unless already done; returns whether work happened."""
        async with self._lock:
            if collection.name in self._ensured:
                return False
            await storage.ensure_collection(
                collection.name, unique=collection.unique, indexes=collection.indexes
            )
            self._ensured.add(collection.name)
            return True

    def __contains__(self, name: str) -> bool:
        return name in self._ensured


async def _call_hook(instance: Any, hook: str) -> None:
    method = getattr(instance, hook, None)
    if method is None:
        return
    result = method()
    if inspect.isawaitable(result):
        await result


class ModuleHost:
    """Owns one module instance of one agent."""

    def __init__(
        self,
        spec: ModuleSpec,
        raw_settings: Optional[Mapping[str, Any]],
        *,
        agent: str,
        registry: CapabilityRegistry,
        resources: ResourceLedger,
    ) -> None:
        self.spec = spec
        self.agent = agent
        self.settings = spec.validate_settings(raw_settings)
        self.state = ModuleState.CREATED
        self.last_error: Optional[str] = None
        self.instance: Any = None
        self._registry = registry
        self._resources = resources

    @property
    def name(self) -> str:
        return self.spec.name

    async def initialise(self) -> None:
        """Resolve capabilities, ensure resources, build the instance."""
        try:
            for capability in self.spec.requires:
                self._registry.resolve(capability)
            capabilities = CapabilitySet(
                self._registry, self.spec.requires, owner=f"module.{self.agent}.{self.name}"
            )
            for collection in self.spec.resources:
                await self._resources.ensure(capabilities.storage, collection)
            self.instance = self.spec.factory(self.settings, capabilities)
            await _call_hook(self.instance, "initialise")
        except Exception as exc:
            self.state = ModuleState.FAILED
            self.last_error = str(exc)
            logger.error("Module %s.%s failed to initialise: %s", self.agent, self.name, exc)
            raise
        self.state = ModuleState.INITIALISED

    async def start(self) -> None:
        try:
            await _call_hook(self.instance, "start")
        except Exception as exc:
            self.state = ModuleState.FAILED
            self.last_error = str(exc)
            raise
        self.state = ModuleState.RUNNING

    async def stop(self) -> None:
        if self.state not in (ModuleState.INITIALISED, ModuleState.RUNNING):
            return
        try:
            await _call_hook(self.instance, "stop")
        finally:
            self.state = ModuleState.STOPPED

    async def invoke(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        if operation not in self.spec.operations:
            raise NotFound(f"module {self.name!r} has no operation {operation!r}")
        if self.state is not ModuleState.RUNNING:
            raise CapabilityUnavailable(f"module {self.agent}.{self.name} is {self.state.name}")
        return await getattr(self.instance, operation)(*args, **kwargs)

    def status(self) -> Dict[str, Any]:
        return {"name": self.name, "state": self.state.name, "last_error": self.last_error}
