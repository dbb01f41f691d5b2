"""Registry of shared capabilities keyed by name."""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .capabilities import CLOCK, INFRASTRUCTURE, INTERFACES, WELL_KNOWN
from .circuit import CircuitBreaker
from .errors import (
    AlreadyRegistered,
    CapabilityInitFailed,
    CapabilityMissing,
    CapabilityUnavailable,
    ConfigError,
    ErrorClass,
    classify,
)

logger = logging.getLogger(__name__)

CapabilityFactory = Callable[["CapabilityRegistry"], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True, slots=True)
class CircuitPolicy:
    threshold: int = 10
    window: float = 60.0
    cooldown: float = 30.0


@dataclass(slots=True)
class CapabilityHealth:
    ok: bool
    circuit: Optional[str] = None


class GuardedCapability:
    """Proxy routing every coroutine call of a capability through its breaker."""

    def __init__(self, name: str, target: Any, breaker: CircuitBreaker) -> None:
        self._name = name
        self._target = target
        self._breaker = breaker

    @property
    def unwrapped(self) -> Any:
        return self._target

    def __getattr__(self, attr: str) -> Any:
        value = getattr(self._target, attr)
        if not inspect.iscoroutinefunction(value):
            return value
        breaker = self._breaker
        name = self._name

        @functools.wraps(value)
        async def call(*args: Any, **kwargs: Any) -> Any:
            if not breaker.allow():
                raise CapabilityUnavailable(f"capability {name!r} circuit is open", context={"capability": name})
            try:
                result = await value(*args, **kwargs)
            except asyncio.CancelledError:
                # A call abandoned at its deadline counts against the circuit
                # and must not leave a half-open probe outstanding.
                breaker.record_failure()
                raise
            except Exception as exc:
                if classify(exc) is ErrorClass.PERMANENT:
                    breaker.record_success()
                else:
                    breaker.record_failure()
                raise
            breaker.record_success()
            return result

        return call

    def __repr__(self) -> str:
        return f"GuardedCapability({self._name!r}, {self._target!r})"


class CapabilityRegistry:
    """Owns capability factories, their instances and their circuit breakers."""

    def __init__(self, *, circuit: Optional[CircuitPolicy] = None) -> None:
        self._factories: Dict[str, CapabilityFactory] = {}
        self._instances: Dict[str, Any] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._circuit = circuit or CircuitPolicy()

    @property
    def names(self) -> List[str]:
        return list(self._factories)

    def register(self, name: str, factory: CapabilityFactory) -> None:
        if name in self._factories:
            raise AlreadyRegistered(f"capability {name!r} already registered")
        self._factories[name] = factory
        if name not in INFRASTRUCTURE:
            self._breakers[name] = CircuitBreaker(
                name,
                threshold=self._circuit.threshold,
                window=self._circuit.window,
                cooldown=self._circuit.cooldown,
                clock=self.monotonic,
            )

    def is_registered(self, name: str) -> bool:
        return name in self._factories

    def is_initialised(self, name: str) -> bool:
        return name in self._instances

    def resolve(self, name: str, expected: Optional[type] = None) -> Any:
        """Return the initialised instance registered under ``name``."""
        if name not in self._instances:
            raise CapabilityMissing(f"capability {name!r} is not available", context={"capability": name})
        instance = self._instances[name]
        interface = expected or INTERFACES.get(name)
        if interface is not None and not isinstance(instance, interface):
            raise ConfigError(f"capability {name!r} does not implement {interface.__name__}")
        return instance

    def guarded(self, name: str) -> Any:
        """Instance behind its circuit breaker; infrastructure capabilities are returned as-is."""
        instance = self.resolve(name)
        breaker = self._breakers.get(name)
        if breaker is None:
            return instance
        return GuardedCapability(name, instance, breaker)

    def breaker(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def initialisation_order(self) -> List[str]:
        known = [name for name in WELL_KNOWN if name in self._factories]
        return known + [name for name in self._factories if name not in WELL_KNOWN]

    async def initialise_all(self) -> None:
        """Create every capability; on failure tear down the ones already built."""
        for name in self.initialisation_order():
            if name in self._instances:
                continue
            try:
                instance = self._factories[name](self)
                if inspect.isawaitable(instance):
                    instance = await instance
            except Exception as exc:
                logger.error("Capability %s failed to initialise: %s", name, exc)
                errors = await self.shutdown_all()
                for error in errors:
                    logger.warning("Error while rolling back capabilities: %s", error)
                raise CapabilityInitFailed(
                    f"capability {name!r} failed to initialise: {exc}",
                    context={"capability": name},
                ) from exc
            self._instances[name] = instance
            logger.info("Capability %s initialised", name)

    async def shutdown_all(self) -> List[Exception]:
        """Release capabilities in reverse order; returns the errors encountered."""
        errors: List[Exception] = []
        for name in reversed(list(self._instances)):
            instance = self._instances.pop(name)
            close = getattr(instance, "close", None)
            if close is None:
                continue
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                logger.warning("Capability %s failed to shut down: %s", name, exc)
                errors.append(exc)
            else:
                logger.info("Capability %s shut down", name)
        return errors

    def health(self) -> Dict[str, CapabilityHealth]:
        report: Dict[str, CapabilityHealth] = {}
        for name in self._factories:
            instance = self._instances.get(name)
            if instance is None:
                report[name] = CapabilityHealth(ok=False)
                continue
            probe = getattr(instance, "healthy", None)
            ok = bool(probe()) if callable(probe) else True
            breaker = self._breakers.get(name)
            circuit = None
            if breaker is not None:
                circuit = breaker.state.name
                ok = ok and not breaker.is_open()
            report[name] = CapabilityHealth(ok=ok, circuit=circuit)
        return report

    def monotonic(self) -> float:
        clock = self._instances.get(CLOCK)
        if clock is not None:
            return clock.monotonic()
        return time.monotonic()
