"""Interfaces of the shared capabilities handed to agents and modules."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
    runtime_checkable,
)

T = TypeVar("T")

LOGGER = "logger"
CLOCK = "clock"
STORAGE = "storage"
MESSAGING = "messaging"
AI = "ai"

# Initialisation order; unknown names follow in registration order.
WELL_KNOWN = (LOGGER, CLOCK, STORAGE, MESSAGING, AI)
INFRASTRUCTURE = frozenset({LOGGER, CLOCK})


@runtime_checkable
class LoggerFactory(Protocol):
    def get(self, name: str) -> logging.Logger: ...


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


@runtime_checkable
class StorageSession(Protocol):
    async def get(self, table: str, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def insert(self, table: str, record: Mapping[str, Any]) -> str: ...

    async def update(self, table: str, key: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def list(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...


@runtime_checkable
class Storage(StorageSession, Protocol):
    async def transaction(self, fn: Callable[[StorageSession], Awaitable[T]]) -> T: ...

    async def ensure_collection(
        self,
        name: str,
        *,
        unique: Sequence[Sequence[str]] = (),
        indexes: Sequence[Sequence[str]] = (),
    ) -> None: ...

    def healthy(self) -> bool: ...

    async def close(self) -> None: ...


@runtime_checkable
class AIProvider(Protocol):
    async def generate(self, request: Any) -> str: ...

    def healthy(self) -> bool: ...


@runtime_checkable
class Messaging(Protocol):
    async def publish_command(self, envelope: Any) -> None: ...

    async def publish_event(self, envelope: Any) -> None: ...

    def healthy(self) -> bool: ...


INTERFACES: Dict[str, type] = {
    LOGGER: LoggerFactory,
    CLOCK: Clock,
    STORAGE: Storage,
    MESSAGING: Messaging,
    AI: AIProvider,
}
