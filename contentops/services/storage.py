"""In-process document storage with snapshot transactions."""
from __future__ import annotations

import asyncio
import copy
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from contentops.core.envelope import new_id
from contentops.core.errors import CapabilityUnavailable, Conflict, NotFound, ValidationError

T = TypeVar("T")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def check_identifier(name: str, what: str = "table") -> str:
    if not _IDENTIFIER.match(name):
        raise ValidationError(f"invalid {what} name {name!r}")
    return name


def parse_order(order: Optional[Sequence[str]]) -> List[Tuple[str, bool]]:
    """``["-created_at", "title"]`` -> ``[("created_at", True), ("title", False)]``."""
    parsed = []
    for item in order or ():
        descending = item.startswith("-")
        parsed.append((check_identifier(item.lstrip("-"), "field"), descending))
    return parsed


def matches(record: Mapping[str, Any], criteria: Mapping[str, Any]) -> bool:
    return all(record.get(name) == value for name, value in criteria.items())


@dataclass(slots=True)
class _Table:
    rows: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    unique: List[Tuple[str, ...]] = field(default_factory=list)
    indexes: List[Tuple[str, ...]] = field(default_factory=list)


class MemorySession:
    """Operations over one set of tables; used directly and inside transactions."""

    def __init__(self, tables: Dict[str, _Table]) -> None:
        self._tables = tables

    async def get(self, table: str, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        found = self._find(table, key)
        return copy.deepcopy(found) if found is not None else None

    async def insert(self, table: str, record: Mapping[str, Any]) -> str:
        target = self._table(table, create=True)
        row = copy.deepcopy(dict(record))
        row_id = str(row.get("id") or new_id())
        row["id"] = row_id
        if row_id in target.rows:
            raise Conflict(f"{table} already has a record with id {row_id!r}")
        self._check_unique(table, target, row)
        target.rows[row_id] = row
        return row_id

    async def update(self, table: str, key: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
        current = self._find(table, key)
        if current is None:
            raise NotFound(f"no {table} record matching {dict(key)!r}")
        if "id" in patch and patch["id"] != current["id"]:
            raise ValidationError("record ids cannot be changed")
        updated = {**current, **copy.deepcopy(dict(patch))}
        target = self._tables[table]
        self._check_unique(table, target, updated)
        target.rows[current["id"]] = updated
        return copy.deepcopy(updated)

    async def list(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        target = self._tables.get(check_identifier(table))
        if target is None:
            return []
        rows = [row for row in target.rows.values() if matches(row, filter or {})]
        for name, descending in reversed(parse_order(order)):
            rows.sort(key=lambda row: (row.get(name) is None, row.get(name)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    def _table(self, table: str, *, create: bool = False) -> _Table:
        check_identifier(table)
        if table not in self._tables:
            if not create:
                raise NotFound(f"unknown table {table!r}")
            self._tables[table] = _Table()
        return self._tables[table]

    def _find(self, table: str, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        if not key:
            raise ValidationError("lookup key must not be empty")
        target = self._tables.get(check_identifier(table))
        if target is None:
            return None
        if set(key) == {"id"}:
            return target.rows.get(str(key["id"]))
        for row in target.rows.values():
            if matches(row, key):
                return row
        return None

    @staticmethod
    def _check_unique(table: str, target: _Table, row: Mapping[str, Any]) -> None:
        for fields in target.unique:
            values = tuple(row.get(name) for name in fields)
            if any(value is None for value in values):
                continue
            for other in target.rows.values():
                if other["id"] != row["id"] and tuple(other.get(name) for name in fields) == values:
                    raise Conflict(
                        f"{table} already has a record with {dict(zip(fields, values))!r}",
                        context={"table": table, "fields": list(fields)},
                    )


class InMemoryStorage(MemorySession):
    """Storage capability keeping every table in process memory.

    Writes and transactions are serialised by one lock; a transaction works on
    a deep copy of all tables that replaces the live state only if it returns.
    """

    def __init__(self) -> None:
        super().__init__({})
        self._lock = asyncio.Lock()
        self._closed = False

    async def get(self, table: str, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        self._ensure_open()
        return await super().get(table, key)

    async def insert(self, table: str, record: Mapping[str, Any]) -> str:
        self._ensure_open()
        async with self._lock:
            return await super().insert(table, record)

    async def update(self, table: str, key: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
        self._ensure_open()
        async with self._lock:
            return await super().update(table, key, patch)

    async def list(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._ensure_open()
        return await super().list(table, filter, order, limit)

    async def transaction(self, fn: Callable[[MemorySession], Awaitable[T]]) -> T:
        self._ensure_open()
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            result = await fn(MemorySession(snapshot))
            self._tables = snapshot
            return result

    async def ensure_collection(
        self,
        name: str,
        *,
        unique: Sequence[Sequence[str]] = (),
        indexes: Sequence[Sequence[str]] = (),
    ) -> None:
        self._ensure_open()
        async with self._lock:
            target = self._table(name, create=True)
            for fields in unique:
                key = tuple(check_identifier(item, "field") for item in fields)
                if key not in target.unique:
                    self._check_existing(name, target, key)
                    target.unique.append(key)
            for fields in indexes:
                key = tuple(check_identifier(item, "field") for item in fields)
                if key not in target.indexes:
                    target.indexes.append(key)

    def healthy(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True

    def _check_existing(self, name: str, target: _Table, fields: Tuple[str, ...]) -> None:
        seen = set()
        for row in target.rows.values():
            values = tuple(row.get(item) for item in fields)
            if any(value is None for value in values):
                continue
            if values in seen:
                raise Conflict(f"existing {name} records violate unique key {fields!r}")
            seen.add(values)

    def _ensure_open(self) -> None:
        if self._closed:
            raise CapabilityUnavailable("storage is closed")
