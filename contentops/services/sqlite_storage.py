"""SQLite storage backend keeping each collection as JSON documents."""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar

from contentops.core.envelope import new_id
from contentops.core.errors import CapabilityUnavailable, Conflict, NotFound, ValidationError
from contentops.services.storage import check_identifier, parse_order

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def _translated(table: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise Conflict(f"{table}: {exc}", context={"table": table}) from exc
    except sqlite3.OperationalError as exc:
        raise CapabilityUnavailable(f"sqlite error on {table}: {exc}", context={"table": table}) from exc


def _where(key: Mapping[str, Any]) -> Tuple[str, List[Any]]:
    clauses = []
    params: List[Any] = []
    for name, value in key.items():
        if name == "id":
            clauses.append("id = ?")
            params.append(str(value))
        else:
            clauses.append(f"json_extract(doc, '$.{check_identifier(name, 'field')}') IS ?")
            params.append(value)
    return " AND ".join(clauses), params


def _row(row: sqlite3.Row) -> Dict[str, Any]:
    record = json.loads(row["doc"])
    record["id"] = row["id"]
    return record


class _Operations:
    """Blocking statements on one connection; callers serialise access."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def ensure_table(self, table: str) -> None:
        check_identifier(table)
        self.conn.execute(f'CREATE TABLE IF NOT EXISTS "{table}" (id TEXT PRIMARY KEY, doc TEXT NOT NULL)')

    def ensure_index(self, table: str, fields: Sequence[str], *, unique: bool) -> None:
        names = [check_identifier(name, "field") for name in fields]
        suffix = "ux" if unique else "ix"
        index = f"{table}__{'_'.join(names)}__{suffix}"
        columns = ", ".join(f"json_extract(doc, '$.{name}')" for name in names)
        kind = "UNIQUE INDEX" if unique else "INDEX"
        with _translated(table):
            self.conn.execute(f'CREATE {kind} IF NOT EXISTS "{index}" ON "{table}" ({columns})')

    def get(self, table: str, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        if not key:
            raise ValidationError("lookup key must not be empty")
        self.ensure_table(table)
        clause, params = _where(key)
        with _translated(table):
            row = self.conn.execute(f'SELECT id, doc FROM "{table}" WHERE {clause} LIMIT 1', params).fetchone()
        return _row(row) if row is not None else None

    def insert(self, table: str, record: Mapping[str, Any]) -> str:
        self.ensure_table(table)
        doc = dict(record)
        row_id = str(doc.pop("id", None) or new_id())
        with _translated(table):
            self.conn.execute(f'INSERT INTO "{table}" (id, doc) VALUES (?, ?)', (row_id, json.dumps(doc)))
        return row_id

    def update(self, table: str, key: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
        current = self.get(table, key)
        if current is None:
            raise NotFound(f"no {table} record matching {dict(key)!r}")
        if "id" in patch and patch["id"] != current["id"]:
            raise ValidationError("record ids cannot be changed")
        updated = {**current, **dict(patch)}
        doc = {name: value for name, value in updated.items() if name != "id"}
        with _translated(table):
            self.conn.execute(f'UPDATE "{table}" SET doc = ? WHERE id = ?', (json.dumps(doc), current["id"]))
        return updated

    def select(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]],
        order: Optional[Sequence[str]],
        limit: Optional[int],
    ) -> List[Dict[str, Any]]:
        self.ensure_table(table)
        sql = f'SELECT id, doc FROM "{table}"'
        params: List[Any] = []
        if filter:
            clause, params = _where(filter)
            sql += f" WHERE {clause}"
        ordering = parse_order(order)
        if ordering:
            sql += " ORDER BY " + ", ".join(
                f"json_extract(doc, '$.{name}') {'DESC' if descending else 'ASC'}" for name, descending in ordering
            )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with _translated(table):
            return [_row(row) for row in self.conn.execute(sql, params).fetchall()]


class SqliteSession:
    """Async facade over the blocking operations, used inside a transaction."""

    def __init__(self, ops: _Operations) -> None:
        self._ops = ops

    async def get(self, table: str, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._ops.get, table, key)

    async def insert(self, table: str, record: Mapping[str, Any]) -> str:
        return await asyncio.to_thread(self._ops.insert, table, record)

    async def update(self, table: str, key: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._ops.update, table, key, patch)

    async def list(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._ops.select, table, filter, order, limit)


class SqliteStorage:
    """Storage capability on a single SQLite connection.

    Statements run in a worker thread; an ``asyncio.Lock`` serialises them so
    a transaction sees no interleaved writes.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._ops: Optional[_Operations] = None
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: str) -> "SqliteStorage":
        storage = cls(path)
        await storage.connect()
        return storage

    async def connect(self) -> None:
        if self._conn is not None:
            return
        conn = await asyncio.to_thread(sqlite3.connect, self._path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        self._conn = conn
        self._ops = _Operations(conn)
        logger.info("SQLite storage opened at %s", self._path)

    async def get(self, table: str, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            return await asyncio.to_thread(self._operations().get, table, key)

    async def insert(self, table: str, record: Mapping[str, Any]) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._operations().insert, table, record)

    async def update(self, table: str, key: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            return await asyncio.to_thread(self._operations().update, table, key, patch)

    async def list(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            return await asyncio.to_thread(self._operations().select, table, filter, order, limit)

    async def transaction(self, fn: Callable[[SqliteSession], Awaitable[T]]) -> T:
        async with self._lock:
            ops = self._operations()
            await asyncio.to_thread(ops.conn.execute, "BEGIN IMMEDIATE")
            try:
                result = await fn(SqliteSession(ops))
            except BaseException:
                await asyncio.to_thread(ops.conn.execute, "ROLLBACK")
                raise
            await asyncio.to_thread(ops.conn.execute, "COMMIT")
            return result

    async def ensure_collection(
        self,
        name: str,
        *,
        unique: Sequence[Sequence[str]] = (),
        indexes: Sequence[Sequence[str]] = (),
    ) -> None:
        async with self._lock:
            ops = self._operations()
            await asyncio.to_thread(ops.ensure_table, name)
            for fields in unique:
                await asyncio.to_thread(ops.ensure_index, name, fields, unique=True)
            for fields in indexes:
                await asyncio.to_thread(ops.ensure_index, name, fields, unique=False)

    def healthy(self) -> bool:
        return self._conn is not None

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn, self._ops = self._conn, None, None
        await asyncio.to_thread(conn.close)

    def _operations(self) -> _Operations:
        if self._ops is None:
            raise CapabilityUnavailable("storage is closed")
        return self._ops
