"""Key-value persistence for mistakes, review items and the hint cache.

Values are JSON-serializable dicts grouped by namespace. Every key carries a
version so callers can do read-modify-write with compare-and-set. Entries may
carry a TTL (hint cache) and a due timestamp (review schedule) for range
queries.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from codecoach.engine.errors import StoreUnavailable


@dataclass(frozen=True)
class Versioned:
    value: dict
    version: int


class KeyValueStore(Protocol):
    async def get(self, namespace: str, key: str) -> Optional[Versioned]: ...

    async def put(
        self,
        namespace: str,
        key: str,
        value: dict,
        ttl: Optional[float] = None,
        due: Optional[float] = None,
    ) -> int: ...

    async def compare_and_set(
        self,
        namespace: str,
        key: str,
        value: dict,
        expected_version: int,
        ttl: Optional[float] = None,
        due: Optional[float] = None,
    ) -> bool: ...

    async def delete(self, namespace: str, key: str) -> None: ...

    async def scan(self, namespace: str, prefix: str = "") -> list[tuple[str, Versioned]]: ...

    async def query_due(self, namespace: str, until: float, prefix: str = "") -> list[dict]: ...


@dataclass
class _Entry:
    value: dict
    version: int
    expires_at: Optional[float]
    due: Optional[float]


class MemoryStore:
    """Dict-backed store; the default for tests and for sessions without a data dir.

    Expected version 0 means "key must not exist yet".
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._data: dict[tuple[str, str], _Entry] = {}

    def _live(self, namespace: str, key: str) -> Optional[_Entry]:
        entry = self._data.get((namespace, key))
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[(namespace, key)]
            return None
        return entry

    async def get(self, namespace: str, key: str) -> Optional[Versioned]:
        entry = self._live(namespace, key)
        if entry is None:
            return None
        return Versioned(value=json.loads(json.dumps(entry.value)), version=entry.version)

    async def put(self, namespace, key, value, ttl=None, due=None) -> int:
        entry = self._live(namespace, key)
        version = (entry.version if entry else 0) + 1
        self._data[(namespace, key)] = _Entry(
            value=json.loads(json.dumps(value)),
            version=version,
            expires_at=self._clock() + ttl if ttl is not None else None,
            due=due,
        )
        return version

    async def compare_and_set(self, namespace, key, value, expected_version, ttl=None, due=None) -> bool:
        entry = self._live(namespace, key)
        current = entry.version if entry else 0
        if current != expected_version:
            return False
        await self.put(namespace, key, value, ttl=ttl, due=due)
        return True

    async def delete(self, namespace: str, key: str) -> None:
        self._data.pop((namespace, key), None)

    async def scan(self, namespace: str, prefix: str = "") -> list[tuple[str, Versioned]]:
        out = []
        for (ns, key) in sorted(self._data):
            if ns != namespace or not key.startswith(prefix):
                continue
            entry = self._live(ns, key)
            if entry is not None:
                out.append((key, Versioned(json.loads(json.dumps(entry.value)), entry.version)))
        return out

    async def query_due(self, namespace: str, until: float, prefix: str = "") -> list[dict]:
        rows = []
        for (ns, key), entry in list(self._data.items()):
            if ns != namespace or not key.startswith(prefix):
                continue
            if entry.due is None or entry.due > until:
                continue
            if self._live(ns, key) is not None:
                rows.append((entry.due, key, json.loads(json.dumps(entry.value))))
        rows.sort(key=lambda r: (r[0], r[1]))
        return [r[2] for r in rows]


class SqliteStore:
    """SQLite-backed store. Blocking calls run in a worker thread."""

    def __init__(self, db_path: Optional[Path] = None, clock: Optional[Callable[[], float]] = None):
        self.db_path = db_path or (Path.home() / ".codecoach" / "coach.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or time.time
        self._init_db()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    expires_at REAL,
                    due_at REAL,
                    PRIMARY KEY (namespace, key)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS kv_due ON kv (namespace, due_at)")

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=5)

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite store error: {e}") from e

    def _expired_clause(self) -> tuple[str, float]:
        return "(expires_at IS NULL OR expires_at > ?)", self._clock()

    def _get(self, namespace: str, key: str) -> Optional[Versioned]:
        clause, now = self._expired_clause()
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT value, version FROM kv WHERE namespace = ? AND key = ? AND {clause}",
                (namespace, key, now),
            ).fetchone()
        if not row:
            return None
        return Versioned(value=json.loads(row[0]), version=row[1])

    def _write(self, namespace, key, value, ttl, due, expected_version) -> Optional[int]:
        now = self._clock()
        expires_at = now + ttl if ttl is not None else None
        payload = json.dumps(value)
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT version, expires_at FROM kv WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
            current = 0
            if row and (row[1] is None or row[1] > now):
                current = row[0]
            if expected_version is not None and current != expected_version:
                return None
            version = current + 1
            conn.execute(
                """INSERT OR REPLACE INTO kv
                   (namespace, key, value, version, expires_at, due_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (namespace, key, payload, version, expires_at, due),
            )
        return version

    def _delete(self, namespace: str, key: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM kv WHERE namespace = ? AND key = ?", (namespace, key))

    def _scan(self, namespace: str, prefix: str) -> list[tuple[str, Versioned]]:
        clause, now = self._expired_clause()
        with self._conn() as conn:
            rows = conn.execute(
                f"""SELECT key, value, version FROM kv
                    WHERE namespace = ? AND substr(key, 1, ?) = ? AND {clause}
                    ORDER BY key""",
                (namespace, len(prefix), prefix, now),
            ).fetchall()
        return [(r[0], Versioned(json.loads(r[1]), r[2])) for r in rows]

    def _query_due(self, namespace: str, until: float, prefix: str) -> list[dict]:
        clause, now = self._expired_clause()
        with self._conn() as conn:
            rows = conn.execute(
                f"""SELECT value FROM kv
                    WHERE namespace = ? AND due_at IS NOT NULL AND due_at <= ?
                      AND substr(key, 1, ?) = ? AND {clause}
                    ORDER BY due_at, key""",
                (namespace, until, len(prefix), prefix, now),
            ).fetchall()
        return [json.loads(r[0]) for r in rows]

    async def get(self, namespace: str, key: str) -> Optional[Versioned]:
        return await self._run(self._get, namespace, key)

    async def put(self, namespace, key, value, ttl=None, due=None) -> int:
        return await self._run(self._write, namespace, key, value, ttl, due, None)

    async def compare_and_set(self, namespace, key, value, expected_version, ttl=None, due=None) -> bool:
        version = await self._run(self._write, namespace, key, value, ttl, due, expected_version)
        return version is not None

    async def delete(self, namespace: str, key: str) -> None:
        await self._run(self._delete, namespace, key)

    async def scan(self, namespace: str, prefix: str = "") -> list[tuple[str, Versioned]]:
        return await self._run(self._scan, namespace, prefix)

    async def query_due(self, namespace: str, until: float, prefix: str = "") -> list[dict]:
        return await self._run(self._query_due, namespace, until, prefix)
