"""Retry, backoff and a local outbox in front of a KeyValueStore.

Reads and compare-and-set calls are retried with exponential backoff and then
surface StoreUnavailable. Plain writes that still fail are parked in an outbox
so the session keeps running on in-memory state; ``flush`` replays them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from codecoach.config.settings import StoreConfig
from codecoach.engine.errors import StoreUnavailable
from codecoach.state.store import KeyValueStore, Versioned

T = TypeVar("T")


@dataclass
class PendingWrite:
    namespace: str
    key: str
    value: Optional[dict]  # None means delete
    ttl: Optional[float] = None
    due: Optional[float] = None


class ResilientStore:
    def __init__(
        self,
        backend: KeyValueStore,
        config: Optional[StoreConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.config = config or StoreConfig()
        self._sleep = sleep
        self._outbox: dict[tuple[str, str], PendingWrite] = {}

    async def _retry(self, label: str, op: Callable[[], Awaitable[T]]) -> T:
        attempts = self.config.retry_attempts
        delay = self.config.retry_base_delay
        for attempt in range(1, attempts + 1):
            try:
                return await op()
            except StoreUnavailable as e:
                if attempt == attempts:
                    logger.warning("store {} failed after {} attempts: {}", label, attempts, e)
                    raise
                logger.debug("store {} attempt {} failed, retrying in {:.3f}s", label, attempt, delay)
                await self._sleep(delay)
                delay *= 2
        raise StoreUnavailable(f"store {label} failed")

    @property
    def pending(self) -> list[PendingWrite]:
        return list(self._outbox.values())

    def pending_keys(self, namespace: str) -> set[str]:
        return {key for ns, key in self._outbox if ns == namespace}

    def pending_write(self, namespace: str, key: str) -> Optional[PendingWrite]:
        return self._outbox.get((namespace, key))

    def pending_deletes(self, namespace: str) -> set[str]:
        return {key for (ns, key), write in self._outbox.items() if ns == namespace and write.value is None}

    async def get(self, namespace: str, key: str) -> Optional[Versioned]:
        return await self._retry("get", lambda: self.backend.get(namespace, key))

    async def scan(self, namespace: str, prefix: str = "") -> list[tuple[str, Versioned]]:
        return await self._retry("scan", lambda: self.backend.scan(namespace, prefix))

    async def query_due(self, namespace: str, until: float, prefix: str = "") -> list[dict]:
        return await self._retry("query_due", lambda: self.backend.query_due(namespace, until, prefix))

    async def compare_and_set(self, namespace, key, value, expected_version, ttl=None, due=None) -> bool:
        ok = await self._retry(
            "compare_and_set",
            lambda: self.backend.compare_and_set(namespace, key, value, expected_version, ttl=ttl, due=due),
        )
        if ok:
            self._outbox.pop((namespace, key), None)
        return ok

    async def put(self, namespace, key, value, ttl=None, due=None) -> bool:
        """Write through; on outage queue the write and return False."""
        try:
            await self._retry("put", lambda: self.backend.put(namespace, key, value, ttl=ttl, due=due))
        except StoreUnavailable:
            self._outbox[(namespace, key)] = PendingWrite(namespace, key, value, ttl, due)
            logger.warning("queued write {}/{} for later ({} pending)", namespace, key, len(self._outbox))
            return False
        self._outbox.pop((namespace, key), None)
        return True

    def queue(self, namespace, key, value, ttl=None, due=None) -> None:
        self._outbox[(namespace, key)] = PendingWrite(namespace, key, value, ttl, due)

    async def delete(self, namespace: str, key: str) -> bool:
        try:
            await self._retry("delete", lambda: self.backend.delete(namespace, key))
        except StoreUnavailable:
            self._outbox[(namespace, key)] = PendingWrite(namespace, key, None)
            return False
        self._outbox.pop((namespace, key), None)
        return True

    async def flush(self) -> int:
        """Replay queued writes; returns how many are still pending."""
        for (namespace, key), write in list(self._outbox.items()):
            try:
                if write.value is None:
                    await self.backend.delete(namespace, key)
                else:
                    await self.backend.put(namespace, key, write.value, ttl=write.ttl, due=write.due)
            except StoreUnavailable as e:
                logger.debug("flush of {}/{} still failing: {}", namespace, key, e)
                continue
            # Only drop the entry if nothing newer was queued while we awaited.
            if self._outbox.get((namespace, key)) is write:
                del self._outbox[(namespace, key)]
        if self._outbox:
            logger.warning("{} store writes still pending after flush", len(self._outbox))
        return len(self._outbox)
