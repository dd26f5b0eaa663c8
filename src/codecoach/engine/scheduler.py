"""Spaced-repetition scheduler for mistakes and mistake patterns.

The first reviews follow a fixed ladder (1, 3, 7, 14, 30 days). Once the
ladder is exhausted intervals grow with an SM-2 ease factor:

    EF' = EF + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02)),  EF' >= 1.3
    next = max(prev + 1, round(prev * EF))

The ``prev + 1`` floor keeps an interval from stalling after a lapse, where
``round(1 * 1.3)`` would otherwise stay at one day forever.

Quality grades come from correctness and response time:
    5 - correct and fast
    4 - correct but slow
    2 - incorrect
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

from loguru import logger

from codecoach.config.settings import SchedulerConfig
from codecoach.engine.errors import InvariantViolation, StoreUnavailable, ValidationError
from codecoach.engine.mistakes import MistakePattern, MistakeRecord, parse_time, utc
from codecoach.state.resilient import ResilientStore

REVIEW_NAMESPACE = "reviews"


class ItemKind(str, Enum):
    MISTAKE = "mistake"
    PATTERN = "pattern"


class ReviewState(str, Enum):
    SCHEDULED = "scheduled"
    DISABLED = "disabled"


@dataclass
class ReviewItem:
    item_key: str
    kind: ItemKind
    user_id: str
    due_at: datetime
    interval_days: int
    ease_factor: float
    review_count: int = 0
    ladder_step: int = 0
    severity: float = 0.0
    state: ReviewState = ReviewState.SCHEDULED
    member_ids: tuple[str, ...] = ()
    occurrence: int = 0
    applied_tokens: list[str] = field(default_factory=list)
    last_reviewed_at: Optional[datetime] = None
    last_quality: Optional[int] = None

    @property
    def store_key(self) -> str:
        return f"{self.user_id}/{self.item_key}"

    @property
    def occurrence_token(self) -> str:
        """Identifies the review occurrence this snapshot belongs to."""
        return f"{self.item_key}#{self.occurrence}"

    def is_due(self, as_of: datetime) -> bool:
        return self.state == ReviewState.SCHEDULED and self.due_at <= as_of

    def to_dict(self) -> dict:
        return {
            "itemKey": self.item_key,
            "kind": self.kind.value,
            "userId": self.user_id,
            "dueAt": self.due_at.isoformat(),
            "intervalDays": self.interval_days,
            "easeFactor": self.ease_factor,
            "reviewCount": self.review_count,
            "ladderStep": self.ladder_step,
            "severity": self.severity,
            "state": self.state.value,
            "memberIds": list(self.member_ids),
            "occurrence": self.occurrence,
            "appliedTokens": list(self.applied_tokens),
            "lastReviewedAt": self.last_reviewed_at.isoformat() if self.last_reviewed_at else None,
            "lastQuality": self.last_quality,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewItem":
        return cls(
            item_key=data["itemKey"],
            kind=ItemKind(data["kind"]),
            user_id=data["userId"],
            due_at=parse_time(data["dueAt"]),
            interval_days=int(data["intervalDays"]),
            ease_factor=float(data["easeFactor"]),
            review_count=int(data.get("reviewCount", 0)),
            ladder_step=int(data.get("ladderStep", 0)),
            severity=float(data.get("severity", 0.0)),
            state=ReviewState(data.get("state", ReviewState.SCHEDULED.value)),
            member_ids=tuple(data.get("memberIds") or ()),
            occurrence=int(data.get("occurrence", 0)),
            applied_tokens=list(data.get("appliedTokens") or []),
            last_reviewed_at=parse_time(data.get("lastReviewedAt")),
            last_quality=data.get("lastQuality"),
        )


def quality_for(correct: bool, response_time_ms: int, fast_response_ms: int) -> int:
    if not correct:
        return 2
    return 5 if response_time_ms <= fast_response_ms else 4


def next_ease(ease_factor: float, quality: int, min_ease: float = 1.3) -> float:
    delta = 0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02)
    return max(min_ease, round(ease_factor + delta, 4))


def advance(
    item: ReviewItem,
    correct: bool,
    response_time_ms: int,
    now: datetime,
    config: SchedulerConfig,
) -> ReviewItem:
    """Pure interval math for one review outcome."""
    quality = quality_for(correct, response_time_ms, config.fast_response_ms)
    ladder = config.ladder_days
    last_step = len(ladder) - 1
    on_ladder = item.ladder_step < last_step

    if correct:
        if on_ladder:
            step = item.ladder_step + 1
            interval = ladder[step]
        else:
            step = item.ladder_step
            # Never stall at the same interval after a lapse (round(1 * 1.3) == 1).
            interval = max(item.interval_days + 1, round(item.interval_days * item.ease_factor))
    else:
        step = 0 if on_ladder else item.ladder_step
        interval = 1

    ease = next_ease(item.ease_factor, quality, config.min_ease)
    due_at = now + timedelta(days=interval)
    if interval < 1 or due_at <= now:
        raise InvariantViolation(f"{item.item_key}: non-positive interval {interval}")
    if ease < config.min_ease:
        raise InvariantViolation(f"{item.item_key}: ease factor {ease} below floor")

    return replace(
        item,
        due_at=due_at,
        interval_days=interval,
        ease_factor=ease,
        review_count=item.review_count + 1,
        ladder_step=step,
        occurrence=item.occurrence + 1,
        last_reviewed_at=now,
        last_quality=quality,
    )


Schedulable = Union[MistakeRecord, MistakePattern]


class SpacedRepetitionScheduler:
    """Owns ReviewItems. Read-modify-write goes through per-key compare-and-set.

    An in-memory mirror of every item this process has seen keeps the schedule
    usable while the store is unreachable; writes that fail are queued in the
    store's outbox and replayed later, so a due item is delayed, never lost.
    """

    def __init__(
        self,
        store: ResilientStore,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.config = config or SchedulerConfig()
        self._clock = clock or time.time
        self._mirror: dict[str, tuple[ReviewItem, int]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else utc(self._clock())

    def _lock(self, store_key: str) -> asyncio.Lock:
        lock = self._locks.get(store_key)
        if lock is None:
            lock = self._locks[store_key] = asyncio.Lock()
        return lock

    async def _read(self, store_key: str) -> Optional[tuple[ReviewItem, int]]:
        try:
            found = await self.store.get(REVIEW_NAMESPACE, store_key)
        except StoreUnavailable:
            logger.warning("store unavailable, using session copy of {}", store_key)
            return self._mirror.get(store_key)
        queued = self.store.pending_write(REVIEW_NAMESPACE, store_key)
        if queued is not None and queued.value is None:
            # Erased during an outage; finish the delete before anything reads the old row.
            if found is not None:
                await self.store.delete(REVIEW_NAMESPACE, store_key)
            return None
        if queued is not None and store_key in self._mirror:
            # A queued local write is newer than whatever the store holds.
            return self._mirror[store_key]
        if found is None:
            return None
        item = ReviewItem.from_dict(found.value)
        self._mirror[store_key] = (item, found.version)
        return item, found.version

    async def _write(self, item: ReviewItem, expected_version: int) -> bool:
        due = item.due_at.timestamp() if item.state == ReviewState.SCHEDULED else None
        try:
            ok = await self.store.compare_and_set(
                REVIEW_NAMESPACE, item.store_key, item.to_dict(), expected_version, due=due
            )
        except StoreUnavailable:
            self.store.queue(REVIEW_NAMESPACE, item.store_key, item.to_dict(), due=due)
            self._mirror[item.store_key] = (item, expected_version)
            logger.warning("queued review item {} until the store is back", item.store_key)
            return True
        if ok:
            self._mirror[item.store_key] = (item, expected_version + 1)
        return ok

    async def schedule(self, target: Schedulable, now: Optional[datetime] = None) -> ReviewItem:
        """Create the ReviewItem for a mistake or pattern; idempotent per key."""
        now = self._now(now)
        if isinstance(target, MistakePattern):
            kind, key, members, severity = ItemKind.PATTERN, target.pattern_key, target.member_mistake_ids, target.severity
        elif isinstance(target, MistakeRecord):
            kind, key, members, severity = ItemKind.MISTAKE, target.mistake_id, (target.mistake_id,), 1.0
        else:
            raise ValidationError(f"cannot schedule {type(target).__name__}")
        store_key = f"{target.user_id}/{key}"

        async with self._lock(store_key):
            for _ in range(self.config.cas_attempts):
                current = await self._read(store_key)
                if current is not None:
                    existing, version = current
                    if existing.state == ReviewState.DISABLED:
                        return existing
                    refreshed = replace(existing, severity=severity, member_ids=tuple(members))
                    if refreshed == existing or await self._write(refreshed, version):
                        return refreshed
                    continue
                first = self.config.ladder_days[0]
                item = ReviewItem(
                    item_key=key,
                    kind=kind,
                    user_id=target.user_id,
                    due_at=now + timedelta(days=first),
                    interval_days=first,
                    ease_factor=self.config.initial_ease,
                    severity=severity,
                    member_ids=tuple(members),
                )
                if await self._write(item, 0):
                    logger.info("scheduled {} {} for {} (due {})", kind.value, key, target.user_id, item.due_at)
                    return item
        raise StoreUnavailable(f"could not schedule {store_key}: concurrent updates")

    async def get(self, user_id: str, item_key: str) -> Optional[ReviewItem]:
        current = await self._read(f"{user_id}/{item_key}")
        return current[0] if current else None

    async def items(self, user_id: str) -> list[ReviewItem]:
        prefix = f"{user_id}/"
        try:
            rows = await self.store.scan(REVIEW_NAMESPACE, prefix=prefix)
            items = {key: ReviewItem.from_dict(found.value) for key, found in rows}
        except StoreUnavailable:
            items = {}
        for key, (item, _) in self._mirror.items():
            if key.startswith(prefix) and (key not in items or key in self.store.pending_keys(REVIEW_NAMESPACE)):
                items[key] = item
        for key in self.store.pending_deletes(REVIEW_NAMESPACE):
            items.pop(key, None)
        return sorted(items.values(), key=lambda i: i.item_key)

    async def due_now(self, user_id: str, as_of: Optional[datetime] = None) -> list[ReviewItem]:
        """Due items ordered by due time, then severity (desc), then key."""
        as_of = self._now(as_of)
        prefix = f"{user_id}/"
        pending = self.store.pending_keys(REVIEW_NAMESPACE)
        try:
            rows = await self.store.query_due(REVIEW_NAMESPACE, as_of.timestamp(), prefix=prefix)
            found = {f"{row['userId']}/{row['itemKey']}": ReviewItem.from_dict(row) for row in rows}
        except StoreUnavailable:
            logger.warning("store unavailable, answering due_now from session state")
            found = {k: item for k, (item, _) in self._mirror.items() if k.startswith(prefix)}
        for key in pending:
            if key.startswith(prefix) and key in self._mirror:
                found[key] = self._mirror[key][0]
        for key in self.store.pending_deletes(REVIEW_NAMESPACE):
            found.pop(key, None)
        due = [item for item in found.values() if item.is_due(as_of)]
        due.sort(key=lambda i: (i.due_at, -i.severity, i.item_key))
        return due

    async def record_outcome(
        self,
        item: ReviewItem | str,
        correct: bool,
        response_time_ms: int,
        idempotency_token: Optional[str] = None,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> ReviewItem:
        """Apply one review outcome.

        The idempotency token names the review occurrence; it defaults to the
        occurrence of the snapshot passed in, so resubmitting the same snapshot
        does not advance the interval twice.
        """
        if isinstance(item, str):
            if not user_id:
                raise ValidationError("user_id is required when recording by key")
            snapshot = await self.get(user_id, item)
            if snapshot is None:
                raise ValidationError(f"unknown review item {item}")
        else:
            snapshot = item
        if isinstance(response_time_ms, bool) or not isinstance(response_time_ms, (int, float)) or response_time_ms < 0:
            raise ValidationError(f"invalid response time {response_time_ms!r}")
        token = idempotency_token or snapshot.occurrence_token
        now = self._now(now)

        async with self._lock(snapshot.store_key):
            for _ in range(self.config.cas_attempts):
                current = await self._read(snapshot.store_key)
                if current is None:
                    raise ValidationError(f"unknown review item {snapshot.item_key}")
                stored, version = current
                if token in stored.applied_tokens:
                    logger.debug("duplicate outcome {} for {} ignored", token, stored.item_key)
                    return stored
                if stored.state == ReviewState.DISABLED:
                    raise ValidationError(f"review item {stored.item_key} is disabled")
                try:
                    updated = advance(stored, bool(correct), int(response_time_ms), now, self.config)
                except InvariantViolation as e:
                    logger.error("refusing review update: {}", e)
                    raise
                updated.applied_tokens = (stored.applied_tokens + [token])[-self.config.token_history:]
                if await self._write(updated, version):
                    logger.info(
                        "review {} {} -> next in {}d (ef={:.2f})",
                        updated.item_key, "correct" if correct else "incorrect",
                        updated.interval_days, updated.ease_factor,
                    )
                    return updated
        raise StoreUnavailable(f"could not record outcome for {snapshot.store_key}: concurrent updates")

    async def disable(self, user_id: str, item_key: str) -> ReviewItem:
        """Terminal state: the item never comes due again."""
        store_key = f"{user_id}/{item_key}"
        async with self._lock(store_key):
            for _ in range(self.config.cas_attempts):
                current = await self._read(store_key)
                if current is None:
                    raise ValidationError(f"unknown review item {item_key}")
                stored, version = current
                if stored.state == ReviewState.DISABLED:
                    return stored
                disabled = replace(stored, state=ReviewState.DISABLED)
                if await self._write(disabled, version):
                    return disabled
        raise StoreUnavailable(f"could not disable {store_key}: concurrent updates")

    async def forget_user(self, user_id: str) -> int:
        """Delete every review item for a user (data-erasure request)."""
        keys = {f"{user_id}/{item.item_key}" for item in await self.items(user_id)}
        for store_key in keys:
            await self.store.delete(REVIEW_NAMESPACE, store_key)
            self._mirror.pop(store_key, None)
        logger.info("erased {} review items for {}", len(keys), user_id)
        return len(keys)
