"""Mistake aggregation: records discrete mistakes and clusters them into patterns.

Patterns are never stored. They are recomputed from the user's records by
``cluster_patterns``, a pure function, so a record can only ever sit in one
pattern and there are no back-references to keep in sync.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional

from loguru import logger

from codecoach.config.settings import AggregatorConfig
from codecoach.engine.errors import StoreUnavailable, ValidationError
from codecoach.engine.normalizer import code_shape
from codecoach.state.resilient import ResilientStore

MISTAKE_NAMESPACE = "mistakes"
ANNOUNCED_NAMESPACE = "reinforced"


def utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def parse_time(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return utc(float(value))
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValidationError(f"bad timestamp {value!r}")


def fingerprint(language: str, error_kind: str, code_context: str) -> str:
    """Stable id for "the same mistake", blind to identifiers and literals."""
    shape = code_shape(code_context, language)
    raw = f"{language.lower()}\x00{error_kind}\x00{shape}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


@dataclass
class MistakeEvent:
    user_id: str
    language: str
    error_kind: str
    code_context: str = ""
    timestamp: Optional[datetime] = None
    mistake_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data) -> "MistakeEvent":
        if not isinstance(data, dict):
            raise ValidationError("mistake event must be a mapping")
        missing = [k for k in ("userId", "language", "errorKind") if not data.get(k)]
        if missing:
            raise ValidationError(f"mistake event missing {', '.join(missing)}")
        code_context = data.get("codeContext", "")
        if not isinstance(code_context, str):
            raise ValidationError("codeContext must be a string")
        try:
            ts = parse_time(data.get("timestamp"))
        except ValueError as e:
            raise ValidationError(f"bad timestamp: {e}") from e
        return cls(
            user_id=str(data["userId"]),
            language=str(data["language"]),
            error_kind=str(data["errorKind"]),
            code_context=code_context,
            timestamp=ts,
            mistake_id=data.get("mistakeId"),
        )


@dataclass
class MistakeRecord:
    mistake_id: str
    user_id: str
    timestamp: datetime
    language: str
    error_kind: str
    context_fingerprint: str
    resolved: bool = False
    review_count: int = 0
    ease_factor: float = 2.5
    next_review_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "mistakeId": self.mistake_id,
            "userId": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "language": self.language,
            "errorKind": self.error_kind,
            "contextFingerprint": self.context_fingerprint,
            "resolved": self.resolved,
            "reviewCount": self.review_count,
            "easeFactor": self.ease_factor,
            "nextReviewAt": self.next_review_at.isoformat() if self.next_review_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MistakeRecord":
        return cls(
            mistake_id=data["mistakeId"],
            user_id=data["userId"],
            timestamp=parse_time(data["timestamp"]),
            language=data["language"],
            error_kind=data["errorKind"],
            context_fingerprint=data["contextFingerprint"],
            resolved=bool(data.get("resolved", False)),
            review_count=int(data.get("reviewCount", 0)),
            ease_factor=float(data.get("easeFactor", 2.5)),
            next_review_at=parse_time(data.get("nextReviewAt")),
        )


@dataclass(frozen=True)
class MistakePattern:
    pattern_key: str
    user_id: str
    fingerprint: str
    language: str
    error_kind: str
    member_mistake_ids: tuple[str, ...]
    frequency: int
    recent_frequency: int
    first_seen_at: datetime
    last_seen_at: datetime
    severity: float

    def to_dict(self) -> dict:
        return {
            "patternKey": self.pattern_key,
            "userId": self.user_id,
            "fingerprint": self.fingerprint,
            "language": self.language,
            "errorKind": self.error_kind,
            "memberMistakeIds": list(self.member_mistake_ids),
            "frequency": self.frequency,
            "recentFrequency": self.recent_frequency,
            "firstSeenAt": self.first_seen_at.isoformat(),
            "lastSeenAt": self.last_seen_at.isoformat(),
            "severity": round(self.severity, 6),
        }


def recency_weight(last_seen_at: datetime, now: datetime, half_life_days: float) -> float:
    age_days = max(0.0, (now - last_seen_at).total_seconds() / 86400)
    return math.pow(0.5, age_days / half_life_days)


def cluster_patterns(
    records: Iterable[MistakeRecord],
    now: datetime,
    recency_window: timedelta = timedelta(days=90),
    half_life_days: float = 14.0,
    known_keys: Iterable[str] = (),
) -> list[MistakePattern]:
    """Group records into patterns.

    Records with the same fingerprint join the newest open pattern when it
    was last seen within ``recency_window``; otherwise they start a new one.

    A pattern is keyed by its fingerprint and its earliest member. Keys in
    ``known_keys`` stick: a bucket still holding the member a known key was
    built from keeps that key, even after an earlier mistake joins it.
    """
    anchors: dict[str, dict[str, str]] = {}
    for key in known_keys:
        key_fp, _, anchor = key.partition(":")
        anchors.setdefault(key_fp, {})[anchor] = key

    by_fp: dict[str, list[MistakeRecord]] = {}
    for record in sorted(records, key=lambda r: (r.timestamp, r.mistake_id)):
        by_fp.setdefault(record.context_fingerprint, []).append(record)

    patterns: list[MistakePattern] = []
    for fp, members in by_fp.items():
        buckets: list[list[MistakeRecord]] = []
        for record in members:
            if buckets and record.timestamp - buckets[-1][-1].timestamp <= recency_window:
                buckets[-1].append(record)
            else:
                buckets.append([record])
        for bucket in buckets:
            first, last = bucket[0], bucket[-1]
            frequency = len(bucket)
            known = anchors.get(fp, {})
            pattern_key = next(
                (known[r.mistake_id] for r in bucket if r.mistake_id in known),
                f"{fp}:{first.mistake_id}",
            )
            patterns.append(MistakePattern(
                pattern_key=pattern_key,
                user_id=first.user_id,
                fingerprint=fp,
                language=first.language,
                error_kind=first.error_kind,
                member_mistake_ids=tuple(r.mistake_id for r in bucket),
                frequency=frequency,
                recent_frequency=sum(1 for r in bucket if now - r.timestamp <= recency_window),
                first_seen_at=first.timestamp,
                last_seen_at=last.timestamp,
                severity=frequency * recency_weight(last.timestamp, now, half_life_days),
            ))
    patterns.sort(key=lambda p: (-p.severity, p.pattern_key))
    return patterns


ReinforcementCallback = Callable[[MistakePattern, datetime], Awaitable[object]]


class MistakeAggregator:
    """Records mistakes per user and announces patterns that need reinforcement.

    All mutations for one user run under that user's lock, so frequency counts
    stay consistent when several editor sessions report at once.
    """

    def __init__(
        self,
        store: ResilientStore,
        config: Optional[AggregatorConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        on_reinforcement: Optional[ReinforcementCallback] = None,
    ):
        self.store = store
        self.config = config or AggregatorConfig()
        self._clock = clock or time.time
        self.on_reinforcement = on_reinforcement
        self._records: dict[str, dict[str, MistakeRecord]] = {}
        self._announced: dict[str, set[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def recency_window(self) -> timedelta:
        return timedelta(days=self.config.recency_window_days)

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else utc(self._clock())

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def _load(self, user_id: str) -> dict[str, MistakeRecord]:
        records = self._records.get(user_id)
        if records is not None:
            return records
        records, announced = {}, set()
        try:
            for _, found in await self.store.scan(MISTAKE_NAMESPACE, prefix=f"{user_id}/"):
                record = MistakeRecord.from_dict(found.value)
                records[record.mistake_id] = record
            for key, _ in await self.store.scan(ANNOUNCED_NAMESPACE, prefix=f"{user_id}/"):
                announced.add(key.split("/", 1)[1])
        except StoreUnavailable as e:
            logger.warning("could not load mistakes for {}, starting from session state: {}", user_id, e)
        self._records[user_id] = records
        self._announced[user_id] = announced
        return records

    async def record_mistake(self, event: MistakeEvent | dict, now: Optional[datetime] = None) -> MistakeRecord:
        if not isinstance(event, MistakeEvent):
            event = MistakeEvent.from_dict(event)
        if not event.user_id or not event.language or not event.error_kind:
            raise ValidationError("mistake event needs userId, language and errorKind")
        now = self._now(now)

        async with self._lock(event.user_id):
            records = await self._load(event.user_id)
            mistake_id = event.mistake_id or uuid.uuid4().hex[:12]
            if mistake_id in records:
                raise ValidationError(f"mistake {mistake_id} already recorded")
            record = MistakeRecord(
                mistake_id=mistake_id,
                user_id=event.user_id,
                timestamp=event.timestamp or now,
                language=event.language,
                error_kind=event.error_kind,
                context_fingerprint=fingerprint(event.language, event.error_kind, event.code_context),
            )
            records[mistake_id] = record
            await self._save(record)
            logger.debug("recorded {} mistake {} for {}", record.error_kind, mistake_id, record.user_id)

            announced = self._announced[event.user_id]
            for pattern in self._needing(event.user_id, records.values(), now):
                if pattern.pattern_key in announced:
                    # Known pattern: refresh its members when this mistake joined it.
                    if mistake_id in pattern.member_mistake_ids:
                        await self._notify(pattern, now)
                    continue
                if not await self._notify(pattern, now):
                    continue
                announced.add(pattern.pattern_key)
                await self.store.put(
                    ANNOUNCED_NAMESPACE,
                    f"{event.user_id}/{pattern.pattern_key}",
                    {"announcedAt": now.isoformat()},
                )
                logger.info(
                    "pattern {} ({}) needs reinforcement for {}",
                    pattern.pattern_key, pattern.error_kind, pattern.user_id,
                )
        return record

    async def _notify(self, pattern: MistakePattern, now: datetime) -> bool:
        """Hand a pattern to the reinforcement callback; False leaves it for the next record."""
        if self.on_reinforcement is None:
            return True
        try:
            await self.on_reinforcement(pattern, now)
        except StoreUnavailable as e:
            logger.warning("could not schedule pattern {}, will retry: {}", pattern.pattern_key, e)
            return False
        return True

    def _cluster(self, user_id: str, records: Iterable[MistakeRecord], now: datetime) -> list[MistakePattern]:
        return cluster_patterns(
            records,
            now,
            self.recency_window,
            self.config.severity_half_life_days,
            known_keys=self._announced.get(user_id, ()),
        )

    def _needing(self, user_id: str, records: Iterable[MistakeRecord], now: datetime) -> list[MistakePattern]:
        patterns = self._cluster(user_id, records, now)
        return [p for p in patterns if p.recent_frequency >= self.config.reinforcement_threshold]

    async def _save(self, record: MistakeRecord) -> None:
        await self.store.put(MISTAKE_NAMESPACE, f"{record.user_id}/{record.mistake_id}", record.to_dict())

    async def records(self, user_id: str) -> list[MistakeRecord]:
        records = await self._load(user_id)
        return sorted(records.values(), key=lambda r: (r.timestamp, r.mistake_id))

    async def patterns(self, user_id: str, now: Optional[datetime] = None) -> list[MistakePattern]:
        records = await self._load(user_id)
        return self._cluster(user_id, records.values(), self._now(now))

    async def patterns_needing_reinforcement(
        self, user_id: str, now: Optional[datetime] = None
    ) -> list[MistakePattern]:
        """Patterns with enough recent members, most severe first."""
        records = await self._load(user_id)
        return self._needing(user_id, records.values(), self._now(now))

    async def mark_resolved(self, user_id: str, mistake_id: str) -> MistakeRecord:
        async with self._lock(user_id):
            records = await self._load(user_id)
            record = records.get(mistake_id)
            if record is None:
                raise ValidationError(f"unknown mistake {mistake_id}")
            record.resolved = True
            await self._save(record)
            return record

    async def apply_review(
        self,
        user_id: str,
        mistake_ids: Iterable[str],
        review_count: int,
        ease_factor: float,
        next_review_at: Optional[datetime],
    ) -> int:
        """Mirror a review outcome onto the member records it covers."""
        updated = 0
        async with self._lock(user_id):
            records = await self._load(user_id)
            for mistake_id in mistake_ids:
                record = records.get(mistake_id)
                if record is None:
                    continue
                record.review_count = review_count
                record.ease_factor = ease_factor
                record.next_review_at = next_review_at
                await self._save(record)
                updated += 1
        return updated

    async def erase_user(self, user_id: str) -> int:
        """Explicit data-erasure request: the only path that deletes records."""
        async with self._lock(user_id):
            records = await self._load(user_id)
            for mistake_id in list(records):
                await self.store.delete(MISTAKE_NAMESPACE, f"{user_id}/{mistake_id}")
            for pattern_key in list(self._announced.get(user_id, ())):
                await self.store.delete(ANNOUNCED_NAMESPACE, f"{user_id}/{pattern_key}")
            count = len(records)
            self._records[user_id] = {}
            self._announced[user_id] = set()
        logger.info("erased {} mistakes for {}", count, user_id)
        return count
