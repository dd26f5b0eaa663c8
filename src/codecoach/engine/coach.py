"""Coach: wires collector, classifier, hint controller, aggregator and scheduler.

``ingest`` is the fast synchronous path for editor events. Anything that can
wait on the network or the store (hints, mistakes, reviews) is a coroutine;
automatic hints triggered by a struggle signal run as background tasks whose
results are posted through the ``on_hint`` callback.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from loguru import logger

from codecoach.config.settings import Settings, StoreBackend
from codecoach.engine.classifier import StruggleClassifier, StruggleSignal
from codecoach.engine.collector import EditorEvent, SignalCollector
from codecoach.engine.errors import ValidationError
from codecoach.engine.fallback import load_fallback_hints
from codecoach.engine.hint_service import ClaudeHintGenerator, HintGenerator
from codecoach.engine.hints import (
    HintCache,
    HintOutcome,
    HintProgressionController,
    HintTrigger,
)
from codecoach.engine.mistakes import MistakeAggregator, MistakeEvent, MistakePattern, MistakeRecord
from codecoach.engine.profile import ProfileBook
from codecoach.engine.scheduler import ItemKind, ReviewItem, SpacedRepetitionScheduler
from codecoach.state.resilient import ResilientStore
from codecoach.state.store import KeyValueStore, MemoryStore, SqliteStore

SignalCallback = Callable[[StruggleSignal], None]
HintCallback = Callable[[HintOutcome], None]


def build_store(settings: Settings, clock: Callable[[], float] = time.time) -> KeyValueStore:
    if settings.store.backend == StoreBackend.MEMORY:
        return MemoryStore(clock=clock)
    return SqliteStore(db_path=Path(settings.data_dir) / "coach.db", clock=clock)


class Coach:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[KeyValueStore] = None,
        generator: Optional[HintGenerator] = None,
        clock: Optional[Callable[[], float]] = None,
        on_struggle: Optional[SignalCallback] = None,
        on_hint: Optional[HintCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or Settings.load()
        self._clock = clock or time.time
        self.on_struggle = on_struggle or (lambda s: None)
        self.on_hint = on_hint or (lambda o: None)

        backend = store if store is not None else build_store(self.settings, self._clock)
        self.store = ResilientStore(backend, self.settings.store, sleep=sleep)

        self.collector = SignalCollector(self.settings.collector, clock=self._clock)
        self.classifier = StruggleClassifier(self.settings.classifier, clock=self._clock)
        self.hints = HintProgressionController(
            generator=generator or ClaudeHintGenerator(self.settings),
            cache=HintCache(self.store, self.settings.hints.cache_ttl_seconds),
            fallback=load_fallback_hints(self.settings.hints.fallback_path),
            config=self.settings.hints,
            clock=self._clock,
        )
        self.scheduler = SpacedRepetitionScheduler(self.store, self.settings.scheduler, clock=self._clock)
        self.mistakes = MistakeAggregator(
            self.store,
            self.settings.aggregator,
            clock=self._clock,
            on_reinforcement=self._on_reinforcement,
        )
        self.profiles = ProfileBook(history_limit=self.settings.hints.history_limit)
        self._background: set[asyncio.Task] = set()

    # --- editor events ---

    def open_document(self, document_id: str) -> None:
        self.collector.open_document(document_id)

    def close_document(self, document_id: str) -> None:
        """Forget a document: cancels outstanding hints and drops per-document state."""
        self.collector.close_document(document_id)
        self.classifier.forget_document(document_id)
        cancelled = self.hints.close_document(document_id)
        logger.debug("closed {} ({} hint contexts dropped)", document_id, cancelled)

    def ingest(self, raw, now: Optional[float] = None) -> Optional[EditorEvent]:
        """Normalize and classify one raw editor event. Never blocks, never raises."""
        event = self.collector.ingest(raw, now=now)
        if event is None:
            return None
        signal = self.classifier.observe(event)
        if signal is not None:
            self._handle_signal(signal, event.language)
        return event

    def tick(self, now: Optional[float] = None) -> list[StruggleSignal]:
        """Timer hook: idle-pause detection and episode eviction."""
        now = self._clock() if now is None else now
        signals = self.classifier.tick(now)
        for signal in signals:
            found = self.classifier.last_context(signal.document_id)
            self._handle_signal(signal, found[1] if found else self.settings.collector.default_language)
        self.hints.evict_idle(now)
        return signals

    def _handle_signal(self, signal: StruggleSignal, language: str) -> None:
        user_id = signal.user_id or self.settings.default_user_id
        self.profiles.get(user_id).record_struggle(signal)
        self.hints.note_struggle(signal)
        self.on_struggle(signal)
        if not self.settings.hints.auto_hints:
            return
        code = self.collector.latest_content(signal.context_key)
        if code is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running loop; skipping automatic hint for {}", signal.context_key)
            return
        task = loop.create_task(self._auto_hint(signal, code, language, user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _auto_hint(self, signal: StruggleSignal, code: str, language: str, user_id: str) -> None:
        outcome = await self.request_hint(
            signal.context_key,
            code,
            HintTrigger.AUTOMATIC,
            language=language,
            error_kind=signal.error_kind,
            user_id=user_id,
            document_id=signal.document_id,
        )
        self.on_hint(outcome)

    # --- hints ---

    async def request_hint(
        self,
        context_key: str,
        code: str,
        trigger: HintTrigger | str = HintTrigger.MANUAL,
        *,
        language: Optional[str] = None,
        error_kind: Optional[str] = None,
        user_id: Optional[str] = None,
        document_id: Optional[str] = None,
        requested_level: Optional[int] = None,
        now: Optional[float] = None,
    ) -> HintOutcome:
        user_id = user_id or self.settings.default_user_id
        profile = self.profiles.get(user_id)
        if trigger in (HintTrigger.MANUAL, HintTrigger.MANUAL.value) and document_id:
            profile.record_struggle(self.classifier.manual(document_id, context_key, now=now, user_id=user_id))
        outcome = await self.hints.request_hint(
            context_key,
            code,
            trigger,
            language=language or self.settings.collector.default_language,
            error_kind=error_kind,
            user_id=user_id,
            document_id=document_id,
            requested_level=requested_level,
            history=profile.history(),
            now=now,
        )
        if outcome.ok:
            profile.record_hint(solution=outcome.level == 4)
        return outcome

    def new_problem(self, context_key: str) -> bool:
        return self.hints.new_problem(context_key)

    # --- mistakes & reviews ---

    async def _on_reinforcement(self, pattern: MistakePattern, now: datetime) -> ReviewItem:
        return await self.scheduler.schedule(pattern, now=now)

    async def record_mistake(self, event: MistakeEvent | dict, now: Optional[datetime] = None) -> MistakeRecord:
        return await self.mistakes.record_mistake(event, now=now)

    async def patterns_needing_reinforcement(self, user_id: str, now: Optional[datetime] = None) -> list[MistakePattern]:
        return await self.mistakes.patterns_needing_reinforcement(user_id, now=now)

    async def schedule(self, target: MistakeRecord | MistakePattern, now: Optional[datetime] = None) -> ReviewItem:
        return await self.scheduler.schedule(target, now=now)

    async def schedule_key(self, user_id: str, key: str, now: Optional[datetime] = None) -> ReviewItem:
        """Schedule a pattern (by pattern key) or a single mistake (by mistake id)."""
        for pattern in await self.mistakes.patterns(user_id, now=now):
            if pattern.pattern_key == key:
                return await self.scheduler.schedule(pattern, now=now)
        for record in await self.mistakes.records(user_id):
            if record.mistake_id == key:
                return await self.scheduler.schedule(record, now=now)
        raise ValidationError(f"nothing to schedule for {key}")

    async def due_now(self, user_id: str, as_of: Optional[datetime] = None) -> list[ReviewItem]:
        return await self.scheduler.due_now(user_id, as_of=as_of)

    async def record_outcome(
        self,
        item: ReviewItem | str,
        correct: bool,
        response_time_ms: int,
        idempotency_token: Optional[str] = None,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> ReviewItem:
        updated = await self.scheduler.record_outcome(
            item, correct, response_time_ms, idempotency_token, now=now, user_id=user_id
        )
        members = updated.member_ids if updated.kind == ItemKind.PATTERN else (updated.item_key,)
        await self.mistakes.apply_review(
            updated.user_id, members, updated.review_count, updated.ease_factor, updated.due_at
        )
        return updated

    async def disable_review(self, user_id: str, item_key: str) -> ReviewItem:
        return await self.scheduler.disable(user_id, item_key)

    async def erase_user(self, user_id: str) -> int:
        await self.scheduler.forget_user(user_id)
        self.profiles.forget(user_id)
        return await self.mistakes.erase_user(user_id)

    async def flush(self) -> int:
        return await self.store.flush()

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.wait(self._background)
        await self.store.flush()
