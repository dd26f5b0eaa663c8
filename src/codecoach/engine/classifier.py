"""Struggle classifier: fuses behavioral detectors into StruggleSignals.

Four independent detectors run on every event:

- pause: a long gap since the previous edit
- rapid deletes: a burst of deletions in a short trailing window
- repeated error: the same diagnostic raised again and again in one context
- circular edit: the document returns to a state it was in before

Fusion takes the maximum confidence, so one strong signal is enough and weak
ones do not average each other down. Signals are rate limited per context.
"""

from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from codecoach.config.settings import ClassifierConfig
from codecoach.engine.collector import EditorEvent, EventKind


class StruggleReason(str, Enum):
    LONG_PAUSE = "longPause"
    RAPID_DELETES = "rapidDeletes"
    REPEATED_ERROR = "repeatedError"
    CIRCULAR_EDIT = "circularEdit"
    MANUAL = "manual"


@dataclass(frozen=True)
class StruggleSignal:
    timestamp: float
    document_id: str
    context_key: str
    confidence: float
    reasons: frozenset[StruggleReason]
    error_kind: Optional[str] = None
    user_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "documentId": self.document_id,
            "contextKey": self.context_key,
            "confidence": round(self.confidence, 4),
            "reasons": sorted(r.value for r in self.reasons),
            "errorKind": self.error_kind,
        }


@dataclass
class _DocumentState:
    last_edit_at: Optional[float] = None
    last_context: Optional[str] = None
    last_language: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_user: Optional[str] = None
    deletes: deque = field(default_factory=deque)
    hashes: deque = field(default_factory=deque)
    error_counts: Counter = field(default_factory=Counter)
    pause_reported_for: Optional[float] = None


def pause_confidence(gap: float, threshold: float) -> float:
    """0 at the threshold, 1 at three times the threshold, linear in between."""
    if gap < threshold:
        return 0.0
    return min(1.0, (gap - threshold) / (2 * threshold))


def delete_burst_confidence(count: int, threshold: int) -> float:
    if count < threshold:
        return 0.0
    return min(1.0, count / threshold - 1 + 0.5)


def repeated_error_confidence(count: int, threshold: int, base: float, increment: float) -> float:
    if count < threshold:
        return 0.0
    return min(1.0, base + increment * (count - threshold))


class StruggleClassifier:
    def __init__(
        self,
        config: Optional[ClassifierConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or ClassifierConfig()
        self._clock = clock or time.time
        self._docs: dict[str, _DocumentState] = {}
        self._last_emitted: dict[str, float] = {}

    def observe(self, event: EditorEvent) -> Optional[StruggleSignal]:
        """Update detector state with one event and emit a signal if warranted."""
        if not isinstance(event, EditorEvent):
            logger.debug("classifier ignoring non-event input {!r}", event)
            return None

        cfg = self.config
        state = self._docs.setdefault(event.document_id, _DocumentState())
        now = event.timestamp
        state.last_context = event.context_key
        state.last_language = event.language
        if event.user_id:
            state.last_user = event.user_id
        scores: dict[StruggleReason, float] = {}

        if event.kind.is_edit:
            if state.last_edit_at is not None:
                gap = now - state.last_edit_at
                conf = pause_confidence(gap, cfg.pause_threshold_seconds)
                if gap >= cfg.pause_threshold_seconds and state.pause_reported_for != state.last_edit_at:
                    scores[StruggleReason.LONG_PAUSE] = conf
            state.last_edit_at = now

        if event.kind == EventKind.DELETE:
            state.deletes.append(now)
        horizon = now - cfg.delete_window_seconds
        while state.deletes and state.deletes[0] < horizon:
            state.deletes.popleft()
        if event.kind == EventKind.DELETE:
            conf = delete_burst_confidence(len(state.deletes), cfg.delete_threshold)
            if conf > 0:
                scores[StruggleReason.RAPID_DELETES] = conf

        if event.kind == EventKind.DIAGNOSTIC_RAISED and event.diagnostic is not None:
            key = (event.context_key, event.diagnostic.code)
            state.error_counts[key] += 1
            state.last_error_kind = event.diagnostic.error_kind or event.diagnostic.code
            conf = repeated_error_confidence(
                state.error_counts[key],
                cfg.repeat_error_threshold,
                cfg.repeat_error_base,
                cfg.repeat_error_increment,
            )
            if conf > 0:
                scores[StruggleReason.REPEATED_ERROR] = conf

        if event.content_hash is not None:
            previous = state.hashes[-1] if state.hashes else None
            if event.content_hash != previous:
                # Compare against history excluding the immediately previous state,
                # which is just "no change".
                if event.content_hash in state.hashes:
                    scores[StruggleReason.CIRCULAR_EDIT] = cfg.circular_edit_confidence
                state.hashes.append(event.content_hash)
                while len(state.hashes) > cfg.history_size:
                    state.hashes.popleft()
        if event.kind == EventKind.REVERT:
            scores[StruggleReason.CIRCULAR_EDIT] = cfg.circular_edit_confidence

        return self._fuse(event.document_id, event.context_key, now, scores, state)

    def tick(self, now: Optional[float] = None) -> list[StruggleSignal]:
        """Evaluate the pause detector for idle documents."""
        now = self._clock() if now is None else now
        signals = []
        for document_id, state in self._docs.items():
            if state.last_edit_at is None or state.last_context is None:
                continue
            if state.pause_reported_for == state.last_edit_at:
                continue
            gap = now - state.last_edit_at
            if gap < self.config.pause_threshold_seconds:
                continue
            conf = pause_confidence(gap, self.config.pause_threshold_seconds)
            signal = self._fuse(
                document_id, state.last_context, now, {StruggleReason.LONG_PAUSE: conf}, state
            )
            if signal is not None:
                state.pause_reported_for = state.last_edit_at
                signals.append(signal)
        return signals

    def manual(
        self,
        document_id: str,
        context_key: str,
        now: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> StruggleSignal:
        """A user-requested hint: full confidence, no detectors, no cooldown."""
        now = self._clock() if now is None else now
        state = self._docs.get(document_id)
        self._last_emitted[context_key] = now
        return StruggleSignal(
            timestamp=now,
            document_id=document_id,
            context_key=context_key,
            confidence=1.0,
            reasons=frozenset({StruggleReason.MANUAL}),
            error_kind=state.last_error_kind if state else None,
            user_id=user_id or (state.last_user if state else None),
        )

    def last_context(self, document_id: str) -> Optional[tuple[str, str]]:
        state = self._docs.get(document_id)
        if state is None or state.last_context is None:
            return None
        return state.last_context, state.last_language or ""

    def forget_document(self, document_id: str) -> None:
        state = self._docs.pop(document_id, None)
        if state is not None:
            contexts = {ctx for ctx, _ in state.error_counts}
            if state.last_context:
                contexts.add(state.last_context)
            for ctx in contexts:
                self._last_emitted.pop(ctx, None)

    def _fuse(
        self,
        document_id: str,
        context_key: str,
        now: float,
        scores: dict[StruggleReason, float],
        state: _DocumentState,
    ) -> Optional[StruggleSignal]:
        if not scores:
            return None
        confidence = max(scores.values())
        if confidence < self.config.trigger_threshold:
            return None
        last = self._last_emitted.get(context_key)
        if last is not None and now - last < self.config.signal_cooldown_seconds:
            logger.debug("struggle signal for {} suppressed by cooldown", context_key)
            return None
        self._last_emitted[context_key] = now
        if StruggleReason.LONG_PAUSE in scores:
            state.pause_reported_for = state.last_edit_at
        reasons = frozenset(r for r, c in scores.items() if c > 0) or frozenset(scores)
        signal = StruggleSignal(
            timestamp=now,
            document_id=document_id,
            context_key=context_key,
            confidence=confidence,
            reasons=reasons,
            error_kind=state.last_error_kind,
            user_id=state.last_user,
        )
        logger.info(
            "struggle detected in {} (confidence={:.2f}, reasons={})",
            context_key, confidence, ",".join(sorted(r.value for r in reasons)),
        )
        return signal
