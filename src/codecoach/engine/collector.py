"""Signal collector: normalizes raw editor input into typed EditorEvents."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from codecoach.config.settings import CollectorConfig
from codecoach.engine.diagnostics import DiagnosticInfo, parse_diagnostic
from codecoach.engine.normalizer import content_hash


class EventKind(str, Enum):
    INSERT = "insert"
    DELETE = "delete"
    CURSOR_MOVE = "cursorMove"
    DIAGNOSTIC_RAISED = "diagnosticRaised"
    DIAGNOSTIC_CLEARED = "diagnosticCleared"
    REVERT = "revert"

    @property
    def is_edit(self) -> bool:
        return self in (EventKind.INSERT, EventKind.DELETE, EventKind.REVERT)


@dataclass(frozen=True)
class PositionSpan:
    start: int
    end: int


@dataclass(frozen=True)
class EditorEvent:
    timestamp: float
    kind: EventKind
    document_id: str
    span: PositionSpan
    context_key: str
    language: str
    diagnostic: Optional[DiagnosticInfo] = None
    content_hash: Optional[str] = None
    user_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "documentId": self.document_id,
            "span": {"start": self.span.start, "end": self.span.end},
            "contextKey": self.context_key,
            "language": self.language,
            "diagnostic": self.diagnostic.to_dict() if self.diagnostic else None,
            "contentHash": self.content_hash,
        }


class MalformedEvent(ValueError):
    pass


def _parse_span(raw) -> PositionSpan:
    if raw is None:
        return PositionSpan(0, 0)
    if isinstance(raw, dict):
        start, end = raw.get("start", 0), raw.get("end", raw.get("start", 0))
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        start, end = raw
    else:
        raise MalformedEvent(f"bad span: {raw!r}")
    if not isinstance(start, int) or not isinstance(end, int) or start < 0 or end < start:
        raise MalformedEvent(f"bad span: {raw!r}")
    return PositionSpan(start, end)


class SignalCollector:
    """Filters and timestamps raw editor events.

    Keeps a bounded rolling window of recent events plus the latest document
    text per context, which the coach uses when it requests an automatic hint.
    """

    def __init__(
        self,
        config: Optional[CollectorConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or CollectorConfig()
        self._clock = clock or time.time
        self._open: set[str] = set()
        self._last_ts: dict[str, float] = {}
        self._snapshots: dict[str, str] = {}
        self.window: deque[EditorEvent] = deque(maxlen=self.config.window_size)

    def open_document(self, document_id: str) -> None:
        self._open.add(document_id)

    def close_document(self, document_id: str) -> None:
        self._open.discard(document_id)
        self._last_ts.pop(document_id, None)
        prefix = f"{document_id}#"
        for key in [k for k in self._snapshots if k == document_id or k.startswith(prefix)]:
            del self._snapshots[key]

    def is_open(self, document_id: str) -> bool:
        return document_id in self._open

    def latest_content(self, context_key: str) -> Optional[str]:
        return self._snapshots.get(context_key)

    def ingest(self, raw, now: Optional[float] = None) -> Optional[EditorEvent]:
        """Normalize one raw event; malformed or foreign events are dropped."""
        try:
            event, content = self._normalize(raw, now)
        except MalformedEvent as e:
            logger.debug("dropping editor event: {}", e)
            return None

        if self.config.require_open_documents and event.document_id not in self._open:
            logger.debug("dropping event for unrecognized document {}", event.document_id)
            return None

        self._last_ts[event.document_id] = event.timestamp
        if content is not None:
            self._snapshots[event.context_key] = content
        self.window.append(event)
        return event

    def recent(self, document_id: str, since: float) -> list[EditorEvent]:
        return [e for e in self.window if e.document_id == document_id and e.timestamp >= since]

    def _normalize(self, raw, now: Optional[float]) -> tuple[EditorEvent, Optional[str]]:
        if not isinstance(raw, dict):
            raise MalformedEvent(f"expected a mapping, got {type(raw).__name__}")

        try:
            kind = EventKind(raw.get("kind"))
        except ValueError:
            raise MalformedEvent(f"unknown kind {raw.get('kind')!r}") from None

        document_id = raw.get("documentId")
        if not isinstance(document_id, str) or not document_id:
            raise MalformedEvent("missing documentId")

        ts = raw.get("timestamp")
        if ts is None:
            ts = now if now is not None else self._clock()
        elif isinstance(ts, bool) or not isinstance(ts, (int, float)):
            raise MalformedEvent(f"bad timestamp {ts!r}")
        ts = max(float(ts), self._last_ts.get(document_id, float("-inf")))

        diagnostic = None
        if kind in (EventKind.DIAGNOSTIC_RAISED, EventKind.DIAGNOSTIC_CLEARED):
            diagnostic = parse_diagnostic(raw.get("diagnostic"))
            if diagnostic is None and kind == EventKind.DIAGNOSTIC_RAISED:
                raise MalformedEvent("diagnosticRaised without a diagnostic")

        block = raw.get("block")
        context_key = raw.get("contextKey") or (f"{document_id}#{block}" if block else document_id)

        content = raw.get("content")
        if content is not None and not isinstance(content, str):
            raise MalformedEvent("content must be a string")
        digest = raw.get("contentHash") or (content_hash(content) if content is not None else None)

        event = EditorEvent(
            timestamp=ts,
            kind=kind,
            document_id=document_id,
            span=_parse_span(raw.get("span")),
            context_key=str(context_key),
            language=str(raw.get("language") or self.config.default_language),
            diagnostic=diagnostic,
            content_hash=digest,
            user_id=raw.get("userId"),
        )
        return event, content
