"""Server handler: dispatches JSON-lines requests to the coach."""

from __future__ import annotations

from typing import Callable, Optional

from loguru import logger

from codecoach.config.settings import Settings
from codecoach.engine.classifier import StruggleSignal
from codecoach.engine.coach import Coach
from codecoach.engine.errors import ValidationError
from codecoach.engine.hint_service import HintGenerator
from codecoach.engine.hints import HintOutcome
from codecoach.engine.mistakes import parse_time
from codecoach.state.store import KeyValueStore

from .protocol import Notification, Request

# Answered in the order they arrive; everything else runs concurrently.
INLINE_METHODS = frozenset({"openDocument", "closeDocument", "ingest", "tick", "newProblem"})


def _require(params: dict, key: str):
    value = params.get(key)
    if value is None or value == "":
        raise ValidationError(f"missing parameter {key!r}")
    return value


class ServerHandler:
    """Routes incoming requests to coach methods and returns result dicts."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        write_notification: Optional[Callable[[Notification], None]] = None,
        store: Optional[KeyValueStore] = None,
        generator: Optional[HintGenerator] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or Settings.load()
        self._write_notification = write_notification or (lambda n: None)
        self.coach = Coach(
            settings=self.settings,
            store=store,
            generator=generator,
            clock=clock,
            on_struggle=self._notify_struggle,
            on_hint=self._notify_hint,
        )

    def _notify_struggle(self, signal: StruggleSignal) -> None:
        self._write_notification(Notification("struggle", signal.to_dict()))

    def _notify_hint(self, outcome: HintOutcome) -> None:
        self._write_notification(Notification("hint", outcome.to_dict()))

    def _user(self, params: dict) -> str:
        return params.get("userId") or self.settings.default_user_id

    async def dispatch(self, request: Request) -> dict:
        """Route a request to the appropriate handler method."""
        method = request.method
        params = request.params

        handler_map = {
            "openDocument": self._open_document,
            "closeDocument": self._close_document,
            "ingest": self._ingest,
            "tick": self._tick,
            "requestHint": self._request_hint,
            "newProblem": self._new_problem,
            "recordMistake": self._record_mistake,
            "patternsNeedingReinforcement": self._patterns_needing_reinforcement,
            "schedule": self._schedule,
            "dueNow": self._due_now,
            "recordOutcome": self._record_outcome,
            "disableReview": self._disable_review,
            "eraseUser": self._erase_user,
        }

        handler = handler_map.get(method)
        if handler is None:
            raise ValueError(f"Unknown method: {method}")

        return await handler(params)

    async def _open_document(self, params: dict) -> dict:
        self.coach.open_document(_require(params, "documentId"))
        return {"ok": True}

    async def _close_document(self, params: dict) -> dict:
        self.coach.close_document(_require(params, "documentId"))
        return {"ok": True}

    async def _ingest(self, params: dict) -> dict:
        # Either a single event or a batch under "events".
        events = params.get("events")
        if events is None:
            events = [params.get("event", params)]
        accepted = sum(1 for raw in events if self.coach.ingest(raw) is not None)
        return {"accepted": accepted, "dropped": len(events) - accepted}

    async def _tick(self, params: dict) -> dict:
        signals = self.coach.tick(params.get("now"))
        return {"signals": [s.to_dict() for s in signals]}

    async def _request_hint(self, params: dict) -> dict:
        outcome = await self.coach.request_hint(
            _require(params, "contextKey"),
            params.get("code", ""),
            params.get("trigger", "manual"),
            language=params.get("language"),
            error_kind=params.get("errorKind"),
            user_id=self._user(params),
            document_id=params.get("documentId"),
            requested_level=params.get("level"),
        )
        return outcome.to_dict()

    async def _new_problem(self, params: dict) -> dict:
        return {"reset": self.coach.new_problem(_require(params, "contextKey"))}

    async def _record_mistake(self, params: dict) -> dict:
        event = dict(params)
        event.setdefault("userId", self.settings.default_user_id)
        record = await self.coach.record_mistake(event)
        return record.to_dict()

    async def _patterns_needing_reinforcement(self, params: dict) -> dict:
        patterns = await self.coach.patterns_needing_reinforcement(self._user(params))
        return {"patterns": [p.to_dict() for p in patterns]}

    async def _schedule(self, params: dict) -> dict:
        item = await self.coach.schedule_key(self._user(params), _require(params, "itemKey"))
        return item.to_dict()

    async def _due_now(self, params: dict) -> dict:
        items = await self.coach.due_now(self._user(params), as_of=parse_time(params.get("asOf")))
        return {"items": [i.to_dict() for i in items]}

    async def _record_outcome(self, params: dict) -> dict:
        correct = _require(params, "correct")
        if not isinstance(correct, bool):
            raise ValidationError("correct must be a boolean")
        item = await self.coach.record_outcome(
            _require(params, "itemKey"),
            correct,
            _require(params, "responseTimeMs"),
            idempotency_token=params.get("idempotencyToken"),
            user_id=self._user(params),
        )
        return item.to_dict()

    async def _disable_review(self, params: dict) -> dict:
        item = await self.coach.disable_review(self._user(params), _require(params, "itemKey"))
        return item.to_dict()

    async def _erase_user(self, params: dict) -> dict:
        user_id = _require(params, "userId")
        erased = await self.coach.erase_user(user_id)
        logger.info("erase request for {} completed", user_id)
        return {"erased": erased}

    async def close(self) -> None:
        await self.coach.aclose()
