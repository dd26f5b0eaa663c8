"""Hint progression: a per-context state machine over hint levels.

Levels:
    1  nudge      (concept / guiding question)
    2  location   (where and what kind of change)
    3  approach   (step-by-step, pseudo-code at most)
    4  solution   (only with explicit "show solution" confirmation)

Contexts live in an arena keyed by context key. Within a struggle episode the
level only goes up, one step per manual escalation. A new episode (material
code change, long inactivity, or "new problem") resets the level to 1 and
cancels any hint still in flight for the old episode.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional, Sequence

from loguru import logger

from codecoach.config.settings import HintConfig
from codecoach.engine.classifier import StruggleSignal
from codecoach.engine.errors import (
    CoachError,
    InvalidContext,
    InvariantViolation,
    RateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
    ValidationError,
)
from codecoach.engine.fallback import SOLUTION_LEVEL, FallbackHints
from codecoach.engine.hint_service import HintGenerator, HintRequest, sanitize_code
from codecoach.engine.normalizer import normalized_hash, shingles, similarity
from codecoach.state.resilient import ResilientStore

MIN_LEVEL = 1
MAX_LEVEL = SOLUTION_LEVEL
CACHE_NAMESPACE = "hints"


class HintTrigger(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    NEXT_LEVEL = "next_level"
    SHOW_SOLUTION = "show_solution"


class HintStatus(str, Enum):
    GENERATED = "generated"
    CACHED = "cached"
    FALLBACK = "fallback"
    UNAVAILABLE = "unavailable"
    CONFIRMATION_REQUIRED = "confirmation_required"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass
class Hint:
    content: str
    level: int
    related_docs: list[str] = field(default_factory=list)
    next_level_available: bool = True
    source: str = "upstream"

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "level": self.level,
            "relatedDocs": list(self.related_docs),
            "nextLevelAvailable": self.next_level_available,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Hint":
        return cls(
            content=data["content"],
            level=int(data["level"]),
            related_docs=list(data.get("relatedDocs") or []),
            next_level_available=bool(data.get("nextLevelAvailable", True)),
            source=data.get("source", "upstream"),
        )


@dataclass
class HintOutcome:
    context_key: str
    level: int
    status: HintStatus
    hint: Optional[Hint] = None
    error: Optional[CoachError] = None
    clamped: bool = False
    coalesced: bool = False

    @property
    def ok(self) -> bool:
        return self.hint is not None

    def to_dict(self) -> dict:
        return {
            "contextKey": self.context_key,
            "level": self.level,
            "status": self.status.value,
            "hint": self.hint.to_dict() if self.hint else None,
            "error": self.error.to_dict() if self.error else None,
            "clamped": self.clamped,
            "coalesced": self.coalesced,
        }


@dataclass
class HintContext:
    context_key: str
    language: str
    code_hash: str
    shingles: frozenset
    document_id: Optional[str] = None
    error_kind: Optional[str] = None
    current_level: int = MIN_LEVEL
    level_requested_at: Optional[float] = None
    highest_served: int = 0
    escalations: int = 0
    episode: int = 1
    last_activity_at: float = 0.0

    def check(self) -> None:
        if not MIN_LEVEL <= self.current_level <= MAX_LEVEL:
            raise InvariantViolation(f"{self.context_key}: level {self.current_level} out of range")
        if self.current_level == MAX_LEVEL and self.escalations == 0:
            raise InvariantViolation(f"{self.context_key}: solution level reached without escalation")

    def to_dict(self) -> dict:
        return {
            "contextKey": self.context_key,
            "language": self.language,
            "codeSnippetHash": self.code_hash,
            "errorKind": self.error_kind,
            "currentLevel": self.current_level,
            "levelRequestedAt": self.level_requested_at,
            "episode": self.episode,
        }


def cache_key(language: str, code_hash: str, error_kind: Optional[str], level: int) -> str:
    return "|".join([language.lower(), code_hash, error_kind or "-", str(level)])


class HintCache:
    """Hint cache on top of the shared store, with per-entry expiry."""

    def __init__(self, store: ResilientStore, ttl_seconds: float):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def get(self, key: str) -> Optional[Hint]:
        try:
            found = await self.store.get(CACHE_NAMESPACE, key)
        except CoachError as e:
            logger.warning("hint cache read failed, treating as miss: {}", e)
            return None
        if found is None:
            return None
        return Hint.from_dict(found.value)

    async def put(self, key: str, hint: Hint) -> None:
        await self.store.put(CACHE_NAMESPACE, key, hint.to_dict(), ttl=self.ttl_seconds)


class HintProgressionController:
    def __init__(
        self,
        generator: HintGenerator,
        cache: HintCache,
        fallback: Optional[FallbackHints] = None,
        config: Optional[HintConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.generator = generator
        self.cache = cache
        self.fallback = fallback or FallbackHints()
        self.config = config or HintConfig()
        self._clock = clock or time.time
        self._contexts: dict[str, HintContext] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._upstream_calls: dict[str, deque] = {}

    # --- arena ---

    def context(self, context_key: str) -> Optional[HintContext]:
        return self._contexts.get(context_key)

    @property
    def contexts(self) -> list[HintContext]:
        return list(self._contexts.values())

    def note_struggle(self, signal: StruggleSignal) -> None:
        """A struggle signal keeps the context's episode alive."""
        ctx = self._contexts.get(signal.context_key)
        if ctx is not None:
            ctx.last_activity_at = max(ctx.last_activity_at, signal.timestamp)

    def new_problem(self, context_key: str, now: Optional[float] = None) -> bool:
        ctx = self._contexts.get(context_key)
        if ctx is None:
            return False
        self._reset(ctx, self._clock() if now is None else now, "new problem")
        return True

    def cancel(self, context_key: str) -> bool:
        task = self._inflight.pop(context_key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("cancelled in-flight hint for {}", context_key)
        return True

    def evict_idle(self, now: Optional[float] = None) -> list[str]:
        """End episodes with no activity for the cooldown and drop their contexts."""
        now = self._clock() if now is None else now
        expired = [
            key for key, ctx in self._contexts.items()
            if now - ctx.last_activity_at >= self.config.episode_cooldown_seconds
            and key not in self._inflight
        ]
        for key in expired:
            del self._contexts[key]
        if expired:
            logger.debug("evicted {} idle hint contexts", len(expired))
        return expired

    def close_document(self, document_id: str) -> int:
        keys = [k for k, ctx in self._contexts.items() if ctx.document_id == document_id]
        for key in keys:
            self.cancel(key)
            del self._contexts[key]
        return len(keys)

    def _reset(self, ctx: HintContext, now: float, why: str) -> None:
        self.cancel(ctx.context_key)
        ctx.current_level = MIN_LEVEL
        ctx.highest_served = 0
        ctx.escalations = 0
        ctx.episode += 1
        ctx.level_requested_at = None
        ctx.last_activity_at = now
        logger.info("new hint episode {} for {} ({})", ctx.episode, ctx.context_key, why)

    # --- requests ---

    async def request_hint(
        self,
        context_key: str,
        code: str,
        trigger: HintTrigger | str = HintTrigger.AUTOMATIC,
        *,
        language: str = "python",
        error_kind: Optional[str] = None,
        user_id: Optional[str] = None,
        document_id: Optional[str] = None,
        requested_level: Optional[int] = None,
        history: Sequence[str] = (),
        now: Optional[float] = None,
    ) -> HintOutcome:
        now = self._clock() if now is None else now
        try:
            trigger = HintTrigger(trigger)
        except ValueError:
            return self._reject(context_key, ValidationError(f"unknown trigger {trigger!r}"))
        if not isinstance(context_key, str) or not context_key:
            return self._reject(str(context_key or ""), ValidationError("contextKey is required"))
        if not isinstance(code, str):
            return self._reject(context_key, ValidationError("code must be a string"))
        if requested_level is not None and (
            isinstance(requested_level, bool) or not isinstance(requested_level, int) or requested_level < MIN_LEVEL
        ):
            return self._reject(context_key, ValidationError(f"invalid level {requested_level!r}"))

        ctx = self._contexts.get(context_key)
        if ctx is None and trigger in (HintTrigger.NEXT_LEVEL, HintTrigger.SHOW_SOLUTION):
            return self._reject(context_key, InvalidContext(f"no hint has been shown for {context_key}"))

        code_hash = normalized_hash(code, language)
        code_shingles = shingles(code, language)
        if ctx is None:
            ctx = HintContext(
                context_key=context_key,
                language=language,
                code_hash=code_hash,
                shingles=code_shingles,
                document_id=document_id,
                last_activity_at=now,
            )
            self._contexts[context_key] = ctx
        else:
            if now - ctx.last_activity_at >= self.config.episode_cooldown_seconds:
                self._reset(ctx, now, "episode cooled down")
            elif code_hash != ctx.code_hash and (
                similarity(ctx.shingles, code_shingles) < self.config.similarity_threshold
            ):
                self._reset(ctx, now, "code changed materially")
            ctx.code_hash = code_hash
            ctx.shingles = code_shingles
            ctx.language = language
            ctx.document_id = document_id or ctx.document_id
        if error_kind:
            ctx.error_kind = error_kind
        ctx.last_activity_at = now

        level, clamped = self._resolve_level(ctx, trigger, requested_level)
        if isinstance(level, CoachError):
            return self._reject(context_key, level)
        try:
            ctx.check()
        except InvariantViolation as e:
            logger.error("hint context invariant violated: {}", e)
            return self._reject(context_key, e, level=ctx.current_level)
        ctx.level_requested_at = now

        if level == MAX_LEVEL and trigger != HintTrigger.SHOW_SOLUTION:
            ctx.highest_served = max(ctx.highest_served, level)
            return HintOutcome(
                context_key=context_key,
                level=level,
                status=HintStatus.CONFIRMATION_REQUIRED,
                clamped=clamped,
            )

        key = cache_key(language, code_hash, ctx.error_kind, level)
        cached = await self.cache.get(key)
        if cached is not None:
            self._served(ctx, ctx.episode, level)
            cached.source = "cache"
            return HintOutcome(context_key, level, HintStatus.CACHED, hint=cached, clamped=clamped)

        running = self._inflight.get(context_key)
        if running is not None and not running.done():
            outcome = await self._await(context_key, level, running)
            return replace(outcome, coalesced=True)

        limited = self._check_rate(user_id or "", now)
        if limited is not None:
            return self._fallback(ctx, level, limited, clamped)

        request = HintRequest(
            language=language,
            code_context=sanitize_code(code, self.config.max_code_chars),
            error_kind=ctx.error_kind,
            level=level,
            history=tuple(history)[-self.config.history_limit:] if self.config.history_limit else (),
        )
        task = asyncio.create_task(self._fetch(ctx, ctx.episode, request, key, clamped))
        self._inflight[context_key] = task
        return await self._await(context_key, level, task)

    def _resolve_level(
        self, ctx: HintContext, trigger: HintTrigger, requested: Optional[int]
    ) -> tuple[int | CoachError, bool]:
        if trigger == HintTrigger.SHOW_SOLUTION:
            if ctx.current_level < MAX_LEVEL:
                return ValidationError("the solution is only available after escalating to level 4"), False
            return MAX_LEVEL, False

        # The next level opens only once the current one has been shown.
        if ctx.highest_served >= ctx.current_level:
            allowed = min(MAX_LEVEL, ctx.current_level + 1)
        else:
            allowed = ctx.current_level

        if requested is not None:
            target = requested
        elif trigger == HintTrigger.NEXT_LEVEL:
            target = ctx.current_level + 1
        else:
            target = ctx.current_level

        clamped = False
        if target > allowed:
            target, clamped = allowed, True
        if target > ctx.current_level:
            if trigger == HintTrigger.AUTOMATIC:
                # Automatic triggers never escalate on their own.
                return ctx.current_level, True
            ctx.current_level = target
            ctx.escalations += 1
        return target, clamped

    def _check_rate(self, user_id: str, now: float) -> Optional[RateLimited]:
        calls = self._upstream_calls.setdefault(user_id, deque())
        while calls and calls[0] <= now - 60:
            calls.popleft()
        if len(calls) >= self.config.max_upstream_per_minute:
            retry_after = max(0.0, calls[0] + 60 - now)
            return RateLimited(f"hint limit reached for {user_id or 'user'}", retry_after=retry_after)
        calls.append(now)
        return None

    async def _await(self, context_key: str, level: int, task: asyncio.Task) -> HintOutcome:
        # asyncio.wait does not cancel the shared task if this waiter is cancelled.
        await asyncio.wait({task})
        if task.cancelled():
            return HintOutcome(context_key, level, HintStatus.CANCELLED)
        return task.result()

    async def _fetch(
        self, ctx: HintContext, episode: int, request: HintRequest, key: str, clamped: bool
    ) -> HintOutcome:
        try:
            try:
                response = await asyncio.wait_for(
                    self.generator.generate(request), timeout=self.config.timeout_seconds
                )
            except asyncio.TimeoutError:
                error = UpstreamTimeout(f"no hint within {self.config.timeout_seconds}s")
                return self._fallback(ctx, request.level, error, clamped, episode)
            except (UpstreamUnavailable, RateLimited) as e:
                return self._fallback(ctx, request.level, e, clamped, episode)

            hint = Hint(
                content=response.content,
                level=request.level,
                related_docs=response.related_docs,
                next_level_available=response.next_level_available and request.level < MAX_LEVEL,
            )
            # One complete put after a full response: a cancelled fetch never writes.
            await self.cache.put(key, hint)
            self._served(ctx, episode, request.level)
            return HintOutcome(ctx.context_key, request.level, HintStatus.GENERATED, hint=hint, clamped=clamped)
        finally:
            if self._inflight.get(ctx.context_key) is asyncio.current_task():
                del self._inflight[ctx.context_key]

    def _served(self, ctx: HintContext, episode: int, level: int) -> None:
        current = self._contexts.get(ctx.context_key)
        if current is not ctx or ctx.episode != episode:
            logger.debug("discarding late hint bookkeeping for {}", ctx.context_key)
            return
        ctx.highest_served = max(ctx.highest_served, level)

    def _fallback(
        self,
        ctx: HintContext,
        level: int,
        error: CoachError,
        clamped: bool,
        episode: Optional[int] = None,
    ) -> HintOutcome:
        text = self.fallback.lookup(ctx.language, ctx.error_kind, level)
        if text is None:
            logger.warning("no hint available for {} level {}: {}", ctx.context_key, level, error)
            return HintOutcome(ctx.context_key, level, HintStatus.UNAVAILABLE, error=error, clamped=clamped)
        logger.warning("serving fallback hint for {} level {}: {}", ctx.context_key, level, error)
        self._served(ctx, ctx.episode if episode is None else episode, level)
        hint = Hint(content=text, level=level, next_level_available=level < MAX_LEVEL, source="fallback")
        return HintOutcome(ctx.context_key, level, HintStatus.FALLBACK, hint=hint, error=error, clamped=clamped)

    def _reject(self, context_key: str, error: CoachError, level: int = 0) -> HintOutcome:
        logger.debug("hint request for {} rejected: {}", context_key, error)
        return HintOutcome(context_key, level, HintStatus.REJECTED, error=error)
