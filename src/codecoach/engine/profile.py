"""Per-learner signal history fed into hint requests."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from codecoach.engine.classifier import StruggleReason, StruggleSignal


@dataclass
class LearnerProfile:
    """Tracks recent struggle reasons and hint usage for one user."""
    user_id: str
    history_limit: int = 5
    struggle_count: int = 0
    hint_usage: int = 0
    solutions_revealed: int = 0
    recent_reasons: deque = field(default_factory=deque)

    def record_struggle(self, signal: StruggleSignal) -> None:
        self.struggle_count += 1
        for reason in sorted(signal.reasons, key=lambda r: r.value):
            self.recent_reasons.append(reason)
        while len(self.recent_reasons) > self.history_limit:
            self.recent_reasons.popleft()

    def record_hint(self, solution: bool = False) -> None:
        self.hint_usage += 1
        if solution:
            self.solutions_revealed += 1

    def history(self) -> list[str]:
        return [r.value if isinstance(r, StruggleReason) else str(r) for r in self.recent_reasons]


class ProfileBook:
    """Lazily created profiles keyed by user id."""

    def __init__(self, history_limit: int = 5):
        self.history_limit = history_limit
        self._profiles: dict[str, LearnerProfile] = {}

    def get(self, user_id: str) -> LearnerProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            profile = LearnerProfile(user_id=user_id, history_limit=self.history_limit)
            self._profiles[user_id] = profile
        return profile

    def forget(self, user_id: str) -> None:
        self._profiles.pop(user_id, None)
