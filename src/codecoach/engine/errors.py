"""Error taxonomy shared by the coaching engine.

Every error is non-fatal from the editor's point of view: detection drops
bad input, the hint controller reports errors inside a HintOutcome, and the
aggregator/scheduler raise so callers can decide on retry.
"""

from __future__ import annotations

from typing import Optional


class CoachError(Exception):
    """Base class for all engine errors."""

    code = "coach_error"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class ValidationError(CoachError):
    """Malformed event or request. Rejected without mutating state."""

    code = "validation_error"


class InvalidContext(CoachError):
    """The context key is unknown or no longer tracked."""

    code = "invalid_context"


class UpstreamUnavailable(CoachError):
    """The hint-generation service could not produce a hint."""

    code = "upstream_unavailable"


class UpstreamTimeout(UpstreamUnavailable):
    code = "upstream_timeout"


class UpstreamRejected(UpstreamUnavailable):
    """The hint service answered, but refused the request or replied with garbage."""

    code = "upstream_rejected"


class RateLimited(CoachError):
    code = "rate_limited"

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["retryAfter"] = self.retry_after
        return d


class StoreUnavailable(CoachError):
    """The persistence layer could not be reached after retries."""

    code = "store_unavailable"


class InvariantViolation(CoachError):
    """An internal defect, e.g. a negative interval or an out-of-range level."""

    code = "invariant_violation"
