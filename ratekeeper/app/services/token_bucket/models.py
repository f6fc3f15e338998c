"""Data models for token bucket admission control."""

import math
from dataclasses import dataclass
from typing import Optional

from ratekeeper.app.exceptions import InvalidRateConfigError

SECONDS_PER_MINUTE = 60.0

# Longest wait a denial may report: integers stay exact as floats and fit a
# Redis integer reply
MAX_RETRY_AFTER_MS = 2**53

# Slowest refill (tokens per second) whose one-token wait fits MAX_RETRY_AFTER_MS
MIN_REFILL_RATE = 1000.0 / MAX_RETRY_AFTER_MS


@dataclass(frozen=True)
class RateConfig:
    """Rate configuration supplied with every check.

    Attributes:
        limit: Requests per minute, positive and finite
        burst: Bucket capacity; defaults to ``limit``. Zero never admits.
    """
    limit: float
    burst: Optional[float] = None

    def __post_init__(self) -> None:
        if isinstance(self.limit, bool) or not isinstance(self.limit, (int, float)):
            raise InvalidRateConfigError("limit", "must be a number")
        if not math.isfinite(self.limit) or self.limit <= 0:
            raise InvalidRateConfigError("limit", "must be a positive finite number")
        if self.refill_rate < MIN_REFILL_RATE:
            raise InvalidRateConfigError(
                "limit", "too small; one token would take too long to refill"
            )
        if self.burst is None:
            object.__setattr__(self, "burst", self.limit)
            return
        if isinstance(self.burst, bool) or not isinstance(self.burst, (int, float)):
            raise InvalidRateConfigError("burst", "must be a number")
        if not math.isfinite(self.burst) or self.burst < 0:
            raise InvalidRateConfigError("burst", "must be a finite number >= 0")

    @property
    def capacity(self) -> float:
        return float(self.burst)

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.limit / SECONDS_PER_MINUTE


@dataclass
class BucketState:
    """Persisted bucket for one identity.

    Attributes:
        tokens: Available admission credits, fractional
        last_refill_ms: Epoch milliseconds when tokens were last computed
    """
    tokens: float
    last_refill_ms: int


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single admission check. Never persisted."""
    allowed: bool
    remaining: int
    retry_after_ms: int
    limit: float = 0.0
    burst: float = 0.0

    @property
    def retry_after_seconds(self) -> int:
        """Retry hint rounded up to whole seconds, as used by Retry-After."""
        return math.ceil(self.retry_after_ms / 1000)

    def to_dict(self) -> dict:
        """Convert to the wire representation."""
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "retry_after_ms": self.retry_after_ms,
        }


def apply_check(
    state: Optional[BucketState],
    burst: float,
    refill_rate: float,
    now_ms: int,
) -> tuple[BucketState, bool, int]:
    """Refill a bucket up to ``now_ms`` and try to take one token.

    This is the same computation the Redis script performs; stores that
    run it in-process must call it inside their own atomic section.

    Returns:
        (new_state, allowed, retry_after_ms)
    """
    if state is None:
        state = BucketState(tokens=burst, last_refill_ms=now_ms)

    elapsed_ms = max(0, now_ms - state.last_refill_ms)
    # A clock that stepped backwards must not rewind the baseline
    refilled_at = max(now_ms, state.last_refill_ms)
    tokens = state.tokens + (elapsed_ms / 1000.0) * refill_rate
    tokens = min(burst, max(0.0, tokens))

    if tokens >= 1:
        return BucketState(tokens=tokens - 1, last_refill_ms=refilled_at), True, 0

    deficit = 1 - tokens
    retry_after_ms = math.ceil((deficit / refill_rate) * 1000)
    return BucketState(tokens=tokens, last_refill_ms=refilled_at), False, retry_after_ms
