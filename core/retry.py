"""Retry bookkeeping for the request executor.

RetryPolicy holds the knobs; RetryState is an immutable snapshot of how a
single request has fared so far. Every failure produces a new state, and the
delay to wait before the next attempt is computed from that state alone, so
the backoff rules can be exercised without sending or sleeping.
"""
from dataclasses import dataclass, replace
from typing import Optional

# HTTP status codes with special meaning to the chat transport
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409  # "You can perform this action again in N seconds"
HTTP_TOO_MANY_REQUESTS = 429


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration shared by every request.

    Attributes:
        base_delay: Base amount of time to wait between retries (seconds)
        max_attempts: Default number of attempts before giving up
        max_backoff: Ceiling for any computed delay (seconds)
        rate_limit_fallback: Wait used when a 409 body has no wait time (seconds)
        overload_delay: Fixed wait after a 429 response (seconds)
    """
    base_delay: float = 5.0
    max_attempts: int = 3
    max_backoff: float = 60.0
    rate_limit_fallback: float = 5.0
    overload_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.max_backoff < 0:
            raise ValueError("max_backoff must not be negative")


@dataclass(frozen=True)
class RetryState:
    """Progress of a single request through its retries.

    Attributes:
        attempts: Failures that count against the attempt budget
        rate_limited: Number of 409 responses seen
        overloaded: Number of 429 responses seen
    """
    attempts: int = 0
    rate_limited: int = 0
    overloaded: int = 0

    def exhausted(self, max_attempts: int) -> bool:
        return self.attempts >= max_attempts

    def after_transport_error(self) -> "RetryState":
        return replace(self, attempts=self.attempts + 1)

    def after_bad_response(self) -> "RetryState":
        return replace(self, attempts=self.attempts + 1)

    def after_rate_limit(self) -> "RetryState":
        return replace(self, rate_limited=self.rate_limited + 1)

    def after_overload(self) -> "RetryState":
        return replace(self, overloaded=self.overloaded + 1)

    def backoff(self, policy: RetryPolicy) -> float:
        """Delay before retrying a request that got an unacceptable response."""
        return min(self.attempts * policy.base_delay, policy.max_backoff)

    def rate_limit_delay(self, policy: RetryPolicy, server_wait: Optional[float]) -> float:
        """Delay before retrying after a 409.

        The server's requested wait is honoured, but consecutive 409s also
        grow the delay linearly so a persistently busy endpoint is not
        hammered.
        """
        requested = policy.rate_limit_fallback if server_wait is None else server_wait
        growth = min(self.rate_limited * policy.base_delay, policy.max_backoff)
        return max(requested, growth)
