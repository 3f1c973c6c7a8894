"""Rate limiter interfaces.

The HTTP layer should depend on this abstraction (not the concrete
implementation) so the in-memory store can be swapped for a shared backend
later (e.g., Redis) with minimal changes.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from app.core.errors import ValidationAppError

# Key used when the caller cannot attribute a request to a client.
UNKNOWN_CLIENT_KEY = "unknown"

DEFAULT_WINDOW_MS = 60 * 1000
DEFAULT_MAX = 100
DEFAULT_MESSAGE = "Too many requests, please try again later"
DEFAULT_STATUS_CODE = 429
DEFAULT_SWEEP_INTERVAL_MS = 5 * 60 * 1000


@dataclass
class ClientWindow:
    """Counting record for one client within the active window.

    Attributes:
        count: Requests observed in the current window (>= 1).
        reset_time: Epoch milliseconds at which the window ends.
    """

    count: int
    reset_time: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.reset_time


@dataclass(frozen=True)
class RateLimitOptions:
    """Immutable limiter configuration.

    Attributes:
        window_ms: Length of each counting window in milliseconds.
        max: Maximum requests per client per window.
        message: Body text returned to a denied client.
        status_code: HTTP status used for denial responses.
        sweep_interval_ms: Period of the background sweep of expired records.
        include_headers: Emit Retry-After and X-RateLimit-* headers on denial.

    Raises:
        ValidationAppError: If any value is out of range.
    """

    window_ms: int = DEFAULT_WINDOW_MS
    max: int = DEFAULT_MAX
    message: str = DEFAULT_MESSAGE
    status_code: int = DEFAULT_STATUS_CODE
    sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS
    include_headers: bool = False

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            _invalid("window_ms must be > 0", "window_ms", self.window_ms)
        if self.max < 0:
            _invalid("max must be >= 0", "max", self.max)
        if self.sweep_interval_ms <= 0:
            _invalid("sweep_interval_ms must be > 0", "sweep_interval_ms", self.sweep_interval_ms)
        if not 400 <= self.status_code <= 599:
            _invalid("status_code must be an HTTP error status (400-599)", "status_code", self.status_code)


def _invalid(message: str, field: str, value: Any) -> None:
    raise ValidationAppError(
        code="invalid_rate_limit_config",
        message=message,
        details={"context": {"field": field, "value": value}},
    )


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a single admission decision.

    Attributes:
        allowed: Whether the request may proceed.
        key: Client key the request was attributed to.
        count: Requests counted in the current window, including this one.
        limit: Configured maximum per window.
        reset_time: Epoch milliseconds when the current window ends.
        decided_at: Epoch milliseconds the limiter used for this decision.
        status_code: Denial status, None when allowed.
        message: Denial message, None when allowed.
    """

    allowed: bool
    key: str
    count: int
    limit: int
    reset_time: int
    decided_at: int
    status_code: int | None = None
    message: str | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def retry_after_seconds(self, now_ms: int | None = None) -> int | None:
        """Seconds until the window resets, only meaningful on denial.

        Measured from ``decided_at`` unless another time is given.
        """
        if self.allowed:
            return None
        now = self.decided_at if now_ms is None else now_ms
        return max(0, math.ceil((self.reset_time - now) / 1000))

    def to_response_body(self) -> dict[str, Any]:
        """JSON body surfaced to a denied client."""
        return {"success": False, "message": self.message}


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @property
    @abstractmethod
    def options(self) -> RateLimitOptions:
        raise NotImplementedError

    @abstractmethod
    def admit(self, client_key: str | None, now_ms: int | None = None) -> RateLimitResult:
        """Decide whether a request from ``client_key`` may proceed.

        Args:
            client_key: Client identity (e.g., remote address). Empty or None
                falls back to the shared ``"unknown"`` key.
            now_ms: Current time in epoch milliseconds; defaults to the
                limiter clock.

        Returns:
            RateLimitResult describing the decision.
        """
        raise NotImplementedError

    @abstractmethod
    def sweep(self, now_ms: int | None = None) -> int:
        """Remove expired records and return how many were removed."""
        raise NotImplementedError

    @property
    def running(self) -> bool:
        """Whether background maintenance is currently active."""
        return False

    def start(self) -> None:
        """Start background maintenance, if the backend needs any."""

    def stop(self) -> None:
        """Stop background maintenance started by ``start()``."""
