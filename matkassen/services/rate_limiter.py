"""
Rate limiting service for SMS endpoint throttling.
"""
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from matkassen.core.exceptions import ValidationError

logger = logging.getLogger("matkassen.rate_limiter")


@dataclass(frozen=True)
class RateLimitConfig:
    """Request budget for one kind of operation."""
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds
    error: Optional[str] = None

    def retry_after_seconds(self, now_ms: int) -> int:
        """Whole seconds until the window resets, at least 1."""
        return max(1, -(-(self.reset_time - now_ms) // 1000))


@dataclass
class RateLimitEntry:
    count: int
    reset_time: int


SMS_RATE_LIMITS: Dict[str, RateLimitConfig] = {
    # Individual parcel SMS: 10 requests per 5 minutes per user
    "PARCEL_SMS": RateLimitConfig(max_requests=10, window_ms=5 * 60 * 1000),
    # Queue processing: 3 manual triggers per minute per user
    "QUEUE_PROCESSING": RateLimitConfig(max_requests=3, window_ms=60 * 1000),
}


def _system_clock_ms() -> int:
    return int(time.time() * 1000)


def get_sms_rate_limit_key(endpoint: str, user_id: str, identifier: Optional[str] = None) -> str:
    """
    Build the rate limit key for an SMS endpoint.

    Args:
        endpoint: Endpoint name, e.g. "process-queue"
        user_id: Acting user
        identifier: Optional sub-key such as a parcel ID

    Returns:
        str: Key of the form ``sms:<endpoint>:<user>[:<identifier>]``
    """
    parts = ["sms", endpoint, user_id]
    if identifier:
        parts.append(identifier)
    return ":".join(parts)


class RateLimiter:
    """
    Fixed-window request counter.

    Uses a simple in-memory storage for tracking request counts, so limits
    apply per process. Each instance is independent; the application keeps
    one on ``app.state``.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        """
        Initialize the rate limiter.

        Args:
            clock: Returns the current time in epoch milliseconds
        """
        self._entries: Dict[str, RateLimitEntry] = {}
        self._clock = clock or _system_clock_ms

    def now(self) -> int:
        return self._clock()

    def check_rate_limit(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """
        Check and count a request against the limit for ``key``.

        Args:
            key: Rate limit key (see ``get_sms_rate_limit_key``)
            max_requests: Requests allowed per window
            window_ms: Window length in milliseconds

        Returns:
            RateLimitResult: Whether the request is allowed and how much budget is left

        Raises:
            ValidationError: If the key is empty or the limits are not positive
        """
        if not key:
            raise ValidationError(message="Rate limit key must not be empty")
        if max_requests <= 0 or window_ms <= 0:
            raise ValidationError(
                message="Rate limit values must be positive",
                details={"max_requests": max_requests, "window_ms": window_ms},
            )

        now = self._clock()
        self._purge_expired(now)

        entry = self._entries.get(key)
        if entry is None:
            entry = RateLimitEntry(count=1, reset_time=now + window_ms)
            self._entries[key] = entry
            return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_time=entry.reset_time)

        if entry.count >= max_requests:
            reset_at = datetime.fromtimestamp(entry.reset_time / 1000, tz=timezone.utc)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=entry.reset_time,
                error=f"Rate limit exceeded. Try again after {reset_at.isoformat(timespec='milliseconds').replace('+00:00', 'Z')}",
            )

        entry.count += 1
        logger.debug(f"Rate limit for {key}: {entry.count}/{max_requests}")
        return RateLimitResult(allowed=True, remaining=max_requests - entry.count, reset_time=entry.reset_time)

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Shorthand for ``check_rate_limit`` with a preset."""
        return self.check_rate_limit(key, config.max_requests, config.window_ms)

    def _purge_expired(self, now: int) -> None:
        expired = [k for k, entry in self._entries.items() if entry.reset_time <= now]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug(f"Rate limits reset for {len(expired)} key(s): {expired}")

    def __len__(self) -> int:
        return len(self._entries)
