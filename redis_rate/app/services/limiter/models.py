"""Data models for the GCRA rate limiter."""

import math
from dataclasses import dataclass
from typing import Optional

from redis_rate.app.exceptions import ConfigurationError


def _require_int(name: str, value: object) -> int:
    # bool is an int subclass but never a meaningful quota
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    return value


@dataclass(frozen=True)
class Limit:
    """Rate limit setting.

    A single Limit may be shared across keys and calls, and different calls
    may use different limits for the same key.

    Attributes:
        rate: Steady-state permits per period
        burst: Maximum permits in a burst (>= rate)
        period_seconds: Refill period in seconds

    Raises:
        ConfigurationError: If any value is invalid
    """

    rate: int
    burst: int
    period_seconds: int

    def __post_init__(self) -> None:
        _require_int("rate", self.rate)
        _require_int("burst", self.burst)
        _require_int("period_seconds", self.period_seconds)
        if self.period_seconds <= 0:
            raise ConfigurationError("period_seconds must be greater than 0")
        if self.rate <= 0:
            raise ConfigurationError("rate must be greater than 0")
        if self.rate > self.burst:
            raise ConfigurationError("rate must be less than or equal to burst")

    @property
    def emission_interval(self) -> float:
        """Seconds needed to regenerate one permit."""
        return self.period_seconds / self.rate

    @property
    def burst_offset(self) -> float:
        """Time-equivalent slack the bucket can lend ahead of the rate."""
        return self.burst * self.emission_interval

    def tat_increment(self, n: int) -> float:
        """Advance of the theoretical arrival time for a cost of n."""
        return self.emission_interval * n

    @classmethod
    def per_second(cls, rate: int, burst: int | None = None) -> "Limit":
        return cls(rate=rate, burst=burst if burst is not None else rate, period_seconds=1)

    @classmethod
    def per_minute(cls, rate: int, burst: int | None = None) -> "Limit":
        return cls(rate=rate, burst=burst if burst is not None else rate, period_seconds=60)

    @classmethod
    def per_hour(cls, rate: int, burst: int | None = None) -> "Limit":
        return cls(rate=rate, burst=burst if burst is not None else rate, period_seconds=3600)


@dataclass(frozen=True)
class LimitResult:
    """Result of a limit check.

    Attributes:
        limited: Whether the request was denied
        remaining: Permits available at the time of the check
        retry_after: Seconds until the request can be retried, None when not limited
        reset_after: Seconds until the limit is totally reset
    """

    limited: bool
    remaining: int
    retry_after: Optional[float]
    reset_after: float

    def to_headers(self) -> dict[str, str]:
        """Render standard rate limit response headers."""
        headers = {
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(math.ceil(self.retry_after))
        return headers
