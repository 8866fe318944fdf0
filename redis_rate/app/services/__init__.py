"""Services package for the rate limiter."""

from redis_rate.app.services.limiter import (
    InvalidationListener,
    Limit,
    Limiter,
    LimitResult,
    LocalBlockCache,
    LocalCache,
    NullLocalCache,
)

__all__ = [
    "Limit",
    "LimitResult",
    "Limiter",
    "LocalCache",
    "LocalBlockCache",
    "NullLocalCache",
    "InvalidationListener",
]
