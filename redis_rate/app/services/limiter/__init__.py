"""Distributed rate limiting using Redis for multi-instance deployments.

This package provides the GCRA algorithm as an atomic Redis Lua script,
with an optional process-local cache of denials kept coherent over
Redis pub/sub.
"""

from .listener import RESET_EVENT_PREFIX, InvalidationListener, parse_reset_event
from .local_cache import LocalBlockCache, LocalCache, NullLocalCache
from .models import Limit, LimitResult
from .redis_lua import ALLOW_N_SCRIPT
from .service import Limiter

__all__ = [
    "Limit",
    "LimitResult",
    "ALLOW_N_SCRIPT",
    "Limiter",
    "LocalCache",
    "LocalBlockCache",
    "NullLocalCache",
    "InvalidationListener",
    "RESET_EVENT_PREFIX",
    "parse_reset_event",
]
