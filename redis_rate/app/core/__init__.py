"""Core utilities for the rate limiter."""

from redis_rate.app.core.config import Settings, settings
from redis_rate.app.core.logging import get_logger, setup_logging
from redis_rate.app.core.redis_client import create_redis_client

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
    "create_redis_client",
]
