"""HTTP middleware for the rate limiter."""

from redis_rate.app.middleware.rate_limit import RateLimitMiddleware, get_client_key

__all__ = ["RateLimitMiddleware", "get_client_key"]
