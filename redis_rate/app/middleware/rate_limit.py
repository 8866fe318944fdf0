"""Rate limiting middleware.

Charges one permit per HTTP request against a Limit, keyed by the caller's
API key or IP address, and renders the decision as standard headers.
"""

import hashlib
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from redis_rate.app.core.config import settings
from redis_rate.app.core.logging import get_logger
from redis_rate.app.exceptions import BackendUnavailable
from redis_rate.app.services.limiter import Limit, Limiter

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512


def get_client_key(request: Request) -> str:
    """Get rate limit key for the request.

    Uses API key if available, otherwise falls back to IP address.
    Both are hashed using SHA-256 (32 hex chars) so raw credentials and
    addresses are never stored in Redis.
    """
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        api_key = auth[7:].strip()
        if api_key:
            key_hash = hashlib.sha256(api_key[:MAX_API_KEY_LENGTH].encode()).hexdigest()[:32]
            return f"apikey:{key_hash}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"

    ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
    return f"ip:{ip_hash}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    When Redis is unavailable the request is allowed (fail-open) unless
    ``fail_closed`` is set, in which case it is answered with 503.
    """

    def __init__(
        self,
        app,
        limiter: Limiter,
        limit: Limit,
        fail_closed: Optional[bool] = None,
        path_prefix: str = "/",
    ):
        super().__init__(app)
        self.limiter = limiter
        self.limit = limit
        self.fail_closed = (
            fail_closed if fail_closed is not None else settings.rate_limit_fail_closed
        )
        self.path_prefix = path_prefix

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        key = get_client_key(request)
        try:
            result = await self.limiter.allow(key, self.limit)
        except BackendUnavailable as e:
            if self.fail_closed:
                logger.warning(
                    f"Rate limiting fail-closed triggered: {e}. Request denied."
                )
                return JSONResponse(
                    status_code=503,
                    content={
                        "error": "rate_limit_unavailable",
                        "message": "Rate limiting backend unavailable. Please try again later.",
                    },
                )
            logger.warning(
                f"Rate limiting fail-open triggered: {e}. "
                "Request allowed without rate limit check."
            )
            return await call_next(request)

        headers = result.to_headers()
        headers["X-RateLimit-Limit"] = str(self.limit.burst)

        if result.limited:
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "Rate limit exceeded. Please try again later.",
                    "retry_after": result.retry_after,
                },
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
