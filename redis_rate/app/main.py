from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from redis_rate.app.core.config import settings
from redis_rate.app.core.logging import get_logger, setup_logging
from redis_rate.app.exceptions import BackendUnavailable, ListenerFailure
from redis_rate.app.middleware.rate_limit import RateLimitMiddleware
from redis_rate.app.services.limiter import Limit, Limiter

KNOCK_LIMIT_KEY = "knock"


def create_app(limiter: Optional[Limiter] = None) -> FastAPI:
    """Create the demo application.

    Args:
        limiter: Limiter to use, built from settings when omitted

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    if limiter is None:
        limiter = Limiter.from_settings()
    knock_limit = Limit(
        rate=settings.knock_rate,
        burst=settings.knock_burst,
        period_seconds=settings.knock_period_seconds,
    )
    api_limit = Limit.per_minute(
        settings.rate_limit_requests_per_minute,
        burst=settings.rate_limit_burst_size,
    )

    def on_listener_error(exc: ListenerFailure) -> None:
        logger.error(
            f"Local acceleration is stale until the listener restarts: {exc}"
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Start the invalidation listener and release Redis on shutdown."""
        if limiter.local_accelerate:
            limiter.start_event_sync(on_error=on_listener_error)
        logger.info(
            "Application startup complete",
            extra={"local_accelerate": limiter.local_accelerate},
        )

        yield {"limiter": limiter}

        await limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="redis-rate demo",
        description="Distributed GCRA rate limiting backed by Redis",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.limiter = limiter

    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        limit=api_limit,
        path_prefix="/api/",
    )

    @app.get("/")
    async def knock() -> JSONResponse:
        """Answer at most knock_rate knocks per knock_period_seconds."""
        result = await limiter.allow(KNOCK_LIMIT_KEY, knock_limit)
        if result.limited:
            return JSONResponse(
                status_code=429,
                content={
                    "message": f"Too many requests. Try again in {int(result.retry_after)} seconds.",
                    "retry_after": result.retry_after,
                },
                headers=result.to_headers(),
            )
        logger.info("Effective knock request")
        return JSONResponse(
            content={
                "message": f"Who's there? Remaining {result.remaining} requests.",
                "remaining": result.remaining,
            },
            headers=result.to_headers(),
        )

    @app.post("/reset")
    async def reset() -> dict[str, str]:
        """Reset the knock limit on every instance."""
        await limiter.reset(KNOCK_LIMIT_KEY)
        return {"message": "Cache reset"}

    @app.get("/api/ping")
    async def api_ping() -> dict[str, str]:
        """Endpoint guarded by the rate limit middleware."""
        return {"message": "pong"}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with Redis and invalidation listener status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        try:
            await limiter.ping()
            health_status["components"]["redis"] = {"status": "ok"}
        except BackendUnavailable as e:
            health_status["status"] = "degraded"
            health_status["components"]["redis"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }

        listener = limiter.listener
        if not limiter.local_accelerate:
            listener_status = {"status": "disabled"}
        elif listener is not None and listener.running:
            listener_status = {"status": "ok", "channel": listener.channel}
        else:
            health_status["status"] = "degraded"
            failure = listener.failure if listener is not None else None
            listener_status = {
                "status": "error",
                "error": str(failure)[:100] if failure else "not running",
            }
        health_status["components"]["listener"] = listener_status

        return health_status

    @app.exception_handler(BackendUnavailable)
    async def backend_unavailable_handler(request: Request, exc: BackendUnavailable) -> JSONResponse:
        """Handle BackendUnavailable and return HTTP 503 response."""
        logger.error(f"Backend unavailable on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"error": "backend_unavailable", "message": "Fails to reach rate limit backend"},
        )

    return app


# Create the application instance
app = create_app()
