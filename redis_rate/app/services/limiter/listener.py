"""Invalidation listener for the local acceleration cache.

Consumes the limiter's pub/sub channel and evicts local cache entries for
keys that were reset on any instance.
"""

import asyncio
from typing import Any, Callable, Optional

import redis

from redis_rate.app.core.logging import get_log_context, get_logger
from redis_rate.app.exceptions import ListenerFailure

from .local_cache import LocalCache

logger = get_logger(__name__)

RESET_EVENT_PREFIX = "reset:"


def parse_reset_event(payload: Any) -> Optional[str]:
    """Return the effective key carried by a reset event, or None.

    Payloads without the reset tag are ignored so that other message types
    can share the channel.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(payload, str) or not payload.startswith(RESET_EVENT_PREFIX):
        return None
    return payload[len(RESET_EVENT_PREFIX):]


class InvalidationListener:
    """Background consumer of reset events.

    Started explicitly by the operator. The loop only ends on cancellation
    or on a subscription failure; a failure is logged, kept in ``failure``
    and handed to ``on_error`` so the caller can restart the listener or
    run without acceleration.
    """

    def __init__(
        self,
        redis_client: Any,
        channel: str,
        cache: LocalCache,
        on_error: Optional[Callable[[ListenerFailure], None]] = None,
    ) -> None:
        self._redis = redis_client
        self._channel = channel
        self._cache = cache
        self._on_error = on_error
        self._task: Optional[asyncio.Task] = None
        self._failure: Optional[ListenerFailure] = None

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def failure(self) -> Optional[ListenerFailure]:
        """The error that terminated the last run, if any."""
        return self._failure

    def handle_message(self, message: dict) -> Optional[str]:
        """Apply one pub/sub message to the cache.

        Returns the evicted key, or None if the message was ignored.
        """
        if message.get("type") != "message":
            return None
        key = parse_reset_event(message.get("data"))
        if key is None:
            return None
        self._cache.evict(key)
        logger.debug(
            f"Evicted local limiter entry for {key}",
            extra=get_log_context(limiter_key=key, operation="listen", channel=self._channel),
        )
        return key

    async def run(self) -> None:
        """Subscribe and process messages until cancelled or failed.

        Raises:
            ListenerFailure: If subscribing or receiving fails, or the
                subscription ends unexpectedly.
        """
        pubsub = self._redis.pubsub()
        try:
            try:
                await pubsub.subscribe(self._channel)
                async for message in pubsub.listen():
                    self.handle_message(message)
            except (redis.RedisError, OSError) as e:
                raise ListenerFailure(self._channel, str(e)) from e
            raise ListenerFailure(self._channel, "subscription closed")
        finally:
            try:
                await pubsub.aclose()
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Error closing pub/sub connection: {e}")

    async def _run_and_report(self) -> None:
        try:
            await self.run()
        except ListenerFailure as e:
            failure = e
        except Exception as e:
            failure = ListenerFailure(self._channel, f"{type(e).__name__}: {e}")
            failure.__cause__ = e
        else:
            return

        self._failure = failure
        logger.error(
            str(failure),
            exc_info=failure.__cause__,
            extra=get_log_context(operation="listen", channel=self._channel),
        )
        if self._on_error is None:
            return
        try:
            self._on_error(failure)
        except Exception as e:
            logger.exception(
                f"Listener error callback failed: {e}",
                extra=get_log_context(operation="listen", channel=self._channel),
            )

    def start(self) -> asyncio.Task:
        """Start the listener as a background task.

        Raises:
            RuntimeError: If the listener is already running.
        """
        if self.running:
            raise RuntimeError("Invalidation listener is already running")
        self._failure = None
        self._task = asyncio.create_task(self._run_and_report())
        logger.info(
            f"Started invalidation listener on {self._channel}",
            extra=get_log_context(operation="listen", channel=self._channel),
        )
        return self._task

    async def stop(self) -> None:
        """Cancel the listener task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(
            f"Stopped invalidation listener on {self._channel}",
            extra=get_log_context(operation="listen", channel=self._channel),
        )
