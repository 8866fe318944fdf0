"""Distributed GCRA rate limiter backed by Redis.

Every instance shares state through Redis; decisions for one key are
serialized by running the GCRA script atomically on the server. An
optional process-local cache short-circuits requests that are certain to
be denied, and a pub/sub broadcast keeps that cache coherent on reset.
"""

import asyncio
import math
from typing import Any, Callable, Optional

import redis

from redis_rate.app.core.config import Settings, settings as default_settings
from redis_rate.app.core.logging import get_log_context, get_logger
from redis_rate.app.core.redis_client import create_redis_client
from redis_rate.app.exceptions import BackendUnavailable, ConfigurationError, ListenerFailure

from .listener import RESET_EVENT_PREFIX, InvalidationListener
from .local_cache import LocalBlockCache, LocalCache, NullLocalCache
from .models import Limit, LimitResult
from .redis_lua import ALLOW_N_SCRIPT

logger = get_logger(__name__)

REDIS_EXCEPTIONS = (redis.RedisError, OSError)


class Limiter:
    """Rate limiter backed by Redis.

    Redis key format: {key_prefix}{key} holding the theoretical arrival
    time (seconds since 2017-01-01 UTC) and expiring once the bucket is
    full again.

    Local acceleration is opt-in. When enabled, ``start_event_sync`` must
    be called to receive resets issued by other instances; without it the
    cache still self-corrects when its entries expire.
    """

    DEFAULT_KEY_PREFIX = "redis_rate:"
    DEFAULT_EVENT_CHANNEL = "redis_rate_channel"

    def __init__(
        self,
        redis_client: Any,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        event_channel: str = DEFAULT_EVENT_CHANNEL,
        local_accelerate: bool = False,
        local_cache: Optional[LocalCache] = None,
        owns_client: bool = False,
    ) -> None:
        """Initialize the limiter.

        Args:
            redis_client: A redis.asyncio client (or compatible object)
            key_prefix: Namespace prepended to every key
            event_channel: Pub/sub channel for reset events
            local_accelerate: Enable the local acceleration cache
            local_cache: Cache strategy to use, shared with other limiters if desired
            owns_client: Close the client in ``close()``

        Raises:
            ConfigurationError: If the options contradict each other
        """
        if not event_channel:
            raise ConfigurationError("event_channel must not be empty")
        if local_cache is None:
            local_cache = LocalBlockCache() if local_accelerate else NullLocalCache()
        elif local_cache.enabled != local_accelerate:
            raise ConfigurationError(
                "local_cache strategy does not match local_accelerate flag"
            )

        self._redis = redis_client
        self._key_prefix = key_prefix
        self._event_channel = event_channel
        self._cache = local_cache
        self._owns_client = owns_client
        self._listener: Optional[InvalidationListener] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        redis_client: Optional[Any] = None,
    ) -> "Limiter":
        """Build a limiter from configuration.

        When no client is given, one is created from the settings and
        closed together with the limiter.
        """
        settings = settings or default_settings
        owns_client = redis_client is None
        if redis_client is None:
            redis_client = create_redis_client(
                settings.redis_url,
                max_connections=settings.redis_max_connections,
                pool_timeout=settings.redis_pool_timeout,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_connect_timeout,
            )
        return cls(
            redis_client,
            key_prefix=settings.limiter_key_prefix,
            event_channel=settings.limiter_event_channel,
            local_accelerate=settings.limiter_local_accelerate,
            owns_client=owns_client,
        )

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    @property
    def event_channel(self) -> str:
        return self._event_channel

    @property
    def local_accelerate(self) -> bool:
        return self._cache.enabled

    @property
    def local_cache(self) -> LocalCache:
        return self._cache

    @property
    def listener(self) -> Optional[InvalidationListener]:
        return self._listener

    def _make_key(self, key: str) -> str:
        if not isinstance(key, str) or not key:
            raise ValueError("key must be a non-empty string")
        return f"{self._key_prefix}{key}"

    async def allow(self, key: str, limit: Limit) -> LimitResult:
        """Allow a single request within the limit."""
        return await self.allow_n(key, limit, 1)

    async def allow_n(self, key: str, limit: Limit, n: int) -> LimitResult:
        """Allow n requests to be made within the limit.

        Args:
            key: Caller or resource identifier
            limit: Quota to enforce for this call
            n: Number of permits requested

        Returns:
            LimitResult for this call

        Raises:
            ValueError: If key is empty or n is not a positive integer
            BackendUnavailable: If Redis could not be reached or replied badly
        """
        if isinstance(n, bool) or not isinstance(n, int) or n < 1:
            raise ValueError("n must be a positive integer")
        redis_key = self._make_key(key)

        emission_interval = limit.emission_interval
        tat_increment = limit.tat_increment(n)
        burst_offset = limit.burst_offset

        now = self._cache.now()
        cached = self._check_local(redis_key, now, emission_interval, tat_increment, burst_offset)
        if cached is not None:
            logger.debug(
                f"Rate limit decision for {redis_key} served from local cache",
                extra=get_log_context(
                    limiter_key=redis_key, operation="allow", limited=True,
                    remaining=cached.remaining,
                ),
            )
            return cached

        try:
            reply = await self._redis.eval(
                ALLOW_N_SCRIPT,
                1,  # Number of keys
                redis_key,  # KEYS[1]
                emission_interval,  # ARGV[1]
                burst_offset,  # ARGV[2]
                tat_increment,  # ARGV[3]
                n,  # ARGV[4]
            )
        except REDIS_EXCEPTIONS as e:
            logger.error(
                f"Rate limit script failed for {redis_key}: {e}",
                extra=get_log_context(limiter_key=redis_key, operation="allow"),
            )
            raise BackendUnavailable("allow", str(e)) from e

        result = self._decode_reply(reply)
        # Refreshed on allow as well, bounding later local denials to the
        # freshest reset horizon
        self._cache.set(redis_key, now + result.reset_after)

        logger.debug(
            f"Rate limit decision for {redis_key}: limited={result.limited}",
            extra=get_log_context(
                limiter_key=redis_key, operation="allow", limited=result.limited,
                remaining=result.remaining,
            ),
        )
        return result

    def _check_local(
        self,
        redis_key: str,
        now: float,
        emission_interval: float,
        tat_increment: float,
        burst_offset: float,
    ) -> Optional[LimitResult]:
        """Synthesize a denial from the local cache, if one is certain.

        Assumes nothing was consumed elsewhere since the entry was cached,
        which can only over-deny, never over-allow.
        """
        expires_at = self._cache.get(redis_key)
        if expires_at is None:
            return None
        reset_after = expires_at - now
        diff = reset_after + tat_increment - burst_offset
        if diff <= 0:
            return None
        return LimitResult(
            limited=True,
            remaining=max(0, math.floor((burst_offset - reset_after) / emission_interval)),
            retry_after=diff,
            reset_after=reset_after,
        )

    @staticmethod
    def _decode_reply(reply: Any) -> LimitResult:
        try:
            limited_raw, remaining_raw, retry_raw, reset_raw = reply
            limited = int(limited_raw) == 1
            remaining = max(0, int(remaining_raw))
            retry_after_secs = float(retry_raw)
            reset_after_secs = float(reset_raw)
        except (TypeError, ValueError) as e:
            raise BackendUnavailable("allow", f"malformed script reply {reply!r}") from e

        retry_after = None if retry_after_secs < 0 else retry_after_secs
        if limited and retry_after is None:
            raise BackendUnavailable("allow", f"limited reply without retry_after {reply!r}")
        return LimitResult(
            limited=limited,
            remaining=remaining,
            retry_after=retry_after if limited else None,
            reset_after=max(0.0, reset_after_secs),
        )

    async def reset(self, key: str) -> None:
        """Reset the limit for a key.

        Deletes the Redis state and, with local acceleration, evicts the
        local entry and broadcasts a reset event to the other instances.

        Raises:
            BackendUnavailable: If the delete or the broadcast fails
        """
        redis_key = self._make_key(key)
        try:
            await self._redis.delete(redis_key)
        except REDIS_EXCEPTIONS as e:
            logger.error(
                f"Failed to reset {redis_key}: {e}",
                extra=get_log_context(limiter_key=redis_key, operation="reset"),
            )
            raise BackendUnavailable("reset", str(e)) from e

        if not self._cache.enabled:
            logger.info(
                f"Reset rate limit for {redis_key}",
                extra=get_log_context(limiter_key=redis_key, operation="reset"),
            )
            return

        self._cache.evict(redis_key)
        try:
            await self._redis.publish(self._event_channel, f"{RESET_EVENT_PREFIX}{redis_key}")
        except REDIS_EXCEPTIONS as e:
            logger.error(
                f"Failed to broadcast reset for {redis_key}: {e}",
                extra=get_log_context(
                    limiter_key=redis_key, operation="publish", channel=self._event_channel
                ),
            )
            raise BackendUnavailable("publish", str(e)) from e

        logger.info(
            f"Reset rate limit for {redis_key}",
            extra=get_log_context(
                limiter_key=redis_key, operation="reset", channel=self._event_channel
            ),
        )

    async def ping(self) -> None:
        """Check that Redis is reachable.

        Raises:
            BackendUnavailable: If Redis does not answer
        """
        try:
            await self._redis.ping()
        except REDIS_EXCEPTIONS as e:
            raise BackendUnavailable("ping", str(e)) from e

    def start_event_sync(
        self, on_error: Optional[Callable[[ListenerFailure], None]] = None
    ) -> asyncio.Task:
        """Start listening for reset events from other instances.

        Returns:
            The background task running the listener

        Raises:
            RuntimeError: If local acceleration is disabled or a listener
                is already running
        """
        if not self._cache.enabled:
            raise RuntimeError("Event sync requires local acceleration to be enabled")
        if self._listener is not None and self._listener.running:
            raise RuntimeError("Event sync is already running")
        self._listener = InvalidationListener(
            self._redis, self._event_channel, self._cache, on_error=on_error
        )
        return self._listener.start()

    async def stop_event_sync(self) -> None:
        """Stop the invalidation listener if it is running."""
        if self._listener is None:
            return
        await self._listener.stop()

    async def close(self) -> None:
        """Stop background work and release the Redis client if owned."""
        await self.stop_event_sync()
        if self._owns_client and self._redis is not None:
            try:
                await self._redis.aclose()
            except REDIS_EXCEPTIONS as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
