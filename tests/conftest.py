"""Shared fixtures for limiter tests.

The Redis double runs the GCRA algorithm in Python with the same
arithmetic and reply shape as the Lua script, against a clock the tests
control. Each eval completes without yielding to the event loop, which
mirrors the atomicity Redis gives the real script.
"""

import asyncio
import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from redis_rate.app.services.limiter import Limiter, LocalBlockCache


class FakePubSub:
    """Minimal redis.asyncio PubSub double fed by FakeRedis.publish."""

    def __init__(self, redis):
        self._redis = redis
        self._queue: asyncio.Queue = asyncio.Queue()
        self.channels: list[str] = []
        self.closed = False

    async def subscribe(self, channel):
        if self._redis.subscribe_error is not None:
            raise self._redis.subscribe_error
        self.channels.append(channel)
        self._redis.subscribers.setdefault(channel, []).append(self._queue)
        await self._queue.put({"type": "subscribe", "channel": channel.encode(), "data": 1})

    async def listen(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    def inject_error(self, error: BaseException) -> None:
        self._queue.put_nowait(error)

    async def aclose(self):
        self.closed = True
        for channel in self.channels:
            queues = self._redis.subscribers.get(channel, [])
            if self._queue in queues:
                queues.remove(self._queue)


def gcra(tat, now, emission_interval, burst_offset, tat_increment):
    """Pure GCRA step. Returns (limited, remaining, retry_after, reset_after, new_tat)."""
    if tat is None:
        tat = now
    new_tat = max(tat, now) + tat_increment
    allow_at = new_tat - burst_offset
    if allow_at > now:
        remaining = math.floor((now - tat + burst_offset) / emission_interval)
        return True, remaining, allow_at - now, tat - now, None
    remaining = math.floor((now - allow_at) / emission_interval)
    return False, remaining, -1, new_tat - now, new_tat


@pytest.fixture
def mock_redis():
    """Create a mock Redis client for testing."""
    redis = MagicMock()
    redis.data = {}
    redis.ttls = {}
    redis.now = 1000.0
    redis.subscribers = {}
    redis.subscribe_error = None
    redis.pubsubs = []

    def _expire(key):
        if key in redis.ttls and redis.ttls[key] <= redis.now:
            redis.data.pop(key, None)
            redis.ttls.pop(key, None)

    def peek(key, emission_interval, burst_offset, tat_increment):
        """Decision the store would take now, without mutating it."""
        _expire(key)
        return gcra(redis.data.get(key), redis.now, emission_interval, burst_offset, tat_increment)

    async def mock_eval(script, num_keys, *args):
        """Mock execution of ALLOW_N_SCRIPT.

        - KEYS[1]: effective limiter key
        - ARGV: emission_interval, burst_offset, tat_increment, cost
        """
        key = args[0]
        emission_interval, burst_offset, tat_increment = (float(a) for a in args[1:4])
        limited, remaining, retry_after, reset_after, new_tat = peek(
            key, emission_interval, burst_offset, tat_increment
        )
        if new_tat is not None:
            redis.data[key] = new_tat
            redis.ttls[key] = redis.now + math.ceil(reset_after)
        return [
            1 if limited else 0,
            remaining,
            repr(float(retry_after)).encode(),
            repr(float(reset_after)).encode(),
        ]

    async def mock_delete(*keys):
        removed = 0
        for key in keys:
            if redis.data.pop(key, None) is not None:
                removed += 1
            redis.ttls.pop(key, None)
        return removed

    async def mock_publish(channel, message):
        queues = list(redis.subscribers.get(channel, []))
        payload = {
            "type": "message",
            "pattern": None,
            "channel": channel.encode(),
            "data": message.encode(),
        }
        for queue in queues:
            queue.put_nowait(payload)
        return len(queues)

    def mock_pubsub():
        pubsub = FakePubSub(redis)
        redis.pubsubs.append(pubsub)
        return pubsub

    redis.peek = peek
    redis.eval = AsyncMock(side_effect=mock_eval)
    redis.delete = AsyncMock(side_effect=mock_delete)
    redis.publish = AsyncMock(side_effect=mock_publish)
    redis.pubsub = mock_pubsub
    redis.ping = AsyncMock(return_value=True)
    redis.aclose = AsyncMock()

    return redis


@pytest.fixture
def clock_cache(mock_redis):
    """Local cache driven by the same clock as the Redis double."""
    return LocalBlockCache(clock=lambda: mock_redis.now)


@pytest.fixture
def limiter(mock_redis):
    return Limiter(mock_redis)


@pytest.fixture
def accelerated_limiter(mock_redis, clock_cache):
    return Limiter(mock_redis, local_accelerate=True, local_cache=clock_cache)


async def wait_for(predicate, timeout: float = 1.0) -> bool:
    """Yield to the event loop until predicate() holds or timeout elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


@pytest.fixture
def wait_until():
    return wait_for
