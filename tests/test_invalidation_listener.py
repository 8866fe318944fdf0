"""Tests for the invalidation listener."""

import asyncio

import pytest
import redis

from redis_rate.app.exceptions import ListenerFailure
from redis_rate.app.services.limiter import (
    InvalidationListener,
    LocalBlockCache,
    parse_reset_event,
)


class TestParseResetEvent:
    """Test reset event payload parsing."""

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            (b"reset:redis_rate:test", "redis_rate:test"),
            ("reset:redis_rate:test", "redis_rate:test"),
            ("reset:", ""),
            ("reset:with:colons:inside", "with:colons:inside"),
        ],
    )
    def test_reset_events(self, payload, expected):
        assert parse_reset_event(payload) == expected

    @pytest.mark.parametrize(
        "payload", [b"hello", "refresh:key", 1, None, b"\xff\xfe", "RESET:key"]
    )
    def test_ignored_payloads(self, payload):
        assert parse_reset_event(payload) is None


@pytest.fixture
def cache():
    cache = LocalBlockCache(clock=lambda: 0.0)
    cache.set("redis_rate:test", 100.0)
    cache.set("redis_rate:other", 100.0)
    return cache


class TestHandleMessage:
    """Test applying single pub/sub messages."""

    def test_reset_message_evicts(self, mock_redis, cache):
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        key = listener.handle_message(
            {"type": "message", "channel": b"redis_rate_channel", "data": b"reset:redis_rate:test"}
        )
        assert key == "redis_rate:test"
        assert cache.get("redis_rate:test") is None
        assert cache.get("redis_rate:other") == 100.0

    def test_subscribe_confirmation_ignored(self, mock_redis, cache):
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        assert listener.handle_message(
            {"type": "subscribe", "channel": b"redis_rate_channel", "data": 1}
        ) is None
        assert len(cache) == 2

    def test_unknown_payload_ignored(self, mock_redis, cache):
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        assert listener.handle_message({"type": "message", "data": b"ping"}) is None
        assert len(cache) == 2


class TestListenerLifecycle:
    """Test the background task."""

    @pytest.mark.asyncio
    async def test_evicts_on_publish(self, mock_redis, cache, wait_until):
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        listener.start()
        try:
            assert await wait_until(lambda: mock_redis.subscribers.get("redis_rate_channel"))
            assert listener.running is True

            await mock_redis.publish("redis_rate_channel", "reset:redis_rate:test")
            assert await wait_until(lambda: cache.get("redis_rate:test") is None)
            assert cache.get("redis_rate:other") == 100.0
        finally:
            await listener.stop()

    @pytest.mark.asyncio
    async def test_other_channels_not_consumed(self, mock_redis, cache, wait_until):
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        listener.start()
        try:
            assert await wait_until(lambda: mock_redis.subscribers.get("redis_rate_channel"))
            await mock_redis.publish("another_channel", "reset:redis_rate:test")
            await asyncio.sleep(0.05)
            assert cache.get("redis_rate:test") == 100.0
        finally:
            await listener.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_and_closes(self, mock_redis, cache, wait_until):
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        listener.start()
        assert await wait_until(lambda: mock_redis.subscribers.get("redis_rate_channel"))

        await listener.stop()

        assert listener.running is False
        assert listener.failure is None
        assert mock_redis.pubsubs[0].closed is True
        assert mock_redis.subscribers["redis_rate_channel"] == []

    @pytest.mark.asyncio
    async def test_stop_before_start(self, mock_redis, cache):
        await InvalidationListener(mock_redis, "redis_rate_channel", cache).stop()

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, mock_redis, cache):
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        listener.start()
        try:
            with pytest.raises(RuntimeError):
                listener.start()
        finally:
            await listener.stop()

    @pytest.mark.asyncio
    async def test_subscribe_failure_reported(self, mock_redis, cache):
        errors = []
        mock_redis.subscribe_error = redis.ConnectionError("refused")
        listener = InvalidationListener(
            mock_redis, "redis_rate_channel", cache, on_error=errors.append
        )
        await listener.start()

        assert listener.running is False
        assert isinstance(listener.failure, ListenerFailure)
        assert listener.failure.channel == "redis_rate_channel"
        assert "refused" in str(listener.failure)
        assert isinstance(listener.failure.__cause__, redis.ConnectionError)
        assert errors == [listener.failure]
        assert mock_redis.pubsubs[0].closed is True

    @pytest.mark.asyncio
    async def test_receive_failure_reported(self, mock_redis, cache, wait_until):
        errors = []
        listener = InvalidationListener(
            mock_redis, "redis_rate_channel", cache, on_error=errors.append
        )
        task = listener.start()
        assert await wait_until(lambda: mock_redis.subscribers.get("redis_rate_channel"))

        mock_redis.pubsubs[0].inject_error(redis.ConnectionError("connection reset"))
        await task

        assert len(errors) == 1
        assert "connection reset" in str(errors[0])
        assert mock_redis.pubsubs[0].closed is True

        # A failed listener can be started again
        listener.start()
        try:
            assert await wait_until(lambda: mock_redis.subscribers.get("redis_rate_channel"))
            assert listener.failure is None
        finally:
            await listener.stop()

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self, mock_redis, cache, wait_until):
        errors = []
        listener = InvalidationListener(
            mock_redis, "redis_rate_channel", cache, on_error=errors.append
        )
        task = listener.start()
        assert await wait_until(lambda: mock_redis.subscribers.get("redis_rate_channel"))

        mock_redis.pubsubs[0].inject_error(RuntimeError("decoder crashed"))
        await task

        assert task.exception() is None
        assert isinstance(listener.failure, ListenerFailure)
        assert "RuntimeError: decoder crashed" in str(listener.failure)
        assert isinstance(listener.failure.__cause__, RuntimeError)
        assert errors == [listener.failure]
        assert mock_redis.pubsubs[0].closed is True

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_escape(self, mock_redis, cache):
        def on_error(exc):
            raise ValueError("callback bug")

        mock_redis.subscribe_error = redis.ConnectionError("refused")
        listener = InvalidationListener(
            mock_redis, "redis_rate_channel", cache, on_error=on_error
        )
        task = listener.start()
        await task

        assert task.exception() is None
        assert isinstance(listener.failure, ListenerFailure)
        assert listener.running is False

    @pytest.mark.asyncio
    async def test_failure_without_callback(self, mock_redis, cache):
        mock_redis.subscribe_error = OSError("network unreachable")
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)
        await listener.start()
        assert isinstance(listener.failure, ListenerFailure)

    @pytest.mark.asyncio
    async def test_run_raises_when_subscription_ends(self, mock_redis, cache):
        class EndingPubSub:
            closed = False

            async def subscribe(self, channel):
                pass

            async def listen(self):
                yield {"type": "subscribe", "data": 1}

            async def aclose(self):
                self.closed = True

        pubsub = EndingPubSub()
        mock_redis.pubsub = lambda: pubsub
        listener = InvalidationListener(mock_redis, "redis_rate_channel", cache)

        with pytest.raises(ListenerFailure, match="subscription closed"):
            await listener.run()
        assert pubsub.closed is True
