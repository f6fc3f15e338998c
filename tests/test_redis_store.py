"""Tests for the Redis bucket store."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis import exceptions as redis_exceptions

from ratekeeper.app.exceptions import StoreUnavailableError
from ratekeeper.app.services.token_bucket import (
    TOKEN_BUCKET_SCRIPT,
    RedisBucketStore,
    TokenBucketLimiter,
)

NOW_MS = 1_700_000_000_000


class TestTokenBucketScript:
    """The Lua script executed by an in-process Redis."""

    @pytest.fixture
    def limiter(self, fake_redis, clock):
        return TokenBucketLimiter(
            store=RedisBucketStore(redis_client=fake_redis), ttl_seconds=120, clock=clock
        )

    @pytest.mark.asyncio
    async def test_first_check_admits_with_burst_minus_one(self, limiter):
        result = await limiter.check("client-a", limit=60, burst=100)
        assert result.to_dict() == {"allowed": True, "remaining": 99, "retry_after_ms": 0}

    @pytest.mark.asyncio
    async def test_burst_of_hundred_admits_exactly_hundred(self, limiter, fake_redis):
        results = [await limiter.check("client-a", limit=60, burst=100) for _ in range(101)]

        assert sum(1 for r in results if r.allowed) == 100
        assert all(r.allowed for r in results[:100])
        assert results[100].allowed is False
        assert results[100].retry_after_ms == 1000

        assert await fake_redis.hgetall("ratelimit:client-a") == {
            "tokens": "0",
            "last_refill": str(NOW_MS),
        }
        assert await fake_redis.ttl("ratelimit:client-a") == 120

    @pytest.mark.asyncio
    async def test_zero_burst_always_denies_with_full_token_wait(self, limiter, clock):
        for _ in range(3):
            result = await limiter.check("client-a", limit=60, burst=0)
            assert (result.allowed, result.remaining, result.retry_after_ms) == (False, 0, 1000)
            clock.advance(30)

    @pytest.mark.asyncio
    async def test_fractional_tokens_survive_round_trip(self, limiter, fake_redis, clock):
        await limiter.check("client-a", limit=60, burst=1)
        clock.advance(0.25)
        result = await limiter.check("client-a", limit=60, burst=1)

        assert result.allowed is False
        assert result.retry_after_ms == 750
        assert await fake_redis.hget("ratelimit:client-a", "tokens") == "0.25"
        assert await fake_redis.hget("ratelimit:client-a", "last_refill") == str(NOW_MS + 250)

    @pytest.mark.asyncio
    async def test_tokens_refill_with_time(self, limiter, clock):
        for _ in range(3):
            assert (await limiter.check("client-a", limit=60, burst=3)).allowed
        denied = await limiter.check("client-a", limit=60, burst=3)
        assert denied.retry_after_ms == 1000

        clock.advance(1)
        result = await limiter.check("client-a", limit=60, burst=3)
        assert (result.allowed, result.remaining) == (True, 0)

    @pytest.mark.asyncio
    async def test_refill_is_capped_at_burst(self, limiter, clock):
        await limiter.check("client-a", limit=60, burst=5)
        clock.advance(3600)
        result = await limiter.check("client-a", limit=60, burst=5)
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_lowered_burst_clamps_existing_bucket(self, limiter):
        await limiter.check("client-a", limit=60, burst=100)
        result = await limiter.check("client-a", limit=60, burst=5)
        assert (result.allowed, result.remaining) == (True, 4)

    @pytest.mark.asyncio
    async def test_clock_going_backwards_keeps_baseline(self, limiter, fake_redis, clock):
        await limiter.check("client-a", limit=60, burst=2)
        clock.advance(-10)
        result = await limiter.check("client-a", limit=60, burst=2)

        assert (result.allowed, result.remaining) == (True, 0)
        assert await fake_redis.hget("ratelimit:client-a", "last_refill") == str(NOW_MS)

    @pytest.mark.asyncio
    async def test_each_check_sets_configured_ttl(self, fake_redis, clock):
        limiter = TokenBucketLimiter(
            store=RedisBucketStore(redis_client=fake_redis), ttl_seconds=45, clock=clock
        )
        await limiter.check("client-a", limit=60)
        assert await fake_redis.ttl("ratelimit:client-a") == 45

    @pytest.mark.asyncio
    async def test_missing_bucket_starts_full(self, limiter, fake_redis):
        await limiter.check("client-a", limit=60, burst=3)
        await fake_redis.delete("ratelimit:client-a")
        result = await limiter.check("client-a", limit=60, burst=3)
        assert result.remaining == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("available", "requests"), [(1, 10), (7, 30)])
    async def test_concurrent_checks_admit_exactly_available(self, limiter, available, requests):
        results = await asyncio.gather(
            *(limiter.check("client-a", limit=60, burst=available) for _ in range(requests))
        )
        assert sum(1 for r in results if r.allowed) == available

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, limiter, fake_redis):
        assert (await limiter.check("client-a", limit=60, burst=1)).allowed
        assert not (await limiter.check("client-a", limit=60, burst=1)).allowed
        assert (await limiter.check("client-b", limit=60, burst=1)).allowed
        assert sorted(await fake_redis.keys("ratelimit:*")) == [
            "ratelimit:client-a",
            "ratelimit:client-b",
        ]


class TestRedisBucketStore:
    """Tests for RedisBucketStore against a mocked client."""

    @pytest.mark.asyncio
    async def test_apply_sends_one_script_call(self, mock_redis):
        store = RedisBucketStore(redis_client=mock_redis)
        tokens, allowed, retry_after_ms = await store.apply(
            "ratelimit:client-a", 100, 1.0, NOW_MS, 120
        )

        assert (tokens, allowed, retry_after_ms) == (99.0, True, 0)
        mock_redis.eval.assert_awaited_once_with(
            TOKEN_BUCKET_SCRIPT, 1, "ratelimit:client-a", 100.0, 1.0, NOW_MS, 120
        )

    @pytest.mark.asyncio
    async def test_parses_bytes_reply(self):
        redis = MagicMock()
        redis.eval = AsyncMock(return_value=[0, b"0.25", 750])
        store = RedisBucketStore(redis_client=redis)

        tokens, allowed, retry_after_ms = await store.apply("k", 1, 1.0, NOW_MS, 120)
        assert (tokens, allowed, retry_after_ms) == (0.25, False, 750)

    @pytest.mark.asyncio
    async def test_malformed_reply_is_store_failure(self):
        redis = MagicMock()
        redis.eval = AsyncMock(return_value=[1])
        store = RedisBucketStore(redis_client=redis)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.apply("k", 1, 1.0, NOW_MS, 120)
        assert exc_info.value.reason == "bad_reply"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "reason"),
        [
            (redis_exceptions.ConnectionError("refused"), "connection_error"),
            (redis_exceptions.TimeoutError("slow"), "timeout"),
            (redis_exceptions.ResponseError("ERR script"), "redis_error"),
            (ConnectionResetError("reset"), "connection_error"),
        ],
    )
    async def test_redis_errors_map_to_store_unavailable(self, error, reason):
        redis = MagicMock()
        redis.eval = AsyncMock(side_effect=error)
        store = RedisBucketStore(redis_client=redis)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.apply("k", 1, 1.0, NOW_MS, 120)
        assert exc_info.value.reason == reason
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self):
        async def slow_eval(*args):
            await asyncio.sleep(1)

        redis = MagicMock()
        redis.eval = slow_eval
        store = RedisBucketStore(redis_client=redis, timeout_seconds=0.01)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.apply("k", 1, 1.0, NOW_MS, 120)
        assert exc_info.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_ping_success(self, mock_redis):
        store = RedisBucketStore(redis_client=mock_redis)
        await store.ping()
        mock_redis.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ping_failure(self):
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=redis_exceptions.ConnectionError("down"))
        store = RedisBucketStore(redis_client=redis)

        with pytest.raises(StoreUnavailableError):
            await store.ping()

    @pytest.mark.asyncio
    async def test_close_releases_client(self, mock_redis):
        store = RedisBucketStore(redis_client=mock_redis)
        await store.close()
        mock_redis.aclose.assert_awaited_once()
        assert store._redis is None

    def test_client_created_lazily_from_url(self):
        store = RedisBucketStore(
            redis_url="redis://cache:6379/2", max_connections=7, timeout_seconds=0.2
        )
        with patch("redis.asyncio.from_url") as from_url:
            client = store._get_redis()
            assert store._get_redis() is client

        from_url.assert_called_once_with(
            "redis://cache:6379/2",
            max_connections=7,
            socket_timeout=0.2,
            socket_connect_timeout=0.2,
            decode_responses=True,
        )
