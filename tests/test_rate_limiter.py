"""
Tests for the fixed-window rate limiter and its stores.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.config import Settings
from printflow.core.errors import Throttled, ValidationError
from printflow.core.rate_limiter import (
    RateLimiter,
    RedisRateLimitStore,
    SqlRateLimitStore,
    create_rate_limit_store,
    window_bounds,
)
from printflow.database.models import RateLimitCounter

NOW = datetime(2025, 1, 1, 12, 0, 30)
# 2025-01-01T12:00:00Z
WINDOW_EPOCH = 1735732800


class TestWindowBounds:

    @pytest.mark.unit
    def test_minute_window(self) -> None:
        start, end = window_bounds(NOW, 60)

        assert start == datetime(2025, 1, 1, 12, 0, 0)
        assert end == datetime(2025, 1, 1, 12, 1, 0)

    @pytest.mark.unit
    def test_boundary_belongs_to_next_window(self) -> None:
        start, _ = window_bounds(datetime(2025, 1, 1, 12, 1, 0), 60)

        assert start == datetime(2025, 1, 1, 12, 1, 0)

    @pytest.mark.unit
    def test_hour_window(self) -> None:
        start, end = window_bounds(datetime(2025, 1, 1, 12, 59, 59), 3600)

        assert start == datetime(2025, 1, 1, 12, 0, 0)
        assert end == datetime(2025, 1, 1, 13, 0, 0)


class TestSqlRateLimiter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, rate_limiter: RateLimiter) -> None:
        decisions = [
            await rate_limiter.check_and_increment("user-1", "order_create", 2, now=NOW)
            for _ in range(3)
        ]

        assert [d.allowed for d in decisions] == [True, True, False]
        assert [d.count for d in decisions] == [1, 2, 3]
        assert decisions[0].retry_after == 0
        assert decisions[2].retry_after == 30
        assert decisions[2].window_start == datetime(2025, 1, 1, 12, 0, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_window_resets(self, rate_limiter: RateLimiter) -> None:
        for _ in range(3):
            await rate_limiter.check_and_increment("user-1", "order_create", 2, now=NOW)

        decision = await rate_limiter.check_and_increment(
            "user-1", "order_create", 2, now=datetime(2025, 1, 1, 12, 1, 0)
        )

        assert decision.allowed is True
        assert decision.count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_counters_are_per_identifier_and_action(self, rate_limiter: RateLimiter) -> None:
        await rate_limiter.check_and_increment("user-1", "order_create", 1, now=NOW)

        other_user = await rate_limiter.check_and_increment("user-2", "order_create", 1, now=NOW)
        other_action = await rate_limiter.check_and_increment("user-1", "design_create", 1, now=NOW)

        assert other_user.allowed is True
        assert other_action.allowed is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_aware_now_shares_the_naive_window(self, rate_limiter: RateLimiter) -> None:
        tokyo = timezone(timedelta(hours=9))
        aware = datetime(2025, 1, 1, 21, 0, 30, tzinfo=tokyo)

        first = await rate_limiter.check_and_increment("user-1", "order_create", 1, now=NOW)
        second = await rate_limiter.check_and_increment("user-1", "order_create", 1, now=aware)

        assert second.allowed is False
        assert second.count == first.count + 1
        assert second.retry_after == 30
        assert second.window_start == datetime(2025, 1, 1, 12, 0, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_limit_blocks(self, rate_limiter: RateLimiter) -> None:
        decision = await rate_limiter.check_and_increment("user-1", "order_create", 0, now=NOW)

        assert decision.allowed is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_enforce_raises_throttled(self, rate_limiter: RateLimiter) -> None:
        await rate_limiter.enforce("10.0.0.1", "webhook", 1, now=NOW)

        with pytest.raises(Throttled) as exc_info:
            await rate_limiter.enforce("10.0.0.1", "webhook", 1, now=NOW)

        assert exc_info.value.retry_after == 30
        assert exc_info.value.action == "webhook"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_bad_arguments(self, rate_limiter: RateLimiter) -> None:
        with pytest.raises(ValidationError):
            await rate_limiter.check_and_increment("", "order_create", 1)
        with pytest.raises(ValidationError):
            await rate_limiter.check_and_increment("user-1", "order_create", -1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_purge_expired(
        self,
        rate_limiter: RateLimiter,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await rate_limiter.check_and_increment("user-1", "order_create", 5, now=NOW)
        await rate_limiter.check_and_increment(
            "user-1", "order_create", 5, now=datetime(2025, 1, 1, 12, 1, 5)
        )

        purged = await rate_limiter.purge_expired(now=datetime(2025, 1, 1, 12, 1, 0))

        assert purged == 1
        async with session_factory() as session:
            remaining = (
                await session.execute(select(func.count()).select_from(RateLimitCounter))
            ).scalar_one()
        assert remaining == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, rate_limiter: RateLimiter) -> None:
        """
        Concurrent first requests in a window converge on one counter row.
        """
        decisions = await asyncio.gather(
            *(rate_limiter.check_and_increment("user-1", "order_create", 5, now=NOW) for _ in range(8))
        )

        assert sorted(d.count for d in decisions) == list(range(1, 9))
        assert sum(d.allowed for d in decisions) == 5


class TestRedisRateLimitStore:

    @staticmethod
    def _redis(count: int) -> MagicMock:
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[count, True])
        redis_client = MagicMock()
        redis_client.pipeline.return_value = pipe
        return redis_client

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_increment_uses_windowed_key(self) -> None:
        redis_client = self._redis(1)
        limiter = RateLimiter(RedisRateLimitStore(redis_client=redis_client), window_seconds=60)

        decision = await limiter.check_and_increment("user-1", "order_create", 5, now=NOW)

        assert decision.allowed is True
        pipe = redis_client.pipeline.return_value
        redis_client.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with(f"ratelimit:order_create:user-1:{WINDOW_EPOCH}")
        pipe.expireat.assert_called_once_with(
            f"ratelimit:order_create:user-1:{WINDOW_EPOCH}", WINDOW_EPOCH + 60
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_over_limit(self) -> None:
        limiter = RateLimiter(RedisRateLimitStore(redis_client=self._redis(6)), window_seconds=60)

        decision = await limiter.check_and_increment("user-1", "order_create", 5, now=NOW)

        assert decision.allowed is False
        assert decision.retry_after == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_purge_is_noop(self) -> None:
        store = RedisRateLimitStore(redis_client=self._redis(1))

        assert await store.purge_expired(NOW) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close(self) -> None:
        redis_client = self._redis(1)
        redis_client.aclose = AsyncMock()
        store = RedisRateLimitStore(redis_client=redis_client)

        await store.close()

        redis_client.aclose.assert_awaited_once()


class TestStoreSelection:

    @pytest.mark.unit
    def test_database_backend(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        store = create_rate_limit_store(Settings(rate_limit_backend="database"), session_factory)

        assert isinstance(store, SqlRateLimitStore)

    @pytest.mark.unit
    def test_redis_backend(self) -> None:
        store = create_rate_limit_store(
            Settings(rate_limit_backend="redis", redis_url="redis://localhost:6379/3")
        )

        assert isinstance(store, RedisRateLimitStore)
        assert store.redis_url == "redis://localhost:6379/3"
