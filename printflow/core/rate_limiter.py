"""
Fixed-window rate limiter.

A window is ``[floor(now / window) * window, + window)``. Each
(identifier, action, window) has one counter, incremented atomically by the
store. Two stores exist: the SQL table (default) and Redis.
"""
import calendar
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.config import Settings, get_settings
from printflow.core.errors import Throttled, ValidationError
from printflow.database.connection import get_session_factory
from printflow.database.models import RateLimitCounter, utc_now
from printflow.database.upsert import increment_counter

logger = structlog.get_logger(__name__)


def _epoch(moment: datetime) -> int:
    # Naive datetimes are UTC throughout printflow
    return calendar.timegm(moment.utctimetuple())


def _naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def window_bounds(now: datetime, window_seconds: int) -> Tuple[datetime, datetime]:
    """Return (window_start, window_end) for the window containing ``now``."""
    start_epoch = _epoch(now) // window_seconds * window_seconds
    start = datetime.fromtimestamp(start_epoch, timezone.utc).replace(tzinfo=None)
    return start, start + timedelta(seconds=window_seconds)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int
    window_start: datetime


class RateLimitStore(ABC):
    """Atomic per-window counters."""

    @abstractmethod
    async def increment(
        self, identifier: str, action: str, window_start: datetime, expires_at: datetime
    ) -> int:
        """Increment the window's counter and return the new value."""

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        """Delete counters whose window ended at or before ``now``."""


class SqlRateLimitStore(RateLimitStore):
    """Counters in ``rate_limit_counters``, bumped with a single upsert statement."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or get_session_factory()

    async def increment(
        self, identifier: str, action: str, window_start: datetime, expires_at: datetime
    ) -> int:
        now = utc_now()
        async with self.session_factory() as session, session.begin():
            return await increment_counter(
                session,
                RateLimitCounter,
                values={
                    "identifier": identifier,
                    "action": action,
                    "counter": 1,
                    "window_start": window_start,
                    "expires_at": expires_at,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=("identifier", "action", "window_start"),
                counter_column="counter",
                touch={"updated_at": now},
            )

    async def purge_expired(self, now: datetime) -> int:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                delete(RateLimitCounter).where(RateLimitCounter.expires_at <= now)
            )
        return result.rowcount


class RedisRateLimitStore(RateLimitStore):
    """Counters as Redis keys that expire with their window."""

    KEY_PREFIX = "ratelimit"

    def __init__(self, redis_client: Optional[aioredis.Redis] = None, redis_url: Optional[str] = None):
        self.redis_client = redis_client
        self.redis_url = redis_url or get_settings().redis_url

    def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def key_for(self, identifier: str, action: str, window_start: datetime) -> str:
        return f"{self.KEY_PREFIX}:{action}:{identifier}:{_epoch(window_start)}"

    async def increment(
        self, identifier: str, action: str, window_start: datetime, expires_at: datetime
    ) -> int:
        key = self.key_for(identifier, action, window_start)
        pipe = self._ensure_redis().pipeline(transaction=True)
        pipe.incr(key)
        pipe.expireat(key, _epoch(expires_at))
        count, _ = await pipe.execute()
        return int(count)

    async def purge_expired(self, now: datetime) -> int:
        # Keys carry their own expiry
        return 0

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()


def create_rate_limit_store(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> RateLimitStore:
    """Build the store selected by ``rate_limit_backend``."""
    settings = settings or get_settings()
    if settings.rate_limit_backend == "redis":
        return RedisRateLimitStore(redis_url=settings.redis_url)
    return SqlRateLimitStore(session_factory)


class RateLimiter:
    """Counts requests per (identifier, action) in fixed windows."""

    def __init__(self, store: Optional[RateLimitStore] = None, window_seconds: Optional[int] = None):
        self.store = store or SqlRateLimitStore()
        self.window_seconds = window_seconds or get_settings().rate_limit_window_seconds

    async def check_and_increment(
        self,
        identifier: str,
        action: str,
        limit: int,
        window_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RateLimitDecision:
        """
        Count one request and decide whether it is within ``limit``.

        Args:
            identifier: Who is being limited (user id, IP address)
            action: What is being limited (e.g. ``order_create``)
            limit: Requests allowed per window
            window_seconds: Window size; defaults to the configured window
            now: Current time; aware values are converted to naive UTC

        Returns:
            RateLimitDecision: ``allowed`` is False once the count passes the limit
        """
        if not identifier or not action:
            raise ValidationError("identifier and action are required")
        if limit < 0:
            raise ValidationError("limit must not be negative", field="limit")
        window = window_seconds or self.window_seconds
        if window < 1:
            raise ValidationError("window_seconds must be positive", field="window_seconds")

        now = _naive_utc(now) if now is not None else utc_now()
        window_start, window_end = window_bounds(now, window)
        count = await self.store.increment(identifier, action, window_start, window_end)
        allowed = count <= limit
        retry_after = 0 if allowed else max(1, math.ceil((window_end - now).total_seconds()))

        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                action=action,
                count=count,
                limit=limit,
                retry_after=retry_after,
            )
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=limit,
            retry_after=retry_after,
            window_start=window_start,
        )

    async def enforce(
        self,
        identifier: str,
        action: str,
        limit: int,
        window_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RateLimitDecision:
        """Like check_and_increment, but raises Throttled when over the limit."""
        decision = await self.check_and_increment(identifier, action, limit, window_seconds, now)
        if not decision.allowed:
            raise Throttled(identifier, action, limit, decision.retry_after)
        return decision

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = _naive_utc(now) if now is not None else utc_now()
        purged = await self.store.purge_expired(now)
        if purged:
            logger.info("rate_limit_counters_purged", count=purged)
        return purged
