from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol
from uuid import uuid4

from fastapi import Request
from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantgate.core.config import get_settings
from tenantgate.core.errors import RateLimited


logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    # Sliding-window counter backend; swap in-memory for Redis without touching callers.
    async def increment(self, key: str, window_s: int) -> int:
        ...

    async def get(self, key: str, window_s: int) -> int:
        ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after_s: int
    degraded: bool = False


class InMemoryCounterStore:
    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        sweep_every: int = 256,
    ) -> None:
        self._time_provider = time_provider or time.monotonic
        self._hits: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()
        self._sweep_every = max(1, sweep_every)
        self._calls_since_sweep = 0

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def _prune(self, key: str, now: float, window_s: int) -> deque[float]:
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        cutoff = now - window_s
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if not hits:
            del self._hits[key]
        return hits

    def _sweep(self, now: float, window_s: int) -> None:
        # Drop keys whose newest hit already left the window.
        cutoff = now - window_s
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("rate_limit_sweep removed=%s remaining=%s", len(stale), len(self._hits))

    async def increment(self, key: str, window_s: int) -> int:
        async with self._lock:
            now = self._time_provider()
            self._calls_since_sweep += 1
            if self._calls_since_sweep >= self._sweep_every:
                self._calls_since_sweep = 0
                self._sweep(now, window_s)
            hits = self._prune(key, now, window_s)
            hits.append(now)
            self._hits[key] = hits
            return len(hits)

    async def get(self, key: str, window_s: int) -> int:
        async with self._lock:
            return len(self._prune(key, self._time_provider(), window_s))


class RedisCounterStore:
    # Sorted set per key: member per hit, score is the hit time in ms.
    def __init__(self, redis: Redis, *, prefix: str, time_provider: Callable[[], float] | None = None) -> None:
        self._redis = redis
        self._prefix = prefix
        self._time_provider = time_provider or time.time

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def increment(self, key: str, window_s: int) -> int:
        now_ms = int(self._time_provider() * 1000)
        redis_key = self._key(key)
        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, now_ms - window_s * 1000)
        pipe.zadd(redis_key, {f"{now_ms}-{uuid4().hex}": now_ms})
        pipe.zcard(redis_key)
        pipe.expire(redis_key, window_s)
        results = await pipe.execute()
        return int(results[2])

    async def get(self, key: str, window_s: int) -> int:
        now_ms = int(self._time_provider() * 1000)
        redis_key = self._key(key)
        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, now_ms - window_s * 1000)
        pipe.zcard(redis_key)
        results = await pipe.execute()
        return int(results[1])


class SlidingWindowLimiter:
    def __init__(self, store: CounterStore, *, limit: int, window_s: int, fail_mode: str = "open") -> None:
        self._store = store
        self._limit = limit
        self._window_s = window_s
        self._fail_mode = fail_mode

    @property
    def store(self) -> CounterStore:
        return self._store

    async def hit(self, key: str) -> RateLimitDecision:
        try:
            count = await self._store.increment(key, self._window_s)
        except (RedisError, OSError) as exc:
            # Counter store outage: honor the configured fail mode.
            logger.warning("rate_limit_store_unavailable key=%s fail_mode=%s", key, self._fail_mode, exc_info=exc)
            allowed = self._fail_mode != "closed"
            return RateLimitDecision(
                allowed=allowed,
                count=0,
                limit=self._limit,
                retry_after_s=0 if allowed else self._window_s,
                degraded=True,
            )
        allowed = count <= self._limit
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=self._limit,
            retry_after_s=0 if allowed else int(math.ceil(self._window_s)),
        )


_limiter: SlidingWindowLimiter | None = None
_redis_client: Redis | None = None


def _build_store() -> CounterStore:
    global _redis_client
    settings = get_settings()
    if settings.rate_limit_backend == "redis":
        if _redis_client is None:
            _redis_client = Redis.from_url(settings.redis_url)
        return RedisCounterStore(_redis_client, prefix=settings.rl_redis_prefix)
    return InMemoryCounterStore()


def get_auth_rate_limiter() -> SlidingWindowLimiter:
    global _limiter
    if _limiter is None:
        settings = get_settings()
        _limiter = SlidingWindowLimiter(
            _build_store(),
            limit=settings.rl_auth_max_requests,
            window_s=settings.rl_auth_window_s,
            fail_mode=settings.rl_fail_mode,
        )
    return _limiter


def set_auth_rate_limiter(limiter: SlidingWindowLimiter | None) -> None:
    global _limiter
    _limiter = limiter


def reset_rate_limiter_state() -> None:
    # Reset cached limiter and Redis client for deterministic tests.
    global _limiter, _redis_client
    _limiter = None
    _redis_client = None


def client_key(request: Request, actor_id: str | None) -> str:
    client_host = request.client.host if request.client else "unknown"
    return f"auth:{client_host}:{actor_id or 'anonymous'}"


async def enforce_auth_rate_limit(request: Request, actor_id: str | None) -> RateLimitDecision | None:
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None
    limiter = get_auth_rate_limiter()
    key = client_key(request, actor_id)
    decision = await limiter.hit(key)
    if not decision.allowed:
        logger.info("rate_limited key=%s count=%s limit=%s", key, decision.count, decision.limit)
        raise RateLimited(
            "Too many requests, try again later",
            details={"retry_after_s": decision.retry_after_s},
            headers={"Retry-After": str(decision.retry_after_s)},
        )
    return decision
