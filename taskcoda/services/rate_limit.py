from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import random
import time
from typing import Any, Callable

from redis.asyncio import Redis

from taskcoda.core.config import get_settings


logger = logging.getLogger(__name__)

KIND_CHAT = "chat"
KIND_API = "api"


@dataclass(frozen=True)
class RateLimitWindow:
    limit: int
    window: int


RATE_LIMITS: dict[str, RateLimitWindow] = {
    # AI chat, per organization per hour.
    "CHAT_FREE": RateLimitWindow(limit=10, window=3600),
    "CHAT_PRO": RateLimitWindow(limit=100, window=3600),
    "CHAT_ENTERPRISE": RateLimitWindow(limit=1000, window=3600),
    # Generic API, per day.
    "API_FREE": RateLimitWindow(limit=100, window=86400),
    "API_PRO": RateLimitWindow(limit=10_000, window=86400),
    "API_ENTERPRISE": RateLimitWindow(limit=100_000, window=86400),
    # Auth attempts, per caller.
    "AUTH_LOGIN": RateLimitWindow(limit=5, window=900),
    "AUTH_SIGNUP": RateLimitWindow(limit=3, window=3600),
    "GENERAL": RateLimitWindow(limit=60, window=60),
}

_PLAN_LIMITS: dict[str, dict[str, str]] = {
    KIND_CHAT: {"pro": "CHAT_PRO", "enterprise": "CHAT_ENTERPRISE"},
    KIND_API: {"pro": "API_PRO", "enterprise": "API_ENTERPRISE"},
}
_DEFAULT_LIMITS = {KIND_CHAT: "CHAT_FREE", KIND_API: "API_FREE"}


@dataclass(frozen=True)
class RateLimitResult:
    # Outcome of one throttle check; reset is a unix timestamp in seconds.
    success: bool
    limit: int
    remaining: int
    reset: int
    retry_after: int | None = None
    degraded: bool = False


def get_rate_limit_for_plan(plan: str | None, kind: str) -> RateLimitWindow:
    # Unknown plans use the free tier for the requested kind.
    names = _PLAN_LIMITS.get(kind, _PLAN_LIMITS[KIND_API])
    default = _DEFAULT_LIMITS.get(kind, _DEFAULT_LIMITS[KIND_API])
    return RATE_LIMITS[names.get(plan or "", default)]


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }
    if not result.success:
        headers["Retry-After"] = str(result.retry_after or 60)
    return headers


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis | None:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    settings = get_settings()
    if not settings.redis_url:
        return None
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RateLimiter:
    """Short-window request throttles backed by Redis.

    Two interchangeable algorithms share one result shape: a sorted-set
    sliding window and an INCR/EXPIRE fixed window. Both fail open, so a
    cache outage (or no cache configured) admits the request with
    ``remaining == limit`` and logs a warning.
    """

    def __init__(
        self,
        *,
        redis: Any | None = None,
        time_provider: Callable[[], float] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        # Allow injecting the cache client and time for deterministic tests.
        self._redis = redis
        self._time_provider = time_provider or time.time
        self._logger = logger or logging.getLogger(__name__)

    async def _client(self) -> Any:
        if self._redis is not None:
            return self._redis
        client = await _get_redis()
        if client is None:
            raise RuntimeError("rate limit cache not configured")
        return client

    def _fail_open(self, key: str, limit: int, window: int, now_ms: int, exc: Exception) -> RateLimitResult:
        self._logger.warning("rate_limit_degraded key=%s error=%s", key, type(exc).__name__)
        return RateLimitResult(
            success=True,
            limit=limit,
            remaining=limit,
            reset=math.ceil((now_ms + window * 1000) / 1000),
            degraded=True,
        )

    async def check_sliding(self, key: str, limit: int, window: int, prefix: str = "rl") -> RateLimitResult:
        # Count entries inside the trailing window; admit and record when below the limit.
        redis_key = f"{prefix}:{key}"
        now_ms = int(self._time_provider() * 1000)
        window_start = now_ms - window * 1000
        try:
            redis = await self._client()
            await redis.zremrangebyscore(redis_key, 0, window_start)
            current = int(await redis.zcard(redis_key))

            if current >= limit:
                oldest = await redis.zrange(redis_key, 0, 0, withscores=True)
                if oldest:
                    reset_ms = float(oldest[0][1]) + window * 1000
                else:
                    reset_ms = now_ms + window * 1000
                return RateLimitResult(
                    success=False,
                    limit=limit,
                    remaining=0,
                    reset=math.ceil(reset_ms / 1000),
                    retry_after=math.ceil((reset_ms - now_ms) / 1000),
                )

            await redis.zadd(redis_key, {f"{now_ms}-{random.random()}": now_ms})
            await redis.expire(redis_key, window)
            return RateLimitResult(
                success=True,
                limit=limit,
                remaining=limit - (current + 1),
                reset=math.ceil((now_ms + window * 1000) / 1000),
            )
        except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
            return self._fail_open(redis_key, limit, window, now_ms, exc)

    async def check_simple(self, key: str, limit: int, window: int, prefix: str = "rl") -> RateLimitResult:
        # Fixed window: the increment that creates the key starts its TTL.
        redis_key = f"{prefix}:{key}"
        now_ms = int(self._time_provider() * 1000)
        try:
            redis = await self._client()
            count = int(await redis.incr(redis_key))
            if count == 1:
                await redis.expire(redis_key, window)
            ttl = int(await redis.ttl(redis_key))
            reset_ms = now_ms + (ttl * 1000 if ttl > 0 else window * 1000)

            if count > limit:
                return RateLimitResult(
                    success=False,
                    limit=limit,
                    remaining=0,
                    reset=math.ceil(reset_ms / 1000),
                    retry_after=ttl if ttl > 0 else window,
                )
            return RateLimitResult(
                success=True,
                limit=limit,
                remaining=max(0, limit - count),
                reset=math.ceil(reset_ms / 1000),
            )
        except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
            return self._fail_open(redis_key, limit, window, now_ms, exc)

    async def check(self, key: str, limit: int, window: int, prefix: str = "rl") -> RateLimitResult:
        # Dispatch to the configured algorithm.
        if get_settings().rl_algorithm.lower() == "sliding":
            return await self.check_sliding(key, limit, window, prefix)
        return await self.check_simple(key, limit, window, prefix)

    async def reset(self, key: str, prefix: str = "rl") -> None:
        # Admin reset; cache errors propagate to the caller.
        redis = await self._client()
        await redis.delete(f"{prefix}:{key}")

    async def status(self, key: str, prefix: str = "rl") -> dict[str, int]:
        # Read the fixed-window counter without incrementing it.
        redis_key = f"{prefix}:{key}"
        try:
            redis = await self._client()
            count = await redis.get(redis_key)
            ttl = int(await redis.ttl(redis_key))
        except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
            self._logger.warning("rate_limit_status_failed key=%s error=%s", redis_key, type(exc).__name__)
            return {"count": 0, "ttl": 0}
        return {"count": int(count or 0), "ttl": ttl if ttl > 0 else 0}


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Cache the rate limiter so requests share Redis connections and time provider.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    # Swap the shared limiter (tests inject one backed by an in-memory cache).
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


async def ping_cache() -> bool | None:
    # None when no cache is configured; raises on connectivity failures.
    redis = await _get_redis()
    if redis is None:
        return None
    return bool(await redis.ping())
