from __future__ import annotations

import math
from typing import Any


class FakeClock:
    # Mutable wall clock shared by the limiter and the fake cache.
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the limiter uses."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self._clock = clock or FakeClock()
        self._values: dict[str, Any] = {}
        self._expiry: dict[str, float] = {}

    def _purge(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        self._purge(key)
        value = self._values.get(key)
        return None if value is None else str(value)

    async def set(self, key: str, value: Any, ex: int | None = None) -> bool:
        self._values[key] = value
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        else:
            self._expiry.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        self._purge(key)
        value = int(self._values.get(key) or 0) + 1
        self._values[key] = value
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self._purge(key)
        if key not in self._values:
            return False
        self._expiry[key] = self._clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._values:
            return -2
        expires_at = self._expiry.get(key)
        if expires_at is None:
            return -1
        return math.ceil(expires_at - self._clock())

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._values.pop(key, None) is not None:
                removed += 1
            self._expiry.pop(key, None)
        return removed

    def _zset(self, key: str) -> dict[str, float]:
        self._purge(key)
        return self._values.setdefault(key, {})

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        members = self._zset(key)
        added = sum(1 for member in mapping if member not in members)
        members.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zcard(self, key: str) -> int:
        return len(self._zset(key))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        members = self._zset(key)
        doomed = [member for member, score in members.items() if min_score <= score <= max_score]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        ordered = sorted(self._zset(key).items(), key=lambda item: item[1])
        stop = len(ordered) if end == -1 else end + 1
        window = ordered[start:stop]
        if withscores:
            return window
        return [member for member, _score in window]


class BrokenRedis:
    # Every command fails, like a cache that is down.
    def __getattr__(self, name: str) -> Any:
        async def _fail(*args: Any, **kwargs: Any) -> Any:
            raise ConnectionError("cache unavailable")

        return _fail
