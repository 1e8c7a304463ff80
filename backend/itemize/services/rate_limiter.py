"""Rate limiting with an injectable backing store.

Both backends expose the same check-and-increment contract: ``hit``
records ``cost`` units against ``key`` and reports whether the caller is
still within ``limit`` for the current window.

* :class:`InMemoryRateLimiter` keeps a sliding window per key inside the
  process and reads time from the injected clock.  Suitable for a single
  API instance and for tests.
* :class:`RedisRateLimiter` uses a fixed window counter in Redis so that
  several API instances share one budget.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Protocol, Tuple

from redis import asyncio as aioredis

from itemize.core.clock import Clock, system_clock


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter(Protocol):
    async def hit(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> RateLimitResult: ...


class RateLimiterUnavailable(RuntimeError):
    pass


class InMemoryRateLimiter:
    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock
        self._hits: Dict[str, Deque[Tuple[dt.datetime, int]]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def hit(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> RateLimitResult:
        now = self._clock.now()
        window = dt.timedelta(seconds=window_seconds)
        async with self._lock:
            entries = self._hits[key]
            while entries and entries[0][0] <= now - window:
                entries.popleft()
            used = sum(n for _, n in entries)
            if used + cost > limit:
                oldest = entries[0][0] if entries else now
                retry_after = max(1, int((oldest + window - now).total_seconds()))
                return RateLimitResult(allowed=False, remaining=max(0, limit - used), retry_after=retry_after)
            entries.append((now, cost))
            return RateLimitResult(allowed=True, remaining=limit - used - cost)

    def reset(self) -> None:
        self._hits.clear()


class RedisRateLimiter:
    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimiter":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def hit(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> RateLimitResult:
        window_id = int(time.time()) // window_seconds
        redis_key = f"rl:{key}:{window_id}"
        # Initialise window and increment atomically
        pipe = self._client.pipeline()
        pipe.set(redis_key, 0, ex=window_seconds, nx=True)
        pipe.incrby(redis_key, cost)
        try:
            _, count = await pipe.execute()
        except Exception as exc:
            raise RateLimiterUnavailable(str(exc)) from exc
        count = int(count)
        if count > limit:
            ttl = await self._client.ttl(redis_key)
            retry_after = int(ttl) if isinstance(ttl, int) and ttl > 0 else window_seconds
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)
        return RateLimitResult(allowed=True, remaining=limit - count)
