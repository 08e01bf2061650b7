from __future__ import annotations

import hashlib
import threading
import time
import uuid
from typing import Callable, Dict, List, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tenantguard.logging import get_logger
from tenantguard.service.errors import DependencyError

logger = get_logger(__name__)


class RateLimiter(Protocol):
    name: str

    async def allow(self, key: str) -> bool: ...


class SlidingWindowRateLimiter:
    """Per-key sliding window of attempt timestamps behind one mutex.

    ``allow`` is the only mutator. Work per call is bounded by
    ``max_attempts`` because a key's list never grows past it.
    """

    def __init__(
        self,
        name: str,
        *,
        max_attempts: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts <= 0 or window_seconds <= 0:
            raise ValueError("rate limiter needs a positive limit and window")
        self.name = name
        self.max_attempts = max_attempts
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._attempts: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    async def allow(self, key: str) -> bool:
        return self.allow_sync(key)

    def allow_sync(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            recent = [ts for ts in self._attempts.get(key, ()) if ts > cutoff]
            if len(recent) >= self.max_attempts:
                self._attempts[key] = recent
                allowed = False
            else:
                recent.append(now)
                self._attempts[key] = recent
                allowed = True
            if allowed and len(self._attempts) > 1024:
                self._prune(cutoff)
        if not allowed:
            logger.debug("rate_limit_exceeded", limiter=self.name, key=key)
        return allowed

    def _prune(self, cutoff: float) -> None:
        # Keys whose whole window has drained carry no state worth keeping
        stale = [
            key
            for key, stamps in self._attempts.items()
            if not stamps or stamps[-1] <= cutoff
        ]
        for key in stale:
            del self._attempts[key]

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()


class RedisRateLimiter:
    """Sliding window kept in a Redis sorted set so limits hold across instances."""

    # Trim, count and append atomically
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  return 0
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return 1
"""

    def __init__(
        self,
        name: str,
        client: aioredis.Redis,
        *,
        max_attempts: int,
        window_seconds: float,
    ) -> None:
        self.name = name
        self.client = client
        self.max_attempts = max_attempts
        self.window_seconds = float(window_seconds)
        self._script = client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def _normalize_key(self, key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{self.name}:{digest}"

    async def allow(self, key: str) -> bool:
        try:
            allowed = await self._script(
                keys=[self._normalize_key(key)],
                args=[
                    time.time(),
                    self.window_seconds,
                    self.max_attempts,
                    uuid.uuid4().hex,
                ],
            )
        except RedisError as exc:
            logger.error("rate_limiter_unavailable", limiter=self.name, error=str(exc))
            raise DependencyError("rate limiter unavailable") from exc
        if not int(allowed):
            logger.debug("rate_limit_exceeded", limiter=self.name, key=key)
            return False
        return True


__all__ = ["RateLimiter", "RedisRateLimiter", "SlidingWindowRateLimiter"]
