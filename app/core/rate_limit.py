import math
from typing import Dict, Optional, Tuple

from app.core.clock import Clock, SystemClock
from app.core.exceptions import RateLimited
from app.core.logger import logger
from app.core.redis import RedisClient


class AttemptStore:
    """Key/TTL counter used by :class:`RateLimiter`."""

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Record one attempt and return ``(count, seconds_until_reset)``."""
        raise NotImplementedError

    async def reset(self, key: str) -> None:
        raise NotImplementedError


class RedisAttemptStore(AttemptStore):
    def __init__(self, client: RedisClient):
        self.client = client

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        return await self.client.incr_attempt(key, window_seconds)

    async def reset(self, key: str) -> None:
        await self.client.reset_attempts(key)


class MemoryAttemptStore(AttemptStore):
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[int, float]] = {}

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = self.clock.now().timestamp()
        count, reset_at = self._entries.get(key, (0, 0.0))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        self._entries[key] = (count, reset_at)
        return count, math.ceil(reset_at - now)

    async def reset(self, key: str) -> None:
        self._entries.pop(key, None)


class RateLimiter:
    def __init__(self, store: AttemptStore, max_attempts: int, window_seconds: int):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    async def check(self, key: str) -> int:
        """Count an attempt for ``key``; raise :class:`RateLimited` once over the limit."""
        count, retry_after = await self.store.hit(key, self.window_seconds)
        if count > self.max_attempts:
            logger.warning(f"Rate limit exceeded | Key: {key} | Attempts: {count}")
            minutes = max(1, math.ceil(retry_after / 60))
            raise RateLimited(
                f"Too many attempts. Please try again in {minutes} minutes.",
                retry_after=retry_after,
            )
        return self.max_attempts - count

    async def clear(self, key: str) -> None:
        await self.store.reset(key)
