import redis.asyncio as redis
from app.core.config import settings

class RedisClient:
    def __init__(self, url: str = settings.REDIS_URL):
        self.redis = redis.from_url(url, encoding="utf-8", decode_responses=True)

    async def incr_attempt(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Count one attempt under ``key``; the window starts on the first attempt."""
        name = f"attempts:{key}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(name)
            pipe.expire(name, window_seconds, nx=True)
            pipe.ttl(name)
            count, _, ttl = await pipe.execute()
        return int(count), int(ttl)

    async def reset_attempts(self, key: str):
        await self.redis.delete(f"attempts:{key}")

    async def publish(self, channel: str, message: str) -> int:
        return await self.redis.publish(channel, message)

    async def close(self):
        await self.redis.aclose()

redis_client = RedisClient()
