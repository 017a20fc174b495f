# app/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Pooled Redis client used by the durable email queue."""

    def __init__(self, url: str | None = None, max_connections: int | None = None):
        self.url = url or settings.REDIS_URL
        self.max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self.pool = None
        self.client = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self.url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully", max_connections=self.max_connections
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        """Push a value onto a Redis list (used as a lightweight queue)."""
        try:
            await self._ensure_initialized()
            if left:
                result = await self.client.lpush(key, value)
            else:
                result = await self.client.rpush(key, value)
            return result > 0
        except Exception as e:
            logger.error(
                "Redis LIST push failed", key=key[:30], value_preview=value[:30], error=str(e)
            )
            return False

    async def push_and_trim(self, key: str, value: str, max_length: int) -> bool:
        """Push onto a capped list, keeping only the newest max_length entries."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lpush(key, value)
                pipe.ltrim(key, 0, max_length - 1)
                results = await pipe.execute()
            return bool(results and results[0])
        except Exception as e:
            logger.error("Redis capped push failed", key=key[:30], error=str(e))
            return False

    async def pop_to_inflight(self, source_key: str, inflight_key: str) -> str | None:
        """
        Pop a value from a list and push to an in-flight list (acked queue).

        The in-flight copy survives a worker crash and is recovered on the next start.
        """
        try:
            await self._ensure_initialized()
            return await self.client.lmove(source_key, inflight_key, "RIGHT", "LEFT")
        except Exception as e:
            logger.error(
                "Redis LIST inflight pop failed",
                source_key=source_key[:30],
                inflight_key=inflight_key[:30],
                error=str(e),
            )
            return None

    async def requeue_from_inflight(
        self, inflight_key: str, destination_key: str, value: str
    ) -> bool:
        """Move an item from the in-flight list back to the main queue."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(inflight_key, 0, value)
                pipe.lpush(destination_key, value)
                results = await pipe.execute()
            return bool(results and results[-1] is not None)
        except Exception as e:
            logger.error(
                "Redis inflight requeue failed",
                inflight_key=inflight_key[:30],
                destination_key=destination_key[:30],
                value_preview=value[:30],
                error=str(e),
            )
            return False

    async def delay_from_inflight(
        self, inflight_key: str, delayed_key: str, old_value: str, new_value: str, ready_at: float
    ) -> bool:
        """Swap an in-flight item for a delayed copy scored by its ready timestamp."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(inflight_key, 0, old_value)
                pipe.zadd(delayed_key, {new_value: ready_at})
                await pipe.execute()
            return True
        except Exception as e:
            logger.error(
                "Redis delayed requeue failed",
                inflight_key=inflight_key[:30],
                delayed_key=delayed_key[:30],
                error=str(e),
            )
            return False

    async def finish_from_inflight(
        self, inflight_key: str, history_key: str, old_value: str, new_value: str, max_length: int
    ) -> bool:
        """Remove an in-flight item and record it on a capped history list."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(inflight_key, 0, old_value)
                pipe.lpush(history_key, new_value)
                pipe.ltrim(history_key, 0, max_length - 1)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error(
                "Redis inflight finish failed",
                inflight_key=inflight_key[:30],
                history_key=history_key[:30],
                error=str(e),
            )
            return False

    async def promote_due(self, delayed_key: str, now: float) -> list[str]:
        """
        Pop every delayed member whose score is <= now.

        A member is only returned if this caller removed it, so two workers
        never promote the same entry.
        """
        try:
            await self._ensure_initialized()
            due = await self.client.zrangebyscore(delayed_key, "-inf", now)
            promoted = []
            for member in due:
                if await self.client.zrem(delayed_key, member):
                    promoted.append(member)
            return promoted
        except Exception as e:
            logger.error("Redis delayed promotion failed", key=delayed_key[:30], error=str(e))
            return []

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        """Return a range of values from a list."""
        try:
            await self._ensure_initialized()
            result = await self.client.lrange(key, start, end)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis LRANGE failed", key=key[:30], error=str(e))
            return []

    async def list_length(self, key: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.llen(key))
        except Exception as e:
            logger.error("Redis LLEN failed", key=key[:30], error=str(e))
            return 0

    async def sorted_set_size(self, key: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.zcard(key))
        except Exception as e:
            logger.error("Redis ZCARD failed", key=key[:30], error=str(e))
            return 0


# Global instance
fast_redis = FastRedisClient()
