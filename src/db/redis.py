"""Shared redis.asyncio client backing the local entity cache."""

from loguru import logger
from redis.asyncio import Redis

from config.settings import settings
from src.store.local import RedisEntityStore

_redis_client: Redis | None = None


async def get_redis(url: str | None = None) -> Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(url or settings.redis_url, decode_responses=True)
    return _redis_client


async def get_local_store(url: str | None = None) -> RedisEntityStore:
    return RedisEntityStore(await get_redis(url))


async def ping_redis() -> bool:
    """True when the cache answers; the indexer still runs without it."""
    try:
        client = await get_redis()
        return bool(await client.ping())
    except Exception as e:
        logger.warning(f"[REDIS] Ping failed: {e}")
        return False


async def close_redis() -> None:
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
