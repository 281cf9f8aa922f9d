"""Redis-backed local cache: fast, ephemeral, one process or host."""

from collections.abc import Sequence
from datetime import UTC, datetime

from loguru import logger
from redis.asyncio import Redis

from src.indexer.entities import ENTITY_MODELS, Entity, IndexKey, ScanCursor
from src.indexer.errors import StoreReadError, StoreWriteError

KEY_PREFIX = "idx"


def _entities_key(index_key: IndexKey) -> str:
    return f"{KEY_PREFIX}:{index_key}:entities"


def _cursor_key(index_key: IndexKey) -> str:
    return f"{KEY_PREFIX}:{index_key}:cursor"


def _token_ids_key(index_key: IndexKey) -> str:
    return f"{KEY_PREFIX}:{index_key}:token_ids"


class RedisEntityStore:
    """Entity snapshots as a JSON hash per index key, cursor as a small hash.

    Unlike the remote store the local cursor is written as given, so
    clearing or rewinding the cache is possible.
    """

    name = "local"

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get_cursor(self, index_key: IndexKey) -> ScanCursor | None:
        try:
            raw = await self._redis.hgetall(_cursor_key(index_key))
        except Exception as e:
            raise StoreReadError(f"redis cursor read failed: {e}", key=str(index_key)) from e
        if not raw or "block" not in raw:
            return None
        updated_at = raw.get("updated_at")
        return ScanCursor(
            index_key=str(index_key),
            block_number=int(raw["block"]),
            updated_at=(
                datetime.fromisoformat(updated_at) if updated_at else datetime.fromtimestamp(0, UTC)
            ),
        )

    async def set_cursor(self, index_key: IndexKey, block_number: int) -> None:
        try:
            await self._redis.hset(
                _cursor_key(index_key),
                mapping={
                    "block": str(block_number),
                    "updated_at": datetime.now(UTC).isoformat(),
                },
            )
        except Exception as e:
            raise StoreWriteError(f"redis cursor write failed: {e}", key=str(index_key)) from e

    async def get_entities(self, index_key: IndexKey) -> dict[str, Entity]:
        try:
            raw = await self._redis.hgetall(_entities_key(index_key))
        except Exception as e:
            raise StoreReadError(f"redis entities read failed: {e}", key=str(index_key)) from e

        model = ENTITY_MODELS[index_key.kind]
        entities: dict[str, Entity] = {}
        for key, payload in raw.items():
            try:
                entities[key] = model.model_validate_json(payload)
            except Exception as e:
                # corrupt entries are dropped; the next scan or remote read restores them
                logger.warning(f"[STORE] Dropping unreadable cached entry {key}: {e}")
        return entities

    async def upsert_entities(self, index_key: IndexKey, entities: Sequence[Entity]) -> None:
        if not entities:
            return
        try:
            await self._redis.hset(
                _entities_key(index_key),
                mapping={e.key: e.model_dump_json() for e in entities},
            )
        except Exception as e:
            raise StoreWriteError(f"redis entities write failed: {e}", key=str(index_key)) from e

    async def get_token_ids(self, index_key: IndexKey) -> set[int]:
        try:
            members = await self._redis.smembers(_token_ids_key(index_key))
        except Exception as e:
            raise StoreReadError(f"redis token ids read failed: {e}", key=str(index_key)) from e
        return {int(m) for m in members}

    async def set_token_ids(self, index_key: IndexKey, token_ids: set[int]) -> None:
        key = _token_ids_key(index_key)
        try:
            pipe = self._redis.pipeline()
            pipe.delete(key)
            if token_ids:
                pipe.sadd(key, *[str(t) for t in sorted(token_ids)])
            await pipe.execute()
        except Exception as e:
            raise StoreWriteError(f"redis token ids write failed: {e}", key=str(index_key)) from e

    async def clear(self, index_key: IndexKey) -> None:
        """Drop everything cached for one index key."""
        try:
            await self._redis.delete(
                _entities_key(index_key), _cursor_key(index_key), _token_ids_key(index_key)
            )
        except Exception as e:
            raise StoreWriteError(f"redis clear failed: {e}", key=str(index_key)) from e
        logger.info(f"[STORE] Cleared local cache for {index_key}")
