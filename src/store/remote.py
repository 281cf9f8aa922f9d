"""SQL-backed durable store shared by every indexer process.

Concurrent writers resolve by last-write-wins on entity rows. The cursor
row only ever moves forward.
"""

from collections.abc import Sequence
from datetime import UTC, datetime

from loguru import logger
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.indexer.entities import (
    Entity,
    IndexKey,
    IndexKind,
    LaunchEntity,
    LaunchStatus,
    PositionEntity,
    ScanCursor,
)
from src.indexer.errors import StoreReadError, StoreWriteError
from src.models.cursor import IndexCursor
from src.models.launch import Launch
from src.models.position import LpPosition

# SQLite caps bound parameters per statement
UPSERT_CHUNK = 500


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise StoreWriteError(f"unsupported database dialect: {dialect}")


def _launch_values(chain_id: int, entity: LaunchEntity) -> dict:
    return {
        "chain_id": chain_id,
        "token": entity.token,
        "name": entity.name,
        "symbol": entity.symbol,
        "media_uri": entity.media_uri,
        "creator": entity.creator,
        "quote_asset": entity.quote_asset,
        "timestamp": entity.timestamp,
        "block_number": entity.block_number,
        "raised": str(entity.raised),
        "base_sold": str(entity.base_sold),
        "progress": entity.progress,
        "status": entity.status.value,
        "updated_at": datetime.now(UTC),
    }


def _position_values(entity: PositionEntity) -> dict:
    return {
        "owner": entity.owner,
        "token_id": str(entity.token_id),
        "chain_id": entity.chain_id,
        "token0": entity.token0,
        "token1": entity.token1,
        "fee": entity.fee,
        "tick_lower": entity.tick_lower,
        "tick_upper": entity.tick_upper,
        "liquidity": str(entity.liquidity),
        "tokens_owed0": str(entity.tokens_owed0),
        "tokens_owed1": str(entity.tokens_owed1),
        "pool": entity.pool,
        "status": entity.status.value,
        "last_seen_block": entity.last_seen_block,
        "updated_at": datetime.now(UTC),
    }


def _launch_from_row(row: Launch) -> LaunchEntity:
    return LaunchEntity(
        token=row.token,
        name=row.name,
        symbol=row.symbol,
        media_uri=row.media_uri,
        creator=row.creator,
        quote_asset=row.quote_asset,
        timestamp=row.timestamp,
        block_number=row.block_number,
        raised=int(row.raised),
        base_sold=int(row.base_sold),
        progress=row.progress,
        status=LaunchStatus(row.status),
    )


def _position_from_row(row: LpPosition) -> PositionEntity:
    return PositionEntity(
        owner=row.owner,
        token_id=int(row.token_id),
        chain_id=row.chain_id,
        token0=row.token0,
        token1=row.token1,
        fee=row.fee,
        tick_lower=row.tick_lower,
        tick_upper=row.tick_upper,
        liquidity=int(row.liquidity),
        tokens_owed0=int(row.tokens_owed0),
        tokens_owed1=int(row.tokens_owed1),
        pool=row.pool,
        last_seen_block=row.last_seen_block,
    )


class SqlEntityStore:
    name = "remote"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_cursor(self, index_key: IndexKey) -> ScanCursor | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(IndexCursor, str(index_key))
        except Exception as e:
            raise StoreReadError(f"cursor read failed: {e}", key=str(index_key)) from e
        if row is None:
            return None
        return ScanCursor(
            index_key=row.index_key,
            block_number=row.block_number,
            updated_at=row.updated_at,
        )

    async def set_cursor(self, index_key: IndexKey, block_number: int) -> None:
        try:
            async with self._session_factory() as session:
                insert = _insert_for(session)
                stmt = insert(IndexCursor).values(
                    index_key=str(index_key),
                    block_number=block_number,
                    updated_at=datetime.now(UTC),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[IndexCursor.index_key],
                    set_={
                        "block_number": stmt.excluded.block_number,
                        "updated_at": stmt.excluded.updated_at,
                    },
                    # never move the durable cursor backwards
                    where=IndexCursor.block_number < stmt.excluded.block_number,
                )
                await session.execute(stmt)
                await session.commit()
        except StoreWriteError:
            raise
        except Exception as e:
            raise StoreWriteError(f"cursor write failed: {e}", key=str(index_key)) from e

    async def get_entities(self, index_key: IndexKey) -> dict[str, Entity]:
        try:
            async with self._session_factory() as session:
                if index_key.kind is IndexKind.LAUNCHES:
                    result = await session.execute(
                        select(Launch).where(Launch.chain_id == index_key.chain_id)
                    )
                    entities = [_launch_from_row(r) for r in result.scalars().all()]
                else:
                    result = await session.execute(
                        select(LpPosition).where(
                            LpPosition.chain_id == index_key.chain_id,
                            LpPosition.owner == index_key.owner,
                        )
                    )
                    entities = [_position_from_row(r) for r in result.scalars().all()]
        except Exception as e:
            raise StoreReadError(f"entities read failed: {e}", key=str(index_key)) from e
        return {e.key: e for e in entities}

    async def upsert_entities(self, index_key: IndexKey, entities: Sequence[Entity]) -> None:
        if not entities:
            return
        try:
            async with self._session_factory() as session:
                insert = _insert_for(session)
                if index_key.kind is IndexKind.LAUNCHES:
                    table = Launch
                    rows = [_launch_values(index_key.chain_id, e) for e in entities]
                    keys = [Launch.chain_id, Launch.token]
                    skip = {"chain_id", "token"}
                else:
                    table = LpPosition
                    rows = [_position_values(e) for e in entities]
                    keys = [LpPosition.owner, LpPosition.token_id, LpPosition.chain_id]
                    skip = {"owner", "token_id", "chain_id"}

                for i in range(0, len(rows), UPSERT_CHUNK):
                    stmt = insert(table).values(rows[i : i + UPSERT_CHUNK])
                    stmt = stmt.on_conflict_do_update(
                        index_elements=keys,
                        set_={col: stmt.excluded[col] for col in rows[0] if col not in skip},
                    )
                    await session.execute(stmt)
                await session.commit()
        except StoreWriteError:
            raise
        except Exception as e:
            raise StoreWriteError(
                f"upsert of {len(entities)} entities failed: {e}", key=str(index_key)
            ) from e
        logger.debug(f"[STORE] Upserted {len(entities)} rows for {index_key}")
