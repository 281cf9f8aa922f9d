"""Tests for the Redis-backed local cache (FakeRedis stub)."""

import pytest

from src.indexer.entities import IndexKey, LaunchEntity, PositionEntity
from src.indexer.errors import StoreReadError, StoreWriteError
from src.store.local import RedisEntityStore
from tests.fakes import CHAIN_ID, OWNER, addr

LAUNCHES = IndexKey.launches(CHAIN_ID)
POSITIONS = IndexKey.positions(CHAIN_ID, OWNER)


@pytest.mark.asyncio
async def test_entities_round_trip_with_big_ints(fake_redis):
    store = RedisEntityStore(fake_redis)
    big = 2**200 + 1
    launch = LaunchEntity(token=addr(1), name="Cat", raised=big, base_sold=big, media_uri="ipfs://x")
    await store.upsert_entities(LAUNCHES, [launch])

    loaded = await store.get_entities(LAUNCHES)
    assert loaded == {launch.key: launch}
    assert loaded[launch.key].raised == big


@pytest.mark.asyncio
async def test_upsert_overwrites_by_key(fake_redis):
    store = RedisEntityStore(fake_redis)
    pos = PositionEntity(owner=OWNER, token_id=1, chain_id=CHAIN_ID, liquidity=10)
    await store.upsert_entities(POSITIONS, [pos])
    await store.upsert_entities(POSITIONS, [pos.with_live_metrics(liquidity=0, tokens_owed0=0, tokens_owed1=0)])

    loaded = await store.get_entities(POSITIONS)
    assert len(loaded) == 1
    assert not loaded[pos.key].is_live


@pytest.mark.asyncio
async def test_cursor_round_trip_and_rewind(fake_redis):
    store = RedisEntityStore(fake_redis)
    assert await store.get_cursor(LAUNCHES) is None

    await store.set_cursor(LAUNCHES, 500)
    await store.set_cursor(LAUNCHES, 400)
    cursor = await store.get_cursor(LAUNCHES)
    assert cursor.block_number == 400
    assert cursor.index_key == str(LAUNCHES)
    assert not cursor.is_stale(60_000)


@pytest.mark.asyncio
async def test_token_ids_replace_and_clear(fake_redis):
    store = RedisEntityStore(fake_redis)
    await store.set_token_ids(POSITIONS, {1, 2, 3})
    await store.set_token_ids(POSITIONS, {3, 4})
    assert await store.get_token_ids(POSITIONS) == {3, 4}

    await store.set_cursor(POSITIONS, 10)
    await store.clear(POSITIONS)
    assert await store.get_token_ids(POSITIONS) == set()
    assert await store.get_cursor(POSITIONS) is None
    assert await store.get_entities(POSITIONS) == {}


@pytest.mark.asyncio
async def test_corrupt_entry_is_dropped(fake_redis):
    store = RedisEntityStore(fake_redis)
    launch = LaunchEntity(token=addr(1))
    await store.upsert_entities(LAUNCHES, [launch])
    fake_redis.hashes[f"idx:{LAUNCHES}:entities"]["garbage"] = "{not json"

    assert list(await store.get_entities(LAUNCHES)) == [launch.key]


@pytest.mark.asyncio
async def test_connection_errors_are_typed(fake_redis):
    store = RedisEntityStore(fake_redis)
    fake_redis.broken = True
    with pytest.raises(StoreReadError):
        await store.get_entities(LAUNCHES)
    with pytest.raises(StoreReadError):
        await store.get_cursor(LAUNCHES)
    with pytest.raises(StoreWriteError):
        await store.upsert_entities(LAUNCHES, [LaunchEntity(token=addr(1))])
    with pytest.raises(StoreWriteError):
        await store.set_token_ids(POSITIONS, {1})


@pytest.mark.asyncio
async def test_clear_connection_error_is_typed(fake_redis):
    store = RedisEntityStore(fake_redis)
    fake_redis.broken = True
    with pytest.raises(StoreWriteError):
        await store.clear(POSITIONS)
