"""Shared test fixtures."""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from src.indexer.config import IndexerConfig
from src.models import Base
from tests.fakes import CHAIN_ID, LAUNCHPAD, POSITION_MANAGER, FakeChain, FakeRedis, MemoryStore


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def config() -> IndexerConfig:
    return IndexerConfig(
        chain_id=CHAIN_ID,
        launchpad_address=LAUNCHPAD,
        position_manager_address=POSITION_MANAGER,
        start_block=0,
        lookback_blocks=9000,
        batch_size=5000,
        max_block_range=9500,
        positions_lookback_blocks=400_000,
        positions_batch_size=9000,
        recent_window_blocks=50_000,
        refresh_chunk_size=10,
        cache_staleness_ms=5 * 60 * 1000,
    )


@pytest.fixture
def local_store() -> MemoryStore:
    return MemoryStore("local")


@pytest.fixture
def remote_store() -> MemoryStore:
    return MemoryStore("remote", monotonic=True)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database per test (TEST_DATABASE_URL overrides)."""
    url = os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'index.db'}")
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
