"""Tests for one worker refresh round."""

import pytest

from src.indexer.entities import IndexKey
from src.indexer.errors import TransientIOError
from src.indexer.reconciler import PassResult
from src.worker import run_once
from tests.fakes import CHAIN_ID, OTHER, OWNER


class StubLaunches:
    def __init__(self):
        self.calls = 0

    async def run_pass(self):
        self.calls += 1
        return PassResult(IndexKey.launches(CHAIN_ID), [], cursor=100)


class StubPositions:
    def __init__(self, crash_for=None):
        self.synced = []
        self.crash_for = crash_for

    async def sync_owner(self, owner):
        self.synced.append(owner)
        if owner == self.crash_for:
            raise RuntimeError("boom")
        return PassResult(
            IndexKey.positions(CHAIN_ID, owner),
            [],
            cursor=None,
            error=TransientIOError("rpc down") if owner == OTHER else None,
        )


@pytest.mark.asyncio
async def test_run_once_covers_launches_and_every_owner():
    launches, positions = StubLaunches(), StubPositions()
    results = await run_once(launches, positions, [OWNER, OTHER])

    assert launches.calls == 1
    assert sorted(positions.synced) == sorted([OWNER, OTHER])
    assert [r.ok for r in results] == [True, True, False]


@pytest.mark.asyncio
async def test_run_once_survives_crashed_owner_sync():
    positions = StubPositions(crash_for=OWNER)
    results = await run_once(StubLaunches(), positions, [OWNER, OTHER])

    assert len(results) == 2
    assert str(results[1].index_key).endswith(OTHER)


@pytest.mark.asyncio
async def test_run_once_without_owners():
    positions = StubPositions()
    results = await run_once(StubLaunches(), positions, [])
    assert len(results) == 1
    assert positions.synced == []
