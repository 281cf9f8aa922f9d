"""Tests for the three-way merge, live refresh and launch index passes."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from src.chain import abi
from src.indexer.entities import (
    IndexKey,
    LaunchEntity,
    LaunchStatus,
    MergeSource,
    ScanCursor,
)
from src.indexer.errors import HydrationError, ScanAborted, StoreWriteError, TransientIOError
from src.indexer.reconciler import (
    LaunchIndexer,
    PassLocks,
    reconcile,
    reconcile_tagged,
    refresh_live,
    sort_canonical,
)
from tests.fakes import CHAIN_ID, FakeChain, MemoryStore, addr

SUPPLY = 1_000_000
KEY = IndexKey.launches(CHAIN_ID)


def _launch(n: int, **fields) -> LaunchEntity:
    return LaunchEntity(token=addr(n), timestamp=fields.pop("timestamp", n), **fields)


def _indexer(chain, local, remote, config) -> LaunchIndexer:
    return LaunchIndexer(chain, local, remote, config, locks=PassLocks())


# Merge


def test_merge_precedence_fresh_over_remote_over_local():
    local = {addr(1): _launch(1, name="local"), addr(2): _launch(2, name="local")}
    remote = {addr(1): _launch(1, name="remote"), addr(3): _launch(3, name="remote")}
    fresh = {addr(3): _launch(3, name="fresh")}

    merged = reconcile(local, remote, fresh)
    assert merged[addr(1)].name == "remote"
    assert merged[addr(2)].name == "local"
    assert merged[addr(3)].name == "fresh"


def test_merge_ignores_timestamps():
    local = {addr(1): _launch(1, timestamp=999, name="newer-looking")}
    remote = {addr(1): _launch(1, timestamp=1, name="remote")}
    assert reconcile(local, remote, {})[addr(1)].name == "remote"


def test_merge_is_idempotent():
    local = {addr(1): _launch(1, name="a")}
    remote = {addr(2): _launch(2, name="b")}
    fresh = {addr(1): _launch(1, name="c")}

    once = reconcile(local, remote, fresh)
    assert reconcile(local, remote, fresh) == once
    assert reconcile(once, remote, fresh) == once
    assert reconcile(once, once, once) == once


def test_tagged_merge_reports_winning_source():
    tagged = reconcile_tagged(
        {addr(1): _launch(1), addr(2): _launch(2)},
        {addr(2): _launch(2)},
        {addr(3): _launch(3)},
    )
    assert tagged[addr(1)].source is MergeSource.LOCAL_CACHE
    assert tagged[addr(2)].source is MergeSource.REMOTE_STORE
    assert tagged[addr(3)].source is MergeSource.FRESH_SCAN


def test_sort_newest_first():
    ordered = sort_canonical([_launch(1, timestamp=5), _launch(2, timestamp=50), _launch(3, timestamp=20)])
    assert [e.timestamp for e in ordered] == [50, 20, 5]


@pytest.mark.asyncio
async def test_refresh_live_keeps_previous_on_failure():
    canonical = {addr(1): _launch(1, raised=1), addr(2): _launch(2, raised=1)}

    async def refresh(entity):
        if entity.token == addr(2):
            raise HydrationError("boom", key=entity.token)
        return entity.with_live_metrics(raised=9, base_sold=0, active=True, bonding_supply=SUPPLY)

    out, failures = await refresh_live(canonical, [addr(1), addr(2)], refresh, chunk_size=1)
    assert out[addr(1)].raised == 9
    assert out[addr(2)] is canonical[addr(2)]
    assert [f.key for f in failures] == [addr(2)]


# Launch passes


@pytest.fixture
def launch_chain() -> FakeChain:
    chain = FakeChain(head=20_000)
    chain.set_bonding_supply(SUPPLY)
    return chain


@pytest.mark.asyncio
async def test_first_pass_scans_lookback_window(launch_chain, local_store, remote_store, config):
    launch_chain.add_launch(addr(1), block=5000)
    launch_chain.add_launch(addr(2), block=15_000, sold=250_000)

    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()

    assert result.ok
    assert launch_chain.log_calls[0] == (11_000, 15_999)
    assert [e.token for e in result.entities] == [addr(2)]
    assert result.entities[0].progress == 25.0
    assert result.cursor == 20_000
    assert remote_store.cursors[str(KEY)].block_number == 20_000
    assert local_store.cursors[str(KEY)].block_number == 20_000
    assert addr(2) in remote_store.entities[str(KEY)]


@pytest.mark.asyncio
async def test_start_block_used_when_no_cursor(launch_chain, local_store, remote_store, config):
    cfg = config.model_copy(update={"start_block": 4000})
    launch_chain.add_launch(addr(1), block=5000)
    result = await _indexer(launch_chain, local_store, remote_store, cfg).run_pass()
    assert launch_chain.log_calls[0] == (4000, 8999)
    assert [e.token for e in result.entities] == [addr(1)]


@pytest.mark.asyncio
async def test_resumes_after_highest_cursor(launch_chain, local_store, remote_store, config):
    await remote_store.set_cursor(KEY, 20_000)
    await local_store.set_cursor(KEY, 18_000)
    launch_chain.head = 30_000
    launch_chain.add_launch(addr(1), block=19_000)
    launch_chain.add_launch(addr(2), block=25_000)

    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()

    assert launch_chain.log_calls == [(20_001, 25_000), (25_001, 30_000)]
    assert [e.token for e in result.entities] == [addr(2)]
    assert result.cursor == 30_000


@pytest.mark.asyncio
async def test_stale_local_cursor_not_trusted(launch_chain, local_store, remote_store, config):
    local_store.cursors[str(KEY)] = ScanCursor(
        index_key=str(KEY),
        block_number=19_000,
        updated_at=datetime.now(UTC) - timedelta(hours=1),
    )
    local_store.entities[str(KEY)] = {addr(9): _launch(9, status=LaunchStatus.COMPLETED)}

    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()

    assert launch_chain.log_calls[0][0] == 11_000
    # entities from a stale cache are still merged
    assert addr(9) in {e.token for e in result.entities}


@pytest.mark.asyncio
async def test_nothing_scanned_when_cursor_at_head(launch_chain, local_store, remote_store, config):
    await remote_store.set_cursor(KEY, 20_000)
    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()
    assert launch_chain.log_calls == []
    assert result.ok
    assert result.cursor == 20_000


@pytest.mark.asyncio
async def test_pass_twice_is_stable(launch_chain, local_store, remote_store, config):
    launch_chain.add_launch(addr(1), block=15_000, sold=100_000)
    indexer = _indexer(launch_chain, local_store, remote_store, config)

    first = await indexer.run_pass()
    second = await indexer.run_pass()
    assert second.entities == first.entities
    assert second.cursor == first.cursor


@pytest.mark.asyncio
async def test_no_event_loss_across_resumed_passes(config):
    blocks = [100, 2999, 3000, 3001, 6500, 7999]

    def _chain(head: int) -> FakeChain:
        chain = FakeChain(head=head)
        chain.set_bonding_supply(SUPPLY)
        for i, block in enumerate(blocks):
            chain.add_launch(addr(i + 1), block=block)
        return chain

    single = await _indexer(_chain(8000), MemoryStore("l"), MemoryStore("r"), config).run_pass()

    local, remote = MemoryStore("l"), MemoryStore("r", monotonic=True)
    chain = _chain(3000)
    await _indexer(chain, local, remote, config).run_pass()
    chain.head = 8000
    resumed = await _indexer(chain, local, remote, config).run_pass()

    assert {e.token for e in resumed.entities} == {e.token for e in single.entities}
    assert len(resumed.entities) == len(blocks)


@pytest.mark.asyncio
async def test_chain_head_unreachable_returns_previous_set(local_store, remote_store, config):
    chain = FakeChain()
    chain.fail_head = True
    local_store.entities[str(KEY)] = {addr(1): _launch(1)}
    remote_store.entities[str(KEY)] = {addr(2): _launch(2)}

    result = await _indexer(chain, local_store, remote_store, config).run_pass()

    assert not result.ok
    assert isinstance(result.error, TransientIOError)
    assert {e.token for e in result.entities} == {addr(1), addr(2)}
    assert remote_store.writes == 0
    assert local_store.writes == 0
    assert str(KEY) not in remote_store.cursors


@pytest.mark.asyncio
async def test_scan_abort_keeps_completed_windows(launch_chain, local_store, remote_store, config):
    launch_chain.add_launch(addr(1), block=12_000)
    launch_chain.add_launch(addr(2), block=18_000)
    launch_chain.fail_windows.add((16_000, 20_000))

    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()

    assert isinstance(result.error, ScanAborted)
    assert result.error.resume_from == 16_000
    assert [e.token for e in result.entities] == [addr(1)]
    assert result.cursor == 15_999
    assert remote_store.cursors[str(KEY)].block_number == 15_999


@pytest.mark.asyncio
async def test_remote_write_failure_is_a_warning(launch_chain, local_store, remote_store, config):
    launch_chain.add_launch(addr(1), block=15_000)
    remote_store.fail_writes = True

    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()

    assert result.ok
    assert [e.token for e in result.entities] == [addr(1)]
    assert any(isinstance(w, StoreWriteError) for w in result.warnings)
    assert local_store.cursors[str(KEY)].block_number == 20_000
    assert str(KEY) not in remote_store.cursors


@pytest.mark.asyncio
async def test_remote_read_failure_still_indexes(launch_chain, local_store, remote_store, config):
    launch_chain.add_launch(addr(1), block=15_000)
    remote_store.fail_reads = True
    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()
    assert result.ok
    assert [e.token for e in result.entities] == [addr(1)]
    assert result.warnings


@pytest.mark.asyncio
async def test_hydration_failure_caps_cursor_and_retries(launch_chain, local_store, remote_store, config):
    launch_chain.add_launch(addr(1), block=12_000)
    launch_chain.add_launch(addr(2), block=14_000, name="Late")
    launch_chain.set_call(addr(2), abi.TOKEN_NAME, (), TransientIOError("timeout"))
    indexer = _indexer(launch_chain, local_store, remote_store, config)

    first = await indexer.run_pass()
    assert first.ok
    assert first.cursor == 13_999
    assert [e.token for e in first.entities] == [addr(1)]
    assert any(isinstance(w, HydrationError) for w in first.warnings)

    launch_chain.set_call(addr(2), abi.TOKEN_NAME, (), ("Late",))
    second = await indexer.run_pass()
    assert launch_chain.log_calls[-2][0] == 14_000
    assert {e.token for e in second.entities} == {addr(1), addr(2)}
    assert second.cursor == 20_000


@pytest.mark.asyncio
async def test_cursor_never_moves_backwards(launch_chain, local_store, remote_store, config):
    indexer = _indexer(launch_chain, local_store, remote_store, config)
    cursors = [(await indexer.run_pass()).cursor]

    launch_chain.head = 30_000
    launch_chain.add_launch(addr(5), block=25_000)
    launch_chain.set_call(addr(5), abi.TOKEN_SYMBOL, (), TransientIOError("timeout"))
    cursors.append((await indexer.run_pass()).cursor)

    launch_chain.head = 31_000
    cursors.append((await indexer.run_pass()).cursor)

    assert cursors == sorted(cursors)
    assert cursors[1] == 24_999


@pytest.mark.asyncio
async def test_bonding_supply_failure_skips_hydration(launch_chain, local_store, remote_store, config):
    launch_chain.set_bonding_supply(TransientIOError("reverted"))
    launch_chain.add_launch(addr(1), block=15_000)

    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()

    assert result.ok
    assert result.entities == []
    assert result.cursor == 14_999
    assert launch_chain.call_count[abi.QUOTE_BOUGHT_BY_CURVE.signature] == 0


@pytest.mark.asyncio
async def test_live_refresh_updates_active_and_skips_completed(
    launch_chain, local_store, remote_store, config
):
    await remote_store.set_cursor(KEY, 20_000)
    active, done = addr(1), addr(2)
    remote_store.entities[str(KEY)] = {
        active: _launch(1, base_sold=100_000, progress=10.0),
        done: _launch(2, base_sold=SUPPLY, progress=100.0, status=LaunchStatus.COMPLETED),
    }
    launch_chain.set_live(active, raised=3, sold=600_000, active=True)

    result = await _indexer(launch_chain, local_store, remote_store, config).run_pass()

    by_token = {e.token: e for e in result.entities}
    assert by_token[active].progress == 60.0
    assert by_token[active].raised == 3
    assert by_token[done].status is LaunchStatus.COMPLETED
    assert launch_chain.call_count[abi.QUOTE_BOUGHT_BY_CURVE.signature] == 1
    assert remote_store.entities[str(KEY)][active].progress == 60.0


@pytest.mark.asyncio
async def test_graduation_stops_live_refresh(launch_chain, local_store, remote_store, config):
    launch_chain.add_launch(addr(1), block=15_000, sold=900_000)
    indexer = _indexer(launch_chain, local_store, remote_store, config)
    await indexer.run_pass()

    launch_chain.set_live(addr(1), raised=10, sold=SUPPLY, active=False)
    graduated = await indexer.run_pass()
    assert graduated.entities[0].status is LaunchStatus.COMPLETED

    reads = launch_chain.call_count[abi.QUOTE_BOUGHT_BY_CURVE.signature]
    await indexer.run_pass()
    assert launch_chain.call_count[abi.QUOTE_BOUGHT_BY_CURVE.signature] == reads


@pytest.mark.asyncio
async def test_concurrent_passes_for_same_key_are_serialized(
    launch_chain, local_store, remote_store, config
):
    launch_chain.add_launch(addr(1), block=15_000)
    locks = PassLocks()
    a = LaunchIndexer(launch_chain, local_store, remote_store, config, locks=locks)
    b = LaunchIndexer(launch_chain, local_store, remote_store, config, locks=locks)

    first, second = await asyncio.gather(a.run_pass(), b.run_pass())

    # the second pass starts from the first pass's cursor and scans nothing
    assert launch_chain.log_calls == [(11_000, 15_999), (16_000, 20_000)]
    assert first.cursor == second.cursor == 20_000
