"""Periodic indexing loop: one launch pass plus one sync per watched owner."""

import asyncio

from loguru import logger

from config.settings import settings
from src.chain.rpc import JsonRpcChainReader
from src.db.database import get_session_factory
from src.db.redis import get_local_store
from src.indexer.config import IndexerConfig
from src.indexer.reconciler import LaunchIndexer, PassLocks, PassResult, PositionIndexer
from src.store.remote import SqlEntityStore


def _log_result(result: PassResult) -> None:
    for warning in result.warnings:
        logger.debug(f"[WORKER] {result.index_key} warning: {warning}")
    if not result.ok:
        logger.error(f"[WORKER] {result.index_key} pass failed: {result.error}")


async def run_once(
    launches: LaunchIndexer,
    positions: PositionIndexer,
    owners: list[str],
) -> list[PassResult]:
    """One refresh round. Owners are synced concurrently, each under its own lock."""
    results = [await launches.run_pass()]
    if owners:
        synced = await asyncio.gather(
            *[positions.sync_owner(owner) for owner in owners], return_exceptions=True
        )
        for owner, result in zip(owners, synced):
            if isinstance(result, BaseException):
                logger.exception(f"[WORKER] Position sync for {owner} crashed: {result}")
                continue
            results.append(result)
    for result in results:
        _log_result(result)
    return results


async def run_worker(interval_sec: float | None = None) -> None:
    """Run refresh rounds forever, `interval_sec` apart."""
    interval = interval_sec if interval_sec is not None else settings.refresh_interval_sec
    config = IndexerConfig.from_settings(settings)
    chain = JsonRpcChainReader(
        settings.rpc_url,
        max_rps=settings.rpc_max_rps,
        timeout=settings.rpc_timeout_sec,
        max_block_range=settings.rpc_max_block_range,
    )
    local = await get_local_store()
    remote = SqlEntityStore(get_session_factory())
    locks = PassLocks()
    launches = LaunchIndexer(chain, local, remote, config, locks=locks)
    positions = PositionIndexer(chain, local, remote, config, locks=locks)
    owners = settings.watch_owner_list

    logger.info(
        f"[WORKER] Indexing chain {config.chain_id} every {interval}s, "
        f"batch={config.batch_size}, owners={len(owners)}"
    )
    try:
        while True:
            try:
                await run_once(launches, positions, owners)
            except Exception as e:
                logger.exception(f"[WORKER] Refresh round crashed: {e}")
            await asyncio.sleep(interval)
    finally:
        await chain.close()
