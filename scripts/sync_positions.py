"""Sync the liquidity positions of one owner into both stores.

Forward-scans every Transfer(to=owner) over the last --depth blocks,
keeps the token ids the owner still holds, and upserts a snapshot of
each.

Usage:
    poetry run python scripts/sync_positions.py --owner 0xabc... --depth 400000
"""

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


from config.settings import settings  # noqa: E402
from src.chain import abi  # noqa: E402
from src.chain.rpc import JsonRpcChainReader  # noqa: E402
from src.db.database import close_database, get_session_factory  # noqa: E402
from src.db.redis import close_redis, get_local_store  # noqa: E402
from src.indexer.config import IndexerConfig  # noqa: E402
from src.indexer.decoder import PositionDecoder  # noqa: E402
from src.indexer.entities import IndexKey  # noqa: E402
from src.indexer.reconciler import PositionIndexer  # noqa: E402
from src.indexer.scanner import RangeScanner  # noqa: E402
from src.store.local import RedisEntityStore  # noqa: E402
from src.store.remote import SqlEntityStore  # noqa: E402
from src.utils.logger import component_logger, setup_logger  # noqa: E402

logger = component_logger("sync_positions")


async def sync_owner(
    chain: JsonRpcChainReader,
    local: RedisEntityStore,
    remote: SqlEntityStore,
    config: IndexerConfig,
    owner: str,
    depth: int,
    batch: int,
) -> list:
    owner = abi.normalize_address(owner)
    decoder = PositionDecoder(
        chain, config.position_manager_address, config.chain_id,
        chunk_size=config.refresh_chunk_size,
    )
    scanner = RangeScanner(
        chain,
        config.position_manager_address,
        [abi.TRANSFER_TOPIC, None, abi.address_topic(owner)],
        max_block_range=config.max_block_range,
    )
    head = await chain.get_block_number()
    from_block = max(0, head - depth)
    logger.info(f"[RECOVER] Scanning transfers to {owner} in [{from_block}, {head}]")

    candidates: set[int] = set()
    async for raw in scanner.scan(from_block, head, batch):
        ev = decoder.decode(raw)
        if ev is not None and ev.recipient == owner:
            candidates.add(ev.token_id)

    owned, failures = await decoder.verify_owned(owner, candidates)
    logger.info(
        f"[RECOVER] {len(candidates)} candidate(s), {len(owned)} still owned, "
        f"{len(failures)} unverifiable"
    )

    result = await decoder.hydrate_many(owner, owned, block_number=head)
    snapshots = list(result.entities.values())
    key = IndexKey.positions(config.chain_id, owner)
    await remote.upsert_entities(key, snapshots)
    await local.upsert_entities(key, snapshots)
    await local.set_token_ids(key, owned)
    return PositionIndexer.active_positions(snapshots)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Sync LP positions for one owner")
    parser.add_argument("--owner", required=True)
    parser.add_argument("--depth", type=int, default=settings.positions_lookback_blocks)
    parser.add_argument("--batch", type=int, default=settings.positions_batch_size)
    args = parser.parse_args()

    setup_logger(level=settings.log_level, log_dir=None)
    config = IndexerConfig.from_settings(settings)
    chain = JsonRpcChainReader(
        settings.rpc_url,
        max_rps=settings.rpc_max_rps,
        timeout=settings.rpc_timeout_sec,
        max_block_range=settings.rpc_max_block_range,
    )
    local = await get_local_store()
    remote = SqlEntityStore(get_session_factory())

    try:
        active = await sync_owner(
            chain, local, remote, config, args.owner, args.depth,
            min(args.batch, config.max_block_range),
        )
        print(f"\nActive positions for {args.owner}: {len(active)}")
        for p in active:
            print(
                f"  #{p.token_id:<8} {p.token0[:10]}../{p.token1[:10]}.. "
                f"fee={p.fee:<6} ticks=[{p.tick_lower}, {p.tick_upper}] L={p.liquidity}"
            )
    finally:
        await chain.close()
        await close_redis()
        await close_database()


if __name__ == "__main__":
    asyncio.run(main())
