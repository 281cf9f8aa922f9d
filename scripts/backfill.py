"""One-shot historical backfill into the remote store.

Scans TokenLaunched and position mint events over an explicit block range,
hydrates every hit and upserts it into the database, then advances the
launch cursor so the worker resumes after the backfilled range.

Usage:
    poetry run python scripts/backfill.py --from 0 --to latest --batch 9000
    poetry run python scripts/backfill.py --from 1200000 --to 1300000 --skip-positions
"""

import argparse
import asyncio
import sys
from collections import defaultdict
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


from config.settings import settings  # noqa: E402
from src.chain import abi  # noqa: E402
from src.chain.rpc import JsonRpcChainReader  # noqa: E402
from src.db.database import close_database, get_session_factory  # noqa: E402
from src.indexer.config import IndexerConfig  # noqa: E402
from src.indexer.decoder import LaunchDecoder, PositionDecoder  # noqa: E402
from src.indexer.entities import IndexKey  # noqa: E402
from src.indexer.errors import IndexerError, ScanAborted  # noqa: E402
from src.indexer.scanner import RangeScanner  # noqa: E402
from src.store.remote import SqlEntityStore  # noqa: E402
from src.utils.logger import component_logger, setup_logger  # noqa: E402

logger = component_logger("backfill")


async def backfill_launches(
    chain: JsonRpcChainReader,
    store: SqlEntityStore,
    config: IndexerConfig,
    from_block: int,
    to_block: int,
    batch: int,
) -> tuple[int, int | None]:
    """Returns (launches stored, last fully stored block)."""
    decoder = LaunchDecoder(chain, config.launchpad_address, chunk_size=config.refresh_chunk_size)
    scanner = RangeScanner(
        chain, config.launchpad_address, [abi.TOKEN_LAUNCHED_TOPIC],
        max_block_range=config.max_block_range,
    )
    key = IndexKey.launches(config.chain_id)
    stored = 0
    last_block: int | None = None

    try:
        async for scanned in scanner.scan_windows(from_block, to_block, batch):
            events = [ev for raw in scanned.logs if (ev := decoder.decode(raw)) is not None]
            if events:
                result = await decoder.hydrate_many(events)
                await store.upsert_entities(key, list(result.entities.values()))
                stored += len(result.entities)
                if result.earliest_failed_block is not None:
                    logger.warning(
                        f"[SCAN] {len(result.failures)} launch(es) failed to hydrate, "
                        f"stopping at block {result.earliest_failed_block - 1}"
                    )
                    return stored, result.earliest_failed_block - 1
            last_block = scanned.window.end
            logger.info(f"[SCAN] Launches through block {last_block}: {stored} stored")
    except ScanAborted as e:
        logger.error(f"[SCAN] Backfill aborted, resume with --from {e.resume_from}")
        return stored, e.last_completed_block if e.made_progress else None
    return stored, last_block


async def backfill_positions(
    chain: JsonRpcChainReader,
    store: SqlEntityStore,
    config: IndexerConfig,
    from_block: int,
    to_block: int,
    batch: int,
) -> int:
    """Store a snapshot of every position minted in range, under its current owner."""
    decoder = PositionDecoder(
        chain, config.position_manager_address, config.chain_id,
        chunk_size=config.refresh_chunk_size,
    )
    scanner = RangeScanner(
        chain,
        config.position_manager_address,
        [abi.TRANSFER_TOPIC, abi.address_topic(abi.ZERO_ADDRESS)],
        max_block_range=config.max_block_range,
    )
    stored = 0
    async for scanned in scanner.scan_windows(from_block, to_block, batch):
        minted = {ev.token_id for raw in scanned.logs if (ev := decoder.decode(raw)) is not None}
        by_owner: dict[str, list[int]] = defaultdict(list)
        for token_id in sorted(minted):
            try:
                by_owner[await decoder.owner_of(token_id)].append(token_id)
            except IndexerError as e:
                # burned positions have no owner
                logger.debug(f"[RECOVER] Skipping token {token_id}: {e}")

        for owner, token_ids in by_owner.items():
            result = await decoder.hydrate_many(owner, token_ids, block_number=scanned.window.end)
            await store.upsert_entities(
                IndexKey.positions(config.chain_id, owner), list(result.entities.values())
            )
            stored += len(result.entities)
        logger.info(f"[SCAN] Positions through block {scanned.window.end}: {stored} stored")
    return stored


async def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill launches and positions into the database")
    parser.add_argument("--from", dest="from_block", type=int, default=settings.indexer_start_block)
    parser.add_argument("--to", dest="to_block", default="latest", help="block number or 'latest'")
    parser.add_argument("--batch", type=int, default=settings.rpc_max_block_range)
    parser.add_argument("--skip-positions", action="store_true")
    args = parser.parse_args()

    setup_logger(level=settings.log_level, log_dir=None)
    config = IndexerConfig.from_settings(settings)
    batch = min(args.batch, config.max_block_range)
    chain = JsonRpcChainReader(
        settings.rpc_url,
        max_rps=settings.rpc_max_rps,
        timeout=settings.rpc_timeout_sec,
        max_block_range=settings.rpc_max_block_range,
    )
    store = SqlEntityStore(get_session_factory())

    try:
        to_block = await chain.get_block_number() if args.to_block == "latest" else int(args.to_block)
        logger.info(f"Backfilling [{args.from_block}, {to_block}] in batches of {batch}")

        launches, last_block = await backfill_launches(
            chain, store, config, args.from_block, to_block, batch
        )
        if last_block is not None:
            await store.set_cursor(IndexKey.launches(config.chain_id), last_block)
        print(f"Launches stored: {launches} (cursor -> {last_block})")

        if not args.skip_positions:
            positions = await backfill_positions(
                chain, store, config, args.from_block, to_block, batch
            )
            print(f"Positions stored: {positions}")
    finally:
        await chain.close()
        await close_database()


if __name__ == "__main__":
    asyncio.run(main())
