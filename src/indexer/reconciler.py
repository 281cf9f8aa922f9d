"""Three-way merge of local, remote and fresh snapshots, plus pass orchestration.

The merge is a plain overlay by natural key: local first, remote on top,
fresh scan on top of that. No timestamps are compared, so merging the
same inputs twice gives the same result.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field

from loguru import logger

from src.chain import abi
from src.chain.rpc import ChainReader
from src.indexer.config import IndexerConfig
from src.indexer.decoder import LaunchCreated, LaunchDecoder, PositionDecoder
from src.indexer.entities import (
    Entity,
    IndexKey,
    LaunchEntity,
    MergeSource,
    PositionEntity,
    ScanCursor,
    TaggedSnapshot,
)
from src.indexer.errors import (
    HydrationError,
    IndexerError,
    ScanAborted,
    StoreReadError,
    StoreWriteError,
    TransientIOError,
)
from src.indexer.recoverer import PositionRecoverer
from src.indexer.scanner import RangeScanner
from src.store.base import EntityStore, TokenIdStore
from src.utils.batching import gather_in_chunks


def reconcile(
    local: Mapping[str, Entity],
    remote: Mapping[str, Entity],
    fresh: Mapping[str, Entity],
) -> dict[str, Entity]:
    """Per key: local, then remote overrides, then fresh overrides."""
    merged: dict[str, Entity] = dict(local)
    merged.update(remote)
    merged.update(fresh)
    return merged


def reconcile_tagged(
    local: Mapping[str, Entity],
    remote: Mapping[str, Entity],
    fresh: Mapping[str, Entity],
) -> dict[str, TaggedSnapshot]:
    """Same overlay as reconcile() but remembers which source won each key."""
    merged: dict[str, TaggedSnapshot] = {}
    for source, snapshots in (
        (MergeSource.LOCAL_CACHE, local),
        (MergeSource.REMOTE_STORE, remote),
        (MergeSource.FRESH_SCAN, fresh),
    ):
        for key, entity in snapshots.items():
            merged[key] = TaggedSnapshot(source, entity)
    return merged


def sort_canonical(entities: Iterable[Entity]) -> list[Entity]:
    """Newest first: launches by creation timestamp, positions by token id."""

    def _key(e: Entity) -> tuple:
        if isinstance(e, LaunchEntity):
            return (e.timestamp, e.block_number, e.token)
        return (e.token_id, e.owner)

    return sorted(entities, key=_key, reverse=True)


async def refresh_live(
    canonical: Mapping[str, Entity],
    active_keys: Iterable[str],
    refresh: Callable[[Entity], Awaitable[Entity]],
    *,
    chunk_size: int = 10,
) -> tuple[dict[str, Entity], list[IndexerError]]:
    """Re-read live fields for the given keys. A failed refresh keeps the old snapshot."""
    out = dict(canonical)
    keys = [k for k in active_keys if k in canonical]
    failures: list[IndexerError] = []

    results = await gather_in_chunks(
        keys, lambda k: refresh(canonical[k]), chunk_size=chunk_size
    )
    for key, result in results:
        if isinstance(result, (LaunchEntity, PositionEntity)):
            out[key] = result
            continue
        error = result if isinstance(result, IndexerError) else HydrationError(str(result), key=key)
        logger.warning(f"[RECONCILE] Live refresh of {key} failed, keeping previous: {error}")
        failures.append(error)

    if keys:
        logger.debug(f"[RECONCILE] Refreshed {len(keys) - len(failures)}/{len(keys)} live entities")
    return out, failures


@dataclass
class PassResult:
    index_key: IndexKey
    entities: list[Entity] = field(default_factory=list)
    cursor: int | None = None
    warnings: list[IndexerError] = field(default_factory=list)
    error: IndexerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PassLocks:
    """One asyncio.Lock per index key so passes for the same key never overlap."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def for_key(self, index_key: IndexKey) -> asyncio.Lock:
        return self._locks[str(index_key)]


_default_locks = PassLocks()


@dataclass
class _StoreSnapshot:
    entities: dict[str, Entity]
    cursor: ScanCursor | None


async def _read_store(
    store: EntityStore, index_key: IndexKey, warnings: list[IndexerError]
) -> _StoreSnapshot:
    try:
        entities = await store.get_entities(index_key)
        cursor = await store.get_cursor(index_key)
    except StoreReadError as e:
        logger.warning(f"[RECONCILE] {store.name} store unreadable for {index_key}: {e}")
        warnings.append(e)
        return _StoreSnapshot({}, None)
    return _StoreSnapshot(entities, cursor)


async def _persist(
    stores: Iterable[EntityStore],
    index_key: IndexKey,
    entities: list[Entity],
    cursor: int | None,
    warnings: list[IndexerError],
) -> None:
    """Entities first, cursor only after that store accepted the entities."""
    for store in stores:
        try:
            await store.upsert_entities(index_key, entities)
            if cursor is not None and cursor >= 0:
                await store.set_cursor(index_key, cursor)
        except StoreWriteError as e:
            logger.warning(f"[RECONCILE] {store.name} write failed for {index_key}: {e}")
            warnings.append(e)


class LaunchIndexer:
    """Keeps the launch index of one chain up to date, one pass at a time."""

    def __init__(
        self,
        chain: ChainReader,
        local: EntityStore,
        remote: EntityStore,
        config: IndexerConfig,
        *,
        locks: PassLocks | None = None,
    ) -> None:
        self._chain = chain
        self._local = local
        self._remote = remote
        self._config = config
        self._locks = locks or _default_locks
        self._decoder = LaunchDecoder(
            chain, config.launchpad_address, chunk_size=config.refresh_chunk_size
        )
        self._scanner = RangeScanner(
            chain,
            config.launchpad_address,
            [abi.TOKEN_LAUNCHED_TOPIC],
            max_block_range=config.max_block_range,
        )

    @property
    def index_key(self) -> IndexKey:
        return IndexKey.launches(self._config.chain_id)

    def resume_block(self, local: ScanCursor | None, remote: ScanCursor | None) -> int:
        """Highest trusted cursor, 0 when there is none. Stale local cursors are ignored."""
        blocks = [0]
        if local is not None:
            if local.is_stale(self._config.cache_staleness_ms):
                logger.info(f"[RECONCILE] Local cursor {local.block_number} is stale, ignoring")
            else:
                blocks.append(local.block_number)
        if remote is not None:
            blocks.append(remote.block_number)
        return max(blocks)

    def scan_start(self, resume: int, head: int) -> int:
        if resume > 0:
            return resume + 1
        if self._config.start_block > 0:
            return self._config.start_block
        return max(0, head - self._config.lookback_blocks)

    async def run_pass(self) -> PassResult:
        async with self._locks.for_key(self.index_key):
            return await self._run_pass()

    async def _run_pass(self) -> PassResult:
        key = self.index_key
        warnings: list[IndexerError] = []

        local = await _read_store(self._local, key, warnings)
        remote = await _read_store(self._remote, key, warnings)
        previous = reconcile(local.entities, remote.entities, {})

        try:
            head = await self._chain.get_block_number()
        except Exception as e:
            error = e if isinstance(e, TransientIOError) else TransientIOError(str(e), key=str(key))
            logger.error(f"[RECONCILE] Chain head unreachable, serving previous set: {error}")
            return PassResult(key, sort_canonical(previous.values()), None, warnings, error)

        resume = self.resume_block(local.cursor, remote.cursor)
        from_block = self.scan_start(resume, head)
        cursor = resume if resume > 0 else None
        fatal: IndexerError | None = None
        events: list[LaunchCreated] = []

        if from_block <= head:
            logger.info(f"[SCAN] Launches [{from_block}, {head}] ({head - from_block + 1} blocks)")
            cursor = from_block - 1
            try:
                async for scanned in self._scanner.scan_windows(
                    from_block, head, self._config.batch_size
                ):
                    for raw in scanned.logs:
                        event = self._decoder.decode(raw)
                        if event is not None:
                            events.append(event)
                    cursor = scanned.window.end
            except ScanAborted as e:
                fatal = e

        self._decoder.begin_pass()
        supply_ok = True
        try:
            await self._decoder.bonding_supply()
        except Exception as e:
            supply_ok = False
            warnings.append(HydrationError(f"bonding supply read failed: {e}", key=str(key)))
            logger.warning(f"[DECODE] Bonding supply unavailable, skipping hydration: {e}")

        fresh: dict[str, Entity] = {}
        if events:
            if supply_ok:
                batch = await self._decoder.hydrate_many(events)
                fresh = batch.entities
                warnings.extend(batch.failures)
                failed_at = batch.earliest_failed_block
            else:
                failed_at = min(ev.block_number for ev in events)
            if failed_at is not None and cursor is not None:
                # rescan from the first unhydrated event next pass
                cursor = max(min(cursor, failed_at - 1), resume)

        merged = reconcile(local.entities, remote.entities, fresh)

        if supply_ok:
            live = [k for k, e in merged.items() if e.is_live and k not in fresh]
            merged, refresh_failures = await refresh_live(
                merged, live, self._decoder.refresh, chunk_size=self._config.refresh_chunk_size
            )
            warnings.extend(refresh_failures)

        entities = sort_canonical(merged.values())
        await _persist((self._local, self._remote), key, entities, cursor, warnings)

        logger.info(
            f"[RECONCILE] {key}: {len(entities)} launches ({len(fresh)} new), "
            f"cursor={cursor}, warnings={len(warnings)}"
        )
        return PassResult(key, entities, cursor, warnings, fatal)


class PositionIndexer:
    """Keeps per-owner position indexes current via the recoverer."""

    def __init__(
        self,
        chain: ChainReader,
        local: TokenIdStore,
        remote: EntityStore,
        config: IndexerConfig,
        *,
        locks: PassLocks | None = None,
    ) -> None:
        self._chain = chain
        self._local = local
        self._remote = remote
        self._config = config
        self._locks = locks or _default_locks
        self._decoder = PositionDecoder(
            chain,
            config.position_manager_address,
            config.chain_id,
            chunk_size=config.refresh_chunk_size,
        )
        self._recoverer = PositionRecoverer(chain, self._decoder, local, remote, config)

    @property
    def recoverer(self) -> PositionRecoverer:
        return self._recoverer

    def index_key(self, owner: str) -> IndexKey:
        return IndexKey.positions(self._config.chain_id, owner)

    async def sync_owner(self, owner: str) -> PassResult:
        key = self.index_key(owner)
        async with self._locks.for_key(key):
            return await self._sync_owner(key)

    async def _sync_owner(self, key: IndexKey) -> PassResult:
        owner = key.owner
        warnings: list[IndexerError] = []

        local = await _read_store(self._local, key, warnings)
        remote = await _read_store(self._remote, key, warnings)
        previous = reconcile(local.entities, remote.entities, {})

        try:
            head = await self._chain.get_block_number()
        except Exception as e:
            error = e if isinstance(e, TransientIOError) else TransientIOError(str(e), key=str(key))
            logger.error(f"[RECONCILE] Chain head unreachable for {owner}: {error}")
            return PassResult(key, sort_canonical(previous.values()), None, warnings, error)

        trusted = [c.block_number for c in (local.cursor, remote.cursor) if c is not None]
        last_cursor = max(trusted) if trusted else None
        try:
            recovery = await self._recoverer.recover_owned_tokens(
                owner,
                head=head,
                known_ids={e.token_id for e in previous.values()},
                last_cursor=last_cursor,
                persist_snapshots=False,
            )
        except TransientIOError as e:
            logger.error(f"[RECOVER] Recovery for {owner} aborted: {e}")
            return PassResult(key, sort_canonical(previous.values()), None, warnings, e)
        warnings.extend(recovery.warnings)

        fresh: dict[str, Entity] = dict(recovery.snapshots)
        merged = {
            k: e
            for k, e in reconcile(local.entities, remote.entities, fresh).items()
            if e.token_id not in recovery.released
        }

        async def _refresh(entity: PositionEntity) -> PositionEntity:
            return await self._decoder.refresh(entity, block_number=head)

        live = [k for k, e in merged.items() if e.is_live and k not in fresh]
        merged, refresh_failures = await refresh_live(
            merged, live, _refresh, chunk_size=self._config.refresh_chunk_size
        )
        warnings.extend(refresh_failures)

        cursor = head
        if recovery.retry_from_block is not None:
            # recheck the unverified candidate next pass
            cursor = min(cursor, recovery.retry_from_block - 1)
            if last_cursor is not None:
                cursor = max(cursor, last_cursor)

        entities = sort_canonical(merged.values())
        await _persist((self._local, self._remote), key, entities, cursor, warnings)

        logger.info(
            f"[RECONCILE] {key}: {len(entities)} positions "
            f"({len(self.active_positions(entities))} active) via "
            f"{'>'.join(s.value for s in recovery.path)}"
        )
        return PassResult(key, entities, cursor, warnings)

    async def snapshot_position(self, owner: str, token_id: int) -> PositionEntity:
        """Re-read one position after the caller changed it and store it everywhere.

        Raises HydrationError when the position cannot be read. Store write
        failures are logged and do not fail the call.
        """
        key = self.index_key(owner)
        async with self._locks.for_key(key):
            head = await self._chain.get_block_number()
            entity = await self._decoder.hydrate(key.owner, token_id, block_number=head)

            for store in (self._local, self._remote):
                try:
                    await store.upsert_entities(key, [entity])
                except StoreWriteError as e:
                    logger.warning(f"[STORE] {store.name} snapshot write failed for {entity.key}: {e}")
            try:
                known = await self._local.get_token_ids(key)
                await self._local.set_token_ids(key, known | {token_id})
            except (StoreReadError, StoreWriteError) as e:
                logger.warning(f"[STORE] Could not record token id {token_id} for {owner}: {e}")
            return entity

    @staticmethod
    def active_positions(entities: Iterable[Entity] | PassResult) -> list[PositionEntity]:
        """Positions that still hold liquidity."""
        if isinstance(entities, PassResult):
            entities = entities.entities
        return [e for e in entities if isinstance(e, PositionEntity) and e.is_live]
