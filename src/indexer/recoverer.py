"""Reconstruct the set of position tokens an owner currently holds.

Runs as a small state machine:

    INDEXED              ids still held     -> RECENT_DELTA
                         nothing held       -> MINT_SCAN
    MINT_SCAN            verified hit       -> RECENT_DELTA
                         no hit             -> BROAD_SCAN_FALLBACK
    BROAD_SCAN_FALLBACK                     -> RECENT_DELTA
    RECENT_DELTA                            -> DONE

The backward walks stop at the first window that yields a candidate. Scan
candidates are only kept once ownerOf confirms the owner still holds them.
Indexed ids are re-checked too, but one whose check errors is kept.
A candidate whose check errors is reported through `retry_from_block`
so the caller can hold its cursor below it.
"""

from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from src.chain import abi
from src.chain.rpc import ChainReader, Topic
from src.indexer.config import IndexerConfig
from src.indexer.decoder import PositionDecoder
from src.indexer.entities import IndexKey, PositionEntity
from src.indexer.errors import IndexerError, StoreReadError, StoreWriteError
from src.indexer.scanner import RangeScanner
from src.store.base import EntityStore, TokenIdStore


class RecoveryState(str, Enum):
    INDEXED = "indexed"
    MINT_SCAN = "mint_scan"
    BROAD_SCAN_FALLBACK = "broad_scan_fallback"
    RECENT_DELTA = "recent_delta"
    DONE = "done"


@dataclass
class RecoveryResult:
    owner: str
    token_ids: set[int] = field(default_factory=set)
    snapshots: dict[str, PositionEntity] = field(default_factory=dict)
    path: list[RecoveryState] = field(default_factory=list)
    warnings: list[IndexerError] = field(default_factory=list)
    # indexed ids found under another owner
    released: set[int] = field(default_factory=set)
    # earliest block of a scan candidate whose ownership check errored
    retry_from_block: int | None = None


class PositionRecoverer:
    def __init__(
        self,
        chain: ChainReader,
        decoder: PositionDecoder,
        local: TokenIdStore,
        remote: EntityStore | None,
        config: IndexerConfig,
    ) -> None:
        self._chain = chain
        self._decoder = decoder
        self._local = local
        self._remote = remote
        self._config = config

    def _scanner(self, topics: list[Topic]) -> RangeScanner:
        return RangeScanner(
            self._chain,
            self._config.position_manager_address,
            topics,
            max_block_range=self._config.max_block_range,
        )

    def _mint_topics(self, owner: str) -> list[Topic]:
        return [abi.TRANSFER_TOPIC, abi.address_topic(abi.ZERO_ADDRESS), abi.address_topic(owner)]

    def _inbound_topics(self, owner: str) -> list[Topic]:
        return [abi.TRANSFER_TOPIC, None, abi.address_topic(owner)]

    async def _walk_back(self, owner: str, topics: list[Topic], head: int) -> dict[int, int]:
        """Backward walk from head to the lookback floor; first window with a hit wins."""
        floor = max(0, head - self._config.positions_lookback_blocks)
        scanner = self._scanner(topics)
        async with aclosing(
            scanner.scan_backward(head, floor, self._config.positions_batch_size)
        ) as windows:
            async for scanned in windows:
                hits = {
                    ev.token_id: ev.block_number
                    for raw in scanned.logs
                    if (ev := self._decoder.decode(raw)) is not None and ev.recipient == owner
                }
                if hits:
                    logger.debug(
                        f"[RECOVER] {owner}: {len(hits)} candidate(s) in "
                        f"[{scanned.window.start}, {scanned.window.end}]"
                    )
                    return hits
        return {}

    async def _recent_delta(
        self, owner: str, head: int, last_cursor: int | None
    ) -> dict[int, int]:
        """Inbound transfers since the last cursor, or over the recent window without one.

        A cursor older than the recent window (downtime, or a capped cursor
        after a failed ownership check) widens the scan back to it, bounded
        by the lookback depth.
        """
        if last_cursor is None:
            start = max(0, head - self._config.recent_window_blocks)
        else:
            start = max(0, head - self._config.positions_lookback_blocks, last_cursor + 1)
        if start > head:
            return {}

        scanner = self._scanner(self._inbound_topics(owner))
        candidates: dict[int, int] = {}
        async for raw in scanner.scan(start, head, self._config.positions_batch_size):
            ev = self._decoder.decode(raw)
            if ev is not None and ev.recipient == owner:
                candidates.setdefault(ev.token_id, ev.block_number)
        return candidates

    async def _verify(
        self, owner: str, candidates: dict[int, int], result: RecoveryResult
    ) -> set[int]:
        if not candidates:
            return set()
        verified, failures = await self._decoder.verify_owned(owner, candidates)
        result.warnings.extend(failures)
        failed = {int(f.key) for f in failures if f.key is not None}
        failed_blocks = [block for token_id, block in candidates.items() if token_id in failed]
        if failed_blocks:
            earliest = min(failed_blocks)
            if result.retry_from_block is None or earliest < result.retry_from_block:
                result.retry_from_block = earliest
        return verified

    async def _recheck_indexed(
        self, owner: str, indexed: set[int], result: RecoveryResult
    ) -> set[int]:
        """Drop indexed ids now held by someone else. Ids whose check errors stay."""
        if not indexed:
            return set()
        verified, failures = await self._decoder.verify_owned(owner, indexed)
        result.warnings.extend(failures)
        unchecked = {int(f.key) for f in failures if f.key is not None}
        kept = verified | (indexed & unchecked)
        result.released |= indexed - kept
        if result.released:
            logger.info(f"[RECOVER] {owner} no longer holds {sorted(result.released)}")
        return kept

    async def recover_owned_tokens(
        self,
        owner: str,
        *,
        head: int | None = None,
        known_ids: set[int] | None = None,
        last_cursor: int | None = None,
        persist_snapshots: bool = True,
    ) -> RecoveryResult:
        """Return the verified token ids `owner` holds, with a snapshot of each.

        Scan failures propagate as ScanAborted. Per-token read or ownership
        failures are collected in `warnings`.
        """
        owner = owner.lower()
        key = IndexKey.positions(self._config.chain_id, owner)
        result = RecoveryResult(owner)
        if head is None:
            head = await self._chain.get_block_number()

        state = RecoveryState.INDEXED
        while state is not RecoveryState.DONE:
            result.path.append(state)

            if state is RecoveryState.INDEXED:
                indexed = set(known_ids or ())
                try:
                    indexed |= await self._local.get_token_ids(key)
                except StoreReadError as e:
                    result.warnings.append(e)
                kept = await self._recheck_indexed(owner, indexed, result)
                result.token_ids |= kept
                state = RecoveryState.RECENT_DELTA if kept else RecoveryState.MINT_SCAN

            elif state is RecoveryState.MINT_SCAN:
                minted = await self._walk_back(owner, self._mint_topics(owner), head)
                verified = await self._verify(owner, minted, result)
                result.token_ids |= verified
                state = RecoveryState.RECENT_DELTA if verified else RecoveryState.BROAD_SCAN_FALLBACK

            elif state is RecoveryState.BROAD_SCAN_FALLBACK:
                logger.info(f"[RECOVER] No mints found for {owner}, widening to any inbound transfer")
                received = await self._walk_back(owner, self._inbound_topics(owner), head)
                result.token_ids |= await self._verify(owner, received, result)
                state = RecoveryState.RECENT_DELTA

            elif state is RecoveryState.RECENT_DELTA:
                recent = await self._recent_delta(owner, head, last_cursor)
                unseen = {t: b for t, b in recent.items() if t not in result.token_ids}
                result.token_ids |= await self._verify(owner, unseen, result)
                state = RecoveryState.DONE

        batch = await self._decoder.hydrate_many(owner, result.token_ids, block_number=head)
        result.snapshots = batch.entities
        result.warnings.extend(batch.failures)

        await self._persist(key, result, persist_snapshots)
        logger.info(
            f"[RECOVER] {owner}: {len(result.token_ids)} token(s) via "
            f"{'>'.join(s.value for s in result.path)}"
        )
        return result

    async def _persist(self, key: IndexKey, result: RecoveryResult, persist_snapshots: bool) -> None:
        try:
            await self._local.set_token_ids(key, result.token_ids)
        except StoreWriteError as e:
            logger.warning(f"[RECOVER] Could not cache token ids for {result.owner}: {e}")
            result.warnings.append(e)

        if not persist_snapshots or self._remote is None:
            return
        for snapshot in result.snapshots.values():
            try:
                await self._remote.upsert_entities(key, [snapshot])
            except StoreWriteError as e:
                logger.warning(f"[RECOVER] Remote upsert of {snapshot.key} failed: {e}")
                result.warnings.append(e)
