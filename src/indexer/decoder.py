"""Raw log decoding and entity hydration.

decode() turns a log into a typed event or None; it never raises, so one
malformed or unrelated log cannot abort a batch. hydrate() performs the
supplemental contract reads needed for a full snapshot and raises
HydrationError for that one entity only.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field

from loguru import logger

from src.chain import abi
from src.chain.models import RawLog
from src.chain.rpc import ChainReader
from src.indexer.entities import LaunchEntity, LaunchStatus, PositionEntity, compute_progress
from src.indexer.errors import DecodeError, HydrationError, VerificationError
from src.utils.batching import gather_in_chunks


@dataclass(frozen=True)
class LaunchCreated:
    token: str
    creator: str
    quote_asset: str
    bonding_curve: str
    timestamp: int
    block_number: int
    log_index: int = 0


@dataclass(frozen=True)
class PositionTransferred:
    sender: str
    recipient: str
    token_id: int
    block_number: int
    log_index: int = 0

    @property
    def is_mint(self) -> bool:
        return self.sender == abi.ZERO_ADDRESS


@dataclass
class HydrationBatch:
    """Snapshots that hydrated plus the isolated failures of this batch."""

    entities: dict[str, LaunchEntity | PositionEntity] = field(default_factory=dict)
    failures: list[HydrationError] = field(default_factory=list)
    failed_blocks: list[int] = field(default_factory=list)

    @property
    def earliest_failed_block(self) -> int | None:
        return min(self.failed_blocks) if self.failed_blocks else None


def decode_launch(raw: RawLog) -> LaunchCreated:
    """Strict TokenLaunched decoding. Raises DecodeError on any mismatch."""
    if raw.removed:
        raise DecodeError("log was removed by a reorg", key=raw.transaction_hash)
    if raw.topic0 != abi.TOKEN_LAUNCHED_TOPIC:
        raise DecodeError(f"unexpected topic0 {raw.topic0}", key=raw.transaction_hash)
    if len(raw.topics) != 3:
        raise DecodeError(f"expected 3 topics, got {len(raw.topics)}", key=raw.transaction_hash)
    try:
        creator = abi.topic_to_address(raw.topics[1])
        token = abi.topic_to_address(raw.topics[2])
        quote_asset, bonding_curve, timestamp = abi.decode_event_data(
            abi.TOKEN_LAUNCHED_DATA_TYPES, raw.data
        )
    except Exception as e:
        raise DecodeError(f"bad TokenLaunched payload: {e}", key=raw.transaction_hash) from e

    return LaunchCreated(
        token=token,
        creator=creator,
        quote_asset=str(quote_asset).lower(),
        bonding_curve=str(bonding_curve).lower(),
        timestamp=int(timestamp),
        block_number=raw.block_number,
        log_index=raw.log_index,
    )


def decode_transfer(raw: RawLog) -> PositionTransferred:
    """Strict ERC-721 Transfer decoding (tokenId indexed, 4 topics)."""
    if raw.removed:
        raise DecodeError("log was removed by a reorg", key=raw.transaction_hash)
    if raw.topic0 != abi.TRANSFER_TOPIC:
        raise DecodeError(f"unexpected topic0 {raw.topic0}", key=raw.transaction_hash)
    # ERC-20 Transfer has 3 topics and the amount in data
    if len(raw.topics) != 4:
        raise DecodeError(f"expected 4 topics, got {len(raw.topics)}", key=raw.transaction_hash)
    try:
        sender = abi.topic_to_address(raw.topics[1])
        recipient = abi.topic_to_address(raw.topics[2])
        token_id = abi.topic_to_int(raw.topics[3])
    except Exception as e:
        raise DecodeError(f"bad Transfer topics: {e}", key=raw.transaction_hash) from e

    return PositionTransferred(
        sender=sender,
        recipient=recipient,
        token_id=token_id,
        block_number=raw.block_number,
        log_index=raw.log_index,
    )


class LaunchDecoder:
    """Decodes TokenLaunched logs and hydrates LaunchEntity snapshots."""

    def __init__(
        self,
        chain: ChainReader,
        launchpad_address: str,
        *,
        chunk_size: int = 10,
    ) -> None:
        self._chain = chain
        self._launchpad = launchpad_address
        self._chunk_size = chunk_size
        self._bonding_supply: int | None = None
        self._supply_lock = asyncio.Lock()

    def begin_pass(self) -> None:
        """Forget per-pass cached globals (bonding supply)."""
        self._bonding_supply = None

    async def bonding_supply(self) -> int:
        async with self._supply_lock:
            if self._bonding_supply is None:
                (supply,) = await self._chain.call(self._launchpad, abi.BONDING_SUPPLY)
                self._bonding_supply = int(supply)
                logger.debug(f"[DECODE] Bonding supply = {self._bonding_supply}")
        return self._bonding_supply

    def decode(self, raw: RawLog) -> LaunchCreated | None:
        try:
            return decode_launch(raw)
        except DecodeError as e:
            logger.debug(f"[DECODE] Skipping log {raw.transaction_hash}:{raw.log_index}: {e}")
            return None

    async def _read_live(self, token: str) -> tuple[int, int, bool]:
        raised, sold, info = await asyncio.gather(
            self._chain.call(self._launchpad, abi.QUOTE_BOUGHT_BY_CURVE, [token]),
            self._chain.call(self._launchpad, abi.BASE_SOLD_FROM_CURVE, [token]),
            self._chain.call(self._launchpad, abi.LAUNCH_INFO, [token]),
        )
        return int(raised[0]), int(sold[0]), bool(info[abi.LAUNCH_INFO_ACTIVE_INDEX])

    async def _media_uri(self, token: str) -> str | None:
        # mediaURI() is optional on launch tokens
        try:
            (uri,) = await self._chain.call(token, abi.TOKEN_MEDIA_URI)
        except Exception:
            return None
        return uri or None

    async def hydrate(self, event: LaunchCreated) -> LaunchEntity:
        try:
            supply = await self.bonding_supply()
            (name,), (symbol,), media_uri, (raised, sold, active) = await asyncio.gather(
                self._chain.call(event.token, abi.TOKEN_NAME),
                self._chain.call(event.token, abi.TOKEN_SYMBOL),
                self._media_uri(event.token),
                self._read_live(event.token),
            )
        except Exception as e:
            raise HydrationError(f"hydrate {event.token} failed: {e}", key=event.token) from e

        return LaunchEntity(
            token=event.token,
            name=name,
            symbol=symbol,
            media_uri=media_uri,
            creator=event.creator,
            quote_asset=event.quote_asset,
            timestamp=event.timestamp,
            block_number=event.block_number,
            raised=raised,
            base_sold=sold,
            progress=compute_progress(sold, supply),
            status=LaunchStatus.ACTIVE if active else LaunchStatus.COMPLETED,
        )

    async def hydrate_many(self, events: Iterable[LaunchCreated]) -> HydrationBatch:
        batch = HydrationBatch()
        results = await gather_in_chunks(list(events), self.hydrate, chunk_size=self._chunk_size)
        for event, result in results:
            if isinstance(result, LaunchEntity):
                batch.entities[result.key] = result
                continue
            error = result if isinstance(result, HydrationError) else HydrationError(
                str(result), key=event.token
            )
            logger.warning(f"[DECODE] {error}")
            batch.failures.append(error)
            batch.failed_blocks.append(event.block_number)
        return batch

    async def refresh(self, entity: LaunchEntity) -> LaunchEntity:
        """Re-read raised / sold / active for one launch."""
        try:
            supply = await self.bonding_supply()
            raised, sold, active = await self._read_live(entity.token)
        except Exception as e:
            raise HydrationError(f"refresh {entity.token} failed: {e}", key=entity.token) from e
        return entity.with_live_metrics(
            raised=raised, base_sold=sold, active=active, bonding_supply=supply
        )


class PositionDecoder:
    """Decodes position-manager Transfer logs and reads position state."""

    def __init__(
        self,
        chain: ChainReader,
        position_manager_address: str,
        chain_id: int,
        *,
        chunk_size: int = 10,
    ) -> None:
        self._chain = chain
        self._manager = position_manager_address
        self._chain_id = chain_id
        self._chunk_size = chunk_size

    def decode(self, raw: RawLog) -> PositionTransferred | None:
        try:
            return decode_transfer(raw)
        except DecodeError as e:
            logger.debug(f"[DECODE] Skipping transfer {raw.transaction_hash}:{raw.log_index}: {e}")
            return None

    async def hydrate(
        self, owner: str, token_id: int, *, block_number: int | None = None
    ) -> PositionEntity:
        try:
            p = await self._chain.call(self._manager, abi.POSITIONS, [token_id])
        except Exception as e:
            raise HydrationError(
                f"positions({token_id}) failed: {e}", key=str(token_id)
            ) from e

        return PositionEntity(
            owner=owner,
            token_id=token_id,
            chain_id=self._chain_id,
            token0=p[2],
            token1=p[3],
            fee=int(p[4]),
            tick_lower=int(p[5]),
            tick_upper=int(p[6]),
            liquidity=int(p[7]),
            tokens_owed0=int(p[10]),
            tokens_owed1=int(p[11]),
            last_seen_block=block_number,
        )

    async def hydrate_many(
        self, owner: str, token_ids: Iterable[int], *, block_number: int | None = None
    ) -> HydrationBatch:
        batch = HydrationBatch()

        async def _one(token_id: int) -> PositionEntity:
            return await self.hydrate(owner, token_id, block_number=block_number)

        results = await gather_in_chunks(
            sorted(set(token_ids)), _one, chunk_size=self._chunk_size
        )
        for token_id, result in results:
            if isinstance(result, PositionEntity):
                batch.entities[result.key] = result
                continue
            error = result if isinstance(result, HydrationError) else HydrationError(
                str(result), key=str(token_id)
            )
            logger.warning(f"[DECODE] {error}")
            batch.failures.append(error)
        return batch

    async def refresh(self, entity: PositionEntity, *, block_number: int | None = None) -> PositionEntity:
        fresh = await self.hydrate(entity.owner, entity.token_id, block_number=block_number)
        return entity.with_live_metrics(
            liquidity=fresh.liquidity,
            tokens_owed0=fresh.tokens_owed0,
            tokens_owed1=fresh.tokens_owed1,
            last_seen_block=block_number,
        )

    async def owner_of(self, token_id: int) -> str:
        try:
            (owner,) = await self._chain.call(self._manager, abi.OWNER_OF, [token_id])
        except Exception as e:
            raise VerificationError(f"ownerOf({token_id}) failed: {e}", key=str(token_id)) from e
        return str(owner).lower()

    async def verify_owned(
        self, owner: str, token_ids: Iterable[int]
    ) -> tuple[set[int], list[VerificationError]]:
        """Keep only the ids whose current on-chain owner is `owner`."""
        owner = owner.lower()
        verified: set[int] = set()
        failures: list[VerificationError] = []

        results = await gather_in_chunks(
            sorted(set(token_ids)), self.owner_of, chunk_size=self._chunk_size
        )
        for token_id, result in results:
            if isinstance(result, BaseException):
                error = result if isinstance(result, VerificationError) else VerificationError(
                    str(result), key=str(token_id)
                )
                logger.warning(f"[RECOVER] {error}; excluding candidate")
                failures.append(error)
            elif result == owner:
                verified.add(token_id)
            else:
                logger.debug(f"[RECOVER] Token {token_id} now owned by {result}, dropping")
        return verified, failures
