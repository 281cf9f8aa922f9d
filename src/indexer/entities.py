"""Entity snapshots, scan cursors and index keys shared by every indexer stage."""

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, field_validator, model_validator


class LaunchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class MergeSource(str, Enum):
    """Where a snapshot came from during reconciliation. Never persisted."""

    LOCAL_CACHE = "local_cache"
    REMOTE_STORE = "remote_store"
    FRESH_SCAN = "fresh_scan"


class IndexKind(str, Enum):
    LAUNCHES = "launches"
    POSITIONS = "positions"


@dataclass(frozen=True)
class IndexKey:
    """Cache key for one index: launches per chain, positions per (chain, owner)."""

    kind: IndexKind
    chain_id: int
    owner: str | None = None

    @classmethod
    def launches(cls, chain_id: int) -> "IndexKey":
        return cls(IndexKind.LAUNCHES, chain_id)

    @classmethod
    def positions(cls, chain_id: int, owner: str) -> "IndexKey":
        return cls(IndexKind.POSITIONS, chain_id, owner.lower())

    @classmethod
    def parse(cls, raw: str) -> "IndexKey":
        parts = raw.split(":")
        kind = IndexKind(parts[0])
        if kind is IndexKind.POSITIONS:
            if len(parts) != 3:
                raise ValueError(f"positions index key needs an owner: {raw}")
            return cls.positions(int(parts[1]), parts[2])
        return cls.launches(int(parts[1]))

    def __str__(self) -> str:
        if self.owner:
            return f"{self.kind.value}:{self.chain_id}:{self.owner}"
        return f"{self.kind.value}:{self.chain_id}"


def compute_progress(base_sold: int, bonding_supply: int) -> float:
    """Bonding progress in percent, two decimals, clamped to 100.

    Integer arithmetic up to the final division so large supplies
    do not drift.
    """
    if bonding_supply <= 0:
        return 0.0
    basis_points = (base_sold * 10_000) // bonding_supply
    return min(100.0, basis_points / 100)


def _lower(value: str | None) -> str | None:
    return value.lower() if isinstance(value, str) else value


class LaunchEntity(BaseModel):
    """One token launch and its bonding-curve progress."""

    token: str
    name: str = ""
    symbol: str = ""
    media_uri: str | None = None
    creator: str = ""
    quote_asset: str = ""
    timestamp: int = 0
    block_number: int = 0
    raised: int = 0
    base_sold: int = 0
    progress: float = 0.0
    status: LaunchStatus = LaunchStatus.ACTIVE

    model_config = {"extra": "ignore"}

    @field_validator("token", "creator", "quote_asset")
    @classmethod
    def lower_addresses(cls, value: str) -> str:
        return _lower(value)

    @property
    def key(self) -> str:
        return self.token

    @property
    def is_live(self) -> bool:
        return self.status is LaunchStatus.ACTIVE

    def raised_formatted(self, decimals: int = 18) -> str:
        amount = Decimal(self.raised) / (Decimal(10) ** decimals)
        return format(amount.normalize(), "f") if amount else "0"

    def with_live_metrics(
        self, *, raised: int, base_sold: int, active: bool, bonding_supply: int
    ) -> "LaunchEntity":
        """Copy with only the trading-driven fields replaced."""
        return self.model_copy(
            update={
                "raised": raised,
                "base_sold": base_sold,
                "progress": compute_progress(base_sold, bonding_supply),
                "status": LaunchStatus.ACTIVE if active else LaunchStatus.COMPLETED,
            }
        )


class PositionEntity(BaseModel):
    """One concentrated-liquidity position token held by an owner."""

    owner: str
    token_id: int
    chain_id: int
    token0: str = ""
    token1: str = ""
    fee: int = 0
    tick_lower: int = 0
    tick_upper: int = 0
    liquidity: int = 0
    tokens_owed0: int = 0
    tokens_owed1: int = 0
    pool: str | None = None
    status: PositionStatus = PositionStatus.ACTIVE
    last_seen_block: int | None = None

    model_config = {"extra": "ignore"}

    @field_validator("owner", "token0", "token1", "pool")
    @classmethod
    def lower_addresses(cls, value: str | None) -> str | None:
        return _lower(value)

    @model_validator(mode="after")
    def status_follows_liquidity(self) -> "PositionEntity":
        # Closed iff liquidity == 0
        self.status = PositionStatus.ACTIVE if self.liquidity > 0 else PositionStatus.CLOSED
        return self

    @property
    def key(self) -> str:
        return f"{self.owner}:{self.token_id}:{self.chain_id}"

    @property
    def is_live(self) -> bool:
        return self.status is PositionStatus.ACTIVE

    def with_live_metrics(
        self,
        *,
        liquidity: int,
        tokens_owed0: int,
        tokens_owed1: int,
        last_seen_block: int | None = None,
    ) -> "PositionEntity":
        return PositionEntity.model_validate(
            {
                **self.model_dump(),
                "liquidity": liquidity,
                "tokens_owed0": tokens_owed0,
                "tokens_owed1": tokens_owed1,
                "last_seen_block": last_seen_block or self.last_seen_block,
            }
        )


Entity = LaunchEntity | PositionEntity

ENTITY_MODELS: dict[IndexKind, type[LaunchEntity] | type[PositionEntity]] = {
    IndexKind.LAUNCHES: LaunchEntity,
    IndexKind.POSITIONS: PositionEntity,
}


class ScanCursor(BaseModel):
    """Last block through which every event has been durably merged."""

    index_key: str
    block_number: int
    updated_at: datetime

    def is_stale(self, staleness_ms: int, *, now: datetime | None = None) -> bool:
        if staleness_ms <= 0:
            return False
        now = now or datetime.now(UTC)
        updated = self.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=UTC)
        return (now - updated).total_seconds() * 1000 > staleness_ms


@dataclass(frozen=True)
class TaggedSnapshot:
    source: MergeSource
    entity: Entity
