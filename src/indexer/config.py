"""Engine options, built once from settings and injected into the indexers."""

from loguru import logger
from pydantic import BaseModel, Field, model_validator


class IndexerConfig(BaseModel):
    chain_id: int
    launchpad_address: str
    position_manager_address: str

    start_block: int = Field(default=0, ge=0)
    lookback_blocks: int = Field(default=9000, ge=0)
    batch_size: int = Field(default=5000, ge=1)
    max_block_range: int = Field(default=9500, ge=1)

    positions_lookback_blocks: int = Field(default=400_000, ge=0)
    positions_batch_size: int = Field(default=9000, ge=1)
    recent_window_blocks: int = Field(default=50_000, ge=0)

    refresh_chunk_size: int = Field(default=10, ge=1)
    cache_staleness_ms: int = Field(default=5 * 60 * 1000, ge=0)
    quote_decimals: int = Field(default=18, ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def clamp_batch_sizes(cls, data: dict) -> dict:
        if not isinstance(data, dict):
            return data
        max_range = int(data.get("max_block_range", 9500))
        for name in ("batch_size", "positions_batch_size"):
            value = data.get(name)
            if value is not None and int(value) > max_range:
                logger.warning(
                    f"[CONFIG] {name}={value} exceeds provider max {max_range}, clamping"
                )
                data = {**data, name: max_range}
        return data

    @model_validator(mode="after")
    def recent_window_within_lookback(self) -> "IndexerConfig":
        if self.positions_lookback_blocks and self.recent_window_blocks > self.positions_lookback_blocks:
            raise ValueError("recent_window_blocks must not exceed positions_lookback_blocks")
        return self

    @classmethod
    def from_settings(cls, settings) -> "IndexerConfig":
        return cls(
            chain_id=settings.chain_id,
            launchpad_address=settings.launchpad_address,
            position_manager_address=settings.position_manager_address,
            start_block=settings.indexer_start_block,
            lookback_blocks=settings.indexer_lookback_blocks,
            batch_size=settings.indexer_batch_size,
            max_block_range=settings.rpc_max_block_range,
            positions_lookback_blocks=settings.positions_lookback_blocks,
            positions_batch_size=settings.positions_batch_size,
            recent_window_blocks=settings.positions_recent_window_blocks,
            refresh_chunk_size=settings.refresh_chunk_size,
            cache_staleness_ms=settings.cache_staleness_ms,
            quote_decimals=settings.quote_decimals,
        )
