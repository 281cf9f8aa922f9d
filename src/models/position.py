from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class LpPosition(Base):
    """Concentrated-liquidity position NFT as last seen for its owner."""

    __tablename__ = "lp_positions"

    owner: Mapped[str] = mapped_column(String(42), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    token0: Mapped[str] = mapped_column(String(42), default="")
    token1: Mapped[str] = mapped_column(String(42), default="")
    fee: Mapped[int] = mapped_column(Integer, default=0)
    tick_lower: Mapped[int] = mapped_column(Integer, default=0)
    tick_upper: Mapped[int] = mapped_column(Integer, default=0)
    liquidity: Mapped[str] = mapped_column(String(80), default="0")
    tokens_owed0: Mapped[str] = mapped_column(String(80), default="0")
    tokens_owed1: Mapped[str] = mapped_column(String(80), default="0")
    pool: Mapped[str | None] = mapped_column(String(42))
    status: Mapped[str] = mapped_column(String(16), default="active")
    last_seen_block: Mapped[int | None] = mapped_column(BigInteger)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("idx_lp_positions_owner_status", "chain_id", "owner", "status"),
    )
