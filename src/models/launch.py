from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Float, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class Launch(Base):
    __tablename__ = "launches"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token: Mapped[str] = mapped_column(String(42), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    symbol: Mapped[str] = mapped_column(String(64), default="")
    media_uri: Mapped[str | None] = mapped_column(String(1000))
    creator: Mapped[str] = mapped_column(String(42), default="")
    quote_asset: Mapped[str] = mapped_column(String(42), default="")
    timestamp: Mapped[int] = mapped_column(BigInteger, default=0)
    block_number: Mapped[int] = mapped_column(BigInteger, default=0)

    # uint256 values as decimal strings
    raised: Mapped[str] = mapped_column(String(80), default="0")
    base_sold: Mapped[str] = mapped_column(String(80), default="0")
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(16), default="active")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("idx_launches_status", "chain_id", "status"),
        Index("idx_launches_timestamp", "chain_id", "timestamp"),
    )
