from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class IndexCursor(Base):
    """Last block fully merged for one index key (e.g. ``launches:42101``)."""

    __tablename__ = "scan_cursors"

    index_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
