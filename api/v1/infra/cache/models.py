"""
Generic key/value cache table.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from api.infra.database import Base, UTCDateTime, utcnow


class CacheEntry(Base):
    """
    Cached document scoped by category.

    An entry past ``expires_at`` is a miss even if it has not been removed
    yet; ``expires_at`` of NULL never expires.
    """

    __tablename__ = "cache_store"

    category: Mapped[str] = mapped_column(Text, primary_key=True)
    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (Index("ix_cache_store_expires_at", "expires_at"),)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())
