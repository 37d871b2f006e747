"""
TTL cache over the ``cache_store`` table.

Reads are stale-tolerant and never lock: expiry is checked against the
clock at query time, and expired rows are removed lazily by ``purge_expired``.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.infra.database import utcnow
from api.v1.core.exceptions import ValidationError
from api.v1.infra.cache.models import CacheEntry

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"


def glob_to_like(pattern: str) -> str:
    """
    Translate a key pattern to a LIKE expression (escape character ``\\``).

    ``*`` and ``%`` match any run of characters, ``?`` matches one; ``_``
    is literal, since keys routinely contain it.
    """
    escaped = pattern.replace("\\", "\\\\").replace("_", "\\_")
    return escaped.replace("*", "%").replace("?", "_")


class TTLCache:
    """Category-scoped key/value cache with per-entry expiry."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def set(
        self,
        session: AsyncSession,
        key: str,
        value: Any,
        category: str = DEFAULT_CATEGORY,
        ttl_s: int | None = None,
    ) -> None:
        """
        Insert or overwrite an entry.

        ``ttl_s`` of None applies the default TTL; 0 stores the entry without
        expiry. Negative TTLs are rejected.
        """
        ttl = self.settings.cache_default_ttl_s if ttl_s is None else ttl_s
        if ttl < 0:
            raise ValidationError("Cache TTL must not be negative", {"ttl_s": ttl})
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl) if ttl > 0 else None

        insert = (
            pg_insert
            if session.get_bind().dialect.name == "postgresql"
            else sqlite_insert
        )
        stmt = insert(CacheEntry).values(
            category=category,
            key=key,
            value=value,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["category", "key"],
            set_={
                "value": stmt.excluded["value"],
                "expires_at": stmt.excluded["expires_at"],
                "updated_at": stmt.excluded["updated_at"],
            },
        )
        await session.execute(stmt)
        await session.commit()

    async def get(
        self, session: AsyncSession, key: str, category: str = DEFAULT_CATEGORY
    ) -> Any | None:
        """Value of a live entry, or None on a miss."""
        result = await session.execute(
            select(CacheEntry.value).where(
                CacheEntry.category == category,
                CacheEntry.key == key,
                or_(CacheEntry.expires_at.is_(None), CacheEntry.expires_at > utcnow()),
            )
        )
        return result.scalar_one_or_none()

    async def delete(
        self, session: AsyncSession, key: str, category: str = DEFAULT_CATEGORY
    ) -> bool:
        result = await session.execute(
            delete(CacheEntry).where(
                CacheEntry.category == category, CacheEntry.key == key
            ).execution_options(synchronize_session=False)
        )
        await session.commit()
        return (result.rowcount or 0) > 0

    async def invalidate_pattern(
        self, session: AsyncSession, category: str, pattern: str
    ) -> int:
        """Delete every key in ``category`` matching ``pattern``."""
        result = await session.execute(
            delete(CacheEntry).where(
                CacheEntry.category == category,
                CacheEntry.key.like(glob_to_like(pattern), escape="\\"),
            ).execution_options(synchronize_session=False)
        )
        await session.commit()

        count = result.rowcount or 0
        logger.info(
            "Cache invalidated",
            extra={"category": category, "pattern": pattern, "count": count},
        )
        return count

    async def purge_expired(self, session: AsyncSession) -> int:
        """Physically remove expired entries."""
        result = await session.execute(
            delete(CacheEntry).where(
                CacheEntry.expires_at.is_not(None),
                CacheEntry.expires_at <= utcnow(),
            ).execution_options(synchronize_session=False)
        )
        await session.commit()

        count = result.rowcount or 0
        if count:
            logger.info("Purged expired cache entries", extra={"count": count})
        return count
