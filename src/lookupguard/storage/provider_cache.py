"""
SQLite cache of provider lookup results.

Entries expire after ``ttl_days``. The cache is an optimisation only: any
database error is logged and treated as a miss (reads) or skipped (writes).
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional

import aiosqlite
import structlog

from lookupguard.protocols import utc_now

from .schema import create_statements, format_timestamp, provider_cache_table

if TYPE_CHECKING:
    from lookupguard.config.config import ProviderCacheConfig

logger = structlog.get_logger(__name__)


class ProviderCache:
    """Phone number -> provider name, with a time-to-live."""

    def __init__(self, db_path: Path, ttl_days: int = 30):
        self.db_path = Path(db_path)
        self.ttl_days = ttl_days
        self._db: Optional[aiosqlite.Connection] = None
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: "ProviderCacheConfig") -> ProviderCache:
        return cls(db_path=config.db_path, ttl_days=config.ttl_days)

    async def __aenter__(self) -> ProviderCache:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._db is not None:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.db_path)
            try:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute("PRAGMA busy_timeout = 5000;")
                for statement in create_statements(provider_cache_table):
                    await conn.execute(statement)
                await conn.commit()
            except Exception:
                await conn.close()
                raise
            self._db = conn

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        assert self._db is not None
        return self._db

    def _cutoff(self) -> str:
        return format_timestamp(utc_now() - timedelta(days=self.ttl_days))

    async def get(self, phone_number: str) -> Optional[str]:
        """Cached provider for ``phone_number``, or None on a miss."""
        try:
            db = await self._conn()
            async with db.execute(
                "SELECT provider FROM provider_lookup_cache WHERE phone_number = ? AND last_checked > ?",
                (phone_number, self._cutoff()),
            ) as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            logger.error("Error reading from provider cache", phone_number=phone_number, error=str(e))
            return None

        if row is None:
            logger.debug("Cache miss", phone_number=phone_number)
            return None
        logger.debug("Cache hit", phone_number=phone_number, provider=row[0])
        return row[0]

    async def get_many(self, phone_numbers: Iterable[str]) -> Dict[str, str]:
        """Cached providers for the numbers that have a fresh entry."""
        numbers = list(dict.fromkeys(phone_numbers))
        if not numbers:
            return {}

        placeholders = ", ".join("?" for _ in numbers)
        try:
            db = await self._conn()
            async with db.execute(
                f"""
                SELECT phone_number, provider FROM provider_lookup_cache
                WHERE phone_number IN ({placeholders}) AND last_checked > ?
            """,
                (*numbers, self._cutoff()),
            ) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("Error reading batch from provider cache", count=len(numbers), error=str(e))
            return {}

        results = {row[0]: row[1] for row in rows}
        logger.info("Provider cache batch lookup", found=len(results), requested=len(numbers))
        return results

    async def set_many(self, providers: Mapping[str, str]) -> None:
        """Upsert results and refresh their timestamp."""
        if not providers:
            return

        stamp = format_timestamp(utc_now())
        try:
            db = await self._conn()
            await db.executemany(
                """
                INSERT INTO provider_lookup_cache (phone_number, provider, last_checked)
                VALUES (?, ?, ?)
                ON CONFLICT (phone_number)
                DO UPDATE SET provider = excluded.provider, last_checked = excluded.last_checked
            """,
                [(phone, provider, stamp) for phone, provider in providers.items()],
            )
            await db.commit()
        except Exception as e:
            logger.error("Error writing to provider cache", count=len(providers), error=str(e))
            return

        logger.info("Cached provider lookups", count=len(providers))

    async def purge_expired(self) -> int:
        """Delete entries older than the TTL; returns the number removed."""
        db = await self._conn()
        cursor = await db.execute(
            "DELETE FROM provider_lookup_cache WHERE last_checked <= ?",
            (self._cutoff(),),
        )
        deleted = cursor.rowcount
        await cursor.close()
        await db.commit()
        logger.info("Purged expired provider cache entries", deleted=deleted)
        return deleted
