"""
Durable retry queue for failed scraper operations.

Failed navigations, provider lookups and extractions are persisted per
scraping session and replayed once their exponential backoff has elapsed.
Rows live in SQLite so a restarted process picks up where it left off.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union
from uuid import uuid4

import aiosqlite
import structlog

from lookupguard.observability import increment
from lookupguard.protocols import RetryItem, RetryItemType, RetryOperation, RetryResult, RetryStatus, utc_now
from lookupguard.storage.schema import create_statements, format_timestamp, parse_timestamp, retry_queue_table

if TYPE_CHECKING:
    from lookupguard.config.config import RetryQueueConfig

logger = structlog.get_logger(__name__)

_COLUMNS = "id, item_type, item_data, attempts, next_retry_time"


class RetryQueue:
    """
    Per-session retry queue with exponential backoff.

    Features:
    - Time-ordered claim of the earliest ready item
    - Atomic select-and-delete so concurrent consumers never share an item
    - Backoff of ``base_delay_ms * 2 ** attempts``
    - Bounded attempts with ``max_retries``
    - Immediate durability, no separate flush step
    """

    def __init__(
        self,
        session_id: str,
        db_path: Path = Path("./data/retry_queue.db"),
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ):
        self.session_id = str(session_id)
        self.db_path = Path(db_path)
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

        self._db: Optional[aiosqlite.Connection] = None
        self._init_lock = asyncio.Lock()
        # Serialises transactions that share this instance's connection.
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, session_id: str, config: "RetryQueueConfig") -> RetryQueue:
        return cls(
            session_id=session_id,
            db_path=config.db_path,
            max_retries=config.max_retries,
            base_delay_ms=config.base_delay_ms,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )

    async def __aenter__(self) -> RetryQueue:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Open the connection and create the schema if needed."""
        async with self._init_lock:
            if self._db is not None:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(
                self.db_path,
                isolation_level=None,
                timeout=self.busy_timeout_ms / 1000,
            )
            try:
                if self.wal_mode:
                    await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)};")
                conn.row_factory = aiosqlite.Row
                for statement in create_statements(retry_queue_table):
                    await conn.execute(statement)
            except Exception:
                await conn.close()
                raise

            self._db = conn
            logger.debug("Retry queue initialized", session_id=self.session_id, db_path=str(self.db_path))

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        assert self._db is not None
        return self._db

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def calculate_backoff_ms(self, attempts: int) -> int:
        """Exponential backoff: base * 2^attempts."""
        return self.base_delay_ms * (2**attempts)

    def calculate_next_retry_time(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        now = now or utc_now()
        return now + timedelta(milliseconds=self.calculate_backoff_ms(attempts))

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_retries

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        item_type: Union[RetryItemType, str],
        payload: Dict[str, Any],
        attempts: int = 0,
    ) -> RetryItem:
        """Persist a failed operation; it becomes ready after its backoff delay."""
        item_type = RetryItemType(item_type)
        if attempts < 0:
            raise ValueError(f"attempts must be non-negative, got {attempts}")

        now = utc_now()
        item = RetryItem(
            id=uuid4().hex,
            item_type=item_type,
            payload=dict(payload),
            attempts=attempts,
            next_retry_time=self.calculate_next_retry_time(attempts, now),
        )
        stamp = format_timestamp(now)

        db = await self._conn()
        async with self._write_lock:
            await db.execute(
                """
                INSERT INTO scraper_retry_queue (
                    id, session_id, item_type, item_data, attempts,
                    next_retry_time, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    item.id,
                    self.session_id,
                    item.item_type.value,
                    json.dumps(item.payload),
                    item.attempts,
                    format_timestamp(item.next_retry_time),
                    stamp,
                    stamp,
                ),
            )

        increment("retry_enqueued", labels={"item_type": item.item_type.value})
        logger.debug(
            "Retry item enqueued",
            session_id=self.session_id,
            item_id=item.id,
            item_type=item.item_type.value,
            attempts=attempts,
            next_retry_time=item.next_retry_time.isoformat(),
        )
        return item

    async def dequeue(self) -> Optional[RetryItem]:
        """
        Claim and remove the earliest ready item for this session.

        The claim is one DELETE ... RETURNING inside an IMMEDIATE transaction,
        so two consumers on the same database can never receive the same row.
        """
        db = await self._conn()
        now = format_timestamp(utc_now())

        async with self._write_lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    f"""
                    DELETE FROM scraper_retry_queue
                    WHERE id = (
                        SELECT id FROM scraper_retry_queue
                        WHERE session_id = ? AND next_retry_time <= ?
                        ORDER BY next_retry_time ASC, created_at ASC
                        LIMIT 1
                    )
                    RETURNING {_COLUMNS}
                """,
                    (self.session_id, now),
                )
                rows = await cursor.fetchall()
                await cursor.close()
                await db.execute("COMMIT")
            except Exception:
                await db.execute("ROLLBACK")
                raise

        if not rows:
            return None
        return self._row_to_item(rows[0])

    async def peek(self) -> Optional[RetryItem]:
        """Return the item ``dequeue`` would claim, without removing it."""
        db = await self._conn()
        async with db.execute(
            f"""
            SELECT {_COLUMNS} FROM scraper_retry_queue
            WHERE session_id = ? AND next_retry_time <= ?
            ORDER BY next_retry_time ASC, created_at ASC
            LIMIT 1
        """,
            (self.session_id, format_timestamp(utc_now())),
        ) as cursor:
            row = await cursor.fetchone()

        return self._row_to_item(row) if row else None

    async def get_queue_size(self) -> int:
        db = await self._conn()
        async with db.execute(
            "SELECT COUNT(*) FROM scraper_retry_queue WHERE session_id = ?",
            (self.session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_ready_count(self) -> int:
        db = await self._conn()
        async with db.execute(
            "SELECT COUNT(*) FROM scraper_retry_queue WHERE session_id = ? AND next_retry_time <= ?",
            (self.session_id, format_timestamp(utc_now())),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_all_items(self) -> List[RetryItem]:
        """All rows for this session, earliest retry first."""
        db = await self._conn()
        async with db.execute(
            f"""
            SELECT {_COLUMNS} FROM scraper_retry_queue
            WHERE session_id = ?
            ORDER BY next_retry_time ASC, created_at ASC
        """,
            (self.session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_item(row) for row in rows]

    async def get_stats(self) -> Dict[str, Any]:
        """Totals plus breakdowns by item type and attempt count."""
        db = await self._conn()

        async with db.execute(
            """
            SELECT item_type, COUNT(*) FROM scraper_retry_queue
            WHERE session_id = ?
            GROUP BY item_type
        """,
            (self.session_id,),
        ) as cursor:
            type_rows = await cursor.fetchall()

        async with db.execute(
            """
            SELECT attempts, COUNT(*) FROM scraper_retry_queue
            WHERE session_id = ?
            GROUP BY attempts
        """,
            (self.session_id,),
        ) as cursor:
            attempt_rows = await cursor.fetchall()

        items_by_type = {item_type.value: 0 for item_type in RetryItemType}
        for row in type_rows:
            items_by_type[row[0]] = int(row[1])

        return {
            "total_items": sum(items_by_type.values()),
            "ready_items": await self.get_ready_count(),
            "items_by_type": items_by_type,
            "items_by_attempts": {int(row[0]): int(row[1]) for row in attempt_rows},
        }

    async def clear(self) -> int:
        """Delete every row for this session; returns the number removed."""
        db = await self._conn()
        async with self._write_lock:
            cursor = await db.execute(
                "DELETE FROM scraper_retry_queue WHERE session_id = ?",
                (self.session_id,),
            )
            deleted = cursor.rowcount
            await cursor.close()

        logger.info("Retry queue cleared", session_id=self.session_id, deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_retry(self, operation: RetryOperation) -> Optional[RetryResult]:
        """
        Claim one ready item and replay it.

        ``operation`` returns a truthy value on success; a falsy return or an
        exception counts as a failure. Failures are re-enqueued with one more
        attempt until ``max_retries`` is reached, then discarded.

        Returns None when nothing is ready.
        """
        item = await self.dequeue()
        if item is None:
            return None

        new_attempts = item.attempts + 1
        try:
            succeeded = bool(await operation(item))
        except Exception as e:
            succeeded = False
            logger.warning(
                "Retry operation raised",
                session_id=self.session_id,
                item_id=item.id,
                item_type=item.item_type.value,
                attempts=new_attempts,
                error=str(e),
            )

        if succeeded:
            logger.info(
                "Retry succeeded",
                session_id=self.session_id,
                item_id=item.id,
                item_type=item.item_type.value,
                attempts=new_attempts,
            )
            result = RetryResult(status=RetryStatus.SUCCESS, item=item, final_attempts=new_attempts)
        elif self.should_retry(new_attempts):
            await self.enqueue(item.item_type, item.payload, new_attempts)
            logger.info(
                "Retry failed, re-enqueued",
                session_id=self.session_id,
                item_id=item.id,
                item_type=item.item_type.value,
                attempts=new_attempts,
                max_retries=self.max_retries,
            )
            result = RetryResult(status=RetryStatus.RETRYING, item=item, final_attempts=new_attempts)
        else:
            logger.error(
                "Max retries exceeded, discarding item",
                session_id=self.session_id,
                item_id=item.id,
                item_type=item.item_type.value,
                attempts=new_attempts,
                max_retries=self.max_retries,
                payload=item.payload,
            )
            result = RetryResult(status=RetryStatus.FAILED, item=item, final_attempts=new_attempts)

        increment("retry_outcomes", labels={"status": result.status.value})
        return result

    async def process_all_ready(self, operation: RetryOperation) -> List[RetryResult]:
        """Process items until none is ready, in claim order."""
        results: List[RetryResult] = []
        while True:
            result = await self.process_retry(operation)
            if result is None:
                break
            results.append(result)
        return results

    def _row_to_item(self, row: Any) -> RetryItem:
        """Convert database row to a RetryItem."""
        return RetryItem(
            id=row[0],
            item_type=RetryItemType(row[1]),
            payload=json.loads(row[2]) if row[2] else {},
            attempts=int(row[3]),
            next_retry_time=parse_timestamp(row[4]),
        )
