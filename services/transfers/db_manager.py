"""
Database storage for transfer events.

Provides:
- Idempotent bulk insertion keyed on (digest, recipient, amount, kind)
- Indexed access paths by digest, address, timestamp and checkpoint
- Windowed aggregates computed with exact NUMERIC arithmetic
- The derived sync watermark (highest stored checkpoint)
"""

import contextlib
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Sequence

import asyncpg

from ledger_sync.common.logging_setup import get_logger
from .models import TransferEvent, TransferKind, WindowStatistics

logger = get_logger(__name__)


class PersistenceError(Exception):
    """Raised when the persistence layer cannot be reached or rejects an operation."""
    pass


UPSERT_SQL = """
    INSERT INTO transfer_events (
        digest, sender, recipient, amount, kind,
        checkpoint, timestamp, success, gas_fee
    )
    SELECT * FROM unnest(
        $1::text[], $2::text[], $3::text[], $4::text[], $5::text[],
        $6::bigint[], $7::timestamptz[], $8::boolean[], $9::text[]
    )
    ON CONFLICT (digest, recipient, amount, kind) DO NOTHING
"""


class TransferDatabaseManager:
    """Manages database operations for transfer event storage."""

    def __init__(self, db_pool: asyncpg.Pool, batch_size: int = 1000):
        """
        Initialize database manager.

        Args:
            db_pool: AsyncPG connection pool
            batch_size: Maximum rows per INSERT statement
        """
        self.pool = db_pool
        self.batch_size = batch_size

    @contextlib.asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.log_operation(operation=operation, status="failed", error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e

    async def create_schema(self) -> None:
        """Create the transfer_events table and indexes."""
        kinds = ", ".join(f"'{kind.value}'" for kind in TransferKind)
        create_table_sql = f"""
            CREATE TABLE IF NOT EXISTS transfer_events (
                id BIGSERIAL PRIMARY KEY,
                digest VARCHAR(64) NOT NULL,
                sender VARCHAR(66) NOT NULL,
                recipient VARCHAR(66) NOT NULL DEFAULT '',

                -- Signed decimal kept as text to preserve precision
                amount TEXT NOT NULL,
                kind VARCHAR(10) NOT NULL CHECK (kind IN ({kinds})),

                checkpoint BIGINT NOT NULL CHECK (checkpoint >= 0),
                timestamp TIMESTAMPTZ NOT NULL,
                success BOOLEAN NOT NULL,
                gas_fee TEXT NOT NULL,

                created_at TIMESTAMPTZ DEFAULT NOW(),

                CONSTRAINT uq_transfer_events_content UNIQUE (digest, recipient, amount, kind)
            );
        """

        create_indexes_sql = [
            "CREATE INDEX IF NOT EXISTS idx_transfer_events_digest ON transfer_events(digest);",
            "CREATE INDEX IF NOT EXISTS idx_transfer_events_sender_time ON transfer_events(sender, timestamp DESC);",
            "CREATE INDEX IF NOT EXISTS idx_transfer_events_recipient_time ON transfer_events(recipient, timestamp DESC);",
            "CREATE INDEX IF NOT EXISTS idx_transfer_events_time ON transfer_events(timestamp);",
            "CREATE INDEX IF NOT EXISTS idx_transfer_events_checkpoint ON transfer_events(checkpoint);",
        ]

        async with self._connection("create_schema") as conn:
            await conn.execute(create_table_sql)

            for index_sql in create_indexes_sql:
                await conn.execute(index_sql)

        logger.info("Created transfer_events table and indexes")

    async def upsert_batch(self, events: Sequence[TransferEvent]) -> int:
        """
        Insert events, treating uniqueness conflicts as already-processed rows.

        All chunks are written inside one database transaction.

        Args:
            events: Deduplicated transfer events

        Returns:
            Number of rows actually inserted
        """
        if not events:
            return 0

        total_inserted = 0

        async with self._connection("upsert_batch") as conn:
            async with conn.transaction():
                for i in range(0, len(events), self.batch_size):
                    chunk = events[i:i + self.batch_size]
                    total_inserted += await self._insert_chunk(conn, chunk)

        logger.log_operation(
            operation="upsert_batch",
            params={"events": len(events)},
            status="completed",
            message=f"Inserted {total_inserted} of {len(events)} transfer events"
        )

        return total_inserted

    async def _insert_chunk(
        self,
        conn: asyncpg.Connection,
        chunk: Sequence[TransferEvent]
    ) -> int:
        columns = (
            [e.digest for e in chunk],
            [e.sender for e in chunk],
            [e.recipient for e in chunk],
            [e.amount for e in chunk],
            [e.kind.value for e in chunk],
            [e.checkpoint for e in chunk],
            [e.timestamp for e in chunk],
            [e.success for e in chunk],
            [e.gas_fee for e in chunk],
        )

        status = await conn.execute(UPSERT_SQL, *columns)
        # Status tag looks like "INSERT 0 <rows>"
        return int(status.split()[-1])

    async def exists_by_digest(self, digest: str) -> bool:
        query = "SELECT EXISTS(SELECT 1 FROM transfer_events WHERE digest = $1)"

        async with self._connection("exists_by_digest") as conn:
            return bool(await conn.fetchval(query, digest))

    async def get_by_digest(self, digest: str) -> List[TransferEvent]:
        query = """
            SELECT digest, sender, recipient, amount, kind, checkpoint, timestamp, success, gas_fee
            FROM transfer_events
            WHERE digest = $1
            ORDER BY id
        """

        async with self._connection("get_by_digest") as conn:
            rows = await conn.fetch(query, digest)

        return [_row_to_event(row) for row in rows]

    async def get_by_address(
        self,
        address: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[TransferEvent]:
        """
        Get events where the address is sender or recipient.

        Args:
            address: Account address
            limit: Maximum number of events
            offset: Number of events to skip

        Returns:
            Events ordered by timestamp, newest first
        """
        query = """
            SELECT digest, sender, recipient, amount, kind, checkpoint, timestamp, success, gas_fee
            FROM transfer_events
            WHERE sender = $1 OR recipient = $1
            ORDER BY timestamp DESC, id DESC
            LIMIT $2 OFFSET $3
        """

        async with self._connection("get_by_address") as conn:
            rows = await conn.fetch(query, address, limit, offset)

        return [_row_to_event(row) for row in rows]

    async def aggregate(self, start: datetime, end: datetime) -> WindowStatistics:
        """
        Compute statistics over [start, end).

        Amounts of successful events are summed per kind as absolute values.
        Distinct senders include failed transactions; the event count does not.

        Args:
            start: Inclusive window start
            end: Exclusive window end

        Returns:
            Window statistics
        """
        totals_query = """
            SELECT
                kind,
                SUM(ABS(CAST(amount AS NUMERIC))) AS total_amount,
                COUNT(*) AS event_count
            FROM transfer_events
            WHERE timestamp >= $1 AND timestamp < $2 AND success = TRUE
            GROUP BY kind
        """

        holders_query = """
            SELECT COUNT(DISTINCT sender)
            FROM transfer_events
            WHERE timestamp >= $1 AND timestamp < $2
        """

        async with self._connection("aggregate") as conn:
            rows = await conn.fetch(totals_query, start, end)
            unique_holders = await conn.fetchval(holders_query, start, end)

        totals = {}
        total_tx_count = 0
        for row in rows:
            totals[TransferKind(row["kind"])] = Decimal(row["total_amount"] or 0)
            total_tx_count += row["event_count"]

        return WindowStatistics.from_totals(
            totals,
            unique_holders=unique_holders or 0,
            total_tx_count=total_tx_count,
            period_start=start,
            period_end=end,
        )

    async def max_checkpoint(self) -> int:
        """Highest stored checkpoint, 0 for an empty table."""
        async with self._connection("max_checkpoint") as conn:
            checkpoint = await conn.fetchval("SELECT MAX(checkpoint) FROM transfer_events")

        return checkpoint or 0


def _row_to_event(row) -> TransferEvent:
    return TransferEvent(
        digest=row["digest"],
        sender=row["sender"],
        recipient=row["recipient"],
        amount=row["amount"],
        kind=TransferKind(row["kind"]),
        checkpoint=row["checkpoint"],
        timestamp=row["timestamp"],
        success=row["success"],
        gas_fee=row["gas_fee"],
    )
