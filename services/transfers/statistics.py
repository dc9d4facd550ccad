"""Windowed token statistics over persisted transfer events."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from ledger_sync.common.logging_setup import get_logger
from .models import WindowStatistics

logger = get_logger(__name__)

WEEK = timedelta(days=7)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StatisticsAggregator:
    """Read-only statistics computed by the persistence store."""

    def __init__(self, store):
        self.store = store

    async def window(self, start: datetime, end: datetime) -> WindowStatistics:
        """
        Statistics over the half-open window [start, end).

        Args:
            start: Inclusive start
            end: Exclusive end

        Returns:
            Window statistics

        Raises:
            ValueError: If start is not before end
        """
        start = as_utc(start)
        end = as_utc(end)
        if start >= end:
            raise ValueError(f"Window start {start.isoformat()} must be before end {end.isoformat()}")

        stats = await self.store.aggregate(start, end)
        logger.debug(
            f"Statistics {start.isoformat()} - {end.isoformat()}: "
            f"{stats.total_tx_count} events, {stats.unique_holders} holders"
        )
        return stats

    async def weekly(self, now: Optional[datetime] = None) -> WindowStatistics:
        """Statistics for the last seven days ending at now."""
        end = as_utc(now) if now is not None else datetime.now(timezone.utc)
        return await self.window(end - WEEK, end)

    async def all_time(self, now: Optional[datetime] = None) -> WindowStatistics:
        end = as_utc(now) if now is not None else datetime.now(timezone.utc)
        return await self.window(EPOCH, end)
