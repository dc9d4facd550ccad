"""
Checkpoint progress tracking for ledger sync.

Provides:
- Derived watermark (highest checkpoint already persisted)
- Scan cursor over checkpoints already walked without failures
- Resume range planning from the watermark to the ledger head
- Sub-batch splitting of checkpoint ranges
- Watermark monotonicity check across passes
"""

from typing import List, Optional, Tuple

from ledger_sync.common.logging_setup import get_logger

logger = get_logger(__name__)

CheckpointRange = Tuple[int, int]


class SyncProgressTracker:
    """Tracks sync progress through the persisted events themselves.

    There is no separate progress table: the watermark is always
    max(checkpoint) over stored events, so progress and data cannot drift.
    Checkpoints that carried no tracked transfers leave no trace in the
    store, so the tracker also keeps an in-process scan cursor: the highest
    checkpoint walked gap-free by this process. Passes resume after
    whichever of the two is further ahead.
    """

    def __init__(self, store):
        """
        Initialize progress tracker.

        Args:
            store: Persistence store exposing max_checkpoint()
        """
        self.store = store
        self.last_recorded: Optional[int] = None
        self.scanned_through = 0

    async def get_watermark(self) -> int:
        """Highest persisted checkpoint, 0 for an empty store."""
        return await self.store.max_checkpoint()

    def resume_point(self, watermark: int) -> int:
        """Last checkpoint known to be done: the watermark or the scan cursor."""
        return max(watermark, self.scanned_through)

    def mark_scanned(self, checkpoint: int) -> None:
        """Advance the scan cursor; it never moves backwards."""
        if checkpoint > self.scanned_through:
            self.scanned_through = checkpoint

    def resume_range(
        self,
        watermark: int,
        latest: int,
        start_checkpoint: int = 0,
        max_span: int = 0
    ) -> Optional[CheckpointRange]:
        """
        Plan the inclusive checkpoint range for the next pass.

        Args:
            watermark: Current watermark
            latest: Latest checkpoint reported by the ledger
            start_checkpoint: Lowest checkpoint ever synced
            max_span: Cap on checkpoints per pass (0 for no cap)

        Returns:
            (start, end) or None when already caught up
        """
        start = max(watermark + 1, start_checkpoint)
        if start > latest:
            return None

        end = latest
        if max_span > 0:
            end = min(latest, start + max_span - 1)

        return start, end

    @staticmethod
    def split_range(start: int, end: int, batch_size: int) -> List[CheckpointRange]:
        """
        Split an inclusive range into ascending sub-batches.

        Args:
            start: First checkpoint
            end: Last checkpoint
            batch_size: Checkpoints per sub-batch

        Returns:
            List of inclusive (from_checkpoint, to_checkpoint) tuples
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        ranges = []
        current = start

        while current <= end:
            to_checkpoint = min(current + batch_size - 1, end)
            ranges.append((current, to_checkpoint))
            current = to_checkpoint + 1

        return ranges

    def record(self, watermark: int) -> int:
        """Remember the watermark seen after a pass and flag any regression."""
        if self.last_recorded is not None and watermark < self.last_recorded:
            logger.warning(
                f"Watermark moved backwards from {self.last_recorded} to {watermark}; "
                "stored events were removed outside the sync engine"
            )
        self.last_recorded = watermark
        return watermark
