"""
Sync orchestration for transfer events.

A sync pass reads the watermark, asks the ledger for its head, and walks the
missing checkpoint range in ascending sub-batches through the batch
processor. Address mode walks paginated per-address listings instead. Every
trigger (timer, HTTP, CLI) goes through the same single-flight lock.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp

from ledger_sync.common.config import LOCK_MODES, SYNC_MODES, Settings
from ledger_sync.common.logging_setup import get_logger, log_summary
from .batch_processor import BatchResult, ConcurrentBatchProcessor
from .checkpoint_manager import SyncProgressTracker
from .models import SyncContext, TransactionLocator, TransactionPage
from .sui_client import ADDRESS_FILTERS, SuiRPCError

logger = get_logger(__name__)

TRANSIENT_ERRORS = (SuiRPCError, aiohttp.ClientError, asyncio.TimeoutError)

# Malformed node replies surface as ValueError (JSON, pydantic) or TypeError
LEDGER_ERRORS = TRANSIENT_ERRORS + (ValueError, TypeError)


class SyncLockTimeoutError(Exception):
    """Raised when the sync lock could not be acquired within the configured timeout."""
    pass


@dataclass
class SyncOutcome:
    """Result of one sync pass."""

    mode: str
    processed_count: int = 0
    new_event_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    start_checkpoint: Optional[int] = None
    end_checkpoint: Optional[int] = None
    watermark_before: int = 0
    watermark_after: int = 0
    errors: List[str] = field(default_factory=list)
    failed_ranges: List[Tuple[int, int]] = field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.errors

    def absorb(self, batch: BatchResult) -> None:
        self.processed_count += batch.processed
        self.new_event_count += batch.inserted
        self.skipped_count += batch.skipped
        self.failed_count += batch.failed
        self.errors.extend(batch.errors)
        if batch.cancelled:
            self.cancelled = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["failed_ranges"] = [list(r) for r in self.failed_ranges]
        data["ok"] = self.ok
        return data


class PagePacer:
    """Delay policy between consecutive address-listing pages."""

    def __init__(
        self,
        delay: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.delay = delay
        self._sleep = sleep

    @classmethod
    def from_millis(cls, delay_ms: int) -> "PagePacer":
        return cls(delay=delay_ms / 1000)

    async def wait(self) -> None:
        if self.delay > 0:
            await self._sleep(self.delay)


class SyncOrchestrator:
    """Runs sync passes against the ledger and the persistence store."""

    def __init__(
        self,
        ledger,
        store,
        extractor,
        mode: str = "checkpoint",
        checkpoint_batch_size: int = 50,
        tx_batch_size: int = 100,
        max_workers: int = 16,
        monitored_addresses: Iterable[str] = (),
        page_limit: int = 50,
        pacer: Optional[PagePacer] = None,
        start_checkpoint: int = 0,
        max_checkpoints_per_sync: int = 0,
        lock_mode: str = "wait",
        lock_timeout: Optional[float] = None,
        show_progress: bool = False,
    ):
        """
        Initialize orchestrator.

        Args:
            ledger: Ledger client
            store: Persistence store
            extractor: Transfer extractor
            mode: "checkpoint" or "address"
            checkpoint_batch_size: Checkpoints per sub-batch
            tx_batch_size: Transactions per batch in address mode
            max_workers: Concurrent workers per batch
            monitored_addresses: Addresses scanned in address mode
            page_limit: Page size for address listings
            pacer: Delay policy between address-listing pages
            start_checkpoint: Lowest checkpoint synced
            max_checkpoints_per_sync: Cap on checkpoints per pass (0 for no cap)
            lock_mode: "wait" to queue behind a running pass, "skip" to return immediately
            lock_timeout: Seconds to wait for the lock (None waits forever)
            show_progress: Show progress bars
        """
        if mode not in SYNC_MODES:
            raise ValueError(f"mode must be one of {SYNC_MODES}, got {mode!r}")
        if lock_mode not in LOCK_MODES:
            raise ValueError(f"lock_mode must be one of {LOCK_MODES}, got {lock_mode!r}")
        if checkpoint_batch_size < 1 or tx_batch_size < 1:
            raise ValueError("batch sizes must be >= 1")

        self.ledger = ledger
        self.store = store
        self.mode = mode
        self.checkpoint_batch_size = checkpoint_batch_size
        self.tx_batch_size = tx_batch_size
        self.monitored_addresses = list(dict.fromkeys(a for a in monitored_addresses if a))
        self.page_limit = page_limit
        self.pacer = pacer or PagePacer()
        self.start_checkpoint = start_checkpoint
        self.max_checkpoints_per_sync = max_checkpoints_per_sync
        self.lock_mode = lock_mode
        self.lock_timeout = lock_timeout

        self.progress = SyncProgressTracker(store)
        self.processor = ConcurrentBatchProcessor(
            ledger,
            store,
            extractor,
            max_workers=max_workers,
            show_progress=show_progress
        )
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ledger,
        store,
        extractor,
        show_progress: bool = False
    ) -> "SyncOrchestrator":
        return cls(
            ledger,
            store,
            extractor,
            mode=settings.sync_mode,
            checkpoint_batch_size=settings.checkpoint_batch_size,
            tx_batch_size=settings.tx_batch_size,
            max_workers=settings.max_workers,
            monitored_addresses=settings.monitored_addresses,
            page_limit=settings.page_limit,
            pacer=PagePacer.from_millis(settings.page_delay_ms),
            start_checkpoint=settings.start_checkpoint,
            max_checkpoints_per_sync=settings.max_checkpoints_per_sync,
            lock_mode=settings.sync_lock_mode,
            lock_timeout=settings.lock_timeout,
            show_progress=show_progress,
        )

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def sync(self, ctx: Optional[SyncContext] = None) -> SyncOutcome:
        """
        Run one sync pass in the configured mode.

        Args:
            ctx: Cancellation context

        Returns:
            Sync outcome with counts and non-fatal errors

        Raises:
            SyncLockTimeoutError: If the lock timeout elapses
            PersistenceError: If the store fails
        """
        if self.mode == "address":
            return await self._run_locked("address", self._sync_addresses, ctx)
        return await self._run_locked("checkpoint", self._sync_checkpoints, ctx)

    async def sync_range(
        self,
        start: int,
        end: int,
        ctx: Optional[SyncContext] = None
    ) -> SyncOutcome:
        """
        Process an explicit inclusive checkpoint range (backfill).

        Args:
            start: First checkpoint
            end: Last checkpoint
            ctx: Cancellation context

        Returns:
            Sync outcome
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid checkpoint range {start}-{end}")

        async def run(run_ctx: SyncContext) -> SyncOutcome:
            watermark = await self.progress.get_watermark()
            outcome = SyncOutcome(mode="backfill", watermark_before=watermark)
            await self._process_range(start, end, outcome, run_ctx)
            outcome.watermark_after = self.progress.record(await self.progress.get_watermark())
            return outcome

        return await self._run_locked("backfill", run, ctx)

    async def _run_locked(
        self,
        mode: str,
        runner: Callable[[SyncContext], Awaitable[SyncOutcome]],
        ctx: Optional[SyncContext]
    ) -> SyncOutcome:
        ctx = ctx or SyncContext()

        if self.lock_mode == "skip" and self._lock.locked():
            logger.log_operation(
                operation="sync",
                params={"mode": mode},
                status="skipped",
                message="Sync already running, skipping this trigger"
            )
            return SyncOutcome(mode=mode, skipped=True)

        try:
            if self.lock_timeout is None:
                await self._lock.acquire()
            else:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError:
            raise SyncLockTimeoutError(
                f"Could not acquire sync lock within {self.lock_timeout}s"
            )

        try:
            logger.log_operation(operation="sync", params={"mode": mode}, status="started")
            started = time.monotonic()

            outcome = await runner(ctx)
            outcome.duration_seconds = time.monotonic() - started

            logger.log_operation(
                operation="sync",
                params={"mode": mode},
                status="completed" if outcome.ok else "partial",
                duration_ms=int(outcome.duration_seconds * 1000),
                message=(
                    f"Sync {mode}: {outcome.processed_count} processed, "
                    f"{outcome.new_event_count} new events, {outcome.skipped_count} skipped, "
                    f"{outcome.failed_count} failed, watermark "
                    f"{outcome.watermark_before} -> {outcome.watermark_after}"
                )
            )
            log_summary(__name__, mode, outcome.processed_count, outcome.duration_seconds)
            return outcome
        finally:
            self._lock.release()

    async def _sync_checkpoints(self, ctx: SyncContext) -> SyncOutcome:
        watermark = await self.progress.get_watermark()
        outcome = SyncOutcome(
            mode="checkpoint",
            watermark_before=watermark,
            watermark_after=watermark
        )

        if ctx.done():
            outcome.cancelled = True
            return outcome

        try:
            latest = await self.ledger.get_latest_checkpoint()
        except LEDGER_ERRORS as e:
            logger.error(f"Failed to read latest checkpoint: {e}")
            outcome.errors.append(f"latest checkpoint: {e}")
            return outcome

        resume_from = self.progress.resume_point(watermark)
        span = self.progress.resume_range(
            resume_from,
            latest,
            start_checkpoint=self.start_checkpoint,
            max_span=self.max_checkpoints_per_sync
        )
        if span is None:
            logger.info(f"Up to date at checkpoint {resume_from} (ledger head {latest})")
            return outcome

        scanned = await self._process_range(span[0], span[1], outcome, ctx)
        if scanned is not None:
            self.progress.mark_scanned(scanned)
        outcome.watermark_after = self.progress.record(await self.progress.get_watermark())
        return outcome

    async def _process_range(
        self,
        start: int,
        end: int,
        outcome: SyncOutcome,
        ctx: SyncContext
    ) -> Optional[int]:
        """Walk a range in sub-batches; returns the last checkpoint of the clean prefix."""
        outcome.start_checkpoint = start
        outcome.end_checkpoint = end
        clean_through = None
        clean = True

        for low, high in self.progress.split_range(start, end, self.checkpoint_batch_size):
            if ctx.done():
                outcome.cancelled = True
                break

            fetched = await self.processor.fetch_checkpoints(low, high, ctx)

            batch = BatchResult()
            if fetched.locators:
                batch = await self.processor.process(fetched.locators, ctx)
                outcome.absorb(batch)

            if fetched.error is not None:
                outcome.errors.append(fetched.error)
                outcome.failed_ranges.append((fetched.failed_checkpoint, high))
                logger.log_operation(
                    operation="sync_sub_batch",
                    params={"from": low, "to": high},
                    status="failed",
                    error=fetched.error
                )
            elif batch.failed:
                outcome.failed_ranges.append((low, high))
                logger.log_operation(
                    operation="sync_sub_batch",
                    params={"from": low, "to": high},
                    status="failed",
                    error=f"{batch.failed} transaction(s) failed"
                )

            if fetched.cancelled or batch.cancelled:
                outcome.cancelled = True
                break

            if fetched.error is None and not batch.failed and clean:
                clean_through = high
            else:
                clean = False

        return clean_through

    async def _sync_addresses(self, ctx: SyncContext) -> SyncOutcome:
        watermark = await self.progress.get_watermark()
        outcome = SyncOutcome(
            mode="address",
            watermark_before=watermark,
            watermark_after=watermark
        )
        seen = set()

        for address in self.monitored_addresses:
            for direction in ADDRESS_FILTERS:
                if ctx.done():
                    outcome.cancelled = True
                    break
                await self._scan_address(address, direction, outcome, ctx, seen)
            if outcome.cancelled:
                break

        outcome.watermark_after = self.progress.record(await self.progress.get_watermark())
        return outcome

    async def _scan_address(
        self,
        address: str,
        direction: str,
        outcome: SyncOutcome,
        ctx: SyncContext,
        seen: set
    ) -> None:
        cursor = None
        pending: List[TransactionLocator] = []
        first_page = True

        while True:
            if ctx.done():
                outcome.cancelled = True
                break

            if not first_page:
                await self.pacer.wait()
            first_page = False

            try:
                raw_page = await self.ledger.query_by_address(
                    address,
                    cursor=cursor,
                    limit=self.page_limit,
                    direction=direction
                )
                page = TransactionPage.model_validate(raw_page)
            except LEDGER_ERRORS as e:
                logger.error(f"Failed to list transactions {direction} {address}: {e}")
                outcome.errors.append(f"{direction} {address}: {e}")
                break

            for raw_tx in page.data:
                digest = raw_tx.get("digest")
                if not digest or digest in seen:
                    continue
                seen.add(digest)
                pending.append(TransactionLocator(digest=digest, block=raw_tx))

                if len(pending) >= self.tx_batch_size:
                    outcome.absorb(await self.processor.process(pending, ctx))
                    pending = []

            if not page.has_next_page or not page.next_cursor:
                break
            cursor = page.next_cursor

        if pending and not ctx.done():
            outcome.absorb(await self.processor.process(pending, ctx))
