"""
Concurrent batch processing for transfer extraction.

Implements bounded parallel processing with:
- A fixed pool of worker coroutines pulling from a work queue
- A single collector receiving outcomes over a bounded queue
- A join barrier before one deduplication pass and one bulk persist
- Bounded-concurrency checkpoint fetching that stops at the first failure
- Optional progress tracking
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from pydantic import ValidationError
from tqdm.asyncio import tqdm

from ledger_sync.common.logging_setup import get_logger
from .db_manager import PersistenceError
from .dedup import deduplicate
from .models import CheckpointSummary, SyncContext, TransactionLocator, TransferEvent

logger = get_logger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class BatchResult:
    """Counts and events produced by one processed batch."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    events: List[TransferEvent] = field(default_factory=list)
    inserted: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class CheckpointFetch:
    """Locators gathered from a checkpoint sub-batch.

    When a fetch fails, `locators` only covers checkpoints below
    `failed_checkpoint`.
    """

    locators: List[TransactionLocator] = field(default_factory=list)
    failed_checkpoint: Optional[int] = None
    error: Optional[str] = None
    cancelled: bool = False


@dataclass
class _Outcome:
    index: int
    digest: str
    status: str
    events: List[TransferEvent] = field(default_factory=list)
    error: Optional[str] = None
    fatal: Optional[PersistenceError] = None


class ConcurrentBatchProcessor:
    """Processes transaction locators with a bounded worker pool."""

    def __init__(
        self,
        ledger,
        store,
        extractor,
        max_workers: int = 16,
        show_progress: bool = False
    ):
        """
        Initialize batch processor.

        Args:
            ledger: Ledger client (get_checkpoint, get_transaction)
            store: Persistence store (exists_by_digest, upsert_batch)
            extractor: Transfer extractor
            max_workers: Number of concurrent workers
            show_progress: Show a progress bar while processing
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")

        self.ledger = ledger
        self.store = store
        self.extractor = extractor
        self.max_workers = max_workers
        self.show_progress = show_progress

    async def process(
        self,
        locators: Sequence[TransactionLocator],
        ctx: Optional[SyncContext] = None
    ) -> BatchResult:
        """
        Fetch, extract, deduplicate and persist one batch of transactions.

        Args:
            locators: Transactions to process
            ctx: Cancellation context

        Returns:
            Batch result

        Raises:
            PersistenceError: If the store fails during the batch
        """
        ctx = ctx or SyncContext()
        result = BatchResult()

        if not locators:
            return result

        work: asyncio.Queue = asyncio.Queue()
        for index, locator in enumerate(locators):
            work.put_nowait((index, locator))

        worker_count = min(self.max_workers, len(locators))
        outcomes: asyncio.Queue = asyncio.Queue(maxsize=worker_count * 2)

        progress = tqdm(
            total=len(locators),
            desc="Processing transactions",
            disable=not self.show_progress
        )

        stop = asyncio.Event()
        collector = asyncio.create_task(self._collect(outcomes, worker_count, progress))

        try:
            workers = [
                asyncio.create_task(self._worker(work, outcomes, ctx, stop))
                for _ in range(worker_count)
            ]
            await asyncio.gather(*workers)
            collected = await collector
        finally:
            if not collector.done():
                collector.cancel()
            progress.close()

        collected.sort(key=lambda outcome: outcome.index)

        for outcome in collected:
            if outcome.fatal is not None:
                raise outcome.fatal

        events = []
        for outcome in collected:
            if outcome.status == PROCESSED:
                result.processed += 1
                events.extend(outcome.events)
            elif outcome.status == SKIPPED:
                result.skipped += 1
            else:
                result.failed += 1
                result.errors.append(f"{outcome.digest}: {outcome.error}")

        result.cancelled = len(collected) < len(locators)
        result.events = deduplicate(events)
        if result.events:
            result.inserted = await self.store.upsert_batch(result.events)

        logger.log_operation(
            operation="process_batch",
            params={"locators": len(locators), "workers": worker_count},
            status="completed",
            message=(
                f"Batch done: {result.processed} processed, {result.skipped} skipped, "
                f"{result.failed} failed, {result.inserted} new events"
            )
        )

        return result

    async def _worker(
        self,
        work: asyncio.Queue,
        outcomes: asyncio.Queue,
        ctx: SyncContext,
        stop: asyncio.Event
    ) -> None:
        try:
            while not ctx.done() and not stop.is_set():
                try:
                    index, locator = work.get_nowait()
                except asyncio.QueueEmpty:
                    break

                outcome = await self._handle(index, locator)
                await outcomes.put(outcome)

                # Storage is unusable, let the others drain
                if outcome.fatal is not None:
                    stop.set()
        finally:
            await outcomes.put(None)

    async def _collect(
        self,
        outcomes: asyncio.Queue,
        worker_count: int,
        progress
    ) -> List[_Outcome]:
        collected = []
        finished = 0

        while finished < worker_count:
            outcome = await outcomes.get()
            if outcome is None:
                finished += 1
                continue

            collected.append(outcome)
            progress.update(1)

        return collected

    async def _handle(self, index: int, locator: TransactionLocator) -> _Outcome:
        digest = locator.digest

        try:
            if await self.store.exists_by_digest(digest):
                return _Outcome(index=index, digest=digest, status=SKIPPED)

            raw = locator.block
            if raw is None:
                raw = await self.ledger.get_transaction(digest)

            events = self.extractor.extract(
                raw,
                checkpoint=locator.checkpoint,
                timestamp_ms=locator.timestamp_ms
            )
            return _Outcome(index=index, digest=digest, status=PROCESSED, events=events)

        except PersistenceError as e:
            return _Outcome(index=index, digest=digest, status=FAILED, error=str(e), fatal=e)
        except Exception as e:
            logger.error(f"Error processing transaction {digest}: {e}")
            return _Outcome(index=index, digest=digest, status=FAILED, error=str(e))

    async def fetch_checkpoints(
        self,
        start: int,
        end: int,
        ctx: Optional[SyncContext] = None
    ) -> CheckpointFetch:
        """
        Fetch an inclusive checkpoint range and list its transactions.

        Checkpoints are fetched concurrently, bounded by max_workers. The
        result is assembled in ascending order and stops at the first
        failed (or cancelled) checkpoint.

        Args:
            start: First checkpoint
            end: Last checkpoint
            ctx: Cancellation context

        Returns:
            Checkpoint fetch result
        """
        ctx = ctx or SyncContext()
        semaphore = asyncio.Semaphore(self.max_workers)

        async def fetch(sequence_number: int):
            async with semaphore:
                if ctx.done():
                    return None
                return await self.ledger.get_checkpoint(sequence_number)

        sequence_numbers = list(range(start, end + 1))
        results = await asyncio.gather(
            *(fetch(seq) for seq in sequence_numbers),
            return_exceptions=True
        )

        fetched = CheckpointFetch()

        for seq, raw in zip(sequence_numbers, results):
            if isinstance(raw, asyncio.CancelledError):
                raise raw

            if raw is None:
                fetched.cancelled = True
                break

            if isinstance(raw, Exception):
                fetched.failed_checkpoint = seq
                fetched.error = f"checkpoint {seq}: {raw}"
                logger.error(f"Error fetching checkpoint {seq}: {raw}")
                break

            try:
                summary = CheckpointSummary.model_validate(raw)
            except ValidationError as e:
                fetched.failed_checkpoint = seq
                fetched.error = f"checkpoint {seq}: unexpected shape: {e}"
                logger.error(f"Unexpected checkpoint shape at {seq}: {e}")
                break

            for digest in summary.transactions:
                fetched.locators.append(TransactionLocator(
                    digest=digest,
                    checkpoint=summary.sequence_number,
                    timestamp_ms=summary.timestamp_ms
                ))

        logger.debug(
            f"Fetched checkpoints {start}-{end}: {len(fetched.locators)} transactions"
        )
        return fetched
