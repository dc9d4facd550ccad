"""Tests for the concurrent batch processor."""

import asyncio

import pytest

from services.transfers.batch_processor import ConcurrentBatchProcessor
from services.transfers.db_manager import PersistenceError
from services.transfers.models import SyncContext, TransactionLocator
from tests.fakes import BASE_TIMESTAMP_MS, InMemoryTransferStore, make_block


def _populate(ledger, count, per_checkpoint=4):
    """Register `count` transactions spread over checkpoints 1..n."""
    locators = []
    for i in range(count):
        seq = i // per_checkpoint + 1
        block = make_block(
            f"tx{i:03d}",
            sender=f"0xs{i % 7}",
            changes=[(f"0xs{i % 7}", f"-{i + 1}"), (f"0xr{i % 5}", f"{i + 1}")],
        )
        ledger.transactions[block["digest"]] = block
        locators.append(TransactionLocator(
            digest=block["digest"],
            checkpoint=seq,
            timestamp_ms=str(BASE_TIMESTAMP_MS + seq * 1000),
        ))
    return locators


def test_rejects_non_positive_workers(ledger, store, extractor):
    with pytest.raises(ValueError, match="max_workers"):
        ConcurrentBatchProcessor(ledger, store, extractor, max_workers=0)


@pytest.mark.asyncio
async def test_process_extracts_and_persists(ledger, store, extractor):
    locators = _populate(ledger, 10)
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=4)

    result = await processor.process(locators)

    assert result.processed == 10
    assert result.skipped == 0
    assert result.failed == 0
    assert result.cancelled is False
    assert len(result.events) == 20
    assert result.inserted == 20
    assert store.upsert_calls == 1
    assert len(store.events) == 20


@pytest.mark.asyncio
async def test_empty_batch_does_nothing(ledger, store, extractor):
    processor = ConcurrentBatchProcessor(ledger, store, extractor)

    result = await processor.process([])

    assert result.processed == 0
    assert store.upsert_calls == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("workers", [1, 5, 50])
async def test_worker_count_does_not_change_stored_events(ledger, extractor, workers):
    locators = _populate(ledger, 60)
    store = InMemoryTransferStore()
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=workers)

    result = await processor.process(locators)

    sequential_store = InMemoryTransferStore()
    sequential = ConcurrentBatchProcessor(ledger, sequential_store, extractor, max_workers=1)
    await sequential.process(locators)

    assert result.processed == 60
    assert store.stored_keys() == sequential_store.stored_keys()
    assert len(store.events) == 120


@pytest.mark.asyncio
async def test_known_digests_are_skipped(ledger, store, extractor):
    locators = _populate(ledger, 6)
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=3)
    await processor.process(locators[:2])
    ledger.transaction_calls.clear()

    result = await processor.process(locators)

    assert result.skipped == 2
    assert result.processed == 4
    assert result.inserted == 8
    assert sorted(ledger.transaction_calls) == [loc.digest for loc in locators[2:]]


@pytest.mark.asyncio
async def test_reprocessing_is_idempotent(ledger, store, extractor):
    locators = _populate(ledger, 8)
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=3)

    await processor.process(locators)
    snapshot = store.stored_keys()
    second = await processor.process(locators)

    assert second.inserted == 0
    assert second.skipped == 8
    assert store.stored_keys() == snapshot


@pytest.mark.asyncio
async def test_duplicate_locators_deduplicated_before_persist(ledger, store, extractor):
    locators = _populate(ledger, 3)
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=2)

    result = await processor.process(locators + locators)

    assert result.processed == 6
    assert len(result.events) == 6
    assert result.inserted == 6


@pytest.mark.asyncio
async def test_fetch_errors_do_not_cancel_siblings(ledger, store, extractor):
    locators = _populate(ledger, 5)
    ledger.failing_transactions.add("tx002")
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=5)

    result = await processor.process(locators)

    assert result.processed == 4
    assert result.failed == 1
    assert result.errors and result.errors[0].startswith("tx002:")
    assert not any(e.digest == "tx002" for e in store.events.values())


@pytest.mark.asyncio
async def test_shape_errors_yield_no_events(ledger, store, extractor):
    locators = _populate(ledger, 2)
    ledger.transactions["tx000"]["balanceChanges"][0]["amount"] = "garbage"
    processor = ConcurrentBatchProcessor(ledger, store, extractor)

    result = await processor.process(locators)

    assert result.processed == 2
    assert result.failed == 0
    assert {e.digest for e in result.events} == {"tx001"}


@pytest.mark.asyncio
async def test_preloaded_block_skips_fetch(ledger, store, extractor):
    block = make_block("pre1", checkpoint=9, timestamp_ms=BASE_TIMESTAMP_MS)
    processor = ConcurrentBatchProcessor(ledger, store, extractor)

    result = await processor.process([TransactionLocator(digest="pre1", block=block)])

    assert result.processed == 1
    assert ledger.transaction_calls == []
    assert next(iter(store.events.values())).checkpoint == 9


@pytest.mark.asyncio
async def test_persistence_error_is_fatal(ledger, store, extractor):
    locators = _populate(ledger, 4)
    store.fail_reads = True
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=2)

    with pytest.raises(PersistenceError):
        await processor.process(locators)

    assert store.upsert_calls == 0


@pytest.mark.asyncio
async def test_cancelled_context_processes_nothing(ledger, store, extractor):
    locators = _populate(ledger, 4)
    ctx = SyncContext()
    ctx.cancel()
    processor = ConcurrentBatchProcessor(ledger, store, extractor)

    result = await processor.process(locators, ctx)

    assert result.cancelled is True
    assert result.processed == 0
    assert ledger.transaction_calls == []


@pytest.mark.asyncio
async def test_worker_pool_is_bounded(store, extractor):
    in_flight = 0
    peak = 0

    class SlowLedger:
        async def get_transaction(self, digest):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            return make_block(digest, checkpoint=1, timestamp_ms=BASE_TIMESTAMP_MS)

    locators = [TransactionLocator(digest=f"d{i}") for i in range(30)]
    processor = ConcurrentBatchProcessor(SlowLedger(), store, extractor, max_workers=3)

    result = await processor.process(locators)

    assert result.processed == 30
    assert peak <= 3


@pytest.mark.asyncio
async def test_fetch_checkpoints_lists_transactions_in_order(ledger, store, extractor):
    ledger.add_checkpoint(1, [make_block("a1"), make_block("a2")])
    ledger.add_checkpoint(3, [make_block("c1")])
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=2)

    fetched = await processor.fetch_checkpoints(1, 3)

    assert [(loc.digest, loc.checkpoint) for loc in fetched.locators] == [("a1", 1), ("a2", 1), ("c1", 3)]
    assert fetched.locators[0].timestamp_ms == str(BASE_TIMESTAMP_MS + 1000)
    assert fetched.error is None


@pytest.mark.asyncio
async def test_fetch_checkpoints_stops_at_first_failure(ledger, store, extractor):
    for seq in range(1, 6):
        ledger.add_checkpoint(seq, [make_block(f"t{seq}")])
    ledger.failing_checkpoints.add(3)
    processor = ConcurrentBatchProcessor(ledger, store, extractor, max_workers=5)

    fetched = await processor.fetch_checkpoints(1, 5)

    assert [loc.digest for loc in fetched.locators] == ["t1", "t2"]
    assert fetched.failed_checkpoint == 3
    assert "checkpoint 3" in fetched.error


@pytest.mark.asyncio
async def test_fetch_checkpoints_rejects_bad_shape(ledger, store, extractor):
    ledger.checkpoints[2] = {"transactions": ["x"]}
    processor = ConcurrentBatchProcessor(ledger, store, extractor)

    fetched = await processor.fetch_checkpoints(1, 2)

    assert fetched.failed_checkpoint == 2
    assert fetched.locators == []


@pytest.mark.asyncio
async def test_fetch_checkpoints_respects_cancellation(ledger, store, extractor):
    ctx = SyncContext()
    ctx.cancel()
    processor = ConcurrentBatchProcessor(ledger, store, extractor)

    fetched = await processor.fetch_checkpoints(1, 5, ctx)

    assert fetched.cancelled is True
    assert ledger.checkpoint_calls == []
