from datetime import datetime, timezone

from services.transfers.dedup import deduplicate, event_key
from services.transfers.models import TransferEvent, TransferKind


def _event(digest="d1", recipient="0xb", amount="10", kind=TransferKind.TRANSFER, checkpoint=1):
    return TransferEvent(
        digest=digest,
        sender="0xa",
        recipient=recipient,
        amount=amount,
        kind=kind,
        checkpoint=checkpoint,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        success=True,
    )


def test_event_key_fields():
    assert event_key(_event()) == ("d1", "0xb", "10", "transfer")


def test_deduplicate_removes_repeated_keys_first_wins():
    first = _event(checkpoint=1)
    repeat = _event(checkpoint=2)
    other_recipient = _event(recipient="0xc")
    other_kind = _event(kind=TransferKind.SELL)

    result = deduplicate([first, repeat, other_recipient, other_kind, first])

    assert result == [first, other_recipient, other_kind]
    assert result[0].checkpoint == 1


def test_deduplicate_distinguishes_amount_strings():
    # Keys compare the literal amount text
    result = deduplicate([_event(amount="10"), _event(amount="10.0")])

    assert len(result) == 2


def test_deduplicate_empty():
    assert deduplicate([]) == []
