"""Tests for transfer extraction and classification."""

from datetime import datetime, timezone

import pytest

from services.transfers.extractor import TransferExtractor
from services.transfers.models import TransferKind
from tests.fakes import OTHER_COIN, TOKEN, make_block

CHECKPOINT = 77
TIMESTAMP_MS = "1700000000000"


def _extract(extractor, block):
    return extractor.extract(block, checkpoint=CHECKPOINT, timestamp_ms=TIMESTAMP_MS)


def test_requires_token_identifier():
    with pytest.raises(ValueError, match="token_identifier"):
        TransferExtractor("")


def test_is_tracked_coin_matches_exact_and_substring(extractor):
    assert extractor.is_tracked_coin(TOKEN)
    assert extractor.is_tracked_coin(TOKEN.upper())

    partial = TransferExtractor("chirp::CHIRP")
    assert partial.is_tracked_coin(TOKEN)
    assert not partial.is_tracked_coin(OTHER_COIN)


def test_extracts_one_event_per_tracked_balance_change(extractor):
    block = make_block("d1", sender="0xa", changes=[("0xa", "-100"), ("0xb", "100")])
    block["balanceChanges"].append({"owner": {"AddressOwner": "0xa"}, "coinType": OTHER_COIN, "amount": "-5"})

    events = _extract(extractor, block)

    assert [(e.recipient, e.amount, e.kind) for e in events] == [
        ("0xa", "-100", TransferKind.SELL),
        ("0xb", "100", TransferKind.TRANSFER),
    ]
    event = events[0]
    assert event.digest == "d1"
    assert event.sender == "0xa"
    assert event.checkpoint == CHECKPOINT
    assert event.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert event.success is True
    assert event.gas_fee == "1300"


def test_claim_move_call_wins_regardless_of_sign(extractor):
    block = make_block("d1", changes=[("0xa", "-5"), ("0xb", "100")], move_function="claim",
                       event_types=["0xc0ffee::staking::StakeProof"])

    events = _extract(extractor, block)

    assert {e.kind for e in events} == {TransferKind.CLAIM}


def test_custom_claim_function():
    extractor = TransferExtractor(TOKEN, claim_function="claim_rewards")

    claimed = _extract(extractor, make_block("d1", move_function="claim_rewards"))
    not_claimed = _extract(extractor, make_block("d2", move_function="claim"))

    assert claimed[0].kind == TransferKind.CLAIM
    assert not_claimed[0].kind == TransferKind.TRANSFER


@pytest.mark.parametrize("event_type,expected", [
    ("0xc0ffee::staking::StakeProof", TransferKind.STAKE),
    ("0xc0ffee::staking::StakeEvent", TransferKind.STAKE),
    ("0xc0ffee::staking::UnstakeEvent", TransferKind.UNSTAKE),
    ("0xc0ffee::staking::unstake_proof", TransferKind.UNSTAKE),
])
def test_staking_events(extractor, event_type, expected):
    events = _extract(extractor, make_block("d1", changes=[("0xa", "-10")], event_types=[event_type]))

    assert events[0].kind == expected


@pytest.mark.parametrize("amount,expected", [
    ("-40", TransferKind.SELL),
    ("40", TransferKind.TRANSFER),
    ("0", TransferKind.TRANSFER),
])
def test_amount_sign_fallback(extractor, amount, expected):
    events = _extract(extractor, make_block("d1", changes=[("0xa", amount)]))

    assert events[0].kind == expected
    assert events[0].amount == amount


def test_classification_is_deterministic(extractor):
    block = make_block("d1", changes=[("0xa", "-1"), ("0xb", "1")], event_types=["0x1::pool::Swap"])

    assert _extract(extractor, block) == _extract(extractor, block)


def test_failed_transaction_still_extracted(extractor):
    events = _extract(extractor, make_block("d1", status="failure"))

    assert len(events) == 1
    assert events[0].success is False


def test_block_checkpoint_and_timestamp_take_precedence(extractor):
    block = make_block("d1", checkpoint=5, timestamp_ms=1600000000000)

    event = _extract(extractor, block)[0]

    assert event.checkpoint == 5
    assert event.timestamp == datetime(2020, 9, 13, 12, 26, 40, tzinfo=timezone.utc)


def test_object_owner_and_missing_owner(extractor):
    block = make_block("d1", changes=[])
    block["balanceChanges"] = [
        {"owner": {"ObjectOwner": "0xobj"}, "coinType": TOKEN, "amount": "3"},
        {"owner": {"Shared": {"initial_shared_version": 1}}, "coinType": TOKEN, "amount": "4"},
    ]

    events = _extract(extractor, block)

    assert [e.recipient for e in events] == ["0xobj", ""]


def test_no_tracked_changes_yields_nothing(extractor):
    assert _extract(extractor, make_block("d1", coin_type=OTHER_COIN)) == []


def test_missing_effects_yields_nothing(extractor):
    block = make_block("d1")
    del block["effects"]

    assert _extract(extractor, block) == []


@pytest.mark.parametrize("mutate", [
    lambda b: b["balanceChanges"][0].update(amount="lots"),
    lambda b: b["effects"]["gasUsed"].update(computationCost="n/a"),
    lambda b: b["transaction"]["data"].pop("sender"),
    lambda b: b.update(balanceChanges="not-a-list"),
])
def test_shape_errors_skip_transaction(extractor, mutate):
    block = make_block("d1")
    mutate(block)

    assert _extract(extractor, block) == []


def test_missing_checkpoint_context_skips_transaction(extractor):
    assert extractor.extract(make_block("d1")) == []


def test_calculate_gas_fee_can_be_negative(extractor):
    block = make_block("d1", gas=("100", "50", "400"))

    assert _extract(extractor, block)[0].gas_fee == "-250"
