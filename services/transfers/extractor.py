"""
Transfer event extraction and classification.

Turns one raw transaction record into zero or more typed transfer events for
the tracked token. Classification rules, in order:
- claim: a MoveCall to the configured claim function
- unstake / stake: an emitted event type carrying an unstake or stake marker
- sell: negative balance change
- transfer: positive or zero balance change

Buy and transfer cannot be told apart from balance deltas alone, so positive
changes are always reported as transfers.
"""

from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ledger_sync.common.logging_setup import get_logger
from .models import (
    ProgrammableTransaction,
    TransactionBlock,
    TransactionShapeError,
    TransferEvent,
    TransferKind,
    ms_to_datetime,
    parse_decimal,
)

logger = get_logger(__name__)

STAKE_MARKERS = ("stakeproof", "stake")
UNSTAKE_MARKER = "unstake"


class TransferExtractor:
    """Extracts classified transfer events for a single token."""

    def __init__(self, token_identifier: str, claim_function: str = "claim"):
        """
        Initialize extractor.

        Args:
            token_identifier: Coin type (or distinctive part of it) of the tracked token
            claim_function: Move function name whose invocation marks a claim
        """
        if not token_identifier:
            raise ValueError("token_identifier is required")

        self.token_identifier = token_identifier.lower()
        self.claim_function = claim_function

    def is_tracked_coin(self, coin_type: str) -> bool:
        coin_type = coin_type.lower()
        return coin_type == self.token_identifier or self.token_identifier in coin_type

    def extract(
        self,
        raw_block: Dict[str, Any],
        checkpoint: Optional[int] = None,
        timestamp_ms: Optional[str] = None,
    ) -> List[TransferEvent]:
        """
        Extract transfer events from a raw transaction record.

        Records with an unexpected shape are skipped (zero events) and logged.

        Args:
            raw_block: Raw transaction block from the ledger
            checkpoint: Checkpoint sequence, used when the record lacks one
            timestamp_ms: Checkpoint timestamp, used when the record lacks one

        Returns:
            List of transfer events, possibly empty
        """
        digest = raw_block.get("digest", "<unknown>") if isinstance(raw_block, dict) else "<unknown>"

        try:
            block = TransactionBlock.model_validate(raw_block)
            return self._extract_block(block, checkpoint, timestamp_ms)
        except (ValidationError, TransactionShapeError) as e:
            logger.warning(f"Skipping transaction {digest} with unexpected shape: {e}")
            return []

    def _extract_block(
        self,
        block: TransactionBlock,
        checkpoint: Optional[int],
        timestamp_ms: Optional[str],
    ) -> List[TransferEvent]:
        if block.transaction is None or block.effects is None:
            return []

        tracked = [bc for bc in block.balance_changes if self.is_tracked_coin(bc.coin_type)]
        if not tracked:
            return []

        seq = block.checkpoint if block.checkpoint is not None else checkpoint
        if seq is None:
            raise TransactionShapeError("transaction has no checkpoint")

        ts = block.timestamp_ms if block.timestamp_ms is not None else timestamp_ms
        if ts is None:
            raise TransactionShapeError("transaction has no timestamp")
        timestamp = ms_to_datetime(ts)

        sender = block.transaction.data.sender
        success = block.effects.status.status == "success"
        gas_fee = self.calculate_gas_fee(block)

        events = []
        for balance_change in tracked:
            kind = self.classify(block, balance_change.amount)
            events.append(TransferEvent(
                digest=block.digest,
                sender=sender,
                recipient=balance_change.owner_address,
                amount=balance_change.amount,
                kind=kind,
                checkpoint=seq,
                timestamp=timestamp,
                success=success,
                gas_fee=gas_fee,
            ))

        logger.debug(f"Extracted {len(events)} transfer event(s) from tx {block.digest}")
        return events

    def classify(self, block: TransactionBlock, amount: str) -> TransferKind:
        """
        Determine the transfer kind for one balance change.

        Args:
            block: Decoded transaction block
            amount: Signed balance change amount

        Returns:
            Transfer kind
        """
        if block.transaction is not None:
            kind = block.transaction.data.kind
            if isinstance(kind, ProgrammableTransaction):
                for move_call in kind.move_calls():
                    if move_call.function == self.claim_function:
                        return TransferKind.CLAIM

        for event in block.events:
            event_type = event.type.lower()
            # "unstake" contains "stake", so it is tested first
            if UNSTAKE_MARKER in event_type:
                return TransferKind.UNSTAKE
            if any(marker in event_type for marker in STAKE_MARKERS):
                return TransferKind.STAKE

        value = parse_decimal(amount)
        if value < 0:
            return TransferKind.SELL

        return TransferKind.TRANSFER

    def calculate_gas_fee(self, block: TransactionBlock) -> str:
        """Gas fee as computation + storage - rebate, in the ledger's base unit."""
        gas = block.effects.gas_used
        try:
            total = int(gas.computation_cost) + int(gas.storage_cost) - int(gas.storage_rebate)
        except ValueError:
            raise TransactionShapeError(f"Invalid gas costs in tx {block.digest}: {gas}")
        return str(total)
