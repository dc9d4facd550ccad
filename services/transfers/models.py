"""Pydantic models for ledger records and transfer events."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransactionShapeError(ValueError):
    """Raised when a ledger record does not have the expected shape."""
    pass


class TransferKind(str, Enum):
    """Semantic type of a transfer event."""

    CLAIM = "claim"
    TRANSFER = "transfer"
    STAKE = "stake"
    UNSTAKE = "unstake"
    BUY = "buy"
    SELL = "sell"


def parse_decimal(value: str) -> Decimal:
    """Parse a ledger decimal string, rejecting NaN and infinities."""
    try:
        parsed = Decimal(value)
    except (InvalidOperation, TypeError):
        raise TransactionShapeError(f"Invalid decimal amount: {value!r}")
    if not parsed.is_finite():
        raise TransactionShapeError(f"Non-finite decimal amount: {value!r}")
    return parsed


def ms_to_datetime(timestamp_ms: Union[str, int]) -> datetime:
    """Convert ledger-reported milliseconds into a UTC datetime."""
    try:
        ms = int(timestamp_ms)
    except (TypeError, ValueError):
        raise TransactionShapeError(f"Invalid timestamp: {timestamp_ms!r}")
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class TransferEvent(BaseModel):
    """One classified movement of the tracked token."""

    model_config = ConfigDict(frozen=True)

    digest: str
    sender: str
    recipient: str = ""
    amount: str  # String to preserve precision
    kind: TransferKind
    checkpoint: int = Field(ge=0)
    timestamp: datetime
    success: bool
    gas_fee: str = "0"

    @field_validator("amount", "gas_fee")
    @classmethod
    def validate_decimal_string(cls, v: str) -> str:
        """Keep the original string, but only if it is a valid decimal."""
        try:
            parse_decimal(v)
        except TransactionShapeError as e:
            raise ValueError(str(e))
        return v

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class WindowStatistics(BaseModel):
    """Aggregated token statistics over [period_start, period_end)."""

    total_claimed: Decimal = Decimal("0")
    total_transferred: Decimal = Decimal("0")
    total_staked: Decimal = Decimal("0")
    total_unstaked: Decimal = Decimal("0")
    total_bought: Decimal = Decimal("0")
    total_sold: Decimal = Decimal("0")
    unique_holders: int = 0
    total_tx_count: int = 0
    period_start: datetime
    period_end: datetime

    @classmethod
    def from_totals(
        cls,
        totals: Dict[TransferKind, Decimal],
        unique_holders: int,
        total_tx_count: int,
        period_start: datetime,
        period_end: datetime,
    ) -> "WindowStatistics":
        return cls(
            total_claimed=totals.get(TransferKind.CLAIM, Decimal("0")),
            total_transferred=totals.get(TransferKind.TRANSFER, Decimal("0")),
            total_staked=totals.get(TransferKind.STAKE, Decimal("0")),
            total_unstaked=totals.get(TransferKind.UNSTAKE, Decimal("0")),
            total_bought=totals.get(TransferKind.BUY, Decimal("0")),
            total_sold=totals.get(TransferKind.SELL, Decimal("0")),
            unique_holders=unique_holders,
            total_tx_count=total_tx_count,
            period_start=period_start,
            period_end=period_end,
        )

    def total_for(self, kind: TransferKind) -> Decimal:
        return getattr(self, _TOTAL_FIELDS[kind])


_TOTAL_FIELDS = {
    TransferKind.CLAIM: "total_claimed",
    TransferKind.TRANSFER: "total_transferred",
    TransferKind.STAKE: "total_staked",
    TransferKind.UNSTAKE: "total_unstaked",
    TransferKind.BUY: "total_bought",
    TransferKind.SELL: "total_sold",
}


# ---------------------------------------------------------------------------
# Ledger record shapes (sui_getTransactionBlock / sui_getCheckpoint responses)
# ---------------------------------------------------------------------------

NATIVE_COMMANDS = frozenset({
    "TransferObjects",
    "SplitCoins",
    "MergeCoins",
    "Publish",
    "Upgrade",
    "MakeMoveVec",
})

SYSTEM_KINDS = frozenset({
    "ChangeEpoch",
    "Genesis",
    "ConsensusCommitPrologue",
    "ConsensusCommitPrologueV2",
    "ConsensusCommitPrologueV3",
    "AuthenticatorStateUpdate",
    "RandomnessStateUpdate",
    "EndOfEpochTransaction",
})


class MoveCall(BaseModel):
    """Smart-contract function invocation inside a programmable transaction."""

    package: str
    module: str
    function: str
    type_arguments: List[str] = Field(default_factory=list)


class NativeCommand(BaseModel):
    """Built-in programmable transaction command (SplitCoins, TransferObjects, ...)."""

    name: str


class UnrecognizedCommand(BaseModel):
    name: Optional[str] = None
    raw: Any = None


Command = Union[MoveCall, NativeCommand, UnrecognizedCommand]


class ProgrammableTransaction(BaseModel):
    commands: List[Command] = Field(default_factory=list)

    def move_calls(self) -> List[MoveCall]:
        return [c for c in self.commands if isinstance(c, MoveCall)]


class SystemTransaction(BaseModel):
    kind: str


class UnrecognizedKind(BaseModel):
    kind: Optional[str] = None


TransactionKind = Union[ProgrammableTransaction, SystemTransaction, UnrecognizedKind]


def decode_command(raw: Any) -> Command:
    """Decode one `{"<CommandName>": body}` entry into its variant."""
    if not isinstance(raw, dict) or len(raw) != 1:
        return UnrecognizedCommand(raw=raw)

    (name, body), = raw.items()
    if name == "MoveCall":
        return MoveCall.model_validate(body)
    if name in NATIVE_COMMANDS:
        return NativeCommand(name=name)
    return UnrecognizedCommand(name=name, raw=body)


def decode_transaction_kind(raw: Any) -> TransactionKind:
    """Decode the `transaction` payload of a transaction's data block."""
    if not isinstance(raw, dict):
        return UnrecognizedKind()

    kind = raw.get("kind")
    if kind == "ProgrammableTransaction":
        commands = raw.get("transactions") or []
        if not isinstance(commands, list):
            raise TransactionShapeError("ProgrammableTransaction.transactions must be a list")
        return ProgrammableTransaction(commands=[decode_command(c) for c in commands])
    if kind in SYSTEM_KINDS:
        return SystemTransaction(kind=kind)
    return UnrecognizedKind(kind=kind if isinstance(kind, str) else None)


class Owner(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address_owner: Optional[str] = Field(None, alias="AddressOwner")
    object_owner: Optional[str] = Field(None, alias="ObjectOwner")

    @classmethod
    def from_raw(cls, raw: Any) -> "Owner":
        # "Immutable" and {"Shared": {...}} owners carry no address
        if not isinstance(raw, dict):
            return cls()
        return cls.model_validate(raw)

    @property
    def address(self) -> str:
        return self.address_owner or self.object_owner or ""


class BalanceChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner: Any = None
    coin_type: str = Field(alias="coinType")
    amount: str

    @property
    def owner_address(self) -> str:
        return Owner.from_raw(self.owner).address


class LedgerEvent(BaseModel):
    type: str
    sender: Optional[str] = None


class ExecutionStatus(BaseModel):
    status: str
    error: Optional[str] = None


class GasUsed(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    computation_cost: str = Field("0", alias="computationCost")
    storage_cost: str = Field("0", alias="storageCost")
    storage_rebate: str = Field("0", alias="storageRebate")


class TransactionEffects(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: ExecutionStatus
    gas_used: GasUsed = Field(default_factory=GasUsed, alias="gasUsed")


class TransactionData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str
    kind: TransactionKind = Field(default_factory=UnrecognizedKind, alias="transaction")

    @field_validator("kind", mode="before")
    @classmethod
    def decode_kind(cls, v: Any) -> TransactionKind:
        if isinstance(v, (ProgrammableTransaction, SystemTransaction, UnrecognizedKind)):
            return v
        return decode_transaction_kind(v)


class SenderSignedData(BaseModel):
    data: TransactionData


class TransactionBlock(BaseModel):
    """Full transaction record as returned with showInput/showEffects/showEvents/showBalanceChanges."""

    model_config = ConfigDict(populate_by_name=True)

    digest: str
    transaction: Optional[SenderSignedData] = None
    effects: Optional[TransactionEffects] = None
    events: List[LedgerEvent] = Field(default_factory=list)
    balance_changes: List[BalanceChange] = Field(default_factory=list, alias="balanceChanges")
    timestamp_ms: Optional[str] = Field(None, alias="timestampMs")
    checkpoint: Optional[int] = None

    @field_validator("events", "balance_changes", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class CheckpointSummary(BaseModel):
    """Checkpoint header with the digests of its transactions."""

    model_config = ConfigDict(populate_by_name=True)

    sequence_number: int = Field(alias="sequenceNumber")
    timestamp_ms: str = Field(alias="timestampMs")
    transactions: List[str] = Field(default_factory=list)


class TransactionPage(BaseModel):
    """One page of suix_queryTransactionBlocks results."""

    model_config = ConfigDict(populate_by_name=True)

    data: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(None, alias="nextCursor")
    has_next_page: bool = Field(False, alias="hasNextPage")


@dataclass(frozen=True)
class TransactionLocator:
    """Where to find one transaction: its digest plus whatever context the enumeration source already knows."""

    digest: str
    checkpoint: Optional[int] = None
    timestamp_ms: Optional[str] = None
    block: Optional[Dict[str, Any]] = field(default=None, compare=False)


class SyncContext:
    """Cooperative cancellation for a sync pass.

    Cancelling stops new ledger calls at the next iteration boundary; calls
    already in flight are allowed to finish.
    """

    def __init__(self, deadline: Optional[float] = None):
        self._cancelled = asyncio.Event()
        self.deadline = deadline  # event-loop time

    @classmethod
    def with_timeout(cls, seconds: float) -> "SyncContext":
        return cls(deadline=asyncio.get_running_loop().time() + seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    def done(self) -> bool:
        if self._cancelled.is_set():
            return True
        if self.deadline is not None:
            return asyncio.get_running_loop().time() >= self.deadline
        return False
