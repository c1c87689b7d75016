"""Core types for BTC Bridge."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional


# Source asset precision (satoshis)
SOURCE_DECIMALS = 8
SOURCE_QUANTUM = Decimal(1).scaleb(-SOURCE_DECIMALS)


class RequestType(Enum):
    """Kind of request opened by the user."""
    BRIDGE = "BRIDGE"
    SWAP = "SWAP"


class BridgeStep(Enum):
    """Intake conversation step."""
    AWAITING_AMOUNT = "AWAITING_AMOUNT"
    AWAITING_DESTINATION = "AWAITING_DESTINATION"


class TransactionStatus(Enum):
    """Bridge transaction lifecycle status."""
    PENDING = "PENDING"
    DETECTED = "DETECTED"
    CONFIRMING = "CONFIRMING"
    SETTLING = "SETTLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.EXPIRED,
})

_ABORT = {TransactionStatus.FAILED, TransactionStatus.EXPIRED}

# Allowed transitions. CONFIRMING -> DETECTED is the reorg revert.
TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.DETECTED, *_ABORT}),
    TransactionStatus.DETECTED: frozenset({TransactionStatus.CONFIRMING, *_ABORT}),
    TransactionStatus.CONFIRMING: frozenset({
        TransactionStatus.SETTLING,
        TransactionStatus.DETECTED,
        *_ABORT,
    }),
    TransactionStatus.SETTLING: frozenset({TransactionStatus.COMPLETED, *_ABORT}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.EXPIRED: frozenset(),
}


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    """Check whether the state machine allows current -> new."""
    return new in TRANSITIONS[current]


@dataclass
class BridgeRequest:
    """In-progress intake conversation for one user."""
    user_id: str
    chat_id: str
    request_type: RequestType
    step: BridgeStep = BridgeStep.AWAITING_AMOUNT
    amount: Optional[Decimal] = None
    destination_address: Optional[str] = None
    updated_at: float = 0.0  # monotonic seconds

    @property
    def is_complete(self) -> bool:
        return self.amount is not None and self.destination_address is not None


@dataclass
class BridgeTransaction:
    """Durable bridge transaction record."""
    id: str
    user_id: str
    chat_id: str
    request_type: RequestType
    source_amount: Decimal
    destination_address: str
    fee_rate: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    deposit_locus: str
    status: TransactionStatus
    created_at: datetime
    detected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    source_tx_ref: Optional[str] = None
    settlement_tx_ref: Optional[str] = None
    dispatch_token: Optional[str] = None
    review_reason: Optional[str] = None
    failure_reason: Optional[str] = None

    def copy(self, **changes) -> "BridgeTransaction":
        return replace(self, **changes)


@dataclass(frozen=True)
class SourcePayment:
    """A payment seen on the source chain."""
    tx_ref: str
    amount: Decimal
    confirmations: int


@dataclass
class StatusSnapshot:
    """Read-only view returned by status queries."""
    id: str
    status: TransactionStatus
    source_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    deposit_locus: str
    destination_address: str
    created_at: datetime
    detected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    source_tx_ref: Optional[str] = None
    settlement_tx_ref: Optional[str] = None
    flagged_for_review: bool = False
    extra: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_transaction(cls, tx: BridgeTransaction) -> "StatusSnapshot":
        extra = {}
        if tx.review_reason:
            extra["review_reason"] = tx.review_reason
        if tx.failure_reason:
            extra["failure_reason"] = tx.failure_reason
        return cls(
            id=tx.id,
            status=tx.status,
            source_amount=tx.source_amount,
            fee_amount=tx.fee_amount,
            net_amount=tx.net_amount,
            deposit_locus=tx.deposit_locus,
            destination_address=tx.destination_address,
            created_at=tx.created_at,
            detected_at=tx.detected_at,
            completed_at=tx.completed_at,
            source_tx_ref=tx.source_tx_ref,
            settlement_tx_ref=tx.settlement_tx_ref,
            flagged_for_review=tx.review_reason is not None,
            extra=extra,
        )
