"""Pydantic models for API requests and responses."""

from typing import Dict, List, Optional
from pydantic import BaseModel

from core.types import BridgeTransaction, StatusSnapshot


class TransactionStatusResponse(BaseModel):
    """Status snapshot of one bridge transaction."""
    id: str
    status: str  # PENDING, DETECTED, CONFIRMING, SETTLING, COMPLETED, FAILED, EXPIRED
    source_amount: str
    fee_amount: str
    net_amount: str
    deposit_address: str
    destination_address: str
    created_at: str
    detected_at: Optional[str] = None
    completed_at: Optional[str] = None
    source_tx_hash: Optional[str] = None
    settlement_tx_hash: Optional[str] = None
    flagged_for_review: bool = False
    details: Dict[str, str] = {}

    @classmethod
    def from_snapshot(cls, snapshot: StatusSnapshot) -> "TransactionStatusResponse":
        return cls(
            id=snapshot.id,
            status=snapshot.status.value,
            source_amount=str(snapshot.source_amount),
            fee_amount=str(snapshot.fee_amount),
            net_amount=str(snapshot.net_amount),
            deposit_address=snapshot.deposit_locus,
            destination_address=snapshot.destination_address,
            created_at=snapshot.created_at.isoformat(),
            detected_at=snapshot.detected_at.isoformat() if snapshot.detected_at else None,
            completed_at=snapshot.completed_at.isoformat() if snapshot.completed_at else None,
            source_tx_hash=snapshot.source_tx_ref,
            settlement_tx_hash=snapshot.settlement_tx_ref,
            flagged_for_review=snapshot.flagged_for_review,
            details=dict(snapshot.extra),
        )

    @classmethod
    def from_transaction(cls, tx: BridgeTransaction) -> "TransactionStatusResponse":
        return cls.from_snapshot(StatusSnapshot.from_transaction(tx))


class TransactionHistory(BaseModel):
    """Transaction history for a user."""
    user_id: str
    transactions: List[TransactionStatusResponse]
    total_bridged: str


class IncomingMessageRequest(BaseModel):
    """Inbound chat message relayed by the chat front-end."""
    user_id: str
    chat_id: str
    text: str


class IncomingMessageResponse(BaseModel):
    """Whether a handler consumed the message."""
    handled: bool


class HealthResponse(BaseModel):
    """API health check response."""
    status: str
    service: str
    version: str
