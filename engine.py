"""Bridge lifecycle engine: the transaction state machine."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, List, Union

from chains.base import AddressIssuer
from core.errors import DuplicateTransactionError, StaleTransitionError
from core.ids import new_transaction_id
from core.types import (
    BridgeRequest,
    BridgeTransaction,
    SourcePayment,
    StatusSnapshot,
    TransactionStatus,
)
from ledger import TransactionLedger

logger = logging.getLogger(__name__)

# Called with the updated record and the status it left
Listener = Callable[[BridgeTransaction, TransactionStatus], Union[None, Awaitable[None]]]

# Attempts at minting a fresh id before giving up on an insert
_MAX_ID_ATTEMPTS = 5



def compute_fee(amount: Decimal, fee_rate: Decimal) -> Decimal:
    """Flat percentage fee, kept exact so that amount - fee == amount * (1 - fee_rate).

    Amounts carry at most 8 places, so the product fits well inside the
    default 28-digit context and the destination's 18 decimals.
    """
    return amount * fee_rate


class BridgeEngine:
    """Owns the transaction state machine.

    The deposit watcher and the settlement dispatcher drive transitions
    through the methods below; each one is a compare-and-set on the status
    the caller last saw, so a late or duplicate observation fails with
    StaleTransitionError instead of overwriting newer state.
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        address_issuer: AddressIssuer,
        fee_rate: Decimal = Decimal("0.001"),
    ):
        self.ledger = ledger
        self.address_issuer = address_issuer
        self.fee_rate = fee_rate
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked after every status change.

        Registering the same callback twice has no effect.
        """
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> List[Listener]:
        return list(self._listeners)

    async def _notify(self, tx: BridgeTransaction, previous: TransactionStatus) -> None:
        for listener in self._listeners:
            try:
                result = listener(tx, previous)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in transition listener for {tx.id}: {e}", exc_info=True)

    async def open_transaction(self, request: BridgeRequest) -> BridgeTransaction:
        """Create a PENDING transaction from a completed intake request.

        Args:
            request: Completed BridgeRequest

        Returns:
            The persisted transaction
        """
        if not request.is_complete:
            raise ValueError(f"Bridge request for user {request.user_id} is incomplete")

        locus = await self.address_issuer.issue_deposit_locus()
        fee = compute_fee(request.amount, self.fee_rate)

        for attempt in range(1, _MAX_ID_ATTEMPTS + 1):
            tx = BridgeTransaction(
                id=new_transaction_id(),
                user_id=request.user_id,
                chat_id=request.chat_id,
                request_type=request.request_type,
                source_amount=request.amount,
                destination_address=request.destination_address,
                fee_rate=self.fee_rate,
                fee_amount=fee,
                net_amount=request.amount - fee,
                deposit_locus=locus,
                status=TransactionStatus.PENDING,
                created_at=datetime.now(timezone.utc),
            )
            try:
                return await self.ledger.create(tx)
            except DuplicateTransactionError as e:
                logger.warning(f"Insert attempt {attempt} for user {request.user_id} failed: {e}")
                if attempt == _MAX_ID_ATTEMPTS:
                    raise

    async def status(self, tx_id: str) -> StatusSnapshot:
        """Read-only status snapshot.

        Raises:
            NotFoundError: If the id is unknown
        """
        tx = await self.ledger.get(tx_id)
        return StatusSnapshot.from_transaction(tx)

    async def history(self, user_id: str) -> List[BridgeTransaction]:
        return await self.ledger.history(user_id)

    async def _transition(
        self,
        tx_id: str,
        expected: TransactionStatus,
        new_status: TransactionStatus,
        **changes,
    ) -> BridgeTransaction:
        tx = await self.ledger.transition(tx_id, expected, new_status, **changes)
        await self._notify(tx, expected)
        return tx

    # Deposit watcher transitions

    async def mark_detected(self, tx_id: str, payment: SourcePayment) -> BridgeTransaction:
        return await self._transition(
            tx_id,
            TransactionStatus.PENDING,
            TransactionStatus.DETECTED,
            source_tx_ref=payment.tx_ref,
            detected_at=datetime.now(timezone.utc),
        )

    async def mark_confirming(self, tx_id: str) -> BridgeTransaction:
        return await self._transition(tx_id, TransactionStatus.DETECTED, TransactionStatus.CONFIRMING)

    async def revert_to_detected(self, tx_id: str) -> BridgeTransaction:
        return await self._transition(tx_id, TransactionStatus.CONFIRMING, TransactionStatus.DETECTED)

    async def expire(
        self,
        tx_id: str,
        reason: str = "",
        expected: TransactionStatus = TransactionStatus.PENDING,
    ) -> BridgeTransaction:
        return await self._transition(
            tx_id, expected, TransactionStatus.EXPIRED, failure_reason=reason or None
        )

    async def flag_for_review(self, tx_id: str, expected: TransactionStatus, reason: str) -> BridgeTransaction:
        """Mark a transaction for manual review without changing its status."""
        tx = await self.ledger.update(tx_id, expected, review_reason=reason)
        logger.warning(f"Transaction {tx_id} flagged for review: {reason}")
        return tx

    # Settlement dispatcher transitions

    async def begin_settlement(self, tx_id: str) -> BridgeTransaction:
        """CONFIRMING -> SETTLING, persisting the dispatch token before any release."""
        return await self._transition(
            tx_id,
            TransactionStatus.CONFIRMING,
            TransactionStatus.SETTLING,
            dispatch_token=uuid.uuid4().hex,
        )

    async def record_release(self, tx_id: str, tx_ref: str) -> BridgeTransaction:
        tx = await self.ledger.update(tx_id, TransactionStatus.SETTLING, settlement_tx_ref=tx_ref)
        logger.info(f"Transaction {tx_id} release recorded as {tx_ref[:16]}...")
        return tx

    async def complete(self, tx_id: str) -> BridgeTransaction:
        return await self._transition(tx_id, TransactionStatus.SETTLING, TransactionStatus.COMPLETED)

    async def fail(self, tx_id: str, reason: str) -> BridgeTransaction:
        """Move a transaction from whatever open status it is in to FAILED.

        Raises:
            StaleTransitionError: If it already reached a terminal status
        """
        current = await self.ledger.get(tx_id)
        if current.status.is_terminal:
            raise StaleTransitionError(tx_id, "an open status", current.status)
        return await self._transition(tx_id, current.status, TransactionStatus.FAILED, failure_reason=reason)
