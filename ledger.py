"""Transaction ledger: the single source of truth for lifecycle state."""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Union

from core.errors import InvalidTransitionError, NotFoundError, StaleTransitionError
from core.locks import KeyedLock
from core.types import BridgeTransaction, TransactionStatus, can_transition
from database import LedgerStore

logger = logging.getLogger(__name__)

Expected = Union[TransactionStatus, Iterable[TransactionStatus]]


def _expected_set(expected: Expected) -> frozenset:
    if isinstance(expected, TransactionStatus):
        return frozenset({expected})
    return frozenset(expected)


class TransactionLedger:
    """Serializes writes per transaction id on top of a LedgerStore.

    Every write re-reads the stored record under the id's lock, checks the
    status the caller expects, and persists with compare-and-set so that a
    second process sharing the store cannot interleave either.
    """

    def __init__(self, store: LedgerStore):
        self.store = store
        self._locks = KeyedLock()

    async def create(self, tx: BridgeTransaction) -> BridgeTransaction:
        """Persist a new PENDING transaction.

        Raises:
            DuplicateTransactionError: If the id or deposit locus is taken
        """
        if tx.status != TransactionStatus.PENDING:
            raise InvalidTransitionError(f"New transactions start PENDING, got {tx.status.value}")
        async with self._locks.hold(tx.id):
            await self.store.insert(tx)
        logger.info(f"Created transaction {tx.id} for {tx.source_amount} at {tx.deposit_locus[:16]}...")
        return tx

    async def get(self, tx_id: str) -> BridgeTransaction:
        """Get a transaction.

        Raises:
            NotFoundError: If the id is unknown
        """
        tx = await self.store.get(tx_id)
        if tx is None:
            raise NotFoundError(tx_id)
        return tx

    async def find(self, tx_id: str) -> Optional[BridgeTransaction]:
        return await self.store.get(tx_id)

    async def transition(
        self,
        tx_id: str,
        expected: Expected,
        new_status: TransactionStatus,
        **changes,
    ) -> BridgeTransaction:
        """Move a transaction to new_status if it is still in an expected status.

        Args:
            tx_id: Transaction id
            expected: Status (or statuses) the caller last observed
            new_status: Target status
            **changes: Other fields to set in the same write

        Returns:
            The updated record

        Raises:
            NotFoundError: If the id is unknown
            StaleTransitionError: If the record moved on since the caller looked
            InvalidTransitionError: If the state machine forbids the move
        """
        allowed = _expected_set(expected)
        async with self._locks.hold(tx_id):
            current = await self.get(tx_id)
            if current.status not in allowed:
                raise StaleTransitionError(tx_id, expected, current.status)
            if not can_transition(current.status, new_status):
                raise InvalidTransitionError(
                    f"{tx_id}: {current.status.value} -> {new_status.value} not allowed"
                )

            if new_status.is_terminal:
                changes.setdefault("completed_at", datetime.now(timezone.utc))
            else:
                changes["completed_at"] = None

            updated = current.copy(status=new_status, **changes)
            if not await self.store.compare_and_set(updated, current.status):
                latest = await self.get(tx_id)
                raise StaleTransitionError(tx_id, current.status, latest.status)

            await self.store.record_transition(tx_id, current.status, new_status)

        logger.info(f"Transaction {tx_id}: {current.status.value} -> {new_status.value}")
        return updated

    async def update(self, tx_id: str, expected: Expected, **changes) -> BridgeTransaction:
        """Set fields without changing status, if the status is still expected.

        Raises:
            NotFoundError: If the id is unknown
            StaleTransitionError: If the status is no longer expected
        """
        if "status" in changes or "completed_at" in changes:
            raise InvalidTransitionError("Use transition() to change status")

        allowed = _expected_set(expected)
        async with self._locks.hold(tx_id):
            current = await self.get(tx_id)
            if current.status not in allowed:
                raise StaleTransitionError(tx_id, expected, current.status)

            updated = current.copy(**changes)
            if not await self.store.compare_and_set(updated, current.status):
                latest = await self.get(tx_id)
                raise StaleTransitionError(tx_id, current.status, latest.status)

        return updated

    async def open_transactions(self, statuses: Iterable[TransactionStatus]) -> List[BridgeTransaction]:
        return await self.store.list_by_status(statuses)

    async def history(self, user_id: str) -> List[BridgeTransaction]:
        return await self.store.list_for_user(user_id)
