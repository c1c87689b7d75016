"""Refund queue for transactions that failed after the deposit arrived."""

import logging

from chains.base import RefundHandler
from core.types import BridgeTransaction
from database import LedgerStore

logger = logging.getLogger(__name__)


class QueuedRefundHandler(RefundHandler):
    """Writes refund requests to the ledger database for an operator to pay out."""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def request_refund(self, tx: BridgeTransaction, reason: str) -> None:
        await self.store.add_refund_request(tx.id, reason)
        logger.warning(
            f"Refund queued for {tx.id}: {tx.source_amount} from {tx.source_tx_ref or 'unknown tx'} "
            f"({reason})"
        )
