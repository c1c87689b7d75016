"""Source chain monitoring for deposits."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from chains.base import SourceChainClient
from core.errors import AmountMismatchError, ExpiryError, StaleTransitionError, TransientChainError
from core.types import BridgeTransaction, SourcePayment, TransactionStatus
from engine import BridgeEngine

logger = logging.getLogger(__name__)

WATCHED_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.DETECTED,
    TransactionStatus.CONFIRMING,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DepositWatcher:
    """Polls the source chain for payments into open deposit addresses.

    Every cycle checks each PENDING, DETECTED and CONFIRMING transaction in
    its own task, so one slow RPC call only delays its own transaction.
    """

    def __init__(
        self,
        engine: BridgeEngine,
        source_client: SourceChainClient,
        min_confirmations: int = 1,
        poll_interval: float = 10.0,
        deposit_window: float = 3600.0,
        rpc_timeout: float = 30.0,
        max_workers: int = 16,
        now: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the deposit watcher.

        Args:
            engine: Lifecycle engine that applies transitions
            source_client: Source chain reader
            min_confirmations: Confirmations before a deposit counts as final
            poll_interval: Seconds between scans
            deposit_window: Seconds a PENDING transaction waits for a deposit, and a
                DETECTED one waits for its vanished deposit to reappear
            rpc_timeout: Upper bound for one transaction's chain lookup
            max_workers: Transactions checked concurrently
            now: Clock used for expiry
        """
        self.engine = engine
        self.source_client = source_client
        self.min_confirmations = min_confirmations
        self.poll_interval = poll_interval
        self.deposit_window = deposit_window
        self.rpc_timeout = rpc_timeout
        self._semaphore = asyncio.Semaphore(max_workers)
        self._now = now
        # tx id -> first scan that no longer saw its detected deposit
        self._missing_since: Dict[str, datetime] = {}

        self.running = False
        self._task: Optional[asyncio.Task] = None

        logger.info(
            f"Initialized deposit watcher "
            f"(min_confirmations={min_confirmations}, poll_interval={poll_interval}s)"
        )

    async def start(self) -> None:
        """Start monitoring for deposits."""
        if self.running:
            logger.warning("Deposit watcher already running")
            return

        logger.info("Starting deposit watcher...")
        self.running = True
        self._task = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        """Stop monitoring."""
        if not self.running:
            return

        logger.info("Stopping deposit watcher...")
        self.running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _monitor_loop(self) -> None:
        """Main monitoring loop."""
        while self.running:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in deposit watcher loop: {e}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def scan_once(self) -> None:
        """Check every watched transaction once."""
        transactions = await self.engine.ledger.open_transactions(WATCHED_STATUSES)
        detected = {tx.id for tx in transactions if tx.status == TransactionStatus.DETECTED}
        for tx_id in list(self._missing_since):
            if tx_id not in detected:
                del self._missing_since[tx_id]
        if not transactions:
            return

        logger.debug(f"Checking {len(transactions)} open deposits")
        await asyncio.gather(*(self._guarded_check(tx) for tx in transactions))

    async def _guarded_check(self, tx: BridgeTransaction) -> None:
        async with self._semaphore:
            try:
                await self.check_transaction(tx)
            except StaleTransitionError as e:
                logger.debug(f"Skipped stale update: {e}")
            except (TransientChainError, asyncio.TimeoutError) as e:
                logger.warning(f"Could not check deposit for {tx.id}: {e!r}")
            except Exception as e:
                logger.error(f"Error checking deposit for {tx.id}: {e}", exc_info=True)

    async def check_transaction(self, tx: BridgeTransaction) -> None:
        """Apply whatever the chain currently shows for one transaction."""
        payments = await asyncio.wait_for(
            self.source_client.get_payments_to(tx.deposit_locus),
            timeout=self.rpc_timeout,
        )

        if tx.status == TransactionStatus.PENDING:
            await self._check_pending(tx, payments)
        elif tx.status == TransactionStatus.DETECTED:
            await self._check_detected(tx, payments)
        elif tx.status == TransactionStatus.CONFIRMING:
            await self._check_confirming(tx, payments)

    async def _check_pending(self, tx: BridgeTransaction, payments: List[SourcePayment]) -> None:
        matches = [p for p in payments if p.amount == tx.source_amount]
        if matches:
            payment = max(matches, key=lambda p: p.confirmations)
            logger.info(
                f"Deposit for {tx.id} seen in {payment.tx_ref[:16]}... "
                f"with {payment.confirmations}/{self.min_confirmations} confirmations"
            )
            await self.engine.mark_detected(tx.id, payment)
            if payment.confirmations >= self.min_confirmations:
                await self.engine.mark_confirming(tx.id)
            return

        if payments:
            # Funds arrived but not the requested amount: hold, never accept
            if tx.review_reason is None:
                received = ", ".join(f"{p.amount} in {p.tx_ref[:16]}..." for p in payments)
                error = AmountMismatchError(tx.id, tx.source_amount, received)
                logger.warning(str(error))
                await self.engine.flag_for_review(tx.id, TransactionStatus.PENDING, str(error))
            return

        age = (self._now() - tx.created_at).total_seconds()
        if age > self.deposit_window:
            error = ExpiryError(tx.id, self.deposit_window)
            logger.info(str(error))
            await self.engine.expire(tx.id, str(error))

    async def _check_detected(self, tx: BridgeTransaction, payments: List[SourcePayment]) -> None:
        payment = _find(payments, tx.source_tx_ref)
        if payment is None:
            await self._check_vanished(tx)
            return
        self._missing_since.pop(tx.id, None)

        if payment.confirmations >= self.min_confirmations:
            logger.info(f"Deposit for {tx.id} reached {payment.confirmations} confirmations")
            await self.engine.mark_confirming(tx.id)

    async def _check_vanished(self, tx: BridgeTransaction) -> None:
        now = self._now()
        missing_since = self._missing_since.setdefault(tx.id, now)
        missing_for = (now - missing_since).total_seconds()
        if missing_for <= self.deposit_window:
            logger.warning(
                f"Detected deposit {tx.source_tx_ref} for {tx.id} is no longer visible "
                f"({missing_for:.0f}s)"
            )
            return

        reason = (
            f"Deposit {tx.source_tx_ref} for {tx.id} disappeared and was not seen "
            f"again within {self.deposit_window:.0f}s"
        )
        logger.warning(reason)
        await self.engine.expire(tx.id, reason, expected=TransactionStatus.DETECTED)
        self._missing_since.pop(tx.id, None)

    async def _check_confirming(self, tx: BridgeTransaction, payments: List[SourcePayment]) -> None:
        payment = _find(payments, tx.source_tx_ref)
        confirmations = payment.confirmations if payment else 0
        if confirmations < self.min_confirmations:
            logger.warning(
                f"Deposit for {tx.id} dropped to {confirmations}/{self.min_confirmations} "
                f"confirmations, reverting to DETECTED"
            )
            await self.engine.revert_to_detected(tx.id)


def _find(payments: List[SourcePayment], tx_ref: Optional[str]) -> Optional[SourcePayment]:
    for payment in payments:
        if payment.tx_ref == tx_ref:
            return payment
    return None
