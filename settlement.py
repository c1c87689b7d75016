"""Destination chain settlement of confirmed deposits."""

import asyncio
import logging
from typing import Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chains.base import DestinationChainClient, RefundHandler
from core.errors import PermanentSettlementError, StaleTransitionError, TransientChainError
from core.types import BridgeTransaction, TransactionStatus
from engine import BridgeEngine

logger = logging.getLogger(__name__)

DISPATCHED_STATUSES = (TransactionStatus.CONFIRMING, TransactionStatus.SETTLING)


class SettlementDispatcher:
    """Releases the net amount on the destination chain, once per transaction.

    The order of operations per transaction is:

    1. CONFIRMING -> SETTLING, durably recording a dispatch token.
    2. Look for a release already made under that token; submit only if
       there is none, then record the destination tx ref.
    3. Poll the release until it has enough confirmations -> COMPLETED.

    A crash between any two steps resumes at the step after the last one
    recorded in the ledger.
    """

    def __init__(
        self,
        engine: BridgeEngine,
        destination_client: DestinationChainClient,
        refund_handler: RefundHandler,
        required_confirmations: int = 2,
        poll_interval: float = 10.0,
        rpc_timeout: float = 30.0,
        max_workers: int = 16,
        submit_attempts: int = 3,
        backoff_max: float = 30.0,
    ):
        """Initialize the dispatcher.

        Args:
            engine: Lifecycle engine that applies transitions
            destination_client: Destination chain release client
            refund_handler: Collaborator told about failed settlements
            required_confirmations: Destination confirmations before COMPLETED
            poll_interval: Seconds between cycles
            rpc_timeout: Upper bound for one destination call
            max_workers: Transactions handled concurrently
            submit_attempts: Submission attempts per cycle on transient errors
            backoff_max: Cap on the exponential backoff between attempts
        """
        self.engine = engine
        self.destination_client = destination_client
        self.refund_handler = refund_handler
        self.required_confirmations = required_confirmations
        self.poll_interval = poll_interval
        self.rpc_timeout = rpc_timeout
        self.submit_attempts = submit_attempts
        self.backoff_max = backoff_max
        self._semaphore = asyncio.Semaphore(max_workers)

        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self.running:
            logger.warning("Settlement dispatcher already running")
            return

        logger.info("Starting settlement dispatcher...")
        self.running = True
        self._task = asyncio.create_task(self._dispatch_loop())

    async def stop(self) -> None:
        if not self.running:
            return

        logger.info("Stopping settlement dispatcher...")
        self.running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _dispatch_loop(self) -> None:
        while self.running:
            try:
                await self.dispatch_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in settlement loop: {e}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def dispatch_once(self) -> None:
        """Advance every CONFIRMING and SETTLING transaction by as much as possible."""
        transactions = await self.engine.ledger.open_transactions(DISPATCHED_STATUSES)
        if not transactions:
            return

        logger.debug(f"Dispatching {len(transactions)} settlements")
        await asyncio.gather(*(self._guarded_settle(tx) for tx in transactions))

    async def _guarded_settle(self, tx: BridgeTransaction) -> None:
        async with self._semaphore:
            try:
                await self.settle(tx)
            except StaleTransitionError as e:
                logger.debug(f"Skipped stale settlement update: {e}")
            except PermanentSettlementError as e:
                await self._fail(tx, str(e))
            except (TransientChainError, asyncio.TimeoutError) as e:
                logger.warning(f"Settlement of {tx.id} will be retried: {e!r}")
            except Exception as e:
                logger.error(f"Error settling {tx.id}: {e}", exc_info=True)

    async def settle(self, tx: BridgeTransaction) -> None:
        """Run the settlement steps for one transaction."""
        if tx.status == TransactionStatus.CONFIRMING:
            tx = await self.engine.begin_settlement(tx.id)
            logger.info(f"Settling {tx.id}: {tx.net_amount} to {tx.destination_address}")

        if tx.settlement_tx_ref is None:
            tx_ref = await self._release(tx)
            tx = await self.engine.record_release(tx.id, tx_ref)

        await self._check_release(tx)

    async def _release(self, tx: BridgeTransaction) -> str:
        """Find or submit the release for a SETTLING transaction."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.submit_attempts),
            wait=wait_exponential(multiplier=1, max=self.backoff_max),
            retry=retry_if_exception_type((TransientChainError, asyncio.TimeoutError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                # A timed-out submission may still have gone through
                existing = await self._bounded(self.destination_client.find_release(tx.dispatch_token))
                if existing:
                    logger.info(f"Found earlier release {existing[:16]}... for {tx.id}")
                    return existing

                return await self._bounded(
                    self.destination_client.submit_release(
                        tx.destination_address, tx.net_amount, tx.dispatch_token
                    )
                )

    async def _check_release(self, tx: BridgeTransaction) -> None:
        try:
            confirmations = await self._bounded(
                self.destination_client.get_confirmation(tx.settlement_tx_ref)
            )
        except PermanentSettlementError:
            # A duplicate submission reverts on-chain when the first one landed
            existing = await self._bounded(self.destination_client.find_release(tx.dispatch_token))
            if existing and existing != tx.settlement_tx_ref:
                logger.warning(
                    f"Release {tx.settlement_tx_ref[:16]}... for {tx.id} reverted, "
                    f"adopting {existing[:16]}..."
                )
                await self.engine.record_release(tx.id, existing)
                return
            raise

        logger.debug(
            f"Release for {tx.id} has {confirmations}/{self.required_confirmations} confirmations"
        )
        if confirmations >= self.required_confirmations:
            await self.engine.complete(tx.id)
            logger.info(f"Transaction {tx.id} completed in {tx.settlement_tx_ref[:16]}...")

    async def _fail(self, tx: BridgeTransaction, reason: str) -> None:
        logger.error(f"Settlement of {tx.id} failed permanently: {reason}")
        try:
            failed = await self.engine.fail(tx.id, reason)
        except StaleTransitionError as e:
            logger.warning(f"Could not mark {tx.id} failed: {e}")
            return
        await self.refund_handler.request_refund(failed, reason)

    async def _bounded(self, coro):
        return await asyncio.wait_for(coro, timeout=self.rpc_timeout)
