"""
Tests for the deposit watcher.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from core.errors import StaleTransitionError, TransientChainError
from core.types import SourcePayment, TransactionStatus
from deposit_watcher import DepositWatcher


def later(tx, seconds):
    """Clock fixed at tx.created_at + seconds."""
    return lambda: tx.created_at + timedelta(seconds=seconds)


def watcher_at(engine, source_chain, config, now, rpc_timeout=1.0):
    return DepositWatcher(
        engine=engine,
        source_client=source_chain,
        min_confirmations=config.min_confirmations,
        deposit_window=config.deposit_window,
        rpc_timeout=rpc_timeout,
        now=now,
    )


class TestDetection:
    """Test PENDING -> DETECTED -> CONFIRMING."""

    async def test_nothing_paid_stays_pending(self, watcher, ledger, open_transaction):
        tx = await open_transaction()

        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.PENDING

    async def test_unconfirmed_payment_is_detected(self, watcher, ledger, source_chain, open_transaction):
        tx = await open_transaction("0.1")
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=0)

        await watcher.scan_once()

        stored = await ledger.get(tx.id)
        assert stored.status == TransactionStatus.DETECTED
        assert stored.source_tx_ref == "btc-tx-1"
        assert stored.detected_at is not None

    async def test_confirmed_payment_goes_straight_to_confirming(
        self, watcher, ledger, store, source_chain, open_transaction
    ):
        tx = await open_transaction("0.1")
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=2)

        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.CONFIRMING
        assert await store.list_transitions(tx.id) == [
            (TransactionStatus.PENDING, TransactionStatus.DETECTED),
            (TransactionStatus.DETECTED, TransactionStatus.CONFIRMING),
        ]

    async def test_confirmations_accumulate(self, watcher, ledger, source_chain, open_transaction):
        tx = await open_transaction("0.1")
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=0)
        await watcher.scan_once()

        source_chain.pay(tx.deposit_locus, "0.1", confirmations=1)
        await watcher.scan_once()
        assert (await ledger.get(tx.id)).status == TransactionStatus.DETECTED

        source_chain.pay(tx.deposit_locus, "0.1", confirmations=2)
        await watcher.scan_once()
        assert (await ledger.get(tx.id)).status == TransactionStatus.CONFIRMING

    async def test_matching_payment_chosen_among_others(self, watcher, ledger, source_chain, open_transaction):
        tx = await open_transaction("0.1")
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=0, tx_ref="btc-match")
        source_chain.pay(tx.deposit_locus, "0.3", confirmations=5, tx_ref="btc-other")

        await watcher.scan_once()

        stored = await ledger.get(tx.id)
        assert stored.status == TransactionStatus.DETECTED
        assert stored.source_tx_ref == "btc-match"

    async def test_reorg_reverts_to_detected(self, watcher, ledger, source_chain, open_transaction):
        tx = await open_transaction("0.1")
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=3)
        await watcher.scan_once()

        source_chain.pay(tx.deposit_locus, "0.1", confirmations=0)
        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.DETECTED

    async def test_vanished_payment_keeps_detected(self, watcher, ledger, source_chain, open_transaction):
        tx = await open_transaction("0.1")
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=0)
        await watcher.scan_once()

        source_chain.drop(tx.deposit_locus)
        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.DETECTED

    async def test_vanished_payment_expires_after_window(
        self, engine, ledger, source_chain, config, open_transaction
    ):
        tx = await open_transaction("0.1")
        clock = [tx.created_at]
        watcher = watcher_at(engine, source_chain, config, lambda: clock[0])
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=0)
        await watcher.scan_once()

        source_chain.drop(tx.deposit_locus)
        await watcher.scan_once()
        clock[0] += timedelta(seconds=config.deposit_window)
        await watcher.scan_once()
        assert (await ledger.get(tx.id)).status == TransactionStatus.DETECTED

        clock[0] += timedelta(seconds=1)
        await watcher.scan_once()

        expired = await ledger.get(tx.id)
        assert expired.status == TransactionStatus.EXPIRED
        assert "disappeared" in expired.failure_reason

    async def test_reappearing_payment_resets_timer(
        self, engine, ledger, source_chain, config, open_transaction
    ):
        tx = await open_transaction("0.1")
        clock = [tx.created_at]
        watcher = watcher_at(engine, source_chain, config, lambda: clock[0])
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=0)
        await watcher.scan_once()

        source_chain.drop(tx.deposit_locus)
        await watcher.scan_once()
        clock[0] += timedelta(seconds=config.deposit_window - 10)
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=1)
        await watcher.scan_once()

        source_chain.drop(tx.deposit_locus)
        clock[0] += timedelta(seconds=20)
        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.DETECTED

    async def test_reorged_old_deposit_is_not_expired_at_once(
        self, engine, ledger, source_chain, config, open_transaction
    ):
        tx = await open_transaction("0.1")
        clock = [tx.created_at]
        watcher = watcher_at(engine, source_chain, config, lambda: clock[0])
        source_chain.pay(tx.deposit_locus, "0.1", confirmations=config.min_confirmations)
        await watcher.scan_once()
        assert (await ledger.get(tx.id)).status == TransactionStatus.CONFIRMING

        clock[0] += timedelta(seconds=config.deposit_window * 5)
        source_chain.drop(tx.deposit_locus)
        await watcher.scan_once()
        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.DETECTED


class TestMismatchAndExpiry:
    """Test wrong amounts and the deposit window."""

    async def test_wrong_amount_is_held_for_review(
        self, engine, ledger, source_chain, config, open_transaction
    ):
        tx = await open_transaction("0.1")
        source_chain.pay(tx.deposit_locus, "0.05", confirmations=6)
        watcher = watcher_at(engine, source_chain, config, later(tx, config.deposit_window * 10))

        await watcher.scan_once()
        await watcher.scan_once()

        stored = await ledger.get(tx.id)
        assert stored.status == TransactionStatus.PENDING
        assert "0.05" in stored.review_reason
        snapshot = await engine.status(tx.id)
        assert snapshot.flagged_for_review
        assert "review_reason" in snapshot.extra

    async def test_expires_after_window(self, engine, ledger, source_chain, config, open_transaction):
        tx = await open_transaction("0.1")
        watcher = watcher_at(engine, source_chain, config, later(tx, config.deposit_window + 1))

        await watcher.scan_once()

        stored = await ledger.get(tx.id)
        assert stored.status == TransactionStatus.EXPIRED
        assert "No deposit" in stored.failure_reason
        assert stored.completed_at is not None

    async def test_not_expired_inside_window(self, engine, ledger, source_chain, config, open_transaction):
        tx = await open_transaction("0.1")
        watcher = watcher_at(engine, source_chain, config, later(tx, config.deposit_window - 1))

        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.PENDING

    async def test_late_payment_does_not_resurrect(
        self, engine, ledger, source_chain, config, open_transaction
    ):
        tx = await open_transaction("0.1")
        watcher = watcher_at(engine, source_chain, config, later(tx, config.deposit_window + 1))
        await watcher.scan_once()

        source_chain.pay(tx.deposit_locus, "0.1", confirmations=6)
        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.EXPIRED
        with pytest.raises(StaleTransitionError):
            await engine.mark_detected(tx.id, SourcePayment("btc-tx-1", Decimal("0.1"), 6))


class SlowSource:
    """Source client that hangs for one address."""

    def __init__(self, inner, slow_locus):
        self.inner = inner
        self.slow_locus = slow_locus

    async def get_payments_to(self, locus):
        if locus == self.slow_locus:
            await asyncio.sleep(10)
        return await self.inner.get_payments_to(locus)


class TestChainFailures:
    """Test that chain trouble never changes status."""

    async def test_transient_error_leaves_status(self, watcher, ledger, source_chain, open_transaction):
        tx = await open_transaction("0.1")
        source_chain.error = TransientChainError("connection refused")

        await watcher.scan_once()

        assert (await ledger.get(tx.id)).status == TransactionStatus.PENDING

    async def test_slow_lookup_does_not_block_others(
        self, engine, ledger, source_chain, config, open_transaction
    ):
        slow = await open_transaction("0.1", user_id="slow")
        fast = await open_transaction("0.2", user_id="fast")
        source_chain.pay(fast.deposit_locus, "0.2", confirmations=0)
        watcher = DepositWatcher(
            engine=engine,
            source_client=SlowSource(source_chain, slow.deposit_locus),
            min_confirmations=config.min_confirmations,
            rpc_timeout=0.05,
        )

        await watcher.scan_once()

        assert (await ledger.get(slow.id)).status == TransactionStatus.PENDING
        assert (await ledger.get(fast.id)).status == TransactionStatus.DETECTED

    async def test_start_and_stop(self, watcher, source_chain, open_transaction):
        await open_transaction("0.1")

        await watcher.start()
        await asyncio.sleep(0.01)
        await watcher.stop()

        assert watcher.running is False
        assert source_chain.calls >= 1
