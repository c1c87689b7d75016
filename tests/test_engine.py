"""
Tests for the lifecycle engine: opening transactions and status snapshots.
"""

import random
from decimal import Decimal

import pytest

import engine as engine_module
from core.errors import DuplicateTransactionError, NotFoundError, StaleTransitionError
from core.types import BridgeRequest, BridgeStep, RequestType, TransactionStatus
from engine import compute_fee

from tests.conftest import VALID_ADDRESS


def completed_request(amount="0.1", user_id="user1"):
    return BridgeRequest(
        user_id=user_id,
        chat_id="chat1",
        request_type=RequestType.BRIDGE,
        step=BridgeStep.AWAITING_DESTINATION,
        amount=Decimal(amount),
        destination_address=VALID_ADDRESS,
    )


class TestFees:
    @pytest.mark.parametrize("amount,fee", [
        ("0.1", "0.0001"),
        ("1", "0.001"),
        ("0.001", "0.000001"),
        ("0.12345678", "0.00012345678"),
    ])
    def test_compute_fee(self, amount, fee):
        assert compute_fee(Decimal(amount), Decimal("0.001")) == Decimal(fee)

    async def test_net_plus_fee_is_amount(self, engine):
        tx = await engine.open_transaction(completed_request("0.12345678"))

        assert tx.fee_amount + tx.net_amount == tx.source_amount
        assert tx.fee_rate == Decimal("0.001")

    async def test_net_is_exactly_amount_less_fee_rate(self, engine):
        rng = random.Random(1729)
        satoshis = [100000, 100001, 12345678, 100000000]
        satoshis += [rng.randint(100000, 100000000) for _ in range(200)]

        for sats in satoshis:
            amount = Decimal(sats).scaleb(-8)
            tx = await engine.open_transaction(completed_request(str(amount)))

            assert tx.net_amount == amount * Decimal("0.999"), amount
            assert tx.fee_amount + tx.net_amount == amount


class TestOpenTransaction:
    """Test opening transactions."""

    async def test_incomplete_request_rejected(self, engine):
        request = completed_request()
        request.destination_address = None

        with pytest.raises(ValueError):
            await engine.open_transaction(request)

    async def test_duplicate_id_is_reminted(self, engine, ledger, monkeypatch, open_transaction):
        existing = await open_transaction("0.2")
        ids = iter([existing.id, "TXFRESH"])
        monkeypatch.setattr(engine_module, "new_transaction_id", lambda: next(ids))

        tx = await engine.open_transaction(completed_request("0.1"))

        assert tx.id == "TXFRESH"
        assert (await ledger.get(existing.id)).source_amount == Decimal("0.2")

    async def test_gives_up_after_repeated_duplicates(self, engine, monkeypatch, open_transaction):
        existing = await open_transaction("0.2")
        monkeypatch.setattr(engine_module, "new_transaction_id", lambda: existing.id)

        with pytest.raises(DuplicateTransactionError):
            await engine.open_transaction(completed_request("0.1"))

    async def test_each_transaction_gets_a_fresh_locus(self, engine, issuer):
        first = await engine.open_transaction(completed_request("0.1"))
        second = await engine.open_transaction(completed_request("0.1"))

        assert first.deposit_locus != second.deposit_locus
        assert issuer.issued == [first.deposit_locus, second.deposit_locus]


class TestStatus:
    async def test_snapshot(self, engine):
        tx = await engine.open_transaction(completed_request("0.1"))

        snapshot = await engine.status(tx.id)

        assert snapshot.id == tx.id
        assert snapshot.status == TransactionStatus.PENDING
        assert snapshot.net_amount == Decimal("0.0999")
        assert snapshot.flagged_for_review is False
        assert snapshot.extra == {}

    async def test_unknown(self, engine):
        with pytest.raises(NotFoundError):
            await engine.status("TXNOPE")

    async def test_fail_from_any_open_status(self, engine, ledger):
        tx = await engine.open_transaction(completed_request("0.1"))

        failed = await engine.fail(tx.id, "operator abort")

        assert failed.status == TransactionStatus.FAILED
        assert (await engine.status(tx.id)).extra == {"failure_reason": "operator abort"}

    async def test_fail_after_terminal_is_stale(self, engine, ledger):
        tx = await engine.open_transaction(completed_request("0.1"))
        await engine.expire(tx.id, "window elapsed")

        with pytest.raises(StaleTransitionError):
            await engine.fail(tx.id, "late failure")

        stored = await ledger.get(tx.id)
        assert stored.status == TransactionStatus.EXPIRED
        assert stored.failure_reason == "window elapsed"


class TestListeners:
    async def test_listener_receives_previous_status(self, engine, ledger):
        seen = []
        engine.add_listener(lambda tx, previous: seen.append((previous, tx.status)))
        tx = await engine.open_transaction(completed_request("0.1"))

        await engine.fail(tx.id, "operator abort")

        assert seen == [(TransactionStatus.PENDING, TransactionStatus.FAILED)]

    async def test_add_listener_is_idempotent(self, engine):
        def listener(tx, previous):
            pass

        engine.add_listener(listener)
        engine.add_listener(listener)
        assert engine.listeners.count(listener) == 1

        engine.remove_listener(listener)
        assert listener not in engine.listeners
