"""
Shared fixtures: in-memory chain clients, a recording chat transport, and
a wired engine/intake/watcher/dispatcher on top of MemoryLedgerStore.
"""

from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from chains.base import AddressIssuer, DestinationChainClient, SourceChainClient
from chains.refunds import QueuedRefundHandler
from config import BridgeConfig
from core.types import SourcePayment
from database import MemoryLedgerStore
from deposit_watcher import DepositWatcher
from engine import BridgeEngine
from intake import IntakeHandler
from ledger import TransactionLedger
from session_store import SessionStore
from settlement import SettlementDispatcher
from transport import ChatTransport, IncomingMessage

VALID_ADDRESS = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
BAD_CHECKSUM_ADDRESS = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAeD"


class FakeSourceChain(SourceChainClient):
    """Payments per deposit address, set by the test."""

    def __init__(self):
        self.payments: Dict[str, List[SourcePayment]] = {}
        self.calls = 0
        self.error: Optional[Exception] = None

    def pay(self, locus: str, amount: str, confirmations: int = 0, tx_ref: str = "btc-tx-1") -> None:
        existing = [p for p in self.payments.get(locus, []) if p.tx_ref != tx_ref]
        existing.append(SourcePayment(tx_ref=tx_ref, amount=Decimal(amount), confirmations=confirmations))
        self.payments[locus] = existing

    def drop(self, locus: str) -> None:
        self.payments.pop(locus, None)

    async def get_payments_to(self, locus: str) -> List[SourcePayment]:
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.payments.get(locus, []))


class FakeDestinationChain(DestinationChainClient):
    """Records releases keyed by dispatch token."""

    def __init__(self):
        self.releases: Dict[str, str] = {}
        self.submissions: List[tuple] = []
        self.confirmations: Dict[str, int] = {}
        self.submit_error: Optional[Exception] = None
        self.confirmation_error: Optional[Exception] = None
        self.hide_releases = False

    async def submit_release(self, address: str, amount: Decimal, dispatch_token: str) -> str:
        if self.submit_error:
            raise self.submit_error
        tx_ref = f"0xrelease{len(self.submissions) + 1}"
        self.submissions.append((address, amount, dispatch_token))
        self.releases[dispatch_token] = tx_ref
        self.confirmations.setdefault(tx_ref, 0)
        return tx_ref

    async def get_confirmation(self, tx_ref: str) -> int:
        if self.confirmation_error:
            raise self.confirmation_error
        return self.confirmations.get(tx_ref, 0)

    async def find_release(self, dispatch_token: str) -> Optional[str]:
        if self.hide_releases:
            return None
        return self.releases.get(dispatch_token)

    def confirm_all(self, confirmations: int = 10) -> None:
        for tx_ref in self.confirmations:
            self.confirmations[tx_ref] = confirmations


class FakeAddressIssuer(AddressIssuer):
    def __init__(self):
        self.issued: List[str] = []

    async def issue_deposit_locus(self) -> str:
        address = f"bc1qdeposit{len(self.issued) + 1:06d}"
        self.issued.append(address)
        return address


class RecordingTransport(ChatTransport):
    def __init__(self):
        self.sent: List[tuple] = []

    async def send_message(self, chat_id: str, text: str, formatting: Optional[str] = None) -> None:
        self.sent.append((chat_id, text, formatting))

    @property
    def texts(self) -> List[str]:
        return [text for _, text, _ in self.sent]

    @property
    def last(self) -> str:
        return self.sent[-1][1]


def message(text: str, user_id: str = "user1", chat_id: str = "chat1") -> IncomingMessage:
    return IncomingMessage(user_id=user_id, chat_id=chat_id, text=text)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config():
    return BridgeConfig(
        source_rpc_url="http://bitcoind.test:8332",
        destination_rpc_url="http://evm.test:8545",
        bridge_contract_address="0x000000000000000000000000000000000000b51d",
        operator_address="0x00000000000000000000000000000000000000aa",
        min_confirmations=2,
        destination_confirmations=3,
        deposit_window=600,
        session_timeout=300,
        rpc_timeout=1,
    )


@pytest.fixture
def store():
    return MemoryLedgerStore()


@pytest.fixture
def ledger(store):
    return TransactionLedger(store)


@pytest.fixture
def issuer():
    return FakeAddressIssuer()


@pytest.fixture
def source_chain():
    return FakeSourceChain()


@pytest.fixture
def destination_chain():
    return FakeDestinationChain()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def engine(ledger, issuer, config):
    return BridgeEngine(ledger, issuer, fee_rate=config.fee_rate)


@pytest.fixture
def sessions(config):
    return SessionStore(config.min_amount, config.max_amount, idle_timeout=config.session_timeout)


@pytest.fixture
def intake(engine, sessions, transport, config):
    return IntakeHandler(engine, sessions, transport, config)


@pytest.fixture
def refunds(store):
    return QueuedRefundHandler(store)


@pytest.fixture
def watcher(engine, source_chain, config):
    return DepositWatcher(
        engine=engine,
        source_client=source_chain,
        min_confirmations=config.min_confirmations,
        deposit_window=config.deposit_window,
        rpc_timeout=config.rpc_timeout,
    )


@pytest.fixture
def dispatcher(engine, destination_chain, refunds, config):
    return SettlementDispatcher(
        engine=engine,
        destination_client=destination_chain,
        refund_handler=refunds,
        required_confirmations=config.destination_confirmations,
        rpc_timeout=config.rpc_timeout,
        submit_attempts=2,
        backoff_max=0,
    )


@pytest.fixture
def open_transaction(engine):
    """Open a PENDING transaction without going through chat intake."""
    from core.types import BridgeRequest, BridgeStep, RequestType

    async def _open(amount: str = "0.1", user_id: str = "user1"):
        request = BridgeRequest(
            user_id=user_id,
            chat_id=f"chat-{user_id}",
            request_type=RequestType.BRIDGE,
            step=BridgeStep.AWAITING_DESTINATION,
            amount=Decimal(amount),
            destination_address=VALID_ADDRESS,
        )
        return await engine.open_transaction(request)

    return _open


@pytest.fixture
def service(config, store, source_chain, destination_chain, issuer, transport):
    """BridgeService over the fakes; loops are driven by hand via scan_once/dispatch_once."""
    from bridge import BridgeService

    return BridgeService(
        config=config,
        store=store,
        source_client=source_chain,
        destination_client=destination_chain,
        address_issuer=issuer,
        refund_handler=QueuedRefundHandler(store),
        transport=transport,
    )
