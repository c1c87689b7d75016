"""Bitcoin to EVM bridge service wiring."""

import asyncio
import logging
from typing import Optional

from chains.base import AddressIssuer, DestinationChainClient, RefundHandler, SourceChainClient
from chains.bitcoin import BitcoinAddressIssuer, BitcoinSourceClient
from chains.evm import EvmReleaseClient
from chains.refunds import QueuedRefundHandler
from chains.rpc import JsonRpcClient
from config import BridgeConfig
from database import LedgerStore, SqliteLedgerStore
from deposit_watcher import DepositWatcher
from engine import BridgeEngine
from intake import IntakeHandler
from ledger import TransactionLedger
from session_store import SessionStore
from settlement import SettlementDispatcher
from transport import ChatTransport

logger = logging.getLogger(__name__)


class BridgeService:
    """Runs the bridge: ledger, intake, deposit watcher and settlement dispatcher."""

    def __init__(
        self,
        config: BridgeConfig,
        store: LedgerStore,
        source_client: SourceChainClient,
        destination_client: DestinationChainClient,
        address_issuer: AddressIssuer,
        refund_handler: RefundHandler,
        transport: ChatTransport,
    ):
        """Initialize the service.

        Args:
            config: Bridge configuration
            store: Ledger storage backend
            source_client: Source chain reader
            destination_client: Destination chain release client
            address_issuer: Deposit address issuer
            refund_handler: Refund collaborator for failed settlements
            transport: Outbound chat transport
        """
        self.config = config
        self.running = False
        self.store = store
        self.source_client = source_client
        self.destination_client = destination_client
        self.address_issuer = address_issuer
        self.transport = transport

        self.ledger = TransactionLedger(store)
        self.engine = BridgeEngine(self.ledger, address_issuer, fee_rate=config.fee_rate)
        self.sessions = SessionStore(
            min_amount=config.min_amount,
            max_amount=config.max_amount,
            idle_timeout=config.session_timeout,
        )
        self.intake = IntakeHandler(self.engine, self.sessions, transport, config)
        self.watcher = DepositWatcher(
            engine=self.engine,
            source_client=source_client,
            min_confirmations=config.min_confirmations,
            poll_interval=config.poll_interval,
            deposit_window=config.deposit_window,
            rpc_timeout=config.rpc_timeout,
            max_workers=config.max_workers,
        )
        self.dispatcher = SettlementDispatcher(
            engine=self.engine,
            destination_client=destination_client,
            refund_handler=refund_handler,
            required_confirmations=config.destination_confirmations,
            poll_interval=config.settlement_interval,
            rpc_timeout=config.rpc_timeout,
            max_workers=config.max_workers,
        )
        self._housekeeping_task: Optional[asyncio.Task] = None

        logger.info("Initialized BTC bridge service")

    @classmethod
    def from_config(cls, config: BridgeConfig, transport: ChatTransport) -> "BridgeService":
        """Build the service with the bitcoind/EVM clients and SQLite ledger."""

        store = SqliteLedgerStore(config.database_path)
        source_rpc = JsonRpcClient(
            config.source_rpc_url,
            rpc_user=config.source_rpc_user,
            rpc_password=config.source_rpc_password,
            timeout=config.rpc_timeout,
        )
        destination_rpc = JsonRpcClient(config.destination_rpc_url, timeout=config.rpc_timeout)

        return cls(
            config=config,
            store=store,
            source_client=BitcoinSourceClient(source_rpc),
            destination_client=EvmReleaseClient(
                destination_rpc,
                contract_address=config.bridge_contract_address,
                operator_address=config.operator_address,
                decimals=config.destination_decimals,
                from_block=config.destination_from_block,
            ),
            address_issuer=BitcoinAddressIssuer(source_rpc),
            refund_handler=QueuedRefundHandler(store),
            transport=transport,
        )

    async def start(self) -> None:
        """Start the bridge."""
        logger.info("Starting BTC bridge...")

        await self.store.start()
        await self.source_client.start()
        await self.address_issuer.start()
        await self.destination_client.start()
        await self.transport.start()

        await self.watcher.start()
        await self.dispatcher.start()

        self.running = True
        self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())
        logger.info("Bridge started successfully")

    async def stop(self) -> None:
        """Stop the bridge."""
        logger.info("Stopping bridge...")
        self.running = False

        if self._housekeeping_task:
            self._housekeeping_task.cancel()
            try:
                await self._housekeeping_task
            except asyncio.CancelledError:
                pass
            self._housekeeping_task = None

        await self.watcher.stop()
        await self.dispatcher.stop()

        await self.transport.stop()
        await self.destination_client.stop()
        await self.address_issuer.stop()
        await self.source_client.stop()
        await self.store.stop()

        logger.info("Bridge stopped")

    async def _housekeeping_loop(self) -> None:
        while self.running:
            try:
                self.sessions.purge_expired()
            except Exception as e:
                logger.error(f"Error purging sessions: {e}", exc_info=True)
            await asyncio.sleep(self.config.poll_interval)

    async def run(self) -> None:
        """Run the bridge until cancelled (blocking)."""
        await self.start()
        try:
            while self.running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            logger.info("Received shutdown signal")
        finally:
            await self.stop()
