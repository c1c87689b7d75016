"""Bitcoin source chain: deposit observation and deposit address issuance via bitcoind."""

import logging
from decimal import Decimal
from typing import Dict, List

from chains.base import AddressIssuer, SourceChainClient
from chains.rpc import JsonRpcClient
from core.types import SOURCE_QUANTUM, SourcePayment

logger = logging.getLogger(__name__)

# listunspent maxconf
_MAX_CONF = 9999999


class BitcoinSourceClient(SourceChainClient):
    """Reads deposits from a bitcoind wallet that owns the deposit addresses.

    Uses listunspent with minconf=0 so mempool payments are seen before they
    confirm. Deposit addresses must not be swept until the transaction is
    settled, otherwise the payment drops out of the view.
    """

    def __init__(self, rpc: JsonRpcClient):
        self.rpc = rpc

    async def start(self) -> None:
        await self.rpc.start()
        info = await self.rpc.call("getblockchaininfo")
        logger.info(
            f"Connected to bitcoind ({info.get('chain')}) at height {info.get('blocks')}"
        )

    async def stop(self) -> None:
        await self.rpc.stop()

    async def get_payments_to(self, locus: str) -> List[SourcePayment]:
        """Get payments to a deposit address, one entry per transaction.

        Args:
            locus: Deposit address

        Returns:
            Payments with outputs to the same address summed per txid
        """
        unspent = await self.rpc.call("listunspent", [0, _MAX_CONF, [locus], True])

        amounts: Dict[str, Decimal] = {}
        confirmations: Dict[str, int] = {}
        for output in unspent:
            if output.get("address") != locus:
                continue
            txid = output["txid"]
            amounts[txid] = amounts.get(txid, Decimal(0)) + Decimal(str(output["amount"]))
            confirmations[txid] = int(output.get("confirmations", 0))

        payments = [
            SourcePayment(
                tx_ref=txid,
                amount=amount.quantize(SOURCE_QUANTUM),
                confirmations=confirmations[txid],
            )
            for txid, amount in amounts.items()
        ]
        logger.debug(f"Found {len(payments)} payments to {locus[:16]}...")
        return payments


class BitcoinAddressIssuer(AddressIssuer):
    """Issues deposit addresses from the bitcoind wallet's keypool."""

    def __init__(self, rpc: JsonRpcClient, label: str = "bridge-deposit", address_type: str = "bech32"):
        self.rpc = rpc
        self.label = label
        self.address_type = address_type

    async def start(self) -> None:
        await self.rpc.start()

    async def stop(self) -> None:
        await self.rpc.stop()

    async def issue_deposit_locus(self) -> str:
        # getnewaddress is not idempotent; a retried call only burns a keypool entry
        address = await self.rpc.call("getnewaddress", [self.label, self.address_type])
        logger.info(f"Issued deposit address {address[:16]}...")
        return address
