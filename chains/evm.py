"""EVM destination chain: releases through the bridge contract."""

import logging
from decimal import Decimal
from typing import Optional

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address, to_hex

from chains.base import DestinationChainClient
from chains.rpc import JsonRpcClient
from core.errors import PermanentSettlementError, RPCError, TransientChainError

logger = logging.getLogger(__name__)

BRIDGE_SIGNATURE = "bridgeBTC(bytes32,address,uint256)"
BRIDGED_EVENT = "Bridged(bytes32,address,uint256)"

# Node error messages that mean the call will never succeed as submitted
_PERMANENT_MARKERS = (
    "revert",
    "insufficient funds",
    "invalid address",
    "invalid argument",
    "already bridged",
)


def release_key(dispatch_token: str) -> bytes:
    """bytes32 key the contract uses to reject a second release."""
    return keccak(text=dispatch_token)


def _is_permanent(error: RPCError) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _PERMANENT_MARKERS)


class EvmReleaseClient(DestinationChainClient):
    """Calls ``bridgeBTC(key, recipient, amount)`` from a node-managed operator account.

    The contract refuses a key it has already seen, and emits
    ``Bridged(key, recipient, amount)`` for each release, which is how an
    earlier submission is found after a restart.
    """

    def __init__(
        self,
        rpc: JsonRpcClient,
        contract_address: str,
        operator_address: str,
        decimals: int = 18,
        from_block: int = 0,
    ):
        """Initialize the release client.

        Args:
            rpc: JSON-RPC client for the destination node
            contract_address: Bridge contract address
            operator_address: Unlocked account that sends releases
            decimals: Destination token decimals
            from_block: Earliest block to search for release logs
        """
        self.rpc = rpc
        self.contract_address = to_checksum_address(contract_address)
        self.operator_address = to_checksum_address(operator_address)
        self.decimals = decimals
        self.from_block = from_block
        self._selector = function_signature_to_4byte_selector(BRIDGE_SIGNATURE)
        self._event_topic = to_hex(keccak(text=BRIDGED_EVENT))

    async def start(self) -> None:
        await self.rpc.start()
        chain_id = await self.rpc.call("eth_chainId")
        logger.info(f"Connected to destination chain {int(chain_id, 16)}")

    async def stop(self) -> None:
        await self.rpc.stop()

    def to_base_units(self, amount: Decimal) -> int:
        return int(amount.scaleb(self.decimals))

    def _calldata(self, address: str, amount: Decimal, dispatch_token: str) -> str:
        args = encode(
            ["bytes32", "address", "uint256"],
            [release_key(dispatch_token), to_checksum_address(address), self.to_base_units(amount)],
        )
        return to_hex(self._selector + args)

    async def submit_release(self, address: str, amount: Decimal, dispatch_token: str) -> str:
        call = {
            "from": self.operator_address,
            "to": self.contract_address,
            "data": self._calldata(address, amount, dispatch_token),
        }

        try:
            # Dry run first so reverts surface before anything is broadcast
            await self.rpc.call("eth_call", [call, "latest"])
            tx_hash = await self.rpc.call("eth_sendTransaction", [call], retry=False)
        except RPCError as e:
            if _is_permanent(e):
                raise PermanentSettlementError(f"Release rejected: {e}")
            raise TransientChainError(f"Release submission failed: {e}")

        logger.info(f"Submitted release of {amount} to {address[:16]}... in {tx_hash[:16]}...")
        return tx_hash

    async def get_confirmation(self, tx_ref: str) -> int:
        receipt = await self.rpc.call("eth_getTransactionReceipt", [tx_ref])
        if not receipt or not receipt.get("blockNumber"):
            return 0

        if int(receipt.get("status", "0x1"), 16) == 0:
            raise PermanentSettlementError(f"Release {tx_ref} reverted")

        head = int(await self.rpc.call("eth_blockNumber"), 16)
        return max(0, head - int(receipt["blockNumber"], 16) + 1)

    async def find_release(self, dispatch_token: str) -> Optional[str]:
        logs = await self.rpc.call("eth_getLogs", [{
            "address": self.contract_address,
            "fromBlock": hex(self.from_block),
            "toBlock": "latest",
            "topics": [self._event_topic, to_hex(release_key(dispatch_token))],
        }])
        for log in logs or []:
            if not log.get("removed"):
                return log["transactionHash"]
        return None
