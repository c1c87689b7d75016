"""Chain-side collaborators: source observation, destination release, address issuance, refunds."""

from chains.base import AddressIssuer, DestinationChainClient, RefundHandler, SourceChainClient
from chains.bitcoin import BitcoinAddressIssuer, BitcoinSourceClient
from chains.evm import EvmReleaseClient
from chains.refunds import QueuedRefundHandler
from chains.rpc import JsonRpcClient

__all__ = [
    "AddressIssuer",
    "DestinationChainClient",
    "RefundHandler",
    "SourceChainClient",
    "BitcoinAddressIssuer",
    "BitcoinSourceClient",
    "EvmReleaseClient",
    "QueuedRefundHandler",
    "JsonRpcClient",
]
