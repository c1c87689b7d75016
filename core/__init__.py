"""Core types, errors and helpers for BTC Bridge."""

from core.errors import (
    BridgeError,
    ConfigurationError,
    ValidationError,
    ParseError,
    OutOfRangeError,
    InvalidAddressError,
    NotFoundError,
    AmountMismatchError,
    TransientChainError,
    PermanentSettlementError,
    ExpiryError,
)
from core.types import (
    RequestType,
    BridgeStep,
    TransactionStatus,
    BridgeRequest,
    BridgeTransaction,
    SourcePayment,
    StatusSnapshot,
)

__all__ = [
    "BridgeError",
    "ConfigurationError",
    "ValidationError",
    "ParseError",
    "OutOfRangeError",
    "InvalidAddressError",
    "NotFoundError",
    "AmountMismatchError",
    "TransientChainError",
    "PermanentSettlementError",
    "ExpiryError",
    "RequestType",
    "BridgeStep",
    "TransactionStatus",
    "BridgeRequest",
    "BridgeTransaction",
    "SourcePayment",
    "StatusSnapshot",
]
