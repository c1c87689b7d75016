"""Error types for BTC Bridge."""

from typing import Optional


class BridgeError(Exception):
    """Base exception for all bridge errors."""
    pass


class ConfigurationError(BridgeError):
    """Errors related to configuration."""
    pass


class ValidationError(BridgeError):
    """Bad user input during intake. The user is asked again."""
    pass


class ParseError(ValidationError):
    """Input could not be parsed as an amount."""
    pass


class OutOfRangeError(ValidationError):
    """Amount parsed but falls outside the accepted limits."""
    pass


class InvalidAddressError(ValidationError):
    """Destination is not a valid address on the destination chain."""
    pass


class NoActiveSessionError(ValidationError):
    """Text arrived for a user without an open intake session."""
    pass


class NotFoundError(BridgeError):
    """Unknown transaction id."""

    def __init__(self, tx_id: str):
        self.tx_id = tx_id
        super().__init__(f"Transaction not found: {tx_id}")


class DuplicateTransactionError(BridgeError):
    """A transaction with the same id already exists in the ledger."""
    pass


class InvalidTransitionError(BridgeError):
    """Transition not allowed by the lifecycle state machine."""
    pass


class StaleTransitionError(BridgeError):
    """Compare-and-set failed: the record is no longer in the expected status."""

    def __init__(self, tx_id: str, expected, actual):
        self.tx_id = tx_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Transaction {tx_id} is {getattr(actual, 'value', actual)}, "
            f"expected {getattr(expected, 'value', expected)}"
        )


class AmountMismatchError(BridgeError):
    """A deposit arrived that does not match the requested amount."""

    def __init__(self, tx_id: str, expected, received):
        self.tx_id = tx_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Deposit for {tx_id} does not match: expected {expected}, received {received}"
        )


class ChainError(BridgeError):
    """Errors related to chain RPC operations."""
    pass


class TransientChainError(ChainError):
    """Timeouts and connection failures. Retried, never changes status."""
    pass


class RPCError(ChainError):
    """Errors from RPC calls."""
    def __init__(self, message: str, method: str = "", details: str = "", code: Optional[int] = None):
        self.method = method
        self.details = details
        self.code = code
        super().__init__(f"RPC Error [{method}]: {message} - {details}")


class PermanentSettlementError(ChainError):
    """Destination release was rejected and will not succeed on retry."""
    pass


class ExpiryError(BridgeError):
    """No deposit was observed within the deposit window."""

    def __init__(self, tx_id: str, window: float):
        self.tx_id = tx_id
        self.window = window
        super().__init__(f"No deposit for {tx_id} within {window:.0f}s")
