"""Validation of user-supplied intake answers."""

from decimal import Decimal, InvalidOperation

from eth_utils import is_checksum_address, is_hex_address, to_checksum_address

from core.errors import InvalidAddressError, OutOfRangeError, ParseError
from core.types import SOURCE_DECIMALS, SOURCE_QUANTUM


def parse_amount(text: str, min_amount: Decimal, max_amount: Decimal) -> Decimal:
    """Parse a source-asset amount and check it against the limits.

    Args:
        text: Raw user input
        min_amount: Smallest accepted amount (inclusive)
        max_amount: Largest accepted amount (inclusive)

    Returns:
        Amount quantized to source precision

    Raises:
        ParseError: If the text is not a finite decimal with at most 8 places
        OutOfRangeError: If the amount is outside [min_amount, max_amount]
    """
    cleaned = (text or "").strip().replace(",", ".")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ParseError(f"'{text}' is not a number")

    if not amount.is_finite():
        raise ParseError(f"'{text}' is not a number")

    if amount.normalize().as_tuple().exponent < -SOURCE_DECIMALS:
        raise ParseError(f"Amounts are limited to {SOURCE_DECIMALS} decimal places")

    if amount < min_amount or amount > max_amount:
        raise OutOfRangeError(
            f"Amount must be between {min_amount} and {max_amount}"
        )

    return amount.quantize(SOURCE_QUANTUM)


def validate_destination(text: str) -> str:
    """Validate an EVM destination address.

    All-lowercase or all-uppercase hex is accepted as is; mixed case must
    carry a valid EIP-55 checksum.

    Returns:
        Checksummed address

    Raises:
        InvalidAddressError: If the address is malformed or fails its checksum
    """
    address = (text or "").strip()
    if not address.startswith("0x") or not is_hex_address(address):
        raise InvalidAddressError("Invalid destination address")

    body = address[2:]
    if body != body.lower() and body != body.upper() and not is_checksum_address(address):
        raise InvalidAddressError("Destination address checksum does not match")

    return to_checksum_address(address)
