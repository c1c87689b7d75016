"""
Tests for intake validation: amount parsing, destination addresses, id minting.
"""

import re
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from core.errors import InvalidAddressError, OutOfRangeError, ParseError, ValidationError
from core.ids import new_transaction_id
from core.validation import parse_amount, validate_destination

from tests.conftest import BAD_CHECKSUM_ADDRESS, VALID_ADDRESS

MIN = Decimal("0.001")
MAX = Decimal("1")


class TestParseAmount:
    """Test amount parsing and limits."""

    @pytest.mark.parametrize("text,expected", [
        ("0.1", Decimal("0.1")),
        ("  0.5 ", Decimal("0.5")),
        ("0,25", Decimal("0.25")),
        ("1", Decimal("1")),
        ("0.001", Decimal("0.001")),
        ("0.12345678", Decimal("0.12345678")),
    ])
    def test_accepts_valid_amounts(self, text, expected):
        assert parse_amount(text, MIN, MAX) == expected

    def test_result_is_quantized_to_satoshis(self):
        amount = parse_amount("0.1", MIN, MAX)
        assert amount.as_tuple().exponent == -8

    @pytest.mark.parametrize("text", ["abc", "", "   ", "NaN", "Infinity", "0.1.2", None])
    def test_rejects_non_numbers(self, text):
        with pytest.raises(ParseError):
            parse_amount(text, MIN, MAX)

    def test_rejects_more_than_eight_decimals(self):
        with pytest.raises(ParseError, match="8 decimal places"):
            parse_amount("0.123456789", MIN, MAX)

    def test_trailing_zeros_beyond_eight_places_are_fine(self):
        assert parse_amount("0.1000000000", MIN, MAX) == Decimal("0.1")

    @pytest.mark.parametrize("text", ["0.0009", "1.00000001", "5", "-0.5", "0"])
    def test_rejects_out_of_range(self, text):
        with pytest.raises(OutOfRangeError):
            parse_amount(text, MIN, MAX)

    def test_errors_are_validation_errors(self):
        with pytest.raises(ValidationError):
            parse_amount("abc", MIN, MAX)


class TestValidateDestination:
    """Test EVM destination validation."""

    def test_accepts_checksummed_address(self):
        assert validate_destination(VALID_ADDRESS) == VALID_ADDRESS

    def test_lowercase_address_is_checksummed(self):
        assert validate_destination(VALID_ADDRESS.lower()) == VALID_ADDRESS

    def test_strips_whitespace(self):
        assert validate_destination(f"  {VALID_ADDRESS}\n") == VALID_ADDRESS

    def test_rejects_bad_checksum(self):
        with pytest.raises(InvalidAddressError, match="checksum"):
            validate_destination(BAD_CHECKSUM_ADDRESS)

    @pytest.mark.parametrize("text", [
        "",
        "0x1234",
        VALID_ADDRESS[2:],
        "0x" + "g" * 40,
        VALID_ADDRESS + "00",
        "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq",
    ])
    def test_rejects_malformed(self, text):
        with pytest.raises(InvalidAddressError):
            validate_destination(text)


class TestTransactionIds:
    """Test transaction id minting."""

    def test_format(self):
        tx_id = new_transaction_id()
        assert re.fullmatch(r"TX[0-9A-Z]{17,}", tx_id)

    def test_unique_under_concurrency(self):
        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(lambda _: new_transaction_id(), range(10_000)))

        assert len(set(ids)) == len(ids)
