"""Tests for phone and amount validation."""

from decimal import Decimal

import pytest

from stkpay.errors import ErrorKind, InvalidAmountError, InvalidPhoneError
from stkpay.gateway import MAX_AMOUNT, make_reference, validate_amount
from stkpay.phone import mask_phone, normalize_phone


class TestNormalizePhone:
    """Tests for Kenyan MSISDN normalization."""

    @pytest.mark.parametrize("raw", [
        "0712345678",
        "254712345678",
        "+254712345678",
        "+254 712 345 678",
        "712345678",
        "0712-345-678",
    ])
    def test_accepted_formats(self, raw):
        assert normalize_phone(raw) == "254712345678"

    def test_airtel_style_prefix_accepted(self):
        """Numbers in the 01xx range are valid."""
        assert normalize_phone("0110123456") == "254110123456"

    @pytest.mark.parametrize("raw", [
        "",
        "12345",
        "0812345678",
        "25471234567",
        "2547123456789",
        "phone",
    ])
    def test_rejected_formats(self, raw):
        with pytest.raises(InvalidPhoneError) as exc_info:
            normalize_phone(raw)
        assert exc_info.value.kind == ErrorKind.INVALID_PHONE

    def test_error_details_do_not_expose_number(self):
        with pytest.raises(InvalidPhoneError) as exc_info:
            normalize_phone("0812345678")
        assert "0812345678" not in str(exc_info.value.details)

    def test_mask_phone(self):
        assert mask_phone("254712345678") == "*********678"
        assert mask_phone("") == ""
        assert mask_phone("12") == "**"


class TestValidateAmount:
    """Tests for amount validation and rounding."""

    def test_whole_amount(self):
        assert validate_amount(1500) == 1500

    def test_rounds_half_up(self):
        assert validate_amount(100.5) == 101
        assert validate_amount("99.49") == 99
        assert validate_amount(Decimal("2.5")) == 3

    def test_maximum_accepted(self):
        assert validate_amount(MAX_AMOUNT) == MAX_AMOUNT

    @pytest.mark.parametrize("amount", [0, -1, -0.01, MAX_AMOUNT + 1, None, "abc", True])
    def test_rejected(self, amount):
        with pytest.raises(InvalidAmountError) as exc_info:
            validate_amount(amount)
        assert exc_info.value.kind == ErrorKind.INVALID_AMOUNT

    def test_rounds_to_zero_rejected(self):
        """A positive amount that rounds below one shilling is rejected."""
        with pytest.raises(InvalidAmountError):
            validate_amount(0.4)

    def test_reference_format(self):
        assert make_reference("abc-123") == "INV-abc-123"
