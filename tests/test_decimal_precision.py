"""
Regression Tests for Decimal Precision in Ledger Amounts
Conversion, quantization and instrument precision checks
"""

from decimal import Decimal

import pytest

from services.errors import ValidationError
from utils.decimal_precision import MonetaryDecimal


class TestConversion:
    """Inputs are converted through str, never through binary float"""

    def test_float_converts_through_string(self):
        assert MonetaryDecimal.to_decimal(0.1) == Decimal("0.1"), "Float input must not carry binary noise"

    @pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity", "1e30"])
    def test_rejects_malformed_values(self, value):
        with pytest.raises(ValidationError):
            MonetaryDecimal.to_decimal(value)

    @pytest.mark.parametrize("value", ["0", "-1", 0])
    def test_positive_required(self, value):
        with pytest.raises(ValidationError) as exc_info:
            MonetaryDecimal.to_positive(value, "quantity")
        assert exc_info.value.details == {"field": "quantity"}


class TestQuantization:

    def test_ledger_quantization_truncates_dust(self):
        value = MonetaryDecimal.quantize_ledger("1.0000000000000000019")
        assert value == Decimal("1.000000000000000001")

    def test_crypto_and_usd_round_half_up(self):
        assert MonetaryDecimal.quantize_crypto("0.123456785") == Decimal("0.12345679")
        assert MonetaryDecimal.quantize_usd("10.005") == Decimal("10.01")

    def test_percentage_of(self):
        assert MonetaryDecimal.percentage_of("1000", "0.1") == Decimal("1")


class TestInstrumentPrecision:

    @pytest.mark.parametrize("value,places", [
        (Decimal("100"), 0),
        (Decimal("100.50"), 1),
        (Decimal("0.0001"), 4),
    ])
    def test_within_precision(self, value, places):
        assert MonetaryDecimal.check_precision(value, places) == value

    def test_excess_decimals_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            MonetaryDecimal.check_precision(Decimal("1.23456"), 4, "quantity")
        assert exc_info.value.details["max_decimals"] == 4
