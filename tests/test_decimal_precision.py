"""
Regression Tests for Decimal Precision in Payment Amounts
Minor-unit conversion, token units and rejection of non-numeric input
"""

import pytest
from decimal import Decimal

from utils.decimal_precision import MonetaryDecimal


class TestMonetaryConversion:
    """Fiat and token conversions must never pass through float"""

    def test_float_input_is_converted_via_string(self):
        assert MonetaryDecimal.to_decimal(0.1) + MonetaryDecimal.to_decimal(0.2) == Decimal("0.3")

    @pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity", ""])
    def test_garbage_is_rejected(self, value):
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal(value)

    def test_fiat_rounds_half_up(self):
        assert MonetaryDecimal.quantize_fiat("10.005") == Decimal("10.01")
        assert MonetaryDecimal.format_fiat(1500) == "1500.00"

    def test_kopecks(self):
        assert MonetaryDecimal.to_minor_units("1500.00", "RUB") == 150000
        assert MonetaryDecimal.from_minor_units(150000, "RUB") == Decimal("1500.00")

    def test_zero_decimal_currency_passes_through(self):
        assert MonetaryDecimal.to_minor_units("500", "JPY") == 500
        assert MonetaryDecimal.from_minor_units(500, "jpy") == Decimal("500")

    def test_trc20_token_units(self):
        """USDT on TRON carries 6 decimals on chain"""
        assert MonetaryDecimal.from_token_units("16667381") == Decimal("16.667381")

    def test_usdt_invoice_precision(self):
        assert MonetaryDecimal.quantize_usdt("16.66666") == Decimal("16.6667")

    def test_validate_positive(self):
        assert MonetaryDecimal.validate_positive("0.01") == Decimal("0.01")
        with pytest.raises(ValueError, match="must be positive"):
            MonetaryDecimal.validate_positive("0")
