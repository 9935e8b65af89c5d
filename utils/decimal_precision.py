"""
Decimal Precision Utilities for Payment Amounts
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]

# ISO 4217 currencies without a minor unit (Stripe treats these as zero-decimal)
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND"})


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    FIAT_PRECISION = Decimal("0.01")
    USDT_PRECISION = Decimal("0.0001")
    TOKEN_PRECISION = Decimal("0.000001")  # TRC-20 USDT has 6 on-chain decimals
    RATE_PRECISION = Decimal("0.00000001")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert any numeric value to Decimal, rejecting garbage instead of guessing"""
        if isinstance(value, Decimal):
            return value
        if value is None or isinstance(value, bool):
            raise ValueError(f"Invalid {context} value: {value!r}")
        try:
            # Convert to string first to avoid float precision issues
            decimal_value = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid {context} value: {value!r}") from e
        if not decimal_value.is_finite():
            raise ValueError(f"Invalid {context} value: {value!r}")
        return decimal_value

    @classmethod
    def quantize_fiat(cls, amount: Numeric) -> Decimal:
        """Quantize to 2 decimal places"""
        return cls.to_decimal(amount, "fiat").quantize(cls.FIAT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_usdt(cls, amount: Numeric) -> Decimal:
        """Quantize to the 4 decimal places used for perturbed USDT invoices"""
        return cls.to_decimal(amount, "USDT").quantize(cls.USDT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_rate(cls, rate: Numeric) -> Decimal:
        return cls.to_decimal(rate, "exchange_rate").quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def format_fiat(cls, amount: Numeric) -> str:
        """Render as '1500.00' (providers expect exactly two decimals)"""
        return f"{cls.quantize_fiat(amount):.2f}"

    @classmethod
    def to_minor_units(cls, amount: Numeric, currency: str) -> int:
        """1500.00 RUB -> 150000 kopecks; zero-decimal currencies pass through"""
        decimal_amount = cls.to_decimal(amount)
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return int(decimal_amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return int((decimal_amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def from_minor_units(cls, amount: Union[int, str], currency: str) -> Decimal:
        decimal_amount = cls.to_decimal(amount)
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return decimal_amount
        return cls.quantize_fiat(decimal_amount / 100)

    @classmethod
    def from_token_units(cls, raw_value: Union[int, str], decimals: int = 6) -> Decimal:
        """Raw on-chain integer value -> token amount"""
        return cls.to_decimal(raw_value, "token") / (Decimal(10) ** decimals)

    @classmethod
    def validate_positive(cls, amount: Numeric, field_name: str = "amount") -> Decimal:
        decimal_amount = cls.to_decimal(amount, field_name)
        if decimal_amount <= 0:
            raise ValueError(f"{field_name} must be positive, got {decimal_amount}")
        return decimal_amount
