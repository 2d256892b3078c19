#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP, getcontext
from typing import Union

from services.errors import ValidationError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 38

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    LEDGER_PRECISION = Decimal("0.000000000000000001")  # Matches Numeric(38, 18) columns
    CRYPTO_PRECISION = Decimal("0.00000001")  # 8 decimal places for payment amounts
    USD_PRECISION = Decimal("0.01")
    MAX_AMOUNT = Decimal("100000000000000000000")  # 20 integer digits fit Numeric(38, 18)

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "amount") -> Decimal:
        """Convert any numeric input to Decimal, rejecting malformed values"""
        if value is None or isinstance(value, bool):
            raise ValidationError(f"{context} is required", details={"field": context})

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError):
                raise ValidationError(f"{context} is not a valid number: {value!r}", details={"field": context})

        if not decimal_value.is_finite():
            raise ValidationError(f"{context} must be a finite number", details={"field": context})
        if abs(decimal_value) >= cls.MAX_AMOUNT:
            raise ValidationError(f"{context} exceeds the supported range", details={"field": context})
        return decimal_value

    @classmethod
    def to_positive(cls, value: Numeric, context: str = "amount") -> Decimal:
        decimal_value = cls.to_decimal(value, context)
        if decimal_value <= 0:
            raise ValidationError(f"{context} must be greater than zero", details={"field": context})
        return decimal_value

    @classmethod
    def quantize_ledger(cls, amount: Numeric) -> Decimal:
        """Quantize to ledger storage precision, truncating dust"""
        return cls.to_decimal(amount).quantize(cls.LEDGER_PRECISION, rounding=ROUND_DOWN)

    @classmethod
    def quantize_crypto(cls, amount: Numeric) -> Decimal:
        """Quantize amount to crypto precision (8 decimal places)"""
        return cls.to_decimal(amount).quantize(cls.CRYPTO_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_usd(cls, amount: Numeric) -> Decimal:
        return cls.to_decimal(amount).quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def decimal_places(cls, value: Decimal) -> int:
        exponent = value.normalize().as_tuple().exponent
        return max(0, -exponent) if isinstance(exponent, int) else 0

    @classmethod
    def check_precision(cls, value: Decimal, places: int, context: str = "amount") -> Decimal:
        """Reject values carrying more decimals than the instrument allows"""
        if cls.decimal_places(value) > places:
            raise ValidationError(
                f"{context} {value} exceeds {places} decimal places",
                details={"field": context, "max_decimals": places},
            )
        return value

    @classmethod
    def percentage_of(cls, amount: Numeric, percent: Numeric) -> Decimal:
        """amount * percent / 100 at ledger precision"""
        return cls.quantize_ledger(cls.to_decimal(amount) * cls.to_decimal(percent) / Decimal("100"))
