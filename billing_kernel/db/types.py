"""
Module: billing_kernel.db.types
Responsibility: Annotated type aliases and utility functions for amount and
    percentage columns.  Centralizes precision, rounding, and decimal parsing
    so every model and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Amounts are Numeric(14, 2), percentages Numeric(5, 2).  round_amount()
      and round_percentage() are the ONLY sanctioned rounding functions.
    - CRITICAL: No floats.  parse_decimal() rejects float input outright so
      binary rounding drift can never reach the percentage-sum invariant.

Failure modes:
    - ValueError from parse_decimal() on float, bool, or non-numeric input.
      Callers translate it into InvalidAmountError / InvalidPercentageError.
"""

import enum
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated

from sqlalchemy import Enum as SAEnum, Numeric, String

# Invoice/payment amount, currency precision
Amount = Annotated[Decimal, Numeric(14, 2)]

# Billing percentage, 0.00 - 100.00
Percentage = Annotated[Decimal, Numeric(5, 2)]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Long text for descriptions
LongText = Annotated[str, String(4000)]


AMOUNT_DECIMAL_PLACES = 2
PERCENTAGE_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

_QUANT = Decimal(1).scaleb(-AMOUNT_DECIMAL_PLACES)
_PCT_QUANT = Decimal(1).scaleb(-PERCENTAGE_DECIMAL_PLACES)

HUNDRED = Decimal("100")
ZERO = Decimal("0")


def parse_decimal(value: object) -> Decimal:
    """
    Convert an int, str, or Decimal into a Decimal.

    Raises:
        ValueError: float, bool, None, or a string that is not a finite number.
    """
    if isinstance(value, bool) or isinstance(value, float) or value is None:
        raise ValueError(f"expected a decimal string or integer, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"not a decimal number: {value!r}") from exc
    else:
        raise ValueError(f"expected a decimal string or integer, got {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def round_amount(value: Decimal) -> Decimal:
    """Round a monetary amount to 2 decimal places (ROUND_HALF_UP)."""
    return value.quantize(_QUANT, rounding=DEFAULT_ROUNDING)


def round_percentage(value: Decimal) -> Decimal:
    """Round a billing percentage to 2 decimal places (ROUND_HALF_UP)."""
    return value.quantize(_PCT_QUANT, rounding=DEFAULT_ROUNDING)


def status_enum(enum_cls: type[enum.Enum], length: int = 20) -> SAEnum:
    """
    Column type for a str Enum stored by value in a VARCHAR.

    Non-native so the schema is identical on PostgreSQL and SQLite, and
    loads always return enum members rather than bare strings.
    """
    return SAEnum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
