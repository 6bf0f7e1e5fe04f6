# Overview: Integer-cent money helpers. Decimal dollars exist only at the boundaries.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError


# Maximum amount: $9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


def dollars_to_cents(value) -> int:
    """
    Convert a decimal dollar amount (Decimal, str, int, float) to integer cents.

    Floats are routed through str() so 500.1 becomes 50010, never 50009.
    """
    if value is None:
        raise ValidationError("amount is required")
    if isinstance(value, bool):
        raise ValidationError("amount must be numeric")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not dec.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    cents = int((dec * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"amount cannot exceed {MAX_AMOUNT_CENTS} cents")
    return cents


def cents_to_dollars(cents: int | None) -> Decimal | None:
    """Presentation-only conversion (cents / 100)."""
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))


def format_cents(cents: int | None, currency_symbol: str = "$") -> str:
    if cents is None:
        return ""
    sign = "-" if cents < 0 else ""
    return f"{sign}{currency_symbol}{cents_to_dollars(abs(cents)):,.2f}"


def tax_for(subtotal_cents: int, rate_bps: int) -> int:
    """Tax in cents for a subtotal at a basis-point rate, rounded half up."""
    if subtotal_cents < 0 or rate_bps < 0:
        raise ValidationError("subtotal and tax rate must be >= 0")
    raw = Decimal(subtotal_cents) * Decimal(rate_bps) / Decimal(10_000)
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def require_cents(name: str, value, *, allow_zero: bool = True, allow_negative: bool = False) -> int:
    """Strict integer-cents check: rejects floats, bools, and numeric strings with decimals."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer number of cents")
    if value < 0 and not allow_negative:
        raise ValidationError(f"{name} must be >= 0")
    if value == 0 and not allow_zero:
        raise ValidationError(f"{name} must be non-zero")
    if abs(value) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{name} cannot exceed {MAX_AMOUNT_CENTS} cents")
    return value
