"""Decimal money helpers. Amounts live as integer cents in the database."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")

# Largest accepted amount; leaves headroom for summed balances in a signed 64-bit cents column.
MAX_AMOUNT = Decimal("999999999999.99")


def quantize(value: Decimal) -> Decimal:
    """Round to whole cents, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def exceeds_limit(value: Decimal) -> bool:
    return value.copy_abs() > MAX_AMOUNT


def to_cents(value: Decimal) -> int:
    """Convert a Decimal amount to integer cents."""
    return int(quantize(value).scaleb(2))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-place Decimal."""
    return Decimal(cents).scaleb(-2)


def parse_money(raw: object) -> Decimal:
    """
    Parse a JSON/query value into a quantized Decimal.

    Accepts ints, floats and numeric strings. Floats go through their
    repr so 0.1 stays 0.1 instead of its binary expansion.

    Raises:
        ValueError: If the value is not a finite number or exceeds MAX_AMOUNT
    """
    if isinstance(raw, bool) or not isinstance(raw, int | float | str | Decimal):
        msg = f"Not a monetary value: {raw!r}"
        raise ValueError(msg)

    try:
        value = raw if isinstance(raw, Decimal) else Decimal(str(raw).strip())
        if not value.is_finite():
            msg = f"Monetary value must be finite: {raw!r}"
            raise ValueError(msg)
        if exceeds_limit(value):
            msg = f"Monetary value exceeds {MAX_AMOUNT}: {raw!r}"
            raise ValueError(msg)
        return quantize(value)
    except InvalidOperation as exc:
        msg = f"Not a monetary value: {raw!r}"
        raise ValueError(msg) from exc


def format_money(value: Decimal) -> str:
    """Render a Decimal amount with exactly two places."""
    return str(quantize(value))
