"""Integer-cent arithmetic helpers."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, Decimal]


def round_cents(value: Number) -> int:
    """Round a (possibly fractional) cent amount half-up to whole cents."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount: int, percent: Number) -> int:
    """``percent`` percent of ``amount`` cents, rounded half-up."""
    return round_cents(Decimal(amount) * Decimal(percent) / Decimal("100"))


def format_cents(amount: int, currency: str = "usd") -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}{abs(amount) // 100}.{abs(amount) % 100:02d} {currency.upper()}"
