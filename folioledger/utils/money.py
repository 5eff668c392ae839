from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

MONEY = Decimal("0.01")
QTY = Decimal("0.00000001")
PRICE = Decimal("0.00000001")
UNITS = Decimal("0.000001")
NAV = Decimal("0.000001")
RATIO = Decimal("0.00000001")

ZERO = Decimal("0")
MONEY_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip()
    if not s:
        return None
    s = s.replace(",", "")
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def dec(value: Any) -> Decimal:
    """Like `to_decimal` but maps missing/unparseable values to zero."""
    d = to_decimal(value)
    return ZERO if d is None else d


def q(value: Any, quantum: Decimal) -> Decimal:
    return dec(value).quantize(quantum, rounding=ROUND_HALF_UP)


def money(value: Any) -> Decimal:
    return q(value, MONEY)


def ratio(numerator: Any, denominator: Any) -> Decimal | None:
    den = dec(denominator)
    if den == 0:
        return None
    return (dec(numerator) / den).quantize(RATIO, rounding=ROUND_HALF_UP)


def as_json_number(value: Decimal | None) -> str | None:
    # JSON columns and API payloads carry decimals as strings to avoid float drift.
    if value is None:
        return None
    return format(value, "f")
