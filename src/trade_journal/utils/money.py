"""Money helpers for deterministic rounding."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


CENT = Decimal("0.01")
PRICE_STEP = Decimal("0.000001")


def to_decimal(value: float | int | str | Decimal | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: float | int | str | Decimal | None) -> float:
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def round_price(value: float | int | str | Decimal | None) -> float:
    return float(to_decimal(value).quantize(PRICE_STEP, rounding=ROUND_HALF_UP))


def round_quantity(value: float | int | str | Decimal | None) -> float:
    return float(to_decimal(value).quantize(PRICE_STEP, rounding=ROUND_HALF_UP))
