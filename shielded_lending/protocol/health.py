"""
Health factor evaluation.

Local pre-check only: it saves proof generation cost on actions that the
circuit would reject anyway, and has no on-chain effect by itself.
Arithmetic is exact (fractions); a position without debt is unbounded.
"""

from __future__ import annotations

import math
from decimal import Decimal
from fractions import Fraction
from typing import Union

from .config import (
    BORROW_MIN_HEALTH_PERCENT,
    BTC_DECIMALS,
    EXIT_MIN_HEALTH_PERCENT,
    HEALTH_FACTOR_SCALE,
    HEALTHY_THRESHOLD,
    PRICE_DECIMALS,
    USDC_DECIMALS,
    WARNING_THRESHOLD,
)
from .exceptions import UserInputError
from .types import ActionKind

Number = Union[int, float, str, Decimal, Fraction]
Ratio = Union[Fraction, float]


def _exact(value: Number, field: str) -> Fraction:
    if isinstance(value, bool):
        raise UserInputError(f"{field} must be numeric")
    try:
        exact = Fraction(value) if not isinstance(value, float) else Fraction(str(value))
    except (TypeError, ValueError, ZeroDivisionError) as exc:
        raise UserInputError(f"{field} is not a number: {value!r}") from exc
    if exact < 0:
        raise UserInputError(f"{field} must not be negative")
    return exact


def evaluate(
    collateral_amount: Number,
    debt_amount: Number,
    btc_price: Number,
    usdc_price: Number,
) -> Ratio:
    """
    Solvency ratio of a position.

    ratio = (collateral * btc_price) / (debt * usdc_price)

    Returns:
        Exact Fraction, or math.inf when there is no debt

    Example:
        >>> evaluate(1, 50000, 65000, 1)
        Fraction(13, 10)
    """
    collateral = _exact(collateral_amount, "collateral_amount")
    debt = _exact(debt_amount, "debt_amount")
    btc = _exact(btc_price, "btc_price")
    usdc = _exact(usdc_price, "usdc_price")

    if debt == 0:
        return math.inf
    if usdc == 0:
        raise UserInputError("usdc_price must be positive")
    return (collateral * btc) / (debt * usdc)


def evaluate_units(
    collateral_units: int,
    debt_units: int,
    btc_price_units: int,
    usdc_price_units: int,
) -> Ratio:
    """Evaluate smallest-unit integers (BTC 8 decimals, USDC and prices 6)."""
    return evaluate(
        Fraction(collateral_units, 10**BTC_DECIMALS),
        Fraction(debt_units, 10**USDC_DECIMALS),
        Fraction(btc_price_units, 10**PRICE_DECIMALS),
        Fraction(usdc_price_units, 10**PRICE_DECIMALS),
    )


def check_threshold(ratio: Ratio, min_ratio: Number) -> bool:
    return ratio >= _exact(min_ratio, "min_ratio")


def min_percent_for(kind: ActionKind) -> int:
    if kind is ActionKind.BORROW:
        return BORROW_MIN_HEALTH_PERCENT
    return EXIT_MIN_HEALTH_PERCENT


def min_ratio_for(kind: ActionKind) -> Fraction:
    """Borrow needs 1.1, exit needs 1.5."""
    return Fraction(min_percent_for(kind), 100)


def to_scaled(ratio: Ratio, scale: int = HEALTH_FACTOR_SCALE) -> int:
    """Fixed-point representation used on-chain (1.5 -> 1_500_000)."""
    if ratio == math.inf:
        raise UserInputError("unbounded health factor has no fixed-point form")
    return math.floor(Fraction(ratio) * scale)


def to_percent(ratio: Ratio) -> int:
    return to_scaled(ratio, 100)


def classify(ratio: Ratio) -> str:
    if ratio >= Fraction(*HEALTHY_THRESHOLD):
        return "healthy"
    if ratio >= Fraction(*WARNING_THRESHOLD):
        return "warning"
    return "danger"
