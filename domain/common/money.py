"""
货币金额工具：统一精度与容差比较

金额一律使用 Decimal；比较采用 epsilon 容差，避免分位上的误判。
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
CURRENCY_EPS = Decimal("0.01")
ZERO = Decimal("0")

MoneyLike = Union[Decimal, int, float, str]


def to_money(value: MoneyLike) -> Decimal:
    """转换为两位小数的 Decimal（float 先转字符串，避免二进制误差）"""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def is_equal_currency(a: Decimal, b: Decimal, eps: Decimal = CURRENCY_EPS) -> bool:
    return abs(a - b) < eps


def is_less_currency(a: Decimal, b: Decimal, eps: Decimal = CURRENCY_EPS) -> bool:
    return a < b and not is_equal_currency(a, b, eps)


def is_greater_currency(a: Decimal, b: Decimal, eps: Decimal = CURRENCY_EPS) -> bool:
    return a > b and not is_equal_currency(a, b, eps)
