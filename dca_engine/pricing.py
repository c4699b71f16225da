"""
DCA Engine - Price arithmetic.

All results are rounded to stored precision (8 places).
Percentages are plain numbers: 1.0 means 1%.
"""

from decimal import Decimal, ROUND_DOWN

from .types import quantize_amount


HUNDRED = Decimal("100")
ONE = Decimal("1")


def calculate_buy_price(current_price: Decimal, percentage: Decimal) -> Decimal:
    """current x (1 - pct/100)."""
    return quantize_amount(current_price * (ONE - percentage / HUNDRED))


def calculate_sell_price(buy_price: Decimal, sell_profit_percentage: Decimal) -> Decimal:
    """buy x (1 + pct/100)."""
    return quantize_amount(buy_price * (ONE + sell_profit_percentage / HUNDRED))


def calculate_quantity(order_amount: Decimal, price: Decimal) -> Decimal:
    """Base quantity bought with order_amount; rounded down so cost never exceeds it."""
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    return quantize_amount(order_amount / price, rounding=ROUND_DOWN)


def calculate_profit(buy_price: Decimal, sell_price: Decimal, quantity: Decimal) -> Decimal:
    """(sell - buy) x quantity."""
    return quantize_amount((sell_price - buy_price) * quantity)


def within_tolerance(a: Decimal, b: Decimal, tolerance_pct: Decimal) -> bool:
    """Whether a and b differ by at most tolerance_pct percent of b."""
    if b == 0:
        return a == 0
    return abs(a - b) / b * HUNDRED <= tolerance_pct
