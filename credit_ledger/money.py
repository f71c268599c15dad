"""
Credit/dollar arithmetic and display helpers.

Dollar amounts are handled as ``Decimal``; floats are converted through their
string form so 45.99 stays 45.99. Every conversion into credits rounds down,
so a customer is never over-credited.
"""

from decimal import Decimal, ROUND_FLOOR
from typing import Union

from .config import CREDIT_VALUE, PURCHASE_RATE
from .models import CreditTier


Number = Union[int, float, str, Decimal]

CENT = Decimal("0.01")

# (minimum lifetime earned, tier name), highest first
CREDIT_TIERS = (
    (50000, "Platinum"),
    (25000, "Gold"),
    (10000, "Silver"),
    (5000, "Bronze"),
    (0, "Starter"),
)


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def _floor_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def credits_to_dollars(credits: int, credit_value: Decimal = CREDIT_VALUE) -> Decimal:
    return Decimal(credits) * credit_value


def dollars_to_credits(dollars: Number, credit_value: Decimal = CREDIT_VALUE) -> int:
    return _floor_int(to_decimal(dollars) / credit_value)


def calculate_purchase_credits(order_total: Number, purchase_rate: Decimal = PURCHASE_RATE) -> int:
    """Credits earned for an order: floor(total dollars x rate)."""
    total = to_decimal(order_total)
    if total <= 0:
        return 0
    return _floor_int(total * purchase_rate)


def max_usable_credits(available_credits: int, order_total: Number,
                       credit_value: Decimal = CREDIT_VALUE) -> int:
    return max(0, min(available_credits, dollars_to_credits(order_total, credit_value)))


def has_enough_credits(available_credits: int, amount: int) -> bool:
    return available_credits >= amount


def format_credits(credits: int) -> str:
    return f"{credits:,}"


def format_credit_value(credits: int, credit_value: Decimal = CREDIT_VALUE) -> str:
    dollars = credits_to_dollars(credits, credit_value).quantize(CENT, rounding=ROUND_FLOOR)
    return f"${dollars:,.2f}"


def get_credit_tier(lifetime_earned: int) -> CreditTier:
    next_threshold = None
    for threshold, name in CREDIT_TIERS:
        if lifetime_earned >= threshold:
            return CreditTier(tier=name, threshold=threshold, next_tier=next_threshold)
        next_threshold = threshold
    # negative input; lowest tier
    return CreditTier(tier="Starter", threshold=0, next_tier=CREDIT_TIERS[-2][0])
