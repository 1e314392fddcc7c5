# pricing.py
# Monthly-deposit discount tiers and price display helpers

from dataclasses import dataclass
from typing import Optional, Tuple

from config import DISCOUNT_ENABLED, DISCOUNT_TIERS, MIN_FINAL_PRICE


@dataclass(frozen=True)
class Quote:
    original_price: float
    final_price: float
    discount: float = 0.0
    discount_percent: int = 0


def _round2(x: float) -> float:
    return round(x + 1e-9, 2)


def _tiers_desc(tiers):
    return sorted(tiers, key=lambda t: t[0], reverse=True)


def calculate_discounted_price(price: float, monthly_deposit: float,
                               tiers=None, enabled: bool = DISCOUNT_ENABLED) -> Quote:
    """
    Highest tier reached by this month's deposits wins.
    Final price never drops below MIN_FINAL_PRICE.
    """
    price = float(price)
    if not enabled:
        return Quote(original_price=price, final_price=price)

    for deposit, percent in _tiers_desc(tiers if tiers is not None else DISCOUNT_TIERS):
        if monthly_deposit >= deposit:
            discount = price * percent / 100.0
            return Quote(
                original_price=price,
                final_price=_round2(max(price - discount, MIN_FINAL_PRICE)),
                discount=_round2(discount),
                discount_percent=int(percent),
            )

    return Quote(original_price=price, final_price=price)


def discount_info(monthly_deposit: float, tiers=None) -> Tuple[int, Optional[Tuple[float, int]]]:
    """Returns (current_percent, (deposit_needed, next_percent) or None)."""
    tiers = sorted(tiers if tiers is not None else DISCOUNT_TIERS, key=lambda t: t[0])
    current = 0
    nxt = None
    for deposit, percent in tiers:
        if monthly_deposit >= deposit:
            current = int(percent)
        elif nxt is None:
            nxt = (_round2(deposit - monthly_deposit), int(percent))
    return current, nxt


def format_currency(amount) -> str:
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        return "0.00"
    if amount == int(amount):
        return str(int(amount))
    return f"{amount:.2f}"
