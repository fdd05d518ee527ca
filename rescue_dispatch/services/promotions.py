"""
Promo code rules.

Pure functions over anything shaped like a `PromoCode` row, so pricing can be
unit-tested without a database.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from rescue_dispatch.domain.quote import to_money

PROMO_TYPES = ("percentage", "fixed_amount", "free_rescue")


def _aware(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def is_promo_valid(promo, now: datetime) -> bool:
    """Active, inside its validity window, and under the total usage cap."""
    if not promo.is_active:
        return False
    if not (_aware(promo.valid_from) <= now <= _aware(promo.valid_until)):
        return False
    if promo.usage_limit_total is not None and promo.usage_count >= promo.usage_limit_total:
        return False
    return True


def can_user_use(promo, now: datetime, user_redemptions: int) -> bool:
    return is_promo_valid(promo, now) and user_redemptions < promo.usage_limit_per_user


def calculate_discount(promo, amount: Decimal, now: datetime, user_redemptions: Optional[int] = None) -> Decimal:
    """
    Discount for `amount`, never more than `amount`.

    Returns 0 for an unusable promo rather than raising; an invalid code
    simply does not reduce the quote.
    """
    amount = to_money(amount)
    if user_redemptions is None:
        usable = is_promo_valid(promo, now)
    else:
        usable = can_user_use(promo, now, user_redemptions)
    if not usable:
        return Decimal("0.00")
    if amount < to_money(promo.min_purchase or 0):
        return Decimal("0.00")

    value = Decimal(str(promo.discount_value))
    if promo.type == "percentage":
        discount = amount * value / Decimal("100")
        if promo.max_discount:
            discount = min(discount, Decimal(str(promo.max_discount)))
    elif promo.type == "fixed_amount":
        discount = min(value, amount)
    elif promo.type == "free_rescue":
        discount = amount
    else:
        return Decimal("0.00")
    return min(to_money(discount), amount)
