from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from pydantic import BaseModel, model_validator

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Quantize to cents, half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class PriceQuote(BaseModel):
    """
    Price breakdown for one rescue.

    Money fields are cent-quantized Decimals so the two invariants below hold
    exactly rather than within a float tolerance.
    """

    base_price: Decimal
    distance_km: float
    distance_price: Decimal
    surge_multiplier: float = 1.0
    time_multiplier: float = 1.0
    urgent_multiplier: float = 1.0
    subtotal: Decimal
    discount: Decimal = Decimal("0.00")
    promo_code: Optional[str] = None
    platform_fee: Decimal
    total: Decimal
    driver_payout: Decimal
    currency: str = "USD"

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.total != self.subtotal - self.discount:
            raise ValueError("total must equal subtotal - discount")
        if self.driver_payout != self.total - self.platform_fee:
            raise ValueError("driver_payout must equal total - platform_fee")
        if self.discount < 0 or self.discount > self.subtotal:
            raise ValueError("discount must be within [0, subtotal]")
        return self

    @classmethod
    def build(
        cls,
        *,
        base_price,
        distance_km: float,
        distance_price,
        subtotal,
        discount,
        fee_percent: float,
        surge_multiplier: float = 1.0,
        time_multiplier: float = 1.0,
        urgent_multiplier: float = 1.0,
        promo_code: Optional[str] = None,
        currency: str = "USD",
    ) -> "PriceQuote":
        subtotal = to_money(subtotal)
        discount = min(to_money(discount), subtotal)
        total = subtotal - discount
        platform_fee = to_money(total * Decimal(str(fee_percent)) / Decimal("100"))
        return cls(
            base_price=to_money(base_price),
            distance_km=distance_km,
            distance_price=to_money(distance_price),
            surge_multiplier=surge_multiplier,
            time_multiplier=time_multiplier,
            urgent_multiplier=urgent_multiplier,
            subtotal=subtotal,
            discount=discount,
            promo_code=promo_code,
            platform_fee=platform_fee,
            total=total,
            driver_payout=total - platform_fee,
            currency=currency,
        )

    def with_final_total(self, final_price, fee_percent: float) -> "PriceQuote":
        """Re-base the breakdown on the price actually charged at completion."""
        final = to_money(final_price)
        return PriceQuote.build(
            base_price=self.base_price,
            distance_km=self.distance_km,
            distance_price=self.distance_price,
            subtotal=final + self.discount,
            discount=self.discount,
            fee_percent=fee_percent,
            surge_multiplier=self.surge_multiplier,
            time_multiplier=self.time_multiplier,
            urgent_multiplier=self.urgent_multiplier,
            promo_code=self.promo_code,
            currency=self.currency,
        )
