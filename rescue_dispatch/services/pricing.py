"""
Rescue pricing.

    subtotal  = (base + distance_km * per_km) * surge * time * urgent
    discount  = promo discount on subtotal (capped at subtotal)
    total     = subtotal - discount
    fee       = total * platform_fee_percent
    payout    = total - fee

Stateless apart from the surge lookup and promo repository it is handed.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.domain.geo import Coordinates, distance_between
from rescue_dispatch.domain.quote import PriceQuote, to_money
from rescue_dispatch.services.promotions import calculate_discount

logger = logging.getLogger(__name__)

NIGHT_MULTIPLIER = 1.5
WEEKEND_MULTIPLIER = 1.2
PEAK_MULTIPLIER = 1.3
PEAK_HOURS = frozenset({7, 8, 9, 17, 18, 19})


class SurgeSource(Protocol):
    async def get_multiplier(self, lat: float, lng: float) -> float: ...


def time_multiplier(at: datetime) -> float:
    """
    Time-of-day premium on the local wall clock. Mutually exclusive, first
    match wins: night, then weekend, then peak commute hours.
    """
    hour = at.hour
    if hour >= 22 or hour < 6:
        return NIGHT_MULTIPLIER
    if at.weekday() >= 5:
        return WEEKEND_MULTIPLIER
    if hour in PEAK_HOURS:
        return PEAK_MULTIPLIER
    return 1.0


def trip_distance_km(pickup: Coordinates, dropoff: Coordinates) -> float:
    """Billable distance, rounded to 0.1 km."""
    return round(distance_between(pickup, dropoff), 1)


class PricingEngine:
    def __init__(self, surge: SurgeSource, promos=None, settings: Optional[Settings] = None):
        self.surge = surge
        self.promos = promos
        self.settings = settings or get_settings()

    def _local(self, at: datetime) -> datetime:
        if at.tzinfo is None:
            return at
        return at.astimezone(ZoneInfo(self.settings.local_timezone))

    async def calculate_price(
        self,
        pickup: Coordinates,
        dropoff: Coordinates,
        promo_code: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
        urgent: bool = False,
        rider_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PriceQuote:
        now = now or datetime.now(timezone.utc)
        distance_km = trip_distance_km(pickup, dropoff)

        base_price = Decimal(str(self.settings.base_rescue_price))
        distance_price = Decimal(str(distance_km)) * Decimal(str(self.settings.price_per_km))

        surge = await self.surge.get_multiplier(pickup.lat, pickup.lng)
        time_mult = time_multiplier(self._local(scheduled_for or now))
        urgent_mult = self.settings.urgent_multiplier if urgent else 1.0

        multiplier = Decimal(str(surge)) * Decimal(str(time_mult)) * Decimal(str(urgent_mult))
        subtotal = to_money((base_price + distance_price) * multiplier)

        discount = Decimal("0.00")
        applied_code = None
        if promo_code:
            discount = await self._promo_discount(promo_code, subtotal, rider_id, now)
            if discount > 0:
                applied_code = promo_code.strip().upper()

        quote = PriceQuote.build(
            base_price=base_price,
            distance_km=distance_km,
            distance_price=distance_price,
            subtotal=subtotal,
            discount=discount,
            fee_percent=self.settings.platform_fee_percent,
            surge_multiplier=surge,
            time_multiplier=time_mult,
            urgent_multiplier=urgent_mult,
            promo_code=applied_code,
            currency=self.settings.currency,
        )
        logger.debug(
            "Quote distance=%.1fkm surge=%.2f time=%.2f urgent=%.2f total=%s",
            distance_km, surge, time_mult, urgent_mult, quote.total,
        )
        return quote

    async def requote(
        self,
        pickup: Coordinates,
        dropoff: Coordinates,
        previous: PriceQuote,
        scheduled_for: Optional[datetime] = None,
        urgent: bool = False,
        now: Optional[datetime] = None,
    ) -> PriceQuote:
        """
        Fresh surge and time multipliers, same promo outcome.

        The promo was redeemed when the rescue was created, so its discount
        is carried over (capped at the new subtotal) instead of re-validated.
        """
        fresh = await self.calculate_price(pickup, dropoff, scheduled_for=scheduled_for, urgent=urgent, now=now)
        if not previous.discount:
            return fresh
        return PriceQuote.build(
            base_price=fresh.base_price,
            distance_km=fresh.distance_km,
            distance_price=fresh.distance_price,
            subtotal=fresh.subtotal,
            discount=previous.discount,
            fee_percent=self.settings.platform_fee_percent,
            surge_multiplier=fresh.surge_multiplier,
            time_multiplier=fresh.time_multiplier,
            urgent_multiplier=fresh.urgent_multiplier,
            promo_code=previous.promo_code,
            currency=fresh.currency,
        )

    async def _promo_discount(
        self,
        code: str,
        subtotal: Decimal,
        rider_id: Optional[str],
        now: datetime,
    ) -> Decimal:
        if self.promos is None:
            return Decimal("0.00")
        promo = await self.promos.find_by_code(code)
        if promo is None:
            logger.info("Promo code %s not found or inactive", code)
            return Decimal("0.00")
        redemptions = None
        if rider_id:
            redemptions = await self.promos.count_user_redemptions(promo.id, rider_id)
        return calculate_discount(promo, subtotal, now, redemptions)
