"""
Builders shared by the unit and integration tests.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from rescue_dispatch.domain.quote import PriceQuote
from rescue_dispatch.domain.rescue import Issue, IssueType, Place
from rescue_dispatch.models import Driver, PromoCode

SF_PICKUP = Place(lat=37.7749, lng=-122.4194, address="Market St & 5th St")
SF_DROPOFF = Place(lat=37.7850, lng=-122.4000, address="Howard St bike shop")


def flat_tire() -> Issue:
    return Issue(type=IssueType.flat_tire, description="Rear tire flat")


def simple_quote(subtotal: str = "30.00", discount: str = "0.00", promo_code=None) -> PriceQuote:
    return PriceQuote.build(
        base_price=Decimal("25.00"),
        distance_km=2.0,
        distance_price=Decimal("5.00"),
        subtotal=Decimal(subtotal),
        discount=Decimal(discount),
        fee_percent=20.0,
        promo_code=promo_code,
    )


async def add_driver(
    db,
    lat=37.7760,
    lng=-122.4180,
    online=True,
    available=True,
    last_seen=None,
    **stats,
) -> Driver:
    driver = Driver(
        id=str(uuid.uuid4()),
        name="Test Driver",
        phone=f"+1{uuid.uuid4().int % 10**10:010d}",
        lat=lat,
        lng=lng,
        is_online=online,
        is_available=available,
        last_updated_at=last_seen or datetime.now(timezone.utc),
        **stats,
    )
    db.add(driver)
    await db.commit()
    return driver


async def add_promo(db, code="SAVE10", type="percentage", discount_value="10", **overrides) -> PromoCode:
    fields = dict(
        id=str(uuid.uuid4()),
        code=code,
        type=type,
        discount_value=Decimal(discount_value),
        max_discount=None,
        min_purchase=Decimal("0"),
        usage_limit_total=None,
        usage_limit_per_user=1,
        usage_count=0,
        valid_from=datetime(2020, 1, 1, tzinfo=timezone.utc),
        valid_until=datetime(2099, 12, 31, tzinfo=timezone.utc),
        is_active=True,
    )
    fields.update(overrides)
    promo = PromoCode(**fields)
    db.add(promo)
    await db.commit()
    return promo
