from rescue_dispatch.models.driver import Driver
from rescue_dispatch.models.rescue import Rescue, RescueTimelineEntry
from rescue_dispatch.models.payment import PaymentRecord
from rescue_dispatch.models.promo import PromoCode, PromoRedemption

__all__ = ["Driver", "Rescue", "RescueTimelineEntry", "PaymentRecord", "PromoCode", "PromoRedemption"]
