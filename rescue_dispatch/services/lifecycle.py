"""
Rescue lifecycle: creation, every status change, cancellation and completion.

Each change is planned on the aggregate and committed with one conditional
update. A lost race is not an exception here: accept / cancel / transition
return a TransitionOutcome whose `conflict` carries the state that won, so
the API can answer "no longer available" with the current status.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.domain.quote import PriceQuote
from rescue_dispatch.domain.rescue import (
    CancelledBy,
    Issue,
    Place,
    RescueRequest,
    RescueStatus,
    TERMINAL_STATUSES,
    Transition,
    validate_request,
)
from rescue_dispatch.errors import (
    NotFoundError,
    RateExceededError,
    StateConflictError,
    ValidationError,
)
from rescue_dispatch.repositories.drivers import DriverRepository
from rescue_dispatch.repositories.promos import PromoRepository
from rescue_dispatch.repositories.rescues import RescueRepository
from rescue_dispatch.services.jobs import JobScheduler, JobType
from rescue_dispatch.services.notifications import NotificationEvent, NotificationGateway
from rescue_dispatch.services.payments import PaymentService
from rescue_dispatch.services.pricing import PricingEngine
from rescue_dispatch.services.surge import SurgeLookup

logger = logging.getLogger(__name__)


class TransitionOutcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    committed: bool
    rescue: RescueRequest
    conflict: Optional[StateConflictError] = None
    payment_id: Optional[str] = None


class RescueLifecycle:
    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis,
        settings: Optional[Settings] = None,
        *,
        pricing: Optional[PricingEngine] = None,
        scheduler: Optional[JobScheduler] = None,
        notifier: Optional[NotificationGateway] = None,
        payments: Optional[PaymentService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.rescues = RescueRepository(db)
        self.drivers = DriverRepository(db)
        self.promos = PromoRepository(db)
        self.pricing = pricing or PricingEngine(SurgeLookup(db, redis, self.settings), self.promos, self.settings)
        self.scheduler = scheduler or JobScheduler(redis, self.settings)
        self.notifier = notifier or NotificationGateway(self.scheduler)
        self.payments = payments or PaymentService(
            db, scheduler=self.scheduler, notifier=self.notifier, settings=self.settings
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, rescue_id: str) -> RescueRequest:
        return await self.rescues.get_or_raise(rescue_id)

    async def list_for_rider(
        self, rider_id: str, statuses: Optional[list[RescueStatus]] = None, limit: int = 50
    ) -> list[RescueRequest]:
        return await self.rescues.find(rider_id=rider_id, statuses=statuses, limit=limit)

    async def list_for_driver(
        self, driver_id: str, statuses: Optional[list[RescueStatus]] = None, limit: int = 50
    ) -> list[RescueRequest]:
        return await self.rescues.find(driver_id=driver_id, statuses=statuses, limit=limit)

    async def list_open_near(
        self, lat: float, lng: float, radius_km: Optional[float] = None, limit: int = 20
    ) -> list[RescueRequest]:
        radius_km = min(
            radius_km or self.settings.driver_search_radius_km,
            self.settings.max_driver_search_radius_km,
        )
        return await self.rescues.find_open_near(lat, lng, radius_km, limit)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        rider_id: str,
        pickup: Optional[Place],
        dropoff: Optional[Place],
        issue: Optional[Issue],
        quote: Optional[PriceQuote] = None,
        *,
        promo_code: Optional[str] = None,
        is_urgent: bool = False,
        scheduled_for: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RescueRequest:
        """
        New rescue in `requested`. Without a quote one is computed here.
        Replaying an idempotency key returns the rescue it created.
        """
        if idempotency_key:
            existing = await self.rescues.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info("Idempotent replay of rescue %s", existing.id)
                return existing

        validate_request(rider_id, pickup, dropoff, issue)
        now = now or datetime.now(timezone.utc)
        if quote is None:
            quote = await self.pricing.calculate_price(
                pickup.coordinates,
                dropoff.coordinates,
                promo_code=promo_code,
                scheduled_for=scheduled_for,
                urgent=is_urgent,
                rider_id=rider_id,
                now=now,
            )

        rescue = RescueRequest.new(
            rider_id, pickup, dropoff, issue, quote,
            is_urgent=is_urgent, scheduled_for=scheduled_for, now=now,
        )
        try:
            await self.rescues.add(rescue, idempotency_key)
            if quote.promo_code and quote.discount > 0:
                await self._redeem_promo(rescue, now)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            if idempotency_key:
                existing = await self.rescues.find_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return existing
            raise

        logger.info(
            "Rescue created id=%s rider=%s issue=%s total=%s",
            rescue.id, rider_id, rescue.issue.type.value, quote.total,
        )
        await self.notifier.notify(
            rider_id,
            NotificationEvent.RESCUE_CREATED,
            {"rescue_id": rescue.id, "total": str(quote.total)},
        )
        return rescue

    async def _redeem_promo(self, rescue: RescueRequest, now: datetime) -> None:
        code = rescue.pricing.promo_code
        promo = await self.promos.find_by_code(code)
        if promo is None:
            await self.db.rollback()
            raise ValidationError("Promo code is no longer valid", {"promo_code": code})
        redeemed = await self.promos.redeem(promo, rescue.rider_id, rescue.id, rescue.pricing.discount, now)
        if not redeemed:
            await self.db.rollback()
            raise RateExceededError("Promo code usage limit reached", {"promo_code": code})

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _conflict(self, rescue_id: str, message: str) -> TransitionOutcome:
        await self.db.rollback()
        current = await self.rescues.get(rescue_id)
        if current is None:
            raise NotFoundError("Rescue", rescue_id)
        logger.info("Rescue %s conflict: %s (now %s)", rescue_id, message, current.status.value)
        return TransitionOutcome(
            committed=False,
            rescue=current,
            conflict=StateConflictError(message, current),
        )

    async def _apply(self, transition: Transition, conflict_message: str) -> TransitionOutcome:
        updated = await self.rescues.apply(transition)
        if updated is None:
            return await self._conflict(transition.rescue_id, conflict_message)
        await self.db.commit()
        return TransitionOutcome(committed=True, rescue=updated)

    async def transition_to(
        self,
        rescue_id: str,
        new_status: RescueStatus,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> TransitionOutcome:
        if new_status == RescueStatus.ACCEPTED:
            return await self.accept(rescue_id, actor or "")
        if new_status == RescueStatus.CANCELLED:
            return await self.cancel(rescue_id, note or "", CancelledBy.system.value, actor=actor)

        rescue = await self.rescues.get_or_raise(rescue_id)
        if new_status == RescueStatus.COMPLETED:
            return await self.complete(rescue_id, rescue.pricing.total, actor=actor)

        transition = rescue.plan_transition(new_status, actor=actor, note=note)
        outcome = await self._apply(transition, "Rescue status changed concurrently")
        if outcome.committed:
            logger.info("Rescue %s %s -> %s", rescue_id, rescue.status.value, new_status.value)
            await self.notifier.notify(
                rescue.rider_id,
                NotificationEvent.RESCUE_STATUS_CHANGED,
                {"rescue_id": rescue_id, "status": new_status.value},
            )
        return outcome

    async def accept(self, rescue_id: str, driver_id: str) -> TransitionOutcome:
        """
        Assign the driver iff the rescue is still unassigned and acceptable.
        Exactly one of any number of concurrent callers commits.
        """
        transition = RescueRequest.accept_transition(rescue_id, driver_id)
        if await self.drivers.get(driver_id) is None:
            raise NotFoundError("Driver", driver_id)

        outcome = await self._apply(transition, "Rescue is no longer available")
        if not outcome.committed:
            return outcome

        rescue = outcome.rescue
        logger.info("Rescue %s accepted by driver=%s", rescue_id, driver_id)
        await self.scheduler.enqueue(JobType.DRIVER_ASSIGNED, {"rescue_id": rescue_id, "driver_id": driver_id})
        await self.notifier.notify(
            rescue.rider_id,
            NotificationEvent.RESCUE_ACCEPTED,
            {"rescue_id": rescue_id, "driver_id": driver_id},
        )
        return outcome

    async def cancel(
        self,
        rescue_id: str,
        reason: str,
        cancelled_by: str,
        actor: Optional[str] = None,
        observed: Optional[RescueRequest] = None,
    ) -> TransitionOutcome:
        """
        Cancel the rescue as the caller last saw it (`observed`, or a fresh
        read). If it moved on since, the caller gets the conflict and the
        current state rather than overwriting a concurrent accept.
        """
        before = observed if observed is not None else await self.rescues.get_or_raise(rescue_id)
        if before.status in TERMINAL_STATUSES:
            return await self._conflict(rescue_id, "Rescue can no longer be cancelled")
        transition = before.plan_cancel(reason, cancelled_by, actor=actor)

        outcome = await self._apply(transition, "Rescue changed before it could be cancelled")
        if not outcome.committed:
            return outcome

        logger.info("Rescue %s cancelled by %s: %s", rescue_id, cancelled_by, reason)
        payload = {"rescue_id": rescue_id, "reason": transition.entry.note, "cancelled_by": cancelled_by}
        await self.notifier.notify(outcome.rescue.rider_id, NotificationEvent.RESCUE_CANCELLED, payload)
        if before.driver_id:
            await self.notifier.notify(before.driver_id, NotificationEvent.RESCUE_CANCELLED, payload)
        return outcome

    async def complete(
        self,
        rescue_id: str,
        final_price: Decimal,
        actor: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> TransitionOutcome:
        """
        in_progress -> completed. Re-bases the pricing on the final price and
        opens a pending payment in the same transaction.
        """
        rescue = await self.rescues.get_or_raise(rescue_id)
        transition = rescue.plan_complete(final_price, fee_percent=self.settings.platform_fee_percent, actor=actor)

        updated = await self.rescues.apply(transition)
        if updated is None:
            return await self._conflict(rescue_id, "Rescue status changed concurrently")
        payment = await self.payments.create_for_rescue(updated)
        await self.db.commit()

        logger.info(
            "Rescue %s completed final_price=%s duration=%smin payment=%s",
            rescue_id, updated.final_price, updated.duration_minutes, payment.id,
        )
        await self.scheduler.enqueue(
            JobType.CHARGE_CUSTOMER,
            {
                "payment_id": payment.id,
                "rescue_id": rescue_id,
                "amount": str(payment.amount),
                "payment_method": payment_method,
            },
        )
        await self.notifier.notify(
            updated.rider_id,
            NotificationEvent.RESCUE_COMPLETED,
            {"rescue_id": rescue_id, "total": str(updated.pricing.total)},
        )
        return TransitionOutcome(committed=True, rescue=updated, payment_id=payment.id)
