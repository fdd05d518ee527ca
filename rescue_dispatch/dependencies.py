"""
FastAPI providers for the engine services, one per request.

Tests override `get_db`, `get_redis` and `get_payment_gateway`; everything
else is built on top of those.
"""
import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.database import get_db
from rescue_dispatch.redis_client import get_redis
from rescue_dispatch.repositories.promos import PromoRepository
from rescue_dispatch.services.geospatial_index import GeospatialIndex
from rescue_dispatch.services.jobs import JobScheduler
from rescue_dispatch.services.lifecycle import RescueLifecycle
from rescue_dispatch.services.location_tracker import LocationTracker
from rescue_dispatch.services.matching import MatchingEngine
from rescue_dispatch.services.notifications import NotificationGateway
from rescue_dispatch.services.payments import PaymentGateway, PaymentService
from rescue_dispatch.services.pricing import PricingEngine
from rescue_dispatch.services.surge import SurgeLookup
from rescue_dispatch.workers import JobDispatcher


def get_payment_gateway() -> PaymentGateway:
    return PaymentGateway(get_settings())


def get_scheduler(redis: aioredis.Redis = Depends(get_redis)) -> JobScheduler:
    return JobScheduler(redis, get_settings())


def get_pricing(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> PricingEngine:
    settings: Settings = get_settings()
    return PricingEngine(SurgeLookup(db, redis, settings), PromoRepository(db), settings)


def get_geo_index(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> GeospatialIndex:
    return GeospatialIndex(db, redis, get_settings())


def get_tracker(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> LocationTracker:
    return LocationTracker(db, redis, get_settings())


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    scheduler: JobScheduler = Depends(get_scheduler),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentService:
    return PaymentService(
        db,
        gateway=gateway,
        scheduler=scheduler,
        notifier=NotificationGateway(scheduler),
        settings=get_settings(),
    )


def get_lifecycle(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    pricing: PricingEngine = Depends(get_pricing),
    scheduler: JobScheduler = Depends(get_scheduler),
    payments: PaymentService = Depends(get_payment_service),
) -> RescueLifecycle:
    return RescueLifecycle(
        db,
        redis,
        get_settings(),
        pricing=pricing,
        scheduler=scheduler,
        notifier=NotificationGateway(scheduler),
        payments=payments,
    )


def get_matching(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    pricing: PricingEngine = Depends(get_pricing),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> MatchingEngine:
    return MatchingEngine(
        db,
        redis,
        get_settings(),
        pricing=pricing,
        scheduler=scheduler,
        notifier=NotificationGateway(scheduler),
    )


def get_dispatcher(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> JobDispatcher:
    return JobDispatcher(db, redis, get_settings(), gateway=gateway)
