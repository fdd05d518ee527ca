"""
Driver–rescue matching engine.

Flow:
  1. Load the rescue; only `requested` rescues are matched
  2. Radius query around the pickup (GeospatialIndex: Redis GEO, durable fallback)
  3. Join driver stats from Postgres and score every candidate
  4. Re-quote the price with current surge / time multipliers
  5. Commit requested -> matched (with the fresh quote) via conditional update
  6. Enqueue `rescue-matched` and offer the rescue to the top candidates

No candidates leaves the rescue in `requested`; retrying is the caller's call.
Assignment itself happens later, when a driver accepts.
"""
import logging
from decimal import Decimal
from typing import Optional

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.domain.rescue import RescueRequest, RescueStatus
from rescue_dispatch.errors import InvalidTransitionError, StateConflictError
from rescue_dispatch.repositories.drivers import DriverRepository
from rescue_dispatch.repositories.promos import PromoRepository
from rescue_dispatch.repositories.rescues import RescueRepository
from rescue_dispatch.services.geospatial_index import GeospatialIndex
from rescue_dispatch.services.jobs import JobScheduler, JobType
from rescue_dispatch.services.location_tracker import estimate_eta_minutes, format_eta
from rescue_dispatch.services.notifications import NotificationEvent, NotificationGateway
from rescue_dispatch.services.pricing import PricingEngine
from rescue_dispatch.services.surge import SurgeLookup

logger = logging.getLogger(__name__)


class DriverCandidate(BaseModel):
    driver_id: str
    distance_km: float
    lat: float
    lng: float
    rating_average: float = 0.0
    rating_count: int = 0
    total_rescues: int = 0
    completion_rate: float = 0.0
    average_response_minutes: float = 0.0


class ScoredCandidate(BaseModel):
    driver_id: str
    distance_km: float
    score: float
    eta_minutes: int
    eta_text: str
    estimated_payout: Decimal
    rating_average: float = 0.0
    total_rescues: int = 0


class MatchResult(BaseModel):
    rescue: RescueRequest
    matched: bool
    candidates: list[ScoredCandidate] = Field(default_factory=list)


def score_driver(candidate: DriverCandidate) -> float:
    """
    0-105 points:
      distance    40, minus 2 per km
      rating      30 at 5 stars
      completion  20 at 100 %
      experience  10 at 100+ rescues
      response    +5 when average response is under 5 min
    """
    distance_score = max(0.0, 40 - candidate.distance_km * 2)
    rating_score = (candidate.rating_average / 5) * 30
    completion_score = (candidate.completion_rate / 100) * 20
    experience_score = min(10.0, candidate.total_rescues / 100 * 10)
    response_bonus = 5.0 if candidate.average_response_minutes < 5 else 0.0
    return round(distance_score + rating_score + completion_score + experience_score + response_bonus, 2)


def recommend_drivers(
    rescue: RescueRequest,
    candidate_pool: list[DriverCandidate],
    settings: Optional[Settings] = None,
) -> list[ScoredCandidate]:
    """Best first: score desc, then distance asc, then driver id. Pure."""
    settings = settings or get_settings()
    scored = []
    for candidate in candidate_pool:
        eta = estimate_eta_minutes(candidate.distance_km, settings.eta_avg_speed_kmh, settings.eta_buffer_factor)
        scored.append(
            ScoredCandidate(
                driver_id=candidate.driver_id,
                distance_km=round(candidate.distance_km, 2),
                score=score_driver(candidate),
                eta_minutes=eta,
                eta_text=format_eta(eta),
                estimated_payout=rescue.pricing.driver_payout,
                rating_average=candidate.rating_average,
                total_rescues=candidate.total_rescues,
            )
        )
    scored.sort(key=lambda c: (-c.score, c.distance_km, c.driver_id))
    return scored


class MatchingEngine:
    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis,
        settings: Optional[Settings] = None,
        *,
        index: Optional[GeospatialIndex] = None,
        pricing: Optional[PricingEngine] = None,
        scheduler: Optional[JobScheduler] = None,
        notifier: Optional[NotificationGateway] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.rescues = RescueRepository(db)
        self.drivers = DriverRepository(db)
        self.index = index or GeospatialIndex(db, redis, self.settings)
        self.pricing = pricing or PricingEngine(
            SurgeLookup(db, redis, self.settings), PromoRepository(db), self.settings
        )
        self.scheduler = scheduler or JobScheduler(redis, self.settings)
        self.notifier = notifier or NotificationGateway(self.scheduler)

    async def find_candidates(
        self,
        rescue: RescueRequest,
        radius_km: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[DriverCandidate]:
        radius_km = radius_km or self.settings.driver_search_radius_km
        limit = limit or self.settings.matching_candidate_limit

        nearby = await self.index.radius_query(rescue.pickup.coordinates, radius_km, limit)
        stats = await self.drivers.get_many(d.driver_id for d in nearby)

        candidates = []
        for hit in nearby:
            driver = stats.get(hit.driver_id)
            if driver is None:
                # In the GEO set but gone from the durable store
                continue
            candidates.append(
                DriverCandidate(
                    driver_id=hit.driver_id,
                    distance_km=hit.distance_km,
                    lat=hit.lat,
                    lng=hit.lng,
                    rating_average=driver.rating_average,
                    rating_count=driver.rating_count,
                    total_rescues=driver.total_rescues,
                    completion_rate=driver.completion_rate,
                    average_response_minutes=driver.average_response_minutes,
                )
            )
        return candidates

    async def match(self, rescue_id: str, radius_km: Optional[float] = None) -> MatchResult:
        rescue = await self.rescues.get_or_raise(rescue_id)
        if rescue.status != RescueStatus.REQUESTED:
            raise InvalidTransitionError(rescue.status.value, RescueStatus.MATCHED.value)

        candidates = await self.find_candidates(rescue, radius_km)
        if not candidates:
            logger.warning("No available drivers for rescue=%s", rescue_id)
            return MatchResult(rescue=rescue, matched=False)

        quote = await self.pricing.requote(
            rescue.pickup.coordinates,
            rescue.dropoff.coordinates,
            rescue.pricing,
            scheduled_for=rescue.scheduled_for,
            urgent=rescue.is_urgent,
        )
        ranked = recommend_drivers(rescue.model_copy(update={"pricing": quote}), candidates, self.settings)

        matched = await self.rescues.apply(rescue.plan_match(quote))
        if matched is None:
            await self.db.rollback()
            current = await self.rescues.get(rescue_id)
            raise StateConflictError("Rescue is no longer available", current)
        await self.db.commit()

        logger.info(
            "Matched rescue=%s candidates=%d top=%s score=%.2f",
            rescue_id, len(ranked), ranked[0].driver_id, ranked[0].score,
        )

        await self.scheduler.enqueue(
            JobType.RESCUE_MATCHED,
            {"rescue_id": rescue_id, "driver_ids": [c.driver_id for c in ranked]},
        )
        for candidate in ranked[: self.settings.matching_notify_top]:
            await self.notifier.notify(
                candidate.driver_id,
                NotificationEvent.RESCUE_OFFERED,
                {
                    "rescue_id": rescue_id,
                    "distance_km": candidate.distance_km,
                    "eta_minutes": candidate.eta_minutes,
                    "estimated_payout": str(candidate.estimated_payout),
                },
            )
        return MatchResult(rescue=matched, matched=True, candidates=ranked)
