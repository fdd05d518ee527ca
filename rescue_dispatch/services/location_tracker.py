"""
Driver location ingestion, ETA and journey tracking.

Pings land in the GeospatialIndex. While the driver is on a rescue, each ping
is also added as a waypoint to `journey:{rescue_id}` (Redis sorted set scored
by ping time; anything older than the 2 h retention is trimmed on write).
Waypoints are best-effort: losing one never fails the ping.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.domain.geo import Coordinates, distance_between
from rescue_dispatch.domain.rescue import RescueStatus
from rescue_dispatch.errors import DispatchError, NotFoundError
from rescue_dispatch.redis_client import CACHE_ERRORS, journey_key, timeline_append, timeline_range
from rescue_dispatch.repositories.rescues import RescueRepository
from rescue_dispatch.services.geospatial_index import DriverLocation, GeospatialIndex

logger = logging.getLogger(__name__)

LEG_TO_PICKUP = "to_pickup"
LEG_TO_DROPOFF = "to_dropoff"
LEG_UNAVAILABLE = "unavailable"

PICKUP_LEG_STATUSES = frozenset({RescueStatus.ACCEPTED, RescueStatus.EN_ROUTE})
DROPOFF_LEG_STATUSES = frozenset({RescueStatus.IN_PROGRESS})


def estimate_eta_minutes(distance_km: float, avg_speed_kmh: float = 35.0, buffer_factor: float = 1.2) -> int:
    """Driving minutes at an average urban speed, padded for traffic and stops."""
    raw = Decimal(str(distance_km)) / Decimal(str(avg_speed_kmh)) * 60 * Decimal(str(buffer_factor))
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_eta(minutes: int) -> str:
    if minutes < 1:
        return "Less than 1 min"
    if minutes == 1:
        return "1 min"
    if minutes < 60:
        return f"{minutes} mins"
    hours, mins = divmod(minutes, 60)
    unit = "hour" if hours == 1 else "hours"
    if mins == 0:
        return f"{hours} {unit}"
    return f"{hours} {unit} {mins} mins"


class EtaEstimate(BaseModel):
    distance_km: float
    minutes: int
    text: str


class LocationUpdate(BaseModel):
    driver_id: str
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None


class IngestResult(BaseModel):
    driver_id: str
    success: bool
    location: Optional[DriverLocation] = None
    rescue_id: Optional[str] = None
    error: Optional[str] = None


class Waypoint(BaseModel):
    rescue_id: str
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: datetime


class JourneyStatus(BaseModel):
    rescue_id: str
    status: RescueStatus
    leg: str
    driver_location: Optional[DriverLocation] = None
    target: Optional[Coordinates] = None
    eta: Optional[EtaEstimate] = None


class LocationTracker:
    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis,
        settings: Optional[Settings] = None,
        index: Optional[GeospatialIndex] = None,
    ):
        self.db = db
        self.redis = redis
        self.settings = settings or get_settings()
        self.index = index or GeospatialIndex(db, redis, self.settings)
        self.rescues = RescueRepository(db)

    def eta(self, origin: Coordinates, destination: Coordinates) -> EtaEstimate:
        distance = distance_between(origin, destination)
        minutes = estimate_eta_minutes(distance, self.settings.eta_avg_speed_kmh, self.settings.eta_buffer_factor)
        return EtaEstimate(distance_km=round(distance, 1), minutes=minutes, text=format_eta(minutes))

    async def ingest(
        self,
        driver_id: str,
        coords: Coordinates,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        now = now or datetime.now(timezone.utc)
        location = await self.index.upsert(driver_id, coords, heading=heading, speed=speed, now=now)

        active = await self.rescues.find_active_for_driver(driver_id)
        if active is None:
            return IngestResult(driver_id=driver_id, success=True, location=location)

        waypoint = Waypoint(
            rescue_id=active.id,
            lat=coords.lat,
            lng=coords.lng,
            heading=heading,
            speed=speed,
            timestamp=now,
        )
        try:
            await timeline_append(
                self.redis,
                journey_key(active.id),
                waypoint.model_dump(mode="json"),
                at=now.timestamp(),
                retention_seconds=self.settings.waypoint_retention_seconds,
            )
        except CACHE_ERRORS as exc:
            logger.warning("Waypoint dropped for rescue=%s: %s", active.id, exc)
        return IngestResult(driver_id=driver_id, success=True, location=location, rescue_id=active.id)

    async def batch_ingest(self, updates: list[LocationUpdate]) -> list[IngestResult]:
        """Each entry stands alone; one bad ping does not reject the batch."""
        results = []
        for update in updates:
            try:
                result = await self.ingest(
                    update.driver_id,
                    Coordinates(lat=update.lat, lng=update.lng),
                    heading=update.heading,
                    speed=update.speed,
                )
            except DispatchError as exc:
                await self.db.rollback()
                result = IngestResult(driver_id=update.driver_id, success=False, error=exc.message)
            results.append(result)

        failed = sum(1 for r in results if not r.success)
        logger.info("Batch location update count=%d failed=%d", len(results), failed)
        return results

    async def track_journey(self, rescue_id: str, driver_id: Optional[str] = None) -> JourneyStatus:
        rescue = await self.rescues.get(rescue_id)
        if rescue is None:
            raise NotFoundError("Rescue", rescue_id)

        if rescue.status in PICKUP_LEG_STATUSES:
            leg, target = LEG_TO_PICKUP, rescue.pickup.coordinates
        elif rescue.status in DROPOFF_LEG_STATUSES:
            leg, target = LEG_TO_DROPOFF, rescue.dropoff.coordinates
        else:
            return JourneyStatus(rescue_id=rescue.id, status=rescue.status, leg=LEG_UNAVAILABLE)

        driver_id = driver_id or rescue.driver_id
        location = await self.index.get_location(driver_id) if driver_id else None
        if location is None:
            return JourneyStatus(rescue_id=rescue.id, status=rescue.status, leg=LEG_UNAVAILABLE)

        eta = self.eta(Coordinates(lat=location.lat, lng=location.lng), target)
        return JourneyStatus(
            rescue_id=rescue.id,
            status=rescue.status,
            leg=leg,
            driver_location=location,
            target=target,
            eta=eta,
        )

    async def journey_history(self, rescue_id: str, now: Optional[datetime] = None) -> list[Waypoint]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=self.settings.waypoint_retention_seconds)
        try:
            raw = await timeline_range(self.redis, journey_key(rescue_id), since=cutoff.timestamp())
        except CACHE_ERRORS as exc:
            logger.warning("Journey history unavailable for rescue=%s: %s", rescue_id, exc)
            return []
        return [Waypoint(**item) for item in raw]
