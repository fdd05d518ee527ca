"""
Live driver positions and radius queries.

Two backends behind one interface:
  fast    Redis GEO set `drivers:geo` holding only online + available drivers,
          plus a JSON live record per driver (`driver:{id}:loc`).
  durable `drivers` table; source of truth, queried when the GEO set is
          missing (cold start) or Redis fails.

Writes go durable first, then cache (best-effort). Both query paths apply the
same availability filter and the same haversine radius, so callers cannot
tell which one answered; the fast path may just be a few seconds behind.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.domain.geo import EARTH_RADIUS_KM, Coordinates, haversine_km
from rescue_dispatch.errors import NotFoundError, ValidationError
from rescue_dispatch.models.driver import Driver
from rescue_dispatch.redis_client import (
    CACHE_ERRORS,
    cache_get_json,
    cache_get_many_json,
    cache_set_json,
    driver_location_key,
    geo_add_driver,
    geo_index_exists,
    geo_nearby_drivers,
    geo_remove_drivers,
)
from rescue_dispatch.repositories.drivers import DriverRepository
from rescue_dispatch.repositories.rescues import as_utc

logger = logging.getLogger(__name__)

# Redis measures with a slightly larger sphere; widen the GEOSEARCH so edge
# drivers are not lost, then re-filter with haversine.
REDIS_EARTH_RADIUS_KM = 6372.7976
RADIUS_SLACK = REDIS_EARTH_RADIUS_KM / EARTH_RADIUS_KM + 1e-4


class DriverLocation(BaseModel):
    driver_id: str
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    is_online: bool = False
    is_available: bool = False
    last_updated_at: Optional[datetime] = None


class NearbyDriver(BaseModel):
    driver_id: str
    distance_km: float
    lat: float
    lng: float


def _record_from_row(driver: Driver) -> DriverLocation:
    return DriverLocation(
        driver_id=driver.id,
        lat=driver.lat,
        lng=driver.lng,
        heading=driver.heading,
        speed=driver.speed,
        is_online=driver.is_online,
        is_available=driver.is_available,
        last_updated_at=as_utc(driver.last_updated_at),
    )


class GeospatialIndex:
    def __init__(self, db: AsyncSession, redis: aioredis.Redis, settings: Optional[Settings] = None):
        self.db = db
        self.redis = redis
        self.settings = settings or get_settings()
        self.drivers = DriverRepository(db)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(
        self,
        driver_id: str,
        coords: Coordinates,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> DriverLocation:
        """Overwrite the driver's live record. Idempotent; last write wins."""
        if not coords.is_valid():
            raise ValidationError("Invalid coordinates", {"lat": str(coords.lat), "lng": str(coords.lng)})
        if heading is not None and not 0 <= heading <= 360:
            raise ValidationError("Heading must be 0-360", {"heading": str(heading)})
        if speed is not None and speed < 0:
            raise ValidationError("Speed must be positive", {"speed": str(speed)})

        now = now or datetime.now(timezone.utc)
        driver = await self.drivers.write_location(driver_id, coords.lat, coords.lng, heading, speed, now)
        if driver is None:
            raise NotFoundError("Driver", driver_id)
        await self.db.commit()

        record = _record_from_row(driver)
        await self._sync_fast_index(record)
        logger.debug("Driver location updated driver=%s lat=%.5f lng=%.5f", driver_id, coords.lat, coords.lng)
        return record

    async def set_availability(self, driver_id: str, is_online: bool, is_available: bool) -> DriverLocation:
        driver = await self.drivers.set_availability(driver_id, is_online, is_available)
        if driver is None:
            raise NotFoundError("Driver", driver_id)
        await self.db.commit()

        if driver.lat is None or driver.lng is None:
            # Never pinged: nothing to index yet.
            return DriverLocation(
                driver_id=driver.id, lat=0.0, lng=0.0, is_online=is_online, is_available=is_available
            )
        record = _record_from_row(driver)
        await self._sync_fast_index(record)
        logger.info("Driver %s availability online=%s available=%s", driver_id, is_online, is_available)
        return record

    async def _sync_fast_index(self, record: DriverLocation) -> None:
        try:
            await cache_set_json(
                self.redis,
                driver_location_key(record.driver_id),
                record.model_dump(mode="json"),
                ttl=self.settings.stale_location_minutes * 60,
            )
            if record.is_online and record.is_available:
                await geo_add_driver(self.redis, record.driver_id, record.lat, record.lng)
            else:
                await geo_remove_drivers(self.redis, record.driver_id)
        except CACHE_ERRORS as exc:
            logger.warning("Fast geo index update failed for driver=%s: %s", record.driver_id, exc)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def radius_query(self, center: Coordinates, radius_km: float, limit: int = 20) -> list[NearbyDriver]:
        """
        Online, available drivers within radius_km of center, closest first,
        each at most once. Best-effort: availability may be seconds old.
        """
        if not center.is_valid():
            raise ValidationError("Invalid coordinates", {"lat": str(center.lat), "lng": str(center.lng)})
        if radius_km <= 0 or limit <= 0:
            return []

        try:
            nearby = await self._fast_radius_query(center, radius_km, limit)
            if nearby is not None:
                return nearby
            logger.info("Geo index cold, using durable store")
        except CACHE_ERRORS as exc:
            logger.warning("Geo index query failed, falling back to durable store: %s", exc)
        return await self._durable_radius_query(center, radius_km, limit)

    async def _fast_radius_query(
        self, center: Coordinates, radius_km: float, limit: int
    ) -> Optional[list[NearbyDriver]]:
        if not await geo_index_exists(self.redis):
            return None
        raw = await geo_nearby_drivers(
            self.redis, center.lat, center.lng, radius_km * RADIUS_SLACK, count=limit * 2
        )
        seen: set[str] = set()
        candidates = []
        for driver_id, _, lat, lng in raw:
            if driver_id in seen:
                continue
            seen.add(driver_id)
            distance = haversine_km(center.lat, center.lng, lat, lng)
            if distance <= radius_km:
                candidates.append(NearbyDriver(driver_id=driver_id, distance_km=distance, lat=lat, lng=lng))

        # GEO membership alone is not trusted: a member whose live record has
        # expired or says offline/unavailable was missed by an eviction.
        records = await cache_get_many_json(self.redis, [driver_location_key(d.driver_id) for d in candidates])
        nearby, orphans = [], []
        for candidate, record in zip(candidates, records):
            if record and record.get("is_online") and record.get("is_available"):
                nearby.append(candidate)
            else:
                orphans.append(candidate.driver_id)
        if orphans:
            await self._evict_orphans(orphans)

        nearby.sort(key=lambda d: (d.distance_km, d.driver_id))
        return nearby[:limit]

    async def _evict_orphans(self, driver_ids: list[str]) -> None:
        try:
            await geo_remove_drivers(self.redis, *driver_ids)
            logger.info("Evicted %d orphaned geo index members", len(driver_ids))
        except CACHE_ERRORS as exc:
            logger.warning("Could not evict orphaned geo index members %s: %s", driver_ids, exc)

    async def _durable_radius_query(self, center: Coordinates, radius_km: float, limit: int) -> list[NearbyDriver]:
        matches = await self.drivers.within_radius(center.lat, center.lng, radius_km, limit)
        return [
            NearbyDriver(driver_id=driver.id, distance_km=distance, lat=driver.lat, lng=driver.lng)
            for driver, distance in matches
        ]

    async def get_location(self, driver_id: str) -> Optional[DriverLocation]:
        """Live record from cache, durable store on miss or cache failure."""
        try:
            cached = await cache_get_json(self.redis, driver_location_key(driver_id))
            if cached:
                return DriverLocation(**cached)
        except CACHE_ERRORS as exc:
            logger.warning("Driver location cache read failed for %s: %s", driver_id, exc)

        driver = await self.drivers.get(driver_id)
        if driver is None or driver.lat is None or driver.lng is None:
            return None
        return _record_from_row(driver)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def mark_stale_offline(self, threshold_minutes: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """
        Periodic sweep, triggered by the scheduler: drivers silent for longer
        than the threshold go offline and leave the fast index.
        """
        threshold = threshold_minutes or self.settings.stale_location_minutes
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=threshold)
        stale_ids = await self.drivers.mark_stale_offline(cutoff)
        await self.db.commit()

        if stale_ids:
            # Live records first: once they are gone the fast path drops these
            # drivers even if the GEO removal below fails.
            try:
                await self.redis.delete(*[driver_location_key(driver_id) for driver_id in stale_ids])
            except CACHE_ERRORS as exc:
                logger.warning("Could not delete live records of %d stale drivers: %s", len(stale_ids), exc)
            try:
                await geo_remove_drivers(self.redis, *stale_ids)
            except CACHE_ERRORS as exc:
                logger.warning("Could not evict %d stale drivers from geo index: %s", len(stale_ids), exc)

        logger.info("Cleaned up stale locations updated=%d max_age_minutes=%d", len(stale_ids), threshold)
        return len(stale_ids)
