"""
Driver repository: durable half of the geospatial index plus the stats join
used by matching.
"""
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.domain.geo import bounding_box, haversine_km
from rescue_dispatch.models.driver import Driver


class DriverRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, driver_id: str) -> Optional[Driver]:
        return await self.db.get(Driver, driver_id)

    async def get_many(self, driver_ids: Iterable[str]) -> dict[str, Driver]:
        ids = list(driver_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Driver).where(Driver.id.in_(ids)))
        return {driver.id: driver for driver in result.scalars()}

    async def write_location(
        self,
        driver_id: str,
        lat: float,
        lng: float,
        heading: Optional[float],
        speed: Optional[float],
        at: datetime,
    ) -> Optional[Driver]:
        """Overwrite the live record (last write wins). A ping marks the driver online."""
        values = {"lat": lat, "lng": lng, "last_updated_at": at, "is_online": True}
        if heading is not None:
            values["heading"] = heading
        if speed is not None:
            values["speed"] = speed
        result = await self.db.execute(
            update(Driver)
            .where(Driver.id == driver_id)
            .values(**values)
            .returning(Driver)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_availability(self, driver_id: str, is_online: bool, is_available: bool) -> Optional[Driver]:
        result = await self.db.execute(
            update(Driver)
            .where(Driver.id == driver_id)
            .values(is_online=is_online, is_available=is_available)
            .returning(Driver)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def within_radius(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        limit: int,
    ) -> list[tuple[Driver, float]]:
        """
        Online, available drivers within radius_km, closest first (ties by id).

        Bounding-box prefilter in SQL, exact haversine in Python.
        """
        box = bounding_box(lat, lng, radius_km)
        stmt = select(Driver).where(
            Driver.is_online.is_(True),
            Driver.is_available.is_(True),
            Driver.lat.is_not(None),
            Driver.lng.is_not(None),
            Driver.lat.between(box.lat_min, box.lat_max),
            or_(*(Driver.lng.between(lo, hi) for lo, hi in box.lng_ranges)),
        )
        matches = []
        for driver in (await self.db.execute(stmt)).scalars():
            distance = haversine_km(lat, lng, driver.lat, driver.lng)
            if distance <= radius_km:
                matches.append((driver, distance))
        matches.sort(key=lambda item: (item[1], item[0].id))
        return matches[:limit]

    async def count_available_in_bounds(
        self,
        lat_min: float,
        lat_max: float,
        lng_min: float,
        lng_max: float,
    ) -> int:
        stmt = select(func.count(Driver.id)).where(
            Driver.is_online.is_(True),
            Driver.is_available.is_(True),
            Driver.lat >= lat_min,
            Driver.lat < lat_max,
            Driver.lng >= lng_min,
            Driver.lng < lng_max,
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def mark_stale_offline(self, cutoff: datetime) -> list[str]:
        """Flip is_online for rows last seen before cutoff; returns their ids."""
        result = await self.db.execute(
            update(Driver)
            .where(Driver.is_online.is_(True), Driver.last_updated_at < cutoff)
            .values(is_online=False)
            .returning(Driver.id)
            .execution_options(synchronize_session=False)
        )
        return [row[0] for row in result.all()]
