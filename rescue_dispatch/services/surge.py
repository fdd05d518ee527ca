"""
Surge multiplier per grid cell.

    ratio = active rescues in cell / max(1, available drivers in cell)

Cells are `surge_grid_size_deg` squares keyed by their south-west corner and
cached in Redis for `surge_cache_ttl_seconds`. The cache is only an
optimisation: a miss recomputes from the durable store, a Redis error skips
the cache, and a slow or failed computation falls back to 1.0 instead of
holding up the quote.
"""
import asyncio
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.domain.geo import grid_cell, grid_cell_key
from rescue_dispatch.domain.rescue import DEMAND_STATUSES
from rescue_dispatch.redis_client import CACHE_ERRORS, cache_get_json, cache_set_json
from rescue_dispatch.repositories.drivers import DriverRepository
from rescue_dispatch.repositories.rescues import RescueRepository

logger = logging.getLogger(__name__)

# (ratio strictly above, multiplier), checked top-down
SURGE_STEPS: tuple[tuple[float, float], ...] = (
    (2.0, 3.0),
    (1.5, 2.5),
    (1.0, 2.0),
    (0.7, 1.5),
    (0.4, 1.25),
)


def surge_from_ratio(ratio: float) -> float:
    for threshold, multiplier in SURGE_STEPS:
        if ratio > threshold:
            return multiplier
    return 1.0


def demand_supply_ratio(active_rescues: int, available_drivers: int) -> float:
    return active_rescues / max(1, available_drivers)


def surge_cache_key(lat: float, lng: float, size_deg: float) -> str:
    return f"surge:{grid_cell_key(lat, lng, size_deg)}"


class SurgeLookup:
    def __init__(self, db: AsyncSession, redis: aioredis.Redis, settings: Settings | None = None):
        self.db = db
        self.redis = redis
        self.settings = settings or get_settings()

    async def get_multiplier(self, lat: float, lng: float) -> float:
        if not self.settings.surge_pricing_enabled:
            return 1.0

        key = surge_cache_key(lat, lng, self.settings.surge_grid_size_deg)
        try:
            cached = await cache_get_json(self.redis, key)
            if cached and cached.get("multiplier"):
                return float(cached["multiplier"])
        except CACHE_ERRORS as exc:
            logger.warning("Surge cache read failed for %s, computing directly: %s", key, exc)

        try:
            return await asyncio.wait_for(
                self._recompute_in_own_session(lat, lng),
                timeout=self.settings.surge_compute_timeout_seconds,
            )
        except (asyncio.TimeoutError, SQLAlchemyError) as exc:
            logger.error("Surge computation failed for %s, using 1.0: %s", key, exc)
            return 1.0

    async def _recompute_in_own_session(self, lat: float, lng: float) -> float:
        # Cancelled on timeout, so it must never be mid-execute on the caller's session.
        async with AsyncSession(self.db.bind, expire_on_commit=False) as session:
            return await self.recompute_cell(lat, lng, db=session)

    async def recompute_cell(self, lat: float, lng: float, db: AsyncSession | None = None) -> float:
        """Idempotent: count demand and supply for the cell and refresh the cache."""
        if db is None:
            db = self.db
        size = self.settings.surge_grid_size_deg
        cell_lat, cell_lng = grid_cell(lat, lng, size)
        bounds = (cell_lat, cell_lat + size, cell_lng, cell_lng + size)

        active = await RescueRepository(db).count_demand_in_bounds(DEMAND_STATUSES, *bounds)
        available = await DriverRepository(db).count_available_in_bounds(*bounds)
        ratio = demand_supply_ratio(active, available)
        multiplier = surge_from_ratio(ratio)

        logger.info(
            "Surge calculated cell=%s active=%d available=%d ratio=%.2f multiplier=%.2f",
            grid_cell_key(lat, lng, size), active, available, ratio, multiplier,
        )

        try:
            await cache_set_json(
                self.redis,
                surge_cache_key(lat, lng, size),
                {
                    "multiplier": multiplier,
                    "ratio": round(ratio, 4),
                    "computed_at": datetime.now(timezone.utc).isoformat(),
                },
                ttl=self.settings.surge_cache_ttl_seconds,
            )
        except CACHE_ERRORS as exc:
            logger.warning("Surge cache write failed: %s", exc)
        return multiplier

    async def recompute_active_cells(self) -> dict[str, float]:
        """Scheduler entry point: refresh every cell that currently has demand."""
        size = self.settings.surge_grid_size_deg
        points = await RescueRepository(self.db).active_pickup_points(DEMAND_STATUSES)
        cells: dict[str, tuple[float, float]] = {}
        for lat, lng in points:
            cells.setdefault(grid_cell_key(lat, lng, size), (lat, lng))
        results = {}
        for key, (lat, lng) in cells.items():
            results[key] = await self.recompute_cell(lat, lng)
        return results
