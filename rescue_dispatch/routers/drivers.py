"""
Drivers router — POST /v1/drivers (register), PATCH /v1/drivers/{id}/availability,
                 POST /v1/drivers/{id}/location, POST /v1/drivers/locations/batch,
                 GET /v1/drivers/{id}/location, GET /v1/drivers/nearby
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.config import get_settings
from rescue_dispatch.database import get_db
from rescue_dispatch.dependencies import get_geo_index, get_tracker
from rescue_dispatch.domain.geo import Coordinates
from rescue_dispatch.errors import NotFoundError, StateConflictError
from rescue_dispatch.middleware.auth import Principal, get_principal, require_roles
from rescue_dispatch.models.driver import Driver
from rescue_dispatch.schemas.schemas import (
    AvailabilityRequest,
    BatchLocationRequest,
    BatchLocationResponse,
    DriverCreateRequest,
    DriverResponse,
    LocationUpdateRequest,
    NearbyDriversResponse,
)
from rescue_dispatch.services.geospatial_index import DriverLocation, GeospatialIndex
from rescue_dispatch.services.location_tracker import IngestResult, LocationTracker

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


def _ensure_self(driver_id: str, principal: Principal) -> None:
    if principal.role in ("admin", "system"):
        return
    if principal.role != "driver" or principal.id != driver_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Drivers may only update themselves")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=DriverResponse)
async def create_driver(
    payload: DriverCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Register a new driver. No auth required for onboarding."""
    driver = Driver(name=payload.name, phone=payload.phone, is_online=False, is_available=False)
    db.add(driver)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise StateConflictError("A driver with this phone number already exists")
    await db.refresh(driver)
    logger.info("Driver registered id=%s", driver.id)
    return DriverResponse.model_validate(driver)


@router.get("/nearby", response_model=NearbyDriversResponse)
async def nearby_drivers(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(default=None, gt=0),
    limit: int = Query(default=20, ge=1, le=100),
    index: GeospatialIndex = Depends(get_geo_index),
    principal: Principal = Depends(get_principal),
):
    settings = get_settings()
    radius = min(radius_km or settings.driver_search_radius_km, settings.max_driver_search_radius_km)
    drivers = await index.radius_query(Coordinates(lat=lat, lng=lng), radius, limit)
    return NearbyDriversResponse(radius_km=radius, count=len(drivers), drivers=drivers)


@router.post("/locations/batch", response_model=BatchLocationResponse)
async def batch_update_locations(
    payload: BatchLocationRequest,
    tracker: LocationTracker = Depends(get_tracker),
    principal: Principal = Depends(require_roles("admin", "system")),
):
    """Bulk ingest from the telemetry gateway; each entry succeeds or fails on its own."""
    results = await tracker.batch_ingest(payload.updates)
    succeeded = sum(1 for r in results if r.success)
    return BatchLocationResponse(succeeded=succeeded, failed=len(results) - succeeded, results=results)


@router.patch("/{driver_id}/availability", response_model=DriverLocation)
async def update_availability(
    driver_id: str,
    payload: AvailabilityRequest,
    index: GeospatialIndex = Depends(get_geo_index),
    principal: Principal = Depends(get_principal),
):
    """Go online / offline and available / busy."""
    _ensure_self(driver_id, principal)
    return await index.set_availability(driver_id, payload.is_online, payload.is_available)


@router.post("/{driver_id}/location", response_model=IngestResult)
async def update_location(
    driver_id: str,
    payload: LocationUpdateRequest,
    tracker: LocationTracker = Depends(get_tracker),
    principal: Principal = Depends(get_principal),
):
    """
    High-frequency endpoint.
    Durable write first (last write wins), then Redis GEO + live record,
    then a journey waypoint if the driver is on a rescue.
    """
    _ensure_self(driver_id, principal)
    return await tracker.ingest(
        driver_id,
        Coordinates(lat=payload.lat, lng=payload.lng),
        heading=payload.heading,
        speed=payload.speed,
    )


@router.get("/{driver_id}/location", response_model=DriverLocation)
async def get_driver_location(
    driver_id: str,
    index: GeospatialIndex = Depends(get_geo_index),
    principal: Principal = Depends(get_principal),
):
    location = await index.get_location(driver_id)
    if location is None:
        raise NotFoundError("Driver location", driver_id)
    return location
