"""
Location router — GET /v1/location/eta, GET /v1/location/journey/{rescue_id},
                  GET /v1/location/journey/{rescue_id}/history
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from rescue_dispatch.dependencies import get_tracker
from rescue_dispatch.domain.geo import Coordinates
from rescue_dispatch.middleware.auth import Principal, get_principal
from rescue_dispatch.services.location_tracker import EtaEstimate, JourneyStatus, LocationTracker, Waypoint

router = APIRouter(prefix="/v1/location", tags=["Location"])


@router.get("/eta", response_model=EtaEstimate)
async def eta(
    from_lat: float = Query(..., ge=-90, le=90),
    from_lng: float = Query(..., ge=-180, le=180),
    to_lat: float = Query(..., ge=-90, le=90),
    to_lng: float = Query(..., ge=-180, le=180),
    tracker: LocationTracker = Depends(get_tracker),
    principal: Principal = Depends(get_principal),
):
    return tracker.eta(Coordinates(lat=from_lat, lng=from_lng), Coordinates(lat=to_lat, lng=to_lng))


@router.get("/journey/{rescue_id}", response_model=JourneyStatus)
async def track_journey(
    rescue_id: str,
    driver_id: Optional[str] = Query(default=None),
    tracker: LocationTracker = Depends(get_tracker),
    principal: Principal = Depends(get_principal),
):
    """Current leg, driver position and ETA; `unavailable` outside an active leg."""
    return await tracker.track_journey(rescue_id, driver_id)


@router.get("/journey/{rescue_id}/history", response_model=list[Waypoint])
async def journey_history(
    rescue_id: str,
    tracker: LocationTracker = Depends(get_tracker),
    principal: Principal = Depends(get_principal),
):
    return await tracker.journey_history(rescue_id)
