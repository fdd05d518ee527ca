"""
Rescues router — create / quote / list / get, match, accept, transition,
cancel and complete under /v1/rescues
"""
import logging
from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from rescue_dispatch.dependencies import get_lifecycle, get_matching, get_pricing
from rescue_dispatch.domain.geo import Coordinates
from rescue_dispatch.domain.quote import PriceQuote
from rescue_dispatch.domain.rescue import CancelledBy, RescueRequest, RescueStatus
from rescue_dispatch.middleware.auth import (
    Principal,
    get_current_driver,
    get_current_rider,
    get_principal,
    require_roles,
)
from rescue_dispatch.middleware.idempotency import check_idempotency, store_idempotency_result
from rescue_dispatch.redis_client import get_redis
from rescue_dispatch.schemas.schemas import (
    CancelRequest,
    CompleteRequest,
    CompleteResponse,
    MatchResponse,
    QuoteRequest,
    RescueCreateRequest,
    RescueResponse,
    TransitionRequest,
)
from rescue_dispatch.services.lifecycle import RescueLifecycle, TransitionOutcome
from rescue_dispatch.services.matching import MatchingEngine
from rescue_dispatch.services.pricing import PricingEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rescues", tags=["Rescues"])


def to_response(rescue: RescueRequest) -> RescueResponse:
    return RescueResponse(**rescue.model_dump())


def _committed(outcome: TransitionOutcome) -> RescueResponse:
    if outcome.conflict is not None:
        raise outcome.conflict
    return to_response(outcome.rescue)


def _ensure_can_view(rescue: RescueRequest, principal: Principal) -> None:
    if principal.role in ("admin", "system"):
        return
    if principal.role == "rider" and rescue.rider_id == principal.id:
        return
    if principal.role == "driver" and (
        rescue.driver_id == principal.id or rescue.status in (RescueStatus.REQUESTED, RescueStatus.MATCHED)
    ):
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to access this rescue")


@router.post("/quote", response_model=PriceQuote)
async def quote_rescue(
    payload: QuoteRequest,
    pricing: PricingEngine = Depends(get_pricing),
    principal: Principal = Depends(get_principal),
):
    return await pricing.calculate_price(
        Coordinates(lat=payload.pickup.lat, lng=payload.pickup.lng),
        Coordinates(lat=payload.dropoff.lat, lng=payload.dropoff.lng),
        promo_code=payload.promo_code,
        scheduled_for=payload.scheduled_for,
        urgent=payload.is_urgent,
        rider_id=principal.id if principal.role == "rider" else None,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RescueResponse)
async def create_rescue(
    payload: RescueCreateRequest,
    request: Request,
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    redis: aioredis.Redis = Depends(get_redis),
    rider_id: str = Depends(get_current_rider),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    # 1. Idempotency check
    if idempotency_key:
        cached = await check_idempotency(request, redis, scope=f"rescue:{rider_id}")
        if cached:
            return cached

    # 2. Price + persist (promo redeemed in the same transaction)
    rescue = await lifecycle.create(
        rider_id,
        payload.pickup.to_domain(),
        payload.dropoff.to_domain(),
        payload.issue.to_domain(),
        promo_code=payload.promo_code,
        is_urgent=payload.is_urgent,
        scheduled_for=payload.scheduled_for,
        idempotency_key=f"{rider_id}:{idempotency_key}" if idempotency_key else None,
    )
    response = to_response(rescue)

    # 3. Store idempotency result
    if idempotency_key:
        await store_idempotency_result(
            redis, f"rescue:{rider_id}", idempotency_key, 201, response.model_dump(mode="json")
        )
    return response


@router.get("", response_model=list[RescueResponse])
async def list_rescues(
    status_filter: Optional[list[RescueStatus]] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    principal: Principal = Depends(get_principal),
):
    """The caller's own rescues: as rider, or as assigned driver."""
    if principal.role == "driver":
        rescues = await lifecycle.list_for_driver(principal.id, status_filter, limit)
    else:
        rescues = await lifecycle.list_for_rider(principal.id, status_filter, limit)
    return [to_response(r) for r in rescues]


@router.get("/open", response_model=list[RescueResponse])
async def list_open_rescues(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(default=None, gt=0),
    limit: int = Query(default=20, ge=1, le=100),
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    principal: Principal = Depends(require_roles("driver", "admin")),
):
    """Unassigned rescues near a driver looking for work."""
    rescues = await lifecycle.list_open_near(lat, lng, radius_km, limit)
    return [to_response(r) for r in rescues]


@router.get("/{rescue_id}", response_model=RescueResponse)
async def get_rescue(
    rescue_id: str,
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    principal: Principal = Depends(get_principal),
):
    rescue = await lifecycle.get(rescue_id)
    _ensure_can_view(rescue, principal)
    return to_response(rescue)


@router.post("/{rescue_id}/match", response_model=MatchResponse)
async def match_rescue(
    rescue_id: str,
    radius_km: Optional[float] = Query(default=None, gt=0),
    matching: MatchingEngine = Depends(get_matching),
    principal: Principal = Depends(require_roles("rider", "admin", "system")),
):
    result = await matching.match(rescue_id, radius_km)
    return MatchResponse(
        rescue_id=result.rescue.id,
        matched=result.matched,
        status=result.rescue.status,
        pricing=result.rescue.pricing,
        candidates=result.candidates,
    )


@router.post("/{rescue_id}/accept", response_model=RescueResponse)
async def accept_rescue(
    rescue_id: str,
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    driver_id: str = Depends(get_current_driver),
):
    """First driver wins; everyone else gets 409 with the current status."""
    outcome = await lifecycle.accept(rescue_id, driver_id)
    return _committed(outcome)


@router.post("/{rescue_id}/transition", response_model=RescueResponse)
async def transition_rescue(
    rescue_id: str,
    payload: TransitionRequest,
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    principal: Principal = Depends(require_roles("driver", "admin", "system")),
):
    if principal.role == "driver" and payload.status != RescueStatus.ACCEPTED:
        rescue = await lifecycle.get(rescue_id)
        if rescue.driver_id != principal.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Rescue is assigned to another driver")
    outcome = await lifecycle.transition_to(rescue_id, payload.status, actor=principal.id, note=payload.note)
    return _committed(outcome)


@router.post("/{rescue_id}/cancel", response_model=RescueResponse)
async def cancel_rescue(
    rescue_id: str,
    payload: CancelRequest,
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    principal: Principal = Depends(get_principal),
):
    rescue = await lifecycle.get(rescue_id)
    _ensure_can_view(rescue, principal)
    if principal.role == "driver" and rescue.driver_id != principal.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Rescue is assigned to another driver")

    if principal.role in ("admin", "system") and payload.cancelled_by:
        cancelled_by = payload.cancelled_by.value
    else:
        cancelled_by = CancelledBy(principal.role).value
    outcome = await lifecycle.cancel(rescue_id, payload.reason, cancelled_by, actor=principal.id, observed=rescue)
    return _committed(outcome)


@router.post("/{rescue_id}/complete", response_model=CompleteResponse)
async def complete_rescue(
    rescue_id: str,
    payload: CompleteRequest,
    lifecycle: RescueLifecycle = Depends(get_lifecycle),
    principal: Principal = Depends(require_roles("driver", "admin")),
):
    if principal.role == "driver":
        rescue = await lifecycle.get(rescue_id)
        if rescue.driver_id != principal.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Rescue is assigned to another driver")
    outcome = await lifecycle.complete(
        rescue_id, payload.final_price, actor=principal.id, payment_method=payload.payment_method
    )
    rescue = _committed(outcome)
    return CompleteResponse(rescue=rescue, payment_id=outcome.payment_id)
