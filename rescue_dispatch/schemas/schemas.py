from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, Field

from rescue_dispatch.domain.quote import PriceQuote
from rescue_dispatch.domain.rescue import (
    CancelledBy,
    IssueType,
    Place,
    Issue,
    RescueStatus,
    Severity,
    TimelineEntry,
)
from rescue_dispatch.services.geospatial_index import NearbyDriver
from rescue_dispatch.services.location_tracker import IngestResult, LocationUpdate
from rescue_dispatch.services.matching import ScoredCandidate


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

class CoordinatesIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PlaceIn(CoordinatesIn):
    address: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)

    def to_domain(self) -> Place:
        return Place(lat=self.lat, lng=self.lng, address=self.address, notes=self.notes)


class IssueIn(BaseModel):
    type: IssueType
    description: str = Field(..., min_length=1, max_length=500)
    severity: Severity = Severity.medium

    def to_domain(self) -> Issue:
        return Issue(type=self.type, description=self.description, severity=self.severity)


# ---------------------------------------------------------------------------
# Rescue schemas
# ---------------------------------------------------------------------------

class QuoteRequest(BaseModel):
    pickup: CoordinatesIn
    dropoff: CoordinatesIn
    promo_code: Optional[str] = Field(default=None, max_length=50)
    scheduled_for: Optional[datetime] = None
    is_urgent: bool = False


class RescueCreateRequest(BaseModel):
    pickup: PlaceIn
    dropoff: PlaceIn
    issue: IssueIn
    promo_code: Optional[str] = Field(default=None, max_length=50)
    scheduled_for: Optional[datetime] = None
    is_urgent: bool = False


class RescueResponse(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    status: RescueStatus
    pickup: Place
    dropoff: Place
    issue: Issue
    is_urgent: bool
    scheduled_for: Optional[datetime] = None
    pricing: PriceQuote
    timeline: list[TimelineEntry]
    requested_at: datetime
    matched_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    final_price: Optional[Decimal] = None
    duration_minutes: Optional[int] = None

    model_config = {"from_attributes": True}


class TransitionRequest(BaseModel):
    status: RescueStatus
    note: Optional[str] = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    cancelled_by: Optional[CancelledBy] = None


class CompleteRequest(BaseModel):
    final_price: Decimal = Field(..., gt=0)
    payment_method: Optional[str] = None


class CompleteResponse(BaseModel):
    rescue: RescueResponse
    payment_id: str


class MatchResponse(BaseModel):
    rescue_id: str
    matched: bool
    status: RescueStatus
    pricing: PriceQuote
    candidates: list[ScoredCandidate]


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class DriverCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., min_length=10, max_length=20)


class DriverResponse(BaseModel):
    id: str
    name: str
    phone: str
    is_online: bool
    is_available: bool
    lat: Optional[float] = None
    lng: Optional[float] = None
    rating_average: float
    total_rescues: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AvailabilityRequest(BaseModel):
    is_online: bool
    is_available: bool


class LocationUpdateRequest(CoordinatesIn):
    heading: Optional[float] = Field(default=None, ge=0, le=360)
    speed: Optional[float] = Field(default=None, ge=0)


class BatchLocationRequest(BaseModel):
    updates: list[LocationUpdate] = Field(..., min_length=1, max_length=500)


class BatchLocationResponse(BaseModel):
    succeeded: int
    failed: int
    results: list[IngestResult]


class NearbyDriversResponse(BaseModel):
    radius_km: float
    count: int
    drivers: list[NearbyDriver]


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class ChargeRequest(BaseModel):
    payment_method: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentResponse(BaseModel):
    id: str
    rescue_id: str
    status: str
    amount: Decimal
    currency: str
    subtotal: Decimal
    discount: Decimal
    platform_fee: Decimal
    total: Decimal
    driver_payout: Decimal
    psp_ref: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    processed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Internal (scheduler) schemas
# ---------------------------------------------------------------------------

class StaleSweepRequest(BaseModel):
    threshold_minutes: Optional[int] = Field(default=None, gt=0)


class JobRequest(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
