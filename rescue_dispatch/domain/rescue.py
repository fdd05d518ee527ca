"""
Rescue aggregate and its state machine.

The aggregate never touches storage. Every state change is *planned* here as
a `Transition`: the precondition the committed row must still satisfy plus
the values to write. The repository applies it with one conditional update,
so two racing callers can both plan a transition but only one commits it.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from rescue_dispatch.domain.geo import Coordinates
from rescue_dispatch.domain.quote import PriceQuote, to_money
from rescue_dispatch.errors import InvalidTransitionError, ValidationError


class RescueStatus(str, Enum):
    REQUESTED = "requested"
    MATCHED = "matched"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class IssueType(str, Enum):
    flat_tire = "flat_tire"
    dead_battery = "dead_battery"
    mechanical_failure = "mechanical_failure"
    accident = "accident"
    other = "other"
    utility_task = "utility_task"


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class CancelledBy(str, Enum):
    rider = "rider"
    driver = "driver"
    system = "system"
    admin = "admin"


ALLOWED_TRANSITIONS: dict[RescueStatus, frozenset[RescueStatus]] = {
    RescueStatus.REQUESTED: frozenset({RescueStatus.MATCHED, RescueStatus.CANCELLED}),
    RescueStatus.MATCHED: frozenset({RescueStatus.ACCEPTED, RescueStatus.CANCELLED}),
    RescueStatus.ACCEPTED: frozenset({RescueStatus.EN_ROUTE, RescueStatus.CANCELLED}),
    RescueStatus.EN_ROUTE: frozenset({RescueStatus.ARRIVED, RescueStatus.CANCELLED}),
    RescueStatus.ARRIVED: frozenset({RescueStatus.IN_PROGRESS, RescueStatus.CANCELLED}),
    RescueStatus.IN_PROGRESS: frozenset({RescueStatus.COMPLETED, RescueStatus.CANCELLED}),
    RescueStatus.COMPLETED: frozenset(),
    RescueStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({RescueStatus.COMPLETED, RescueStatus.CANCELLED})
NON_TERMINAL_STATUSES = frozenset(set(RescueStatus) - TERMINAL_STATUSES)
# A driver may accept before matching has finished.
ACCEPTABLE_FROM = frozenset({RescueStatus.REQUESTED, RescueStatus.MATCHED})
# driver_id is set iff status is one of these
ASSIGNED_STATUSES = frozenset({
    RescueStatus.ACCEPTED,
    RescueStatus.EN_ROUTE,
    RescueStatus.ARRIVED,
    RescueStatus.IN_PROGRESS,
    RescueStatus.COMPLETED,
})
# Statuses during which the driver is on the job and pings become waypoints
ACTIVE_JOURNEY_STATUSES = ASSIGNED_STATUSES - {RescueStatus.COMPLETED}
# Rescues that count as demand for surge
DEMAND_STATUSES = frozenset({
    RescueStatus.REQUESTED,
    RescueStatus.MATCHED,
    RescueStatus.ACCEPTED,
    RescueStatus.EN_ROUTE,
})

TIMESTAMP_FIELDS: dict[RescueStatus, str] = {
    RescueStatus.MATCHED: "matched_at",
    RescueStatus.ACCEPTED: "accepted_at",
    RescueStatus.EN_ROUTE: "en_route_at",
    RescueStatus.ARRIVED: "arrived_at",
    RescueStatus.IN_PROGRESS: "started_at",
    RescueStatus.COMPLETED: "completed_at",
    RescueStatus.CANCELLED: "cancelled_at",
}


def allowed_targets(status: RescueStatus) -> frozenset[RescueStatus]:
    return ALLOWED_TRANSITIONS.get(status, frozenset())


def is_valid_transition(current: RescueStatus, target: RescueStatus) -> bool:
    return target in allowed_targets(current)


def is_terminal(status: RescueStatus) -> bool:
    return status in TERMINAL_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Place(BaseModel):
    lat: float
    lng: float
    address: str
    notes: Optional[str] = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


class Issue(BaseModel):
    type: IssueType
    description: str
    severity: Severity = Severity.medium


class TimelineEntry(BaseModel):
    status: RescueStatus
    timestamp: datetime
    actor: Optional[str] = None
    note: Optional[str] = None


class Transition(BaseModel):
    """A planned conditional write against one rescue."""

    rescue_id: str
    target: RescueStatus
    expected_statuses: frozenset[RescueStatus]
    require_unassigned: bool = False
    expected_driver_id: Optional[str] = None
    values: dict[str, Any] = Field(default_factory=dict)
    entry: TimelineEntry


def _validate_place(place: Optional[Place], label: str, errors: dict[str, str]) -> None:
    if place is None:
        errors[label] = f"{label} location is required"
        return
    if not place.coordinates.is_valid():
        errors[f"{label}.coordinates"] = f"Invalid {label} coordinates"
    if not place.address or not place.address.strip():
        errors[f"{label}.address"] = f"{label.capitalize()} address is required"


def validate_request(
    rider_id: Optional[str],
    pickup: Optional[Place],
    dropoff: Optional[Place],
    issue: Optional[Issue],
) -> None:
    """Raise one ValidationError listing every problem with a new request."""
    errors: dict[str, str] = {}
    if not rider_id:
        errors["rider_id"] = "Rider is required"
    _validate_place(pickup, "pickup", errors)
    _validate_place(dropoff, "dropoff", errors)
    if issue is None:
        errors["issue"] = "Issue is required"
    elif not issue.description or not issue.description.strip():
        errors["issue.description"] = "Issue description is required"
    if errors:
        raise ValidationError("Validation failed", errors)


class RescueRequest(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    status: RescueStatus = RescueStatus.REQUESTED
    pickup: Place
    dropoff: Place
    issue: Issue
    is_urgent: bool = False
    scheduled_for: Optional[datetime] = None
    pricing: PriceQuote
    timeline: list[TimelineEntry] = Field(default_factory=list)

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

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def new(
        cls,
        rider_id: str,
        pickup: Optional[Place],
        dropoff: Optional[Place],
        issue: Optional[Issue],
        quote: PriceQuote,
        *,
        is_urgent: bool = False,
        scheduled_for: Optional[datetime] = None,
        now: Optional[datetime] = None,
        rescue_id: Optional[str] = None,
    ) -> "RescueRequest":
        validate_request(rider_id, pickup, dropoff, issue)
        now = now or _utcnow()
        return cls(
            id=rescue_id or str(uuid.uuid4()),
            rider_id=rider_id,
            status=RescueStatus.REQUESTED,
            pickup=pickup,
            dropoff=dropoff,
            issue=issue,
            is_urgent=is_urgent,
            scheduled_for=scheduled_for,
            pricing=quote,
            timeline=[TimelineEntry(status=RescueStatus.REQUESTED, timestamp=now, actor=rider_id)],
            requested_at=now,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def can_transition_to(self, target: RescueStatus) -> bool:
        return is_valid_transition(self.status, target)

    def check_invariants(self) -> None:
        assigned = self.driver_id is not None
        if assigned != (self.status in ASSIGNED_STATUSES):
            raise ValueError(f"driver_id/status mismatch: status={self.status.value} driver_id={self.driver_id}")

    # ------------------------------------------------------------------
    # Transition planning
    # ------------------------------------------------------------------

    def plan_transition(
        self,
        target: RescueStatus,
        actor: Optional[str] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
        fee_percent: float = 20.0,
    ) -> Transition:
        """
        Plan `self.status -> target`.

        The precondition is the status observed here; if another writer moved
        the rescue meanwhile, the conditional update finds no row.
        """
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self.status.value, target.value)

        if target == RescueStatus.ACCEPTED:
            return self.accept_transition(self.id, actor or "", now=now)
        if target == RescueStatus.CANCELLED:
            return self.plan_cancel(note or "", CancelledBy.system.value, actor=actor, now=now)
        if target == RescueStatus.COMPLETED:
            return self.plan_complete(self.pricing.total, fee_percent=fee_percent, actor=actor, now=now)

        now = now or _utcnow()
        return Transition(
            rescue_id=self.id,
            target=target,
            expected_statuses=frozenset({self.status}),
            values={"status": target, TIMESTAMP_FIELDS[target]: now},
            entry=TimelineEntry(status=target, timestamp=now, actor=actor, note=note),
        )

    def plan_match(self, quote: Optional[PriceQuote] = None, now: Optional[datetime] = None) -> Transition:
        """requested -> matched, optionally swapping in a fresh quote."""
        if not self.can_transition_to(RescueStatus.MATCHED):
            raise InvalidTransitionError(self.status.value, RescueStatus.MATCHED.value)
        now = now or _utcnow()
        values: dict[str, Any] = {"status": RescueStatus.MATCHED, "matched_at": now}
        if quote is not None:
            values["pricing"] = quote
        return Transition(
            rescue_id=self.id,
            target=RescueStatus.MATCHED,
            expected_statuses=frozenset({RescueStatus.REQUESTED}),
            values=values,
            entry=TimelineEntry(status=RescueStatus.MATCHED, timestamp=now, actor="system"),
        )

    @staticmethod
    def accept_transition(rescue_id: str, driver_id: str, now: Optional[datetime] = None) -> Transition:
        """
        requested|matched -> accepted, only while no driver is assigned.

        Static on purpose: accepting must not depend on a prior read.
        """
        if not driver_id:
            raise ValidationError("Driver id is required to accept a rescue")
        now = now or _utcnow()
        return Transition(
            rescue_id=rescue_id,
            target=RescueStatus.ACCEPTED,
            expected_statuses=ACCEPTABLE_FROM,
            require_unassigned=True,
            values={"status": RescueStatus.ACCEPTED, "driver_id": driver_id, "accepted_at": now},
            entry=TimelineEntry(status=RescueStatus.ACCEPTED, timestamp=now, actor=driver_id),
        )

    def plan_cancel(
        self,
        reason: str,
        cancelled_by: str,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        """
        Plan `self.status -> cancelled`, releasing the driver.

        Conditional on the status and driver observed here: an accept that
        commits after this read makes the cancel a conflict instead of
        silently un-assigning the driver.
        """
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required", {"reason": "must not be empty"})
        if cancelled_by not in CancelledBy.__members__:
            raise ValidationError(
                "Invalid cancelled_by",
                {"cancelled_by": f"must be one of {sorted(CancelledBy.__members__)}"},
            )
        if self.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(self.status.value, RescueStatus.CANCELLED.value)
        now = now or _utcnow()
        return Transition(
            rescue_id=self.id,
            target=RescueStatus.CANCELLED,
            expected_statuses=frozenset({self.status}),
            require_unassigned=self.driver_id is None,
            expected_driver_id=self.driver_id,
            values={
                "status": RescueStatus.CANCELLED,
                "driver_id": None,
                "cancelled_at": now,
                "cancelled_by": cancelled_by,
                "cancellation_reason": reason.strip(),
            },
            entry=TimelineEntry(
                status=RescueStatus.CANCELLED,
                timestamp=now,
                actor=actor or cancelled_by,
                note=reason.strip(),
            ),
        )

    def plan_complete(
        self,
        final_price,
        fee_percent: float,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        if final_price is None or Decimal(str(final_price)) <= 0:
            raise ValidationError("Final price must be greater than 0", {"final_price": str(final_price)})
        if self.status != RescueStatus.IN_PROGRESS:
            raise InvalidTransitionError(self.status.value, RescueStatus.COMPLETED.value)

        now = now or _utcnow()
        duration = int(round((now - self.requested_at).total_seconds() / 60))
        return Transition(
            rescue_id=self.id,
            target=RescueStatus.COMPLETED,
            expected_statuses=frozenset({RescueStatus.IN_PROGRESS}),
            values={
                "status": RescueStatus.COMPLETED,
                "completed_at": now,
                "final_price": to_money(final_price),
                "duration_minutes": max(duration, 0),
                "pricing": self.pricing.with_final_total(final_price, fee_percent),
            },
            entry=TimelineEntry(
                status=RescueStatus.COMPLETED,
                timestamp=now,
                actor=actor or self.driver_id,
            ),
        )
