"""
Rescue repository: maps the aggregate to the `rescues` / `rescue_timeline`
tables and applies planned transitions through `conditional_update`.

Datetimes are normalised to aware UTC on the way out because SQLite (tests)
hands back naive values.
"""
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.concurrency import conditional_update
from rescue_dispatch.domain.geo import bounding_box, haversine_km
from rescue_dispatch.domain.quote import PriceQuote
from rescue_dispatch.domain.rescue import (
    ACTIVE_JOURNEY_STATUSES,
    Issue,
    Place,
    RescueRequest,
    RescueStatus,
    TimelineEntry,
    Transition,
)
from rescue_dispatch.errors import NotFoundError
from rescue_dispatch.models.rescue import Rescue, RescueTimelineEntry

PRICING_COLUMNS = (
    "base_price",
    "distance_km",
    "distance_price",
    "surge_multiplier",
    "time_multiplier",
    "urgent_multiplier",
    "subtotal",
    "discount",
    "promo_code",
    "platform_fee",
    "total",
    "driver_payout",
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def pricing_columns(quote: PriceQuote) -> dict[str, Any]:
    return {name: getattr(quote, name) for name in PRICING_COLUMNS}


def _to_column_values(values: dict[str, Any]) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    for key, value in values.items():
        if key == "pricing":
            columns.update(pricing_columns(value))
        elif isinstance(value, RescueStatus):
            columns[key] = value.value
        else:
            columns[key] = value
    return columns


def to_domain(row: Rescue, timeline: Iterable[RescueTimelineEntry] = ()) -> RescueRequest:
    return RescueRequest(
        id=row.id,
        rider_id=row.rider_id,
        driver_id=row.driver_id,
        status=RescueStatus(row.status),
        pickup=Place(lat=row.pickup_lat, lng=row.pickup_lng, address=row.pickup_address, notes=row.pickup_notes),
        dropoff=Place(
            lat=row.dropoff_lat, lng=row.dropoff_lng, address=row.dropoff_address, notes=row.dropoff_notes
        ),
        issue=Issue(type=row.issue_type, description=row.issue_description, severity=row.issue_severity),
        is_urgent=row.is_urgent,
        scheduled_for=as_utc(row.scheduled_for),
        pricing=PriceQuote(**{name: getattr(row, name) for name in PRICING_COLUMNS}),
        timeline=[
            TimelineEntry(
                status=RescueStatus(entry.status),
                timestamp=as_utc(entry.timestamp),
                actor=entry.actor,
                note=entry.note,
            )
            for entry in timeline
        ],
        requested_at=as_utc(row.requested_at),
        matched_at=as_utc(row.matched_at),
        accepted_at=as_utc(row.accepted_at),
        en_route_at=as_utc(row.en_route_at),
        arrived_at=as_utc(row.arrived_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        cancelled_at=as_utc(row.cancelled_at),
        cancelled_by=row.cancelled_by,
        cancellation_reason=row.cancellation_reason,
        final_price=row.final_price,
        duration_minutes=row.duration_minutes,
    )


class RescueRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, rescue: RescueRequest, idempotency_key: Optional[str] = None) -> None:
        row = Rescue(
            id=rescue.id,
            rider_id=rescue.rider_id,
            driver_id=rescue.driver_id,
            status=rescue.status.value,
            pickup_lat=rescue.pickup.lat,
            pickup_lng=rescue.pickup.lng,
            pickup_address=rescue.pickup.address,
            pickup_notes=rescue.pickup.notes,
            dropoff_lat=rescue.dropoff.lat,
            dropoff_lng=rescue.dropoff.lng,
            dropoff_address=rescue.dropoff.address,
            dropoff_notes=rescue.dropoff.notes,
            issue_type=rescue.issue.type.value,
            issue_description=rescue.issue.description,
            issue_severity=rescue.issue.severity.value,
            is_urgent=rescue.is_urgent,
            scheduled_for=rescue.scheduled_for,
            requested_at=rescue.requested_at,
            idempotency_key=idempotency_key,
            **pricing_columns(rescue.pricing),
        )
        self.db.add(row)
        await self.db.flush()
        for entry in rescue.timeline:
            self._add_entry(rescue.id, entry)
        await self.db.flush()

    def _add_entry(self, rescue_id: str, entry: TimelineEntry) -> None:
        self.db.add(
            RescueTimelineEntry(
                rescue_id=rescue_id,
                status=entry.status.value,
                actor=entry.actor,
                note=entry.note,
                timestamp=entry.timestamp,
            )
        )

    async def _timeline(self, rescue_id: str) -> list[RescueTimelineEntry]:
        result = await self.db.execute(
            select(RescueTimelineEntry)
            .where(RescueTimelineEntry.rescue_id == rescue_id)
            .order_by(RescueTimelineEntry.id)
        )
        return list(result.scalars())

    async def get(self, rescue_id: str) -> Optional[RescueRequest]:
        result = await self.db.execute(
            select(Rescue).where(Rescue.id == rescue_id).execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return to_domain(row, await self._timeline(rescue_id))

    async def get_or_raise(self, rescue_id: str) -> RescueRequest:
        rescue = await self.get(rescue_id)
        if rescue is None:
            raise NotFoundError("Rescue", rescue_id)
        return rescue

    async def find_by_idempotency_key(self, key: str) -> Optional[RescueRequest]:
        result = await self.db.execute(select(Rescue.id).where(Rescue.idempotency_key == key))
        rescue_id = result.scalar_one_or_none()
        return await self.get(rescue_id) if rescue_id else None

    async def find(
        self,
        *,
        rider_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        statuses: Optional[Iterable[RescueStatus]] = None,
        limit: int = 50,
    ) -> list[RescueRequest]:
        stmt = select(Rescue)
        if rider_id:
            stmt = stmt.where(Rescue.rider_id == rider_id)
        if driver_id:
            stmt = stmt.where(Rescue.driver_id == driver_id)
        if statuses:
            stmt = stmt.where(Rescue.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(Rescue.requested_at.desc()).limit(limit)
        rows = (await self.db.execute(stmt)).scalars().all()
        return [to_domain(row, await self._timeline(row.id)) for row in rows]

    async def find_active_for_driver(self, driver_id: str) -> Optional[RescueRequest]:
        rescues = await self.find(driver_id=driver_id, statuses=ACTIVE_JOURNEY_STATUSES, limit=1)
        return rescues[0] if rescues else None

    async def find_open_near(self, lat: float, lng: float, radius_km: float, limit: int = 20) -> list[RescueRequest]:
        """Unassigned rescues whose pickup is within radius_km, closest first."""
        box = bounding_box(lat, lng, radius_km)
        stmt = select(Rescue).where(
            Rescue.status.in_([RescueStatus.REQUESTED.value, RescueStatus.MATCHED.value]),
            Rescue.driver_id.is_(None),
            Rescue.pickup_lat.between(box.lat_min, box.lat_max),
            or_(*(Rescue.pickup_lng.between(lo, hi) for lo, hi in box.lng_ranges)),
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        in_range = []
        for row in rows:
            distance = haversine_km(lat, lng, row.pickup_lat, row.pickup_lng)
            if distance <= radius_km:
                in_range.append((distance, row.id, row))
        in_range.sort(key=lambda item: (item[0], item[1]))
        return [to_domain(row, await self._timeline(row.id)) for _, _, row in in_range[:limit]]

    async def count_demand_in_bounds(
        self,
        statuses: Iterable[RescueStatus],
        lat_min: float,
        lat_max: float,
        lng_min: float,
        lng_max: float,
    ) -> int:
        stmt = select(func.count(Rescue.id)).where(
            Rescue.status.in_([s.value for s in statuses]),
            Rescue.pickup_lat >= lat_min,
            Rescue.pickup_lat < lat_max,
            Rescue.pickup_lng >= lng_min,
            Rescue.pickup_lng < lng_max,
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def active_pickup_points(self, statuses: Iterable[RescueStatus]) -> list[tuple[float, float]]:
        stmt = select(Rescue.pickup_lat, Rescue.pickup_lng).where(
            Rescue.status.in_([s.value for s in statuses])
        )
        return [(lat, lng) for lat, lng in (await self.db.execute(stmt)).all()]

    async def apply(self, transition: Transition) -> Optional[RescueRequest]:
        """
        Commit-ready conditional write of a planned transition.

        Returns the post-transition rescue, or None when the precondition no
        longer holds. The timeline entry is only written on success, in the
        same transaction.
        """
        predicates = [Rescue.status.in_([s.value for s in transition.expected_statuses])]
        if transition.require_unassigned:
            predicates.append(Rescue.driver_id.is_(None))
        elif transition.expected_driver_id is not None:
            predicates.append(Rescue.driver_id == transition.expected_driver_id)

        row = await conditional_update(
            self.db,
            Rescue,
            transition.rescue_id,
            predicates,
            _to_column_values(transition.values),
        )
        if row is None:
            return None
        self._add_entry(transition.rescue_id, transition.entry)
        await self.db.flush()
        return to_domain(row, await self._timeline(transition.rescue_id))
