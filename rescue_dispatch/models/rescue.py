import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Float, Integer, Boolean, Numeric, DateTime, ForeignKey, Text, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
from rescue_dispatch.database import Base


class Rescue(Base):
    __tablename__ = "rescues"
    __table_args__ = (
        # driver_id is set iff the rescue has been accepted and not cancelled
        CheckConstraint(
            "(driver_id IS NOT NULL) = (status IN ('accepted', 'en_route', 'arrived', 'in_progress', 'completed'))",
            name="ck_rescues_driver_assignment",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rider_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    driver_id: Mapped[str | None] = mapped_column(String, ForeignKey("drivers.id"), nullable=True, index=True)

    # requested | matched | accepted | en_route | arrived | in_progress | completed | cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="requested", index=True)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False)
    pickup_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_address: Mapped[str] = mapped_column(String(500), nullable=False)
    dropoff_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    issue_type: Mapped[str] = mapped_column(String(30), nullable=False)
    issue_description: Mapped[str] = mapped_column(String(500), nullable=False)
    issue_severity: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Price breakdown
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    distance_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    surge_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    time_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    urgent_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    promo_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    driver_payout: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    final_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    en_route_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # rider | driver | system
    cancelled_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RescueTimelineEntry(Base):
    """Append-only audit trail of status changes."""

    __tablename__ = "rescue_timeline"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rescue_id: Mapped[str] = mapped_column(String, ForeignKey("rescues.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str | None] = mapped_column(String, nullable=True)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
