"""Initial schema — drivers, rescues, rescue_timeline, promo_codes, promo_redemptions, payment_records"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "drivers",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), unique=True, nullable=False),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("heading", sa.Float, nullable=True),
        sa.Column("speed", sa.Float, nullable=True),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_available", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rating_average", sa.Float, nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_rescues", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("average_response_minutes", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Durable radius fallback: bounding-box prefilter on available drivers
    op.create_index("idx_drivers_available_lat_lng", "drivers", ["is_online", "is_available", "lat", "lng"])
    op.create_index("idx_drivers_last_updated", "drivers", ["last_updated_at"])

    op.create_table(
        "rescues",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rider_id", sa.String, nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="requested"),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(500), nullable=False),
        sa.Column("pickup_notes", sa.Text, nullable=True),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column("dropoff_address", sa.String(500), nullable=False),
        sa.Column("dropoff_notes", sa.Text, nullable=True),
        sa.Column("issue_type", sa.String(30), nullable=False),
        sa.Column("issue_description", sa.String(500), nullable=False),
        sa.Column("issue_severity", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("is_urgent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("base_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column("distance_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("time_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("urgent_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("subtotal", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("promo_code", sa.String(50), nullable=True),
        sa.Column("platform_fee", sa.Numeric(10, 2), nullable=False),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("driver_payout", sa.Numeric(10, 2), nullable=False),
        sa.Column("final_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("duration_minutes", sa.Integer, nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("en_route_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # driver_id is set iff the rescue has been accepted and not cancelled
        sa.CheckConstraint(
            "(driver_id IS NOT NULL) = (status IN ('accepted', 'en_route', 'arrived', 'in_progress', 'completed'))",
            name="ck_rescues_driver_assignment",
        ),
    )
    op.create_index("idx_rescues_status", "rescues", ["status"])
    op.create_index("idx_rescues_rider", "rescues", ["rider_id", "requested_at"])
    op.create_index("idx_rescues_driver", "rescues", ["driver_id", "status"])
    op.create_index("idx_rescues_pickup", "rescues", ["status", "pickup_lat", "pickup_lng"])

    op.create_table(
        "rescue_timeline",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rescue_id", sa.String, sa.ForeignKey("rescues.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("actor", sa.String, nullable=True),
        sa.Column("note", sa.String(500), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_rescue_timeline_rescue", "rescue_timeline", ["rescue_id", "id"])

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("code", sa.String(50), unique=True, nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("max_discount", sa.Numeric(10, 2), nullable=True),
        sa.Column("min_purchase", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("usage_limit_total", sa.Integer, nullable=True),
        sa.Column("usage_limit_per_user", sa.Integer, nullable=False, server_default="1"),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "promo_redemptions",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("promo_id", sa.String, sa.ForeignKey("promo_codes.id"), nullable=False),
        sa.Column("user_id", sa.String, nullable=False),
        sa.Column("rescue_id", sa.String, sa.ForeignKey("rescues.id"), nullable=False),
        sa.Column("discount_applied", sa.Numeric(10, 2), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_promo_redemptions_user", "promo_redemptions", ["promo_id", "user_id"])

    op.create_table(
        "payment_records",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rescue_id", sa.String, sa.ForeignKey("rescues.id"), nullable=False),
        sa.Column("rider_id", sa.String, nullable=False),
        sa.Column("driver_id", sa.String, nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(5), server_default="USD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("subtotal", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount", sa.Numeric(10, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(10, 2), nullable=False),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("driver_payout", sa.Numeric(10, 2), nullable=False),
        sa.Column("psp_ref", sa.String(255), nullable=True),
        sa.Column("failure_code", sa.String(100), nullable=True),
        sa.Column("failure_message", sa.String(500), nullable=True),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_reason", sa.String(500), nullable=True),
        sa.Column("refund_ref", sa.String(255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_payment_records_rescue", "payment_records", ["rescue_id"])
    op.create_index("idx_payment_records_status", "payment_records", ["status"])


def downgrade() -> None:
    op.drop_table("payment_records")
    op.drop_table("promo_redemptions")
    op.drop_table("promo_codes")
    op.drop_table("rescue_timeline")
    op.drop_table("rescues")
    op.drop_table("drivers")
