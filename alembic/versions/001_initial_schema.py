"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates all initial tables for the HostelHub reservation engine:
- Users (identity projection)
- Units and unit reservations (availability ledger)
- Bookings
- Payments
- Audit logs
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all database tables."""

    # ==================== USERS ====================
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("full_name", sa.String(200)),
        sa.Column("role", sa.String(20), nullable=False, server_default="student"),
        sa.Column("gender", sa.String(10)),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== AVAILABILITY LEDGER ====================
    op.create_table(
        "units",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("room_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("hostel_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("landlord_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), index=True),
        sa.Column("room_number", sa.String(20)),
        sa.Column("capacity", sa.Integer, nullable=False),
        sa.Column("occupied", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_available", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("gender_policy", sa.String(10), nullable=False, server_default="mixed"),
        sa.Column("price_per_bed", sa.Integer, nullable=False),
        sa.Column("price_per_academic_year", sa.Integer),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("capacity > 0", name="unit_capacity_positive"),
        sa.CheckConstraint("occupied >= 0 AND occupied <= capacity", name="unit_occupied_in_range"),
    )

    op.create_table(
        "unit_reservations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("unit_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("units.id"), nullable=False, index=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("reserved_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.Column("release_reason", sa.String(30)),
    )

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_number", sa.String(20), unique=True, nullable=False, index=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("unit_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("units.id"), nullable=False, index=True),
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("unit_reservations.id")),
        sa.Column("semester", sa.String(20), nullable=False),
        sa.Column("academic_year", sa.String(20), nullable=False),
        sa.Column("duration", sa.String(20), nullable=False, server_default="semester"),
        sa.Column("payment_plan", sa.String(10), nullable=False, server_default="full"),
        sa.Column("total_amount", sa.Integer, nullable=False),
        sa.Column("amount_due", sa.Integer, nullable=False),
        sa.Column("amount_paid", sa.Integer, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), server_default="GHS"),
        sa.Column("status", sa.String(20), nullable=False, server_default="requested", index=True),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("flag", sa.String(30), index=True),
        sa.Column("flag_reason", sa.Text),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True)),
        sa.Column("provider_reference", sa.String(255), index=True),
        sa.Column("refund_reference", sa.String(255)),
        sa.Column("cancelled_by", sa.String(10)),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("notes", sa.Text),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("expired_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # At most one active claim per tenant per unit
    op.create_index(
        "uq_bookings_active_tenant_unit",
        "bookings",
        ["tenant_id", "unit_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('on_hold', 'confirmed')"),
    )
    op.create_index(
        "ix_bookings_status_hold_expires_at",
        "bookings",
        ["status", "hold_expires_at"],
    )

    # ==================== PAYMENTS ====================
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id"), nullable=False, index=True),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("amount_received", sa.Integer),
        sa.Column("currency", sa.String(3), server_default="GHS"),
        sa.Column("gateway", sa.String(30), nullable=False),
        sa.Column("provider_reference", sa.String(255)),
        sa.Column("checkout_url", sa.String(2048)),
        sa.Column("gateway_response", postgresql.JSONB),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("gateway", "provider_reference", name="uq_payments_gateway_reference"),
    )

    # ==================== ADMIN ====================
    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), index=True),
        sa.Column("action", sa.String(100), nullable=False, index=True),
        sa.Column("resource_type", sa.String(50), nullable=False, index=True),
        sa.Column("resource_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("old_values", postgresql.JSONB),
        sa.Column("new_values", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )


def downgrade() -> None:
    """Drop all database tables in reverse order."""
    op.drop_table("audit_logs")
    op.drop_table("payments")
    op.drop_index("ix_bookings_status_hold_expires_at", table_name="bookings")
    op.drop_index("uq_bookings_active_tenant_unit", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("unit_reservations")
    op.drop_table("units")
    op.drop_table("users")
