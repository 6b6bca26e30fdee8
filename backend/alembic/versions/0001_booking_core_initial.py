"""booking core tables

Revision ID: 0001_booking_core_initial
Revises:
Create Date: 2025-01-06 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_booking_core_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("service_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("provider_id", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("address_area", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("requested_date", sa.Date(), nullable=False),
        sa.Column("requested_start_time", sa.Time(), nullable=False),
        sa.Column("requested_end_time", sa.Time(), nullable=True),
        sa.Column("confirmed_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proposed_by", sa.String(length=16), nullable=True),
        sa.Column("proposed_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proposed_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proposed_price_cents", sa.Integer(), nullable=True),
        sa.Column("proposed_notes", sa.Text(), nullable=True),
        sa.Column("negotiated_price_cents", sa.Integer(), nullable=True),
        sa.Column("provider_notes", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(length=16), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("validation_id", sa.String(length=128), nullable=True),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("bank_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("payment_status", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "review_requested_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("job_done_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_bookings_service_id", "bookings", ["service_id"])
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"])
    op.create_index("ix_bookings_transaction_id", "bookings", ["transaction_id"])
    op.create_index("ix_bookings_provider_status", "bookings", ["provider_id", "status"])
    op.create_index(
        "ix_bookings_service_status_cancelled",
        "bookings",
        ["service_id", "status", "cancelled_at"],
    )
    op.create_index("ix_bookings_status_review_requested", "bookings", ["status", "review_requested_at"])

    op.create_table(
        "time_slots",
        sa.Column("slot_id", sa.String(length=36), primary_key=True),
        sa.Column("provider_id", sa.String(length=64), nullable=False),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("end_at > start_at", name="ck_time_slots_window_order"),
    )
    op.create_index("ix_time_slots_booking_id", "time_slots", ["booking_id"])
    op.create_index(
        "ix_time_slots_provider_active_start",
        "time_slots",
        ["provider_id", "is_active", "start_at"],
    )

    op.create_table(
        "provider_calendars",
        sa.Column("provider_id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "reschedule_proposals",
        sa.Column("proposal_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("proposed_by", sa.String(length=16), nullable=False),
        sa.Column("proposed_by_user_id", sa.String(length=64), nullable=True),
        sa.Column("proposed_by_name", sa.String(length=255), nullable=True),
        sa.Column("proposed_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("proposed_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("proposed_price_cents", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("response_message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_reschedule_proposals_booking_status",
        "reschedule_proposals",
        ["booking_id", "status"],
    )
    op.create_index(
        "ix_reschedule_proposals_booking_created",
        "reschedule_proposals",
        ["booking_id", "created_at"],
    )

    op.create_table(
        "service_blocks",
        sa.Column("block_id", sa.String(length=36), primary_key=True),
        sa.Column("service_id", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("blocked_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("unblock_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_service_blocks_service_active", "service_blocks", ["service_id", "is_active"])
    op.create_index("ix_service_blocks_active_unblock", "service_blocks", ["is_active", "unblock_at"])

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("runner_id", sa.String(length=255), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=128), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_service_blocks_active_unblock", table_name="service_blocks")
    op.drop_index("ix_service_blocks_service_active", table_name="service_blocks")
    op.drop_table("service_blocks")
    op.drop_index("ix_reschedule_proposals_booking_created", table_name="reschedule_proposals")
    op.drop_index("ix_reschedule_proposals_booking_status", table_name="reschedule_proposals")
    op.drop_table("reschedule_proposals")
    op.drop_table("provider_calendars")
    op.drop_index("ix_time_slots_provider_active_start", table_name="time_slots")
    op.drop_index("ix_time_slots_booking_id", table_name="time_slots")
    op.drop_table("time_slots")
    op.drop_index("ix_bookings_status_review_requested", table_name="bookings")
    op.drop_index("ix_bookings_service_status_cancelled", table_name="bookings")
    op.drop_index("ix_bookings_provider_status", table_name="bookings")
    op.drop_index("ix_bookings_transaction_id", table_name="bookings")
    op.drop_index("ix_bookings_provider_id", table_name="bookings")
    op.drop_index("ix_bookings_user_id", table_name="bookings")
    op.drop_index("ix_bookings_service_id", table_name="bookings")
    op.drop_table("bookings")
