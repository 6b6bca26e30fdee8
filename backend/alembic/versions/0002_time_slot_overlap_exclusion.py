"""postgres exclusion constraint for overlapping provider time slots

Revision ID: 0002_time_slot_overlap_exclusion
Revises: 0001_booking_core_initial
Create Date: 2025-01-06 00:10:00
"""

from __future__ import annotations

from alembic import op

revision = "0002_time_slot_overlap_exclusion"
down_revision = "0001_booking_core_initial"
branch_labels = None
depends_on = None

EXCLUSION_CONSTRAINT_NAME = "time_slots_provider_no_overlap"


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # Half-open ranges: back-to-back slots sharing an endpoint are allowed.
    op.execute(
        f"""
        ALTER TABLE time_slots
        ADD CONSTRAINT {EXCLUSION_CONSTRAINT_NAME}
        EXCLUDE USING gist (
            provider_id WITH =,
            tstzrange(start_at, end_at, '[)') WITH &&
        )
        WHERE (is_active)
        """
    )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute(f"ALTER TABLE time_slots DROP CONSTRAINT IF EXISTS {EXCLUSION_CONSTRAINT_NAME}")
