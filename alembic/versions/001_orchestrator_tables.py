"""Orchestrator tables.

Revision ID: 001_orchestrator
Revises: None
Create Date: 2026-10-17

- pending_records: transition intents and identity snapshots kept across the
  hosted checkout redirect
- inconsistency_flags: bookings whose money and status disagree
"""

from typing import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers
revision: str = "001_orchestrator"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create orchestrator tables."""

    # ==================== RESUMPTION ====================
    op.create_table(
        "pending_records",
        sa.Column("key", sa.String(200), primary_key=True),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_pending_records_expires_at", "pending_records", ["expires_at"])

    # ==================== INCONSISTENCIES ====================
    op.create_table(
        "inconsistency_flags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(100), nullable=False),
        sa.Column("operation", sa.String(30), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("external_ref", sa.String(200)),
        sa.Column("target_status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True)),
        sa.Column("acknowledged_by", sa.String(200)),
        sa.Column("note", sa.Text),
    )
    op.create_index("ix_inconsistency_flags_booking_id", "inconsistency_flags", ["booking_id"])


def downgrade() -> None:
    """Drop orchestrator tables."""
    op.drop_index("ix_inconsistency_flags_booking_id", table_name="inconsistency_flags")
    op.drop_table("inconsistency_flags")
    op.drop_index("ix_pending_records_expires_at", table_name="pending_records")
    op.drop_table("pending_records")
