"""Create storage overstay records and history

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Only one non-terminal record may hold an idempotency key
OPEN_RECORD_CONDITION = "status NOT IN ('penalty_waived', 'charge_succeeded', 'resolved', 'escalated')"


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "storage_overstay_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("storage_booking_id", sa.Integer(), sa.ForeignKey("storage_bookings.id"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="detected"),
        # Detection snapshot
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("days_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_rate_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("penalty_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("grace_period_days", sa.Integer(), nullable=False),
        sa.Column("max_penalty_days", sa.Integer(), nullable=False),
        sa.Column("grace_period_ends_at", sa.Date(), nullable=False),
        sa.Column("calculated_penalty_cents", sa.Integer(), nullable=False, server_default="0"),
        # Manager decision
        sa.Column("final_penalty_cents", sa.Integer(), nullable=True),
        sa.Column("penalty_approved_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("penalty_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("penalty_waived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("waive_reason", sa.Text(), nullable=True),
        sa.Column("manager_notes", sa.Text(), nullable=True),
        sa.Column("approval_version", sa.Integer(), nullable=False, server_default="0"),
        # Charging
        sa.Column("charge_idempotency_key", sa.String(255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("stripe_charge_id", sa.String(255), nullable=True),
        sa.Column("charge_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("charge_succeeded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("charge_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("charge_failure_reason", sa.Text(), nullable=True),
        # Resolution
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_type", sa.String(50), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_overstay_records_idempotency_key", "storage_overstay_records", ["idempotency_key"])
    op.create_index(
        "uq_overstay_records_open_idempotency_key",
        "storage_overstay_records",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text(OPEN_RECORD_CONDITION),
        sqlite_where=sa.text(OPEN_RECORD_CONDITION),
    )
    op.create_index("idx_overstay_records_booking_id", "storage_overstay_records", ["storage_booking_id"])
    op.create_index("idx_overstay_records_status", "storage_overstay_records", ["status"])

    op.create_table(
        "storage_overstay_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "overstay_record_id",
            sa.Integer(),
            sa.ForeignKey("storage_overstay_records.id"),
            nullable=False
        ),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("event_source", sa.String(32), nullable=False),
        sa.Column("previous_status", sa.String(32), nullable=True),
        sa.Column("new_status", sa.String(32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_overstay_history_record_id", "storage_overstay_history", ["overstay_record_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("idx_overstay_history_record_id", "storage_overstay_history")
    op.drop_table("storage_overstay_history")

    op.drop_index("idx_overstay_records_status", "storage_overstay_records")
    op.drop_index("idx_overstay_records_booking_id", "storage_overstay_records")
    op.drop_index("uq_overstay_records_open_idempotency_key", "storage_overstay_records")
    op.drop_index("idx_overstay_records_idempotency_key", "storage_overstay_records")
    op.drop_table("storage_overstay_records")
