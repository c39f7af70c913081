"""Add heartbeat tracking and auto-checkout countdowns

Revision ID: 0002_auto_checkout
Revises: 0001_initial
Create Date: 2026-10-18 00:30:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0002_auto_checkout"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

checkout_reason = postgresql.ENUM(name="checkout_reason", create_type=False)
auto_checkout_pending_status = postgresql.ENUM(
    "PENDING",
    "DONE",
    "CANCELLED",
    name="auto_checkout_pending_status",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    auto_checkout_pending_status.create(bind, checkfirst=True)

    op.create_table(
        "employee_location_heartbeat",
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("attendance_log_id", sa.Integer(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("gps_ok", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("in_branch", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reason", sa.String(length=50), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["attendance_log_id"], ["attendance_logs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("employee_id"),
    )
    op.create_index(
        "ix_employee_location_heartbeat_attendance_log_id",
        "employee_location_heartbeat",
        ["attendance_log_id"],
        unique=False,
    )

    op.create_table(
        "auto_checkout_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("auto_checkout_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("auto_checkout_after_seconds", sa.Integer(), nullable=False, server_default=sa.text("900")),
        sa.Column("on_location_disabled_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("location_disabled_grace_seconds", sa.Integer(), nullable=True),
        sa.Column("on_no_signal_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("no_signal_grace_seconds", sa.Integer(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", name="uq_auto_checkout_settings_company_id"),
    )

    op.create_table(
        "auto_checkout_pending",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("attendance_log_id", sa.Integer(), nullable=False),
        sa.Column("reason", checkout_reason, nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", auto_checkout_pending_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("done_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(length=50), nullable=True),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["attendance_log_id"], ["attendance_logs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_auto_checkout_pending_employee_id", "auto_checkout_pending", ["employee_id"], unique=False)
    op.create_index(
        "ix_auto_checkout_pending_status_ends_at",
        "auto_checkout_pending",
        ["status", "ends_at"],
        unique=False,
    )
    op.create_index(
        "uq_auto_checkout_pending_active_log",
        "auto_checkout_pending",
        ["attendance_log_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )


def downgrade() -> None:
    op.drop_index("uq_auto_checkout_pending_active_log", table_name="auto_checkout_pending")
    op.drop_index("ix_auto_checkout_pending_status_ends_at", table_name="auto_checkout_pending")
    op.drop_index("ix_auto_checkout_pending_employee_id", table_name="auto_checkout_pending")
    op.drop_table("auto_checkout_pending")
    op.drop_table("auto_checkout_settings")
    op.drop_index(
        "ix_employee_location_heartbeat_attendance_log_id",
        table_name="employee_location_heartbeat",
    )
    op.drop_table("employee_location_heartbeat")

    bind = op.get_bind()
    auto_checkout_pending_status.drop(bind, checkfirst=True)
