"""Initial attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_kind = postgresql.ENUM(
    "NORMAL",
    "FREE",
    name="attendance_kind",
    create_type=False,
)
checkout_reason = postgresql.ENUM(
    "MANUAL",
    "NO_HEARTBEAT",
    "HEARTBEAT_TIMEOUT",
    "GPS_DISABLED",
    "OUT_OF_BRANCH",
    name="checkout_reason",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "EMPLOYEE",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    attendance_kind.create(bind, checkfirst=True)
    checkout_reason.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    op.create_table(
        "branches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("geofence_radius_m", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_branches_company_id", "branches", ["company_id"], unique=False)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("work_start_time", sa.Time(), nullable=True),
        sa.Column("work_end_time", sa.Time(), nullable=True),
        sa.Column("late_grace_min", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("early_grace_min", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_employees_company_id", "employees", ["company_id"], unique=False)

    op.create_table(
        "free_tasks",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_free_tasks_employee_id", "free_tasks", ["employee_id"], unique=False)

    op.create_table(
        "attendance_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("attendance_type", attendance_kind, nullable=False, server_default=sa.text("'NORMAL'")),
        sa.Column("check_in_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("local_check_in_time", sa.DateTime(timezone=False), nullable=True),
        sa.Column("check_in_latitude", sa.Float(), nullable=True),
        sa.Column("check_in_longitude", sa.Float(), nullable=True),
        sa.Column("check_in_accuracy", sa.Float(), nullable=True),
        sa.Column("late_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("check_out_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("local_check_out_time", sa.DateTime(timezone=False), nullable=True),
        sa.Column("check_out_latitude", sa.Float(), nullable=True),
        sa.Column("check_out_longitude", sa.Float(), nullable=True),
        sa.Column("check_out_accuracy", sa.Float(), nullable=True),
        sa.Column("total_working_hours", sa.Float(), nullable=True),
        sa.Column("early_leave_minutes", sa.Integer(), nullable=True),
        sa.Column("checkout_reason", checkout_reason, nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_location_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_timezone", sa.String(length=64), nullable=True),
        sa.Column("device_timezone", sa.String(length=64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_attendance_logs_employee_id", "attendance_logs", ["employee_id"], unique=False)
    op.create_index("ix_attendance_logs_check_in_time", "attendance_logs", ["check_in_time"], unique=False)
    op.create_index(
        "ix_attendance_logs_company_open",
        "attendance_logs",
        ["company_id", "check_out_time"],
        unique=False,
    )
    op.create_index(
        "uq_attendance_logs_open_employee",
        "attendance_logs",
        ["employee_id"],
        unique=True,
        postgresql_where=sa.text("check_out_time IS NULL"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=True),
        sa.Column("entity_id", sa.String(length=100), nullable=True),
        sa.Column("ip", sa.String(length=100), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("uq_attendance_logs_open_employee", table_name="attendance_logs")
    op.drop_index("ix_attendance_logs_company_open", table_name="attendance_logs")
    op.drop_index("ix_attendance_logs_check_in_time", table_name="attendance_logs")
    op.drop_index("ix_attendance_logs_employee_id", table_name="attendance_logs")
    op.drop_table("attendance_logs")

    op.drop_index("ix_free_tasks_employee_id", table_name="free_tasks")
    op.drop_table("free_tasks")
    op.drop_index("ix_employees_company_id", table_name="employees")
    op.drop_table("employees")
    op.drop_index("ix_branches_company_id", table_name="branches")
    op.drop_table("branches")
    op.drop_table("companies")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    checkout_reason.drop(bind, checkfirst=True)
    attendance_kind.drop(bind, checkfirst=True)
