from __future__ import annotations

import enum
from datetime import datetime, time, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base

JSON_VARIANT = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttendanceKind(str, enum.Enum):
    NORMAL = "NORMAL"
    FREE = "FREE"


class CheckoutReason(str, enum.Enum):
    MANUAL = "MANUAL"
    NO_HEARTBEAT = "NO_HEARTBEAT"
    HEARTBEAT_TIMEOUT = "HEARTBEAT_TIMEOUT"
    GPS_DISABLED = "GPS_DISABLED"
    OUT_OF_BRANCH = "OUT_OF_BRANCH"


class PendingStatus(str, enum.Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class AuditActorType(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    SYSTEM = "SYSTEM"


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    branches: Mapped[list[Branch]] = relationship(back_populates="company")
    employees: Mapped[list[Employee]] = relationship(back_populates="company")
    auto_checkout_settings: Mapped[AutoCheckoutSettings | None] = relationship(
        back_populates="company",
        uselist=False,
    )


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    geofence_radius_m: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default=text("100"))

    company: Mapped[Company] = relationship(back_populates="branches")


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True,
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    work_start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    work_end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    late_grace_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    early_grace_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    company: Mapped[Company] = relationship(back_populates="employees")
    branch: Mapped[Branch | None] = relationship()
    free_tasks: Mapped[list[FreeTask]] = relationship(back_populates="employee")


class FreeTask(Base):
    __tablename__ = "free_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    employee: Mapped[Employee] = relationship(back_populates="free_tasks")


class AttendanceLog(Base):
    __tablename__ = "attendance_logs"
    __table_args__ = (
        # One open session per employee.
        Index(
            "uq_attendance_logs_open_employee",
            "employee_id",
            unique=True,
            postgresql_where=text("check_out_time IS NULL"),
            sqlite_where=text("check_out_time IS NULL"),
        ),
        Index("ix_attendance_logs_company_open", "company_id", "check_out_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True,
    )
    attendance_type: Mapped[AttendanceKind] = mapped_column(
        Enum(AttendanceKind, name="attendance_kind"),
        nullable=False,
        default=AttendanceKind.NORMAL,
        server_default=text("'NORMAL'"),
    )

    check_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    local_check_in_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    check_in_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    late_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    check_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    local_check_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    check_out_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_out_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_out_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_working_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    early_leave_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checkout_reason: Mapped[CheckoutReason | None] = mapped_column(
        Enum(CheckoutReason, name="checkout_reason"),
        nullable=True,
    )

    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_location_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    employee: Mapped[Employee] = relationship()
    pending_records: Mapped[list[AutoCheckoutPending]] = relationship(back_populates="attendance_log")

    @property
    def is_open(self) -> bool:
        return self.check_out_time is None


class EmployeeLocationHeartbeat(Base):
    __tablename__ = "employee_location_heartbeat"

    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        primary_key=True,
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    attendance_log_id: Mapped[int | None] = mapped_column(
        ForeignKey("attendance_logs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    gps_ok: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    in_branch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)


class AutoCheckoutSettings(Base):
    __tablename__ = "auto_checkout_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    auto_checkout_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    auto_checkout_after_seconds: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=900,
        server_default=text("900"),
    )
    on_location_disabled_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    location_disabled_grace_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    on_no_signal_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    no_signal_grace_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    company: Mapped[Company] = relationship(back_populates="auto_checkout_settings")


class AutoCheckoutPending(Base):
    __tablename__ = "auto_checkout_pending"
    __table_args__ = (
        Index(
            "uq_auto_checkout_pending_active_log",
            "attendance_log_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_auto_checkout_pending_status_ends_at", "status", "ends_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    attendance_log_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_logs.id", ondelete="CASCADE"),
        nullable=False,
    )
    reason: Mapped[CheckoutReason] = mapped_column(
        Enum(CheckoutReason, name="checkout_reason"),
        nullable=False,
    )
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[PendingStatus] = mapped_column(
        Enum(PendingStatus, name="auto_checkout_pending_status"),
        nullable=False,
        default=PendingStatus.PENDING,
        server_default=text("'PENDING'"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    done_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    attendance_log: Mapped[AttendanceLog] = relationship(back_populates="pending_records")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON_VARIANT, nullable=False, default=dict)
