from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "employees": {"id", "company_id", "branch_id", "is_active", "work_start_time", "work_end_time"},
    "branches": {"id", "latitude", "longitude", "geofence_radius_m"},
    "attendance_logs": {
        "id",
        "employee_id",
        "check_in_time",
        "check_out_time",
        "checkout_reason",
        "last_heartbeat_at",
        "resolved_timezone",
    },
    "employee_location_heartbeat": {"employee_id", "attendance_log_id", "last_seen_at", "gps_ok", "in_branch"},
    "auto_checkout_settings": {"company_id", "auto_checkout_enabled", "auto_checkout_after_seconds"},
    "auto_checkout_pending": {"id", "attendance_log_id", "reason", "ends_at", "status"},
    "alembic_version": {"version_num"},
}

# Compare-and-swap writes rely on these to reject a second open session or countdown.
REQUIRED_UNIQUE_INDEXES: dict[str, set[str]] = {
    "attendance_logs": {"uq_attendance_logs_open_employee"},
    "auto_checkout_pending": {"uq_auto_checkout_pending_active_log"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "checkout_reason": {"MANUAL", "NO_HEARTBEAT", "HEARTBEAT_TIMEOUT", "GPS_DISABLED", "OUT_OF_BRANCH"},
    "auto_checkout_pending_status": {"PENDING", "DONE", "CANCELLED"},
}


def _check_columns(inspector: Any, issues: list[str]) -> set[str]:
    readable: set[str] = set()
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        readable.add(table_name)
        missing_columns = sorted(required_columns - column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")
    return readable


def _check_unique_indexes(inspector: Any, readable_tables: set[str], issues: list[str]) -> None:
    for table_name, index_names in REQUIRED_UNIQUE_INDEXES.items():
        if table_name not in readable_tables:
            continue
        unique_names = {
            str(item.get("name"))
            for item in inspector.get_indexes(table_name)
            if bool(item.get("unique"))
        }
        for index_name in sorted(index_names - unique_names):
            issues.append(f"MISSING_UNIQUE_INDEX:{table_name}:{index_name}")


def _check_enums(inspector: Any, issues: list[str], warnings: list[str]) -> None:
    if inspector.dialect.name != "postgresql":
        # Only PostgreSQL has named enum types to inspect.
        warnings.append("ENUM_CHECK_UNSUPPORTED")
        return
    try:
        enums = inspector.get_enums() or []
    except Exception as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(required_values - labels_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")


def _check_alembic_version(engine: Engine, issues: list[str]) -> None:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return
    if not (str(row).strip() if row is not None else ""):
        issues.append("ALEMBIC_VERSION_EMPTY")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Check that the live database carries what attendance enforcement depends on."""
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    readable_tables = _check_columns(inspector, issues)
    _check_unique_indexes(inspector, readable_tables, issues)
    _check_enums(inspector, issues, warnings)
    _check_alembic_version(engine, issues)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
