from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

from app.services.schema_guard import REQUIRED_ENUM_VALUES, REQUIRED_TABLE_COLUMNS, verify_runtime_schema
from sqlite_support import make_session_factory


def _migrated_sqlite_engine(version: str = "0002_auto_checkout"):  # type: ignore[no-untyped-def]
    engine = make_session_factory().kw["bind"]
    with engine.begin() as connection:
        connection.exec_driver_sql("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)")
        if version:
            connection.exec_driver_sql(f"INSERT INTO alembic_version (version_num) VALUES ('{version}')")
    return engine


class SchemaGuardSqliteTests(unittest.TestCase):
    def test_model_schema_passes(self) -> None:
        result = verify_runtime_schema(_migrated_sqlite_engine())

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.warnings, ["ENUM_CHECK_UNSUPPORTED"])

    def test_dropped_open_session_index_is_an_issue(self) -> None:
        engine = _migrated_sqlite_engine()
        with engine.begin() as connection:
            connection.exec_driver_sql("DROP INDEX uq_attendance_logs_open_employee")

        result = verify_runtime_schema(engine)

        self.assertFalse(result.ok)
        self.assertEqual(result.issues, ["MISSING_UNIQUE_INDEX:attendance_logs:uq_attendance_logs_open_employee"])

    def test_empty_alembic_version_is_an_issue(self) -> None:
        result = verify_runtime_schema(_migrated_sqlite_engine(version=""))
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)


class SchemaGuardPostgresInspectorTests(unittest.TestCase):
    def _inspector(self, *, columns: dict[str, set[str]], enums: list[dict[str, object]]) -> MagicMock:
        inspector = MagicMock()
        inspector.dialect.name = "postgresql"
        inspector.get_columns.side_effect = lambda table: [{"name": name} for name in columns[table]]
        inspector.get_indexes.side_effect = lambda table: [
            {"name": "uq_attendance_logs_open_employee", "unique": True},
            {"name": "uq_auto_checkout_pending_active_log", "unique": True},
        ]
        inspector.get_enums.return_value = enums
        return inspector

    def test_missing_columns_and_enum_labels(self) -> None:
        columns = {table: set(names) for table, names in REQUIRED_TABLE_COLUMNS.items()}
        columns["auto_checkout_pending"] -= {"ends_at"}
        enums = [{"name": "checkout_reason", "labels": ["MANUAL", "NO_HEARTBEAT"]}]
        engine = _migrated_sqlite_engine()

        with patch("app.services.schema_guard.inspect", return_value=self._inspector(columns=columns, enums=enums)):
            result = verify_runtime_schema(engine)

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:auto_checkout_pending:ends_at", result.issues)
        self.assertIn(
            "MISSING_ENUM_VALUES:checkout_reason:GPS_DISABLED,HEARTBEAT_TIMEOUT,OUT_OF_BRANCH",
            result.issues,
        )
        self.assertIn("ENUM_NOT_FOUND:auto_checkout_pending_status", result.warnings)

    def test_complete_enums_pass(self) -> None:
        columns = {table: set(names) for table, names in REQUIRED_TABLE_COLUMNS.items()}
        enums = [{"name": name, "labels": sorted(values)} for name, values in REQUIRED_ENUM_VALUES.items()]

        with patch("app.services.schema_guard.inspect", return_value=self._inspector(columns=columns, enums=enums)):
            result = verify_runtime_schema(_migrated_sqlite_engine())

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.warnings, [])


if __name__ == "__main__":
    unittest.main()
