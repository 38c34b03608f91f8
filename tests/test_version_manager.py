"""
Tests for MigrationManager: ordering, resumption, failure handling,
ledger checks and rollback.
"""

import logging
import sqlite3

import pytest

from dashdb.migration.base_migration import (
    LedgerInconsistencyError,
    Migration,
    MigrationError,
    SchemaDowngradeError,
    StructuralError,
)
from dashdb.migration.encryption import EncryptionMode
from dashdb.migration.ledger import VersionLedger
from dashdb.migration.registry import MigrationRegistry
from dashdb.migration.version_manager import MigrationManager

from conftest import dump


class RecordingUnit(Migration):
    """Creates a table named after its version and records the call order."""

    description = "recording unit"

    def __init__(self, version, calls, name=None):
        self.version = version
        self.name = name or f"create_t{version}"
        self.calls = calls
        super().__init__()

    def up(self, conn, ctx):
        self.calls.append(self.version)
        conn.execute(f"CREATE TABLE IF NOT EXISTS t{self.version} (id INTEGER)")

    def down(self, conn, ctx):
        conn.execute(f"DROP TABLE IF EXISTS t{self.version}")


class BrokenSqlUnit(Migration):
    version = 2
    name = "broken_sql"
    description = "alters a missing table"

    def up(self, conn, ctx):
        conn.execute("ALTER TABLE missing_table ADD COLUMN x TEXT")


class PartialWriteUnit(Migration):
    version = 2
    name = "partial_write"
    description = "writes a row, then fails"

    def up(self, conn, ctx):
        conn.execute("INSERT INTO t1 (id) VALUES (42)")
        raise ValueError("boom")


class FailingVerifyUnit(Migration):
    version = 2
    name = "failing_verify"
    description = "verification never passes"

    def up(self, conn, ctx):
        pass

    def verify(self, conn):
        return False


@pytest.fixture
def calls():
    return []


@pytest.mark.integration
class TestApplyShippedMigrations:
    """Tests running every shipped unit."""

    def test_fresh_database(self, conn, manager, registry):
        """All units apply in order and are recorded."""
        result = manager.apply_migrations(conn, registry)

        assert result.applied == list(range(1, 17))
        assert result.migrated_from == 0
        assert result.migrated_to == 16
        assert manager.get_current_version(conn) == 16

        records = manager.get_applied_migrations(conn)
        assert [r.name for r in records] == [m.name for m in registry]
        assert all(r.applied_at for r in records)

    def test_rerun_is_noop(self, conn, manager, registry):
        """A second pass applies nothing and leaves the database byte-identical."""
        manager.apply_migrations(conn, registry)
        before = dump(conn)

        result = manager.apply_migrations(conn, registry)

        assert result.applied == []
        assert dump(conn) == before

    def test_resumes_from_partial_ledger(self, conn, manager, registry):
        manager.apply_migrations(conn, registry.up_to(5))

        result = manager.apply_migrations(conn, registry)

        assert result.applied == list(range(6, 17))
        assert result.migrated_from == 5

    def test_status(self, conn, manager, registry):
        manager.apply_migrations(conn, registry.up_to(10))

        status = manager.get_migration_status(conn, registry)

        assert status['current_version'] == 10
        assert status['expected_version'] == 16
        assert status['needs_migration'] is True
        assert status['is_downgrade'] is False
        assert status['applied_count'] == 10
        assert [m['version'] for m in status['pending_migrations']] == list(range(11, 17))


@pytest.mark.integration
class TestOrdering:
    """Tests for execution order."""

    def test_ascending_order(self, conn, manager, calls):
        registry = MigrationRegistry([RecordingUnit(v, calls) for v in (3, 1, 2)])

        manager.apply_migrations(conn, registry)

        assert calls == [1, 2, 3]

    def test_gap_filled_later(self, conn, manager, calls):
        """A unit missing from the ledger runs even when later ones are recorded."""
        registry = MigrationRegistry([RecordingUnit(v, calls) for v in (1, 2, 3)])
        ledger = VersionLedger(conn)
        ledger.ensure_table()
        ledger.record(1, "create_t1")
        ledger.record(3, "create_t3")

        result = manager.apply_migrations(conn, registry)

        assert calls == [2]
        assert result.applied == [2]

    def test_sparse_registry(self, conn, manager, calls):
        registry = MigrationRegistry([RecordingUnit(v, calls) for v in (1, 5, 10)])

        result = manager.apply_migrations(conn, registry)

        assert result.applied == [1, 5, 10]
        assert manager.get_current_version(conn) == 10


@pytest.mark.integration
class TestFailures:
    """Tests for failure handling."""

    def test_sql_failure_is_structural(self, conn, manager, calls):
        """A failed statement stops the run before later units and the ledger row."""
        registry = MigrationRegistry([
            RecordingUnit(1, calls), BrokenSqlUnit(), RecordingUnit(3, calls)
        ])

        with pytest.raises(StructuralError) as exc_info:
            manager.apply_migrations(conn, registry)

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert calls == [1]
        assert VersionLedger(conn).applied_versions() == {1}

    def test_other_failure_rolls_back_uncommitted_rows(self, conn, manager, calls):
        registry = MigrationRegistry([RecordingUnit(1, calls), PartialWriteUnit()])

        with pytest.raises(MigrationError) as exc_info:
            manager.apply_migrations(conn, registry)

        assert not isinstance(exc_info.value, StructuralError)
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert conn.execute("SELECT COUNT(*) FROM t1").fetchone()[0] == 0
        assert VersionLedger(conn).applied_versions() == {1}

    def test_failed_verify(self, conn, manager, calls):
        registry = MigrationRegistry([RecordingUnit(1, calls), FailingVerifyUnit()])

        with pytest.raises(StructuralError, match="verification failed"):
            manager.apply_migrations(conn, registry)

        assert manager.get_current_version(conn) == 1

    def test_retry_after_fix(self, conn, manager, calls):
        """After a failure the same database migrates once the unit is fixed."""
        with pytest.raises(StructuralError):
            manager.apply_migrations(conn, MigrationRegistry([RecordingUnit(1, calls), BrokenSqlUnit()]))

        result = manager.apply_migrations(
            conn, MigrationRegistry([RecordingUnit(1, calls), RecordingUnit(2, calls)])
        )

        assert result.applied == [2]


@pytest.mark.integration
class TestLedgerChecks:
    """Tests for downgrade detection and name mismatches."""

    def test_newer_database_refused(self, conn, manager, calls):
        ledger = VersionLedger(conn)
        ledger.ensure_table()
        ledger.record(99, "from_the_future")

        with pytest.raises(SchemaDowngradeError):
            manager.apply_migrations(conn, MigrationRegistry([RecordingUnit(1, calls)]))

        assert calls == []
        status = manager.get_migration_status(conn, MigrationRegistry([RecordingUnit(1, calls)]))
        assert status['is_downgrade'] is True

    def test_renamed_unit_warns(self, conn, manager, calls, caplog):
        manager.apply_migrations(conn, MigrationRegistry([RecordingUnit(1, calls, "old_name")]))

        with caplog.at_level(logging.WARNING):
            manager.apply_migrations(conn, MigrationRegistry([RecordingUnit(1, calls, "new_name")]))

        assert "old_name" in caplog.text
        assert calls == [1]

    def test_renamed_unit_strict(self, conn, calls):
        strict = MigrationManager(EncryptionMode.PLAINTEXT, strict_ledger=True)
        strict.apply_migrations(conn, MigrationRegistry([RecordingUnit(1, calls, "old_name")]))

        with pytest.raises(LedgerInconsistencyError):
            strict.apply_migrations(conn, MigrationRegistry([RecordingUnit(1, calls, "new_name")]))


@pytest.mark.integration
class TestRollback:
    """Tests for operator rollback."""

    def test_rollback_last(self, conn, manager, calls):
        registry = MigrationRegistry([RecordingUnit(v, calls) for v in (1, 2, 3)])
        manager.apply_migrations(conn, registry)

        rolled_back = manager.rollback(conn, registry)

        assert rolled_back == [3]
        assert manager.get_current_version(conn) == 2
        assert conn.execute(
            "SELECT name FROM sqlite_master WHERE name = 't3'"
        ).fetchone() is None

    def test_rollback_to_target(self, conn, manager, calls):
        registry = MigrationRegistry([RecordingUnit(v, calls) for v in (1, 2, 3)])
        manager.apply_migrations(conn, registry)

        assert manager.rollback(conn, registry, target_version=1) == [3, 2]
        assert manager.get_current_version(conn) == 1

    def test_forward_only_unit_blocks_rollback(self, conn, manager, registry):
        """Nothing is undone when any unit in range lacks down()."""
        manager.apply_migrations(conn, registry)

        with pytest.raises(MigrationError, match="does not support rollback"):
            manager.rollback(conn, registry, target_version=14)

        assert manager.get_current_version(conn) == 16

    def test_nothing_to_roll_back(self, conn, manager, calls):
        registry = MigrationRegistry([RecordingUnit(1, calls)])
        manager.apply_migrations(conn, registry)

        assert manager.rollback(conn, registry, target_version=1) == []
