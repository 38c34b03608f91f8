"""
Schema version management and migration orchestration.

Walks the registry in ascending version order, compares it against the
ledger, and applies every unit that has not been recorded yet. The
ledger row for a unit is written only after the unit's own work has been
committed, so a crash in between is detected on the next start (no row,
unit runs again) and every unit must tolerate partial re-application.
"""

import sqlite3
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .base_migration import (
    LedgerInconsistencyError,
    Migration,
    MigrationContext,
    MigrationError,
    MigrationReport,
    SchemaDowngradeError,
    StructuralError,
)
from .encryption import EncryptionMode, parse_key
from .ledger import LedgerRecord, VersionLedger
from .registry import MigrationRegistry

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of one runner pass."""

    applied: List[int] = field(default_factory=list)
    reports: Dict[int, MigrationReport] = field(default_factory=dict)
    migrated_from: int = 0
    migrated_to: int = 0

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def skipped_rows(self) -> int:
        return sum(report.skipped_count for report in self.reports.values())


class MigrationManager:
    """
    Applies pending migrations and answers questions about migration state.

    Responsibilities:
    - Bootstrap the ledger table
    - Refuse to run against a database written by a newer release
    - Apply pending migrations strictly in order, stopping on the first failure
    - Roll back units that implement down() when an operator asks for it
    - Report migration status
    """

    def __init__(self,
                 encryption_mode: EncryptionMode = EncryptionMode.ENCRYPTED,
                 encryption_key: Union[str, bytes, None] = None,
                 clock: Callable[[], float] = time.time,
                 strict_ledger: bool = False):
        """
        Initialize migration manager.

        Args:
            encryption_mode: How data-migrating units write integration configs
            encryption_key: Optional 32-byte key (or 64 hex chars)
            clock: Time source handed to units (retention cutoffs)
            strict_ledger: Raise instead of warn when a ledger name disagrees with the registry
        """
        self.encryption_mode = encryption_mode
        self.encryption_key = parse_key(encryption_key)
        self.clock = clock
        self.strict_ledger = strict_ledger

    def _context(self, ledger: VersionLedger,
                 report: Optional[MigrationReport] = None) -> MigrationContext:
        return MigrationContext(
            ledger=ledger,
            encryption_mode=self.encryption_mode,
            encryption_key=self.encryption_key,
            clock=self.clock,
            report=report,
        )

    def _ledger(self, conn: sqlite3.Connection) -> VersionLedger:
        ledger = VersionLedger(conn)
        ledger.ensure_table()
        return ledger

    def get_current_version(self, conn: sqlite3.Connection) -> int:
        """Highest applied version (0 if no migrations applied)."""
        return self._ledger(conn).current_version()

    def get_applied_migrations(self, conn: sqlite3.Connection) -> List[LedgerRecord]:
        """Ledger rows in ascending version order."""
        return self._ledger(conn).records()

    def get_pending_migrations(self, conn: sqlite3.Connection,
                               registry: MigrationRegistry) -> List[Migration]:
        """Registry units not recorded in the ledger, ascending."""
        return registry.pending(self._ledger(conn).applied_versions())

    def check_ledger(self, ledger: VersionLedger, registry: MigrationRegistry) -> None:
        """
        Compare ledger rows against the registry.

        A version above the newest known unit means the database was written
        by a newer release and is always fatal. A name that changed since the
        unit was applied is logged, or fatal in strict mode. Gaps are allowed.

        Raises:
            SchemaDowngradeError: Ledger is ahead of the registry
            LedgerInconsistencyError: Name mismatch in strict mode
        """
        current = ledger.current_version()
        if current > registry.latest_version:
            raise SchemaDowngradeError(
                f"Database schema (v{current}) is newer than this release expects "
                f"(v{registry.latest_version}). Upgrade the application or restore a backup."
            )

        for version, recorded_name in ledger.applied_names().items():
            migration = registry.get(version)
            if migration is None or migration.name == recorded_name:
                continue
            message = (
                f"Ledger records version {version} as '{recorded_name}' "
                f"but the registry calls it '{migration.name}'"
            )
            if self.strict_ledger:
                raise LedgerInconsistencyError(message)
            logger.warning(message)

    def _apply_one(self, conn: sqlite3.Connection, ledger: VersionLedger,
                   migration: Migration) -> MigrationReport:
        report = MigrationReport(version=migration.version, name=migration.name)
        ctx = self._context(ledger, report)

        try:
            migration.up(conn, ctx)
            if not migration.verify(conn):
                raise StructuralError(f"Migration {migration.version} verification failed")
            conn.commit()
        except MigrationError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise StructuralError(f"Migration {migration.version} ({migration.name}) failed: {e}") from e
        except Exception as e:
            conn.rollback()
            raise MigrationError(f"Migration {migration.version} ({migration.name}) failed: {e}") from e

        # Last durable action for this version
        ledger.record(migration.version, migration.name)
        return report

    def apply_migrations(self, conn: sqlite3.Connection,
                         registry: MigrationRegistry) -> RunResult:
        """
        Apply every pending migration in ascending version order.

        Args:
            conn: Open database connection
            registry: Ordered, version-unique set of units

        Returns:
            RunResult with the versions applied and per-unit reports

        Raises:
            StructuralError: A unit's SQL failed (fatal, later units not attempted)
            MigrationError: Any other unit failure
            SchemaDowngradeError: Database is ahead of this release
        """
        ledger = self._ledger(conn)
        self.check_ledger(ledger, registry)

        current_version = ledger.current_version()
        result = RunResult(migrated_from=current_version, migrated_to=current_version)

        pending = registry.pending(ledger.applied_versions())
        if not pending:
            logger.debug(f"Database at version {current_version}, no migration needed")
            return result

        logger.info(
            f"Running {len(pending)} migrations "
            f"(v{current_version} → v{registry.latest_version})"
        )

        for migration in pending:
            logger.debug(f"Running migration {migration.version}: {migration.name}")
            try:
                report = self._apply_one(conn, ledger, migration)
            except MigrationError as e:
                logger.error(f"✗ Migration {migration.version} failed: {e}")
                logger.error("Stopping migration process due to failure")
                raise

            result.applied.append(migration.version)
            result.reports[migration.version] = report
            result.migrated_to = max(result.migrated_to, migration.version)

            if report.skipped_count:
                logger.warning(
                    f"Migration {migration.version} left {report.skipped_count} "
                    f"unparseable rows unchanged"
                )
            logger.debug(f"✓ Migration {migration.version} complete {report.counts}")

        logger.info(
            f"All migrations complete (v{result.migrated_from} → v{result.migrated_to}), "
            f"applied={result.applied_count} skipped_rows={result.skipped_rows}"
        )
        return result

    def rollback(self, conn: sqlite3.Connection, registry: MigrationRegistry,
                 target_version: Optional[int] = None) -> List[int]:
        """
        Roll back applied migrations above a target version.

        Args:
            conn: Database connection
            registry: Registry supplying the down() implementations
            target_version: Version to roll back to (None = undo the last migration)

        Returns:
            Versions rolled back, newest first

        Raises:
            MigrationError: A unit in range is forward-only or unknown
        """
        ledger = self._ledger(conn)
        current_version = ledger.current_version()

        if target_version is None:
            applied = sorted(ledger.applied_versions())
            target_version = applied[-2] if len(applied) > 1 else 0

        if current_version <= target_version:
            logger.info(f"Already at version {current_version}, no rollback needed")
            return []

        to_rollback = sorted(
            (v for v in ledger.applied_versions() if v > target_version),
            reverse=True
        )

        for version in to_rollback:
            migration = registry.get(version)
            if migration is None or not migration.supports_rollback:
                raise MigrationError(f"Migration {version} does not support rollback")

        rolled_back = []
        for version in to_rollback:
            migration = registry.get(version)
            logger.info(f"Rolling back migration {version}: {migration.name}")
            try:
                migration.down(conn, self._context(ledger))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StructuralError(f"Rollback of migration {version} failed: {e}") from e
            ledger.remove(version)
            rolled_back.append(version)
            logger.info(f"✓ Migration {version} rolled back")

        return rolled_back

    def get_migration_status(self, conn: sqlite3.Connection,
                             registry: MigrationRegistry) -> Dict:
        """
        Detailed migration status.

        Returns:
            Status dictionary with current/expected version and applied/pending units
        """
        ledger = self._ledger(conn)
        current_version = ledger.current_version()
        applied = ledger.records()
        pending = registry.pending({record.version for record in applied})

        return {
            'current_version': current_version,
            'expected_version': registry.latest_version,
            'needs_migration': bool(pending),
            'is_downgrade': current_version > registry.latest_version,
            'applied_count': len(applied),
            'pending_count': len(pending),
            'applied_migrations': [
                {'version': r.version, 'name': r.name, 'applied_at': r.applied_at}
                for r in applied
            ],
            'pending_migrations': [
                {'version': m.version, 'name': m.name, 'description': m.description}
                for m in pending
            ]
        }
