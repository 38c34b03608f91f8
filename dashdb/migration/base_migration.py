"""
Base migration classes and utilities.

Provides the abstract base class for versioned migration units, the
context object threaded into every unit, and the error taxonomy the
runner distinguishes between.
"""

import sqlite3
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .encryption import EncryptionMode
    from .ledger import VersionLedger

logger = logging.getLogger(__name__)


class MigrationError(Exception):
    """Raised when migration fails."""
    pass


class StructuralError(MigrationError):
    """A DDL statement failed (duplicate column, syntax error, constraint on CREATE)."""
    pass


class SchemaDowngradeError(MigrationError):
    """The ledger records a version newer than anything this release knows about."""
    pass


class LedgerInconsistencyError(MigrationError):
    """A ledger row disagrees with the registry (strict mode only)."""
    pass


class DataTransformWarning(UserWarning):
    """A single row's payload could not be parsed or transformed; the row is left as-is."""
    pass


class ConfigurationWarning(UserWarning):
    """Encryption was requested but no usable key is configured."""
    pass


@dataclass
class RowOutcome:
    """A row a unit skipped, and why."""

    table: str
    key: str
    warning: DataTransformWarning


@dataclass
class MigrationReport:
    """Counters and skipped rows collected while one unit runs."""

    version: int
    name: str
    counts: Dict[str, int] = field(default_factory=dict)
    skipped: List[RowOutcome] = field(default_factory=list)

    def count(self, label: str, amount: int = 1) -> None:
        self.counts[label] = self.counts.get(label, 0) + amount

    def skip(self, table: str, key, warning: DataTransformWarning) -> None:
        self.skipped.append(RowOutcome(table=table, key=str(key), warning=warning))

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


@dataclass
class MigrationContext:
    """
    Everything a unit may need besides the connection.

    The ledger is passed explicitly so units never reach for global state;
    the clock is injectable so retention units can be tested.
    """

    ledger: "VersionLedger"
    encryption_mode: "EncryptionMode"
    encryption_key: Optional[bytes] = None
    clock: Callable[[], float] = time.time
    report: Optional[MigrationReport] = None

    def now(self) -> int:
        """Current time as whole epoch seconds."""
        return int(self.clock())


class Migration(ABC):
    """
    Base class for database migrations.

    Each migration must define:
    - version: Integer version number (unique, defines order)
    - name: Short slug recorded in the ledger
    - description: Human-readable description of what the migration does
    - up(): Method to apply the migration
    - down(): Optional inverse (forward-only is the supported contract)
    - verify(): Optional post-condition check

    Every up() must tolerate being invoked again on a database where its
    work already happened but the ledger row was never written.

    Example:
        class AddIndexMigration(Migration):
            version = 40
            name = "add_created_index"
            description = "Add index on notifications.created_at"
            schema_only = True

            def up(self, conn, ctx):
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_created ON notifications(created_at)"
                )
    """

    # Subclasses must define these
    version: int
    name: str
    description: str

    # True when the unit never reads or writes row data
    schema_only: bool = False

    def __init__(self):
        """Initialize migration."""
        if not hasattr(self, 'version') or not isinstance(self.version, int) or self.version < 1:
            raise ValueError(f"{self.__class__.__name__} must define version as a positive integer")
        if not hasattr(self, 'name') or not isinstance(self.name, str) or not self.name:
            raise ValueError(f"{self.__class__.__name__} must define name as string")
        if not hasattr(self, 'description') or not isinstance(self.description, str):
            raise ValueError(f"{self.__class__.__name__} must define description as string")

    @abstractmethod
    def up(self, conn: sqlite3.Connection, ctx: MigrationContext) -> None:
        """
        Apply the migration.

        Args:
            conn: SQLite connection to the database
            ctx: Ledger, encryption settings, clock and report for this run

        Raises:
            sqlite3.Error: On any failed statement (the runner treats it as structural)
        """
        pass

    def down(self, conn: sqlite3.Connection, ctx: MigrationContext) -> None:
        """
        Rollback the migration (optional).

        Args:
            conn: SQLite connection to the database
            ctx: Migration context

        Raises:
            NotImplementedError: When the unit is forward-only
        """
        raise NotImplementedError(
            f"Migration {self.version} ({self.name}) does not support rollback, "
            f"restore from backup instead"
        )

    def verify(self, conn: sqlite3.Connection) -> bool:
        """
        Verify that the migration was applied successfully.

        Args:
            conn: SQLite connection to the database

        Returns:
            True if migration is verified, False otherwise
        """
        return True

    @property
    def supports_rollback(self) -> bool:
        """Whether this unit overrides down()."""
        return type(self).down is not Migration.down

    def __str__(self) -> str:
        """String representation of migration."""
        return f"Migration{self.version:03d}: {self.name} ({self.description})"

    def __repr__(self) -> str:
        """Developer representation of migration."""
        return f"<{self.__class__.__name__} version={self.version} name={self.name!r}>"
