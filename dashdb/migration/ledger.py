"""
Version ledger: the durable record of which migrations have been applied.

The ledger is the single source of truth for "what has happened to this
database". Rows are appended only after a unit's own work is committed,
so a missing row always means the unit has to run (again).
"""

import sqlite3
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerRecord:
    """One applied migration."""

    version: int
    name: str
    applied_at: str


class VersionLedger:
    """
    Reads and appends rows of the schema_migrations table.

    Creating the table is the bootstrap step ("version 0") and is safe
    against both a brand-new empty database and an existing one.
    """

    TABLE = "schema_migrations"

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def ensure_table(self) -> None:
        """Create the ledger table if it doesn't exist."""
        self._conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.TABLE} (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def records(self) -> List[LedgerRecord]:
        """All ledger rows in ascending version order."""
        cursor = self._conn.execute(
            f"SELECT version, name, applied_at FROM {self.TABLE} ORDER BY version"
        )
        return [LedgerRecord(version=row[0], name=row[1], applied_at=row[2])
                for row in cursor.fetchall()]

    def applied_versions(self) -> Set[int]:
        return {record.version for record in self.records()}

    def applied_names(self) -> Dict[int, str]:
        return {record.version: record.name for record in self.records()}

    def is_applied(self, version: int) -> bool:
        cursor = self._conn.execute(
            f"SELECT 1 FROM {self.TABLE} WHERE version = ?", (version,)
        )
        return cursor.fetchone() is not None

    def current_version(self) -> int:
        """Highest applied version, 0 when nothing has been applied."""
        cursor = self._conn.execute(f"SELECT MAX(version) FROM {self.TABLE}")
        result = cursor.fetchone()
        return result[0] if result[0] is not None else 0

    def record(self, version: int, name: str, applied_at: Optional[datetime] = None) -> LedgerRecord:
        """
        Append a ledger row and commit it.

        Args:
            version: Migration version that was applied
            name: Migration name at the time it was applied
            applied_at: Timestamp override (defaults to now, UTC)

        Returns:
            The record written
        """
        stamp = (applied_at or datetime.now(timezone.utc)).isoformat()
        self._conn.execute(
            f"INSERT INTO {self.TABLE} (version, name, applied_at) VALUES (?, ?, ?)",
            (version, name, stamp)
        )
        self._conn.commit()
        return LedgerRecord(version=version, name=name, applied_at=stamp)

    def remove(self, version: int) -> None:
        """Remove a ledger row (explicit operator rollback only)."""
        self._conn.execute(f"DELETE FROM {self.TABLE} WHERE version = ?", (version,))
        self._conn.commit()
