"""
Schema introspection guards shared by migration units.

Units call these before acting so that re-running a unit whose work was
already committed is a no-op instead of a duplicate-column error.
"""

import sqlite3
import uuid
import logging
from typing import List

logger = logging.getLogger(__name__)


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    )
    return cursor.fetchone() is not None


def index_exists(conn: sqlite3.Connection, index: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name=?", (index,)
    )
    return cursor.fetchone() is not None


def trigger_exists(conn: sqlite3.Connection, trigger: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='trigger' AND name=?", (trigger,)
    )
    return cursor.fetchone() is not None


def table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    """Column names of a table (empty when the table is missing)."""
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return [row[1] for row in cursor.fetchall()]


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return column in table_columns(conn, table)


def add_column_if_absent(conn: sqlite3.Connection, table: str, column: str,
                         definition: str) -> bool:
    """
    Add a column unless it is already there.

    Args:
        conn: Database connection
        table: Table to alter
        column: Column name
        definition: Type and constraints, e.g. "INTEGER DEFAULT 0"

    Returns:
        True if the column was added, False if it already existed
    """
    if column_exists(conn, table, column):
        logger.debug(f"{table}.{column} already exists, skipping")
        return False

    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    logger.debug(f"Added column {table}.{column}")
    return True


def drop_index_if_present(conn: sqlite3.Connection, index: str) -> bool:
    """
    Drop an index, tolerating its absence.

    The index may already be gone (re-run) or may never have been
    created at all.

    Returns:
        True if an index was dropped
    """
    if not index_exists(conn, index):
        logger.debug(f"Index {index} not present, nothing to drop")
        return False

    try:
        conn.execute(f"DROP INDEX IF EXISTS {index}")
    except sqlite3.OperationalError as e:
        logger.debug(f"Ignoring failed drop of {index}: {e}")
        return False
    return True


def count_rows(conn: sqlite3.Connection, table: str) -> int:
    cursor = conn.execute(f"SELECT COUNT(*) FROM {table}")
    return cursor.fetchone()[0]


def new_id() -> str:
    """Random identifier for synthesized rows."""
    return str(uuid.uuid4())
