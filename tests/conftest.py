"""
Pytest configuration and shared fixtures for dashdb tests.
"""

import pytest
import os
import sqlite3

# Add project root to path for imports
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dashdb.config import ENV_OVERRIDES
from dashdb.migration.base_migration import MigrationContext, MigrationReport
from dashdb.migration.encryption import EncryptionMode
from dashdb.migration.ledger import VersionLedger
from dashdb.migration.registry import build_registry
from dashdb.migration.version_manager import MigrationManager

# Fixed "now" for units that depend on the clock
FIXED_NOW = 1_760_000_000

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


def schema_snapshot(conn):
    """Schema objects as (type, name, sql), ignoring SQLite's internal tables."""
    cursor = conn.execute("""
        SELECT type, name, sql FROM sqlite_master
        WHERE name NOT LIKE 'sqlite_%'
        ORDER BY type, name
    """)
    return cursor.fetchall()


def dump(conn):
    return list(conn.iterdump())


def make_context(conn, mode=EncryptionMode.PLAINTEXT, key=None, now=FIXED_NOW):
    """Context for calling a unit's up() directly."""
    ledger = VersionLedger(conn)
    ledger.ensure_table()
    return MigrationContext(
        ledger=ledger,
        encryption_mode=mode,
        encryption_key=key,
        clock=lambda: now,
        report=MigrationReport(version=0, name="direct"),
    )


@pytest.fixture
def conn():
    """In-memory database with foreign keys enforced."""
    connection = sqlite3.connect(":memory:")
    connection.execute("PRAGMA foreign_keys = ON")
    yield connection
    connection.close()


@pytest.fixture
def registry():
    """Every shipped migration unit."""
    return build_registry()


@pytest.fixture
def manager():
    """Plaintext manager with a fixed clock."""
    return MigrationManager(
        encryption_mode=EncryptionMode.PLAINTEXT,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def migrate_to(conn, manager, registry):
    """Apply shipped units up to and including a version."""
    def _migrate(version):
        return manager.apply_migrations(conn, registry.up_to(version))
    return _migrate


@pytest.fixture
def admin_user(conn):
    """Insert a user other rows can reference (needs migration 2 applied)."""
    def _insert(user_id="admin", has_local_password=1, password="$2b$10$realhash"):
        conn.execute(
            "INSERT INTO users (id, username, password, group_id, has_local_password) "
            "VALUES (?, ?, ?, 'admin', ?)",
            (user_id, user_id, password, has_local_password)
        )
        conn.commit()
        return user_id
    return _insert


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host environment variables out of settings."""
    for env_var in ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)
    yield


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test."""
    import logging
    # Clear all handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    # Reset to WARNING level
    logging.root.setLevel(logging.WARNING)
    yield


# Pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no database files)"
    )
    config.addinivalue_line(
        "markers", "integration: Tests that run migrations against a database"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (can be skipped with -m 'not slow')"
    )
