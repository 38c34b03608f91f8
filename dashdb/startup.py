"""
Startup boundary between the host application and the migration engine.

The host calls run_startup_migrations() once, before it starts serving.
Any exception it raises means the host must not start.
"""

import sqlite3
import logging
from pathlib import Path
from typing import Optional, Union

from dashdb.config import StoreSettings
from dashdb.migration.backup_manager import BackupManager
from dashdb.migration.base_migration import MigrationError
from dashdb.migration.registry import MigrationRegistry, build_registry
from dashdb.migration.version_manager import MigrationManager, RunResult

logger = logging.getLogger(__name__)


def open_database(db_path: Union[str, Path]) -> sqlite3.Connection:
    """
    Open (creating if needed) the store database.

    Args:
        db_path: Database file path, or ":memory:"

    Returns:
        Connection with foreign keys enforced
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def create_manager(settings: StoreSettings, clock=None) -> MigrationManager:
    """Migration manager configured from settings."""
    kwargs = {}
    if clock is not None:
        kwargs['clock'] = clock
    return MigrationManager(
        encryption_mode=settings.encryption_mode,
        encryption_key=settings.encryption_key,
        strict_ledger=settings.strict_ledger,
        **kwargs
    )


def run_startup_migrations(settings: StoreSettings,
                           registry: Optional[MigrationRegistry] = None,
                           manager: Optional[MigrationManager] = None) -> RunResult:
    """
    Bring the store database up to date.

    A backup is taken when an existing database has pending migrations.
    If a migration fails, the backup is restored and the error re-raised.

    Args:
        settings: Store settings
        registry: Units to apply (defaults to every shipped unit)
        manager: Pre-configured manager (defaults to one built from settings)

    Returns:
        RunResult of the runner pass

    Raises:
        MigrationError: A migration failed or the database is newer than this release
    """
    registry = registry or build_registry()
    manager = manager or create_manager(settings)
    db_path = settings.database_path

    conn = open_database(db_path)
    backup_path = None
    try:
        status = manager.get_migration_status(conn, registry)

        if status['needs_migration'] and not status['is_downgrade'] and status['current_version'] > 0:
            backups = BackupManager(settings.backup_path, max_backups=settings.max_backups)
            try:
                backup_path = backups.create_backup(db_path, status['current_version'])
            except IOError as e:
                logger.warning(f"Failed to create backup, proceeding anyway: {e}")

        try:
            return manager.apply_migrations(conn, registry)
        except MigrationError:
            conn.close()
            conn = None
            if backup_path is not None:
                logger.info("Attempting to restore from backup...")
                if BackupManager(settings.backup_path, settings.max_backups).restore_backup(backup_path, db_path):
                    logger.info(f"✓ Database restored to v{status['current_version']}")
                else:
                    logger.error("✗ Failed to restore backup, manual intervention required")
            raise
    finally:
        if conn is not None:
            conn.close()
