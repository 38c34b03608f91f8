"""
Database Migration System for dashdb.

This module provides infrastructure for versioned migrations of the
dashboard store, automated backups, and rollback support.

Components:
- base_migration: Base classes, run context and error taxonomy
- ledger: The schema_migrations table
- registry: Ordered set of migration units
- version_manager: Migration orchestration
- backup_manager: Automated database backups before migrations
- json_transforms / encryption / schema_utils: Helpers used by units
- *_migrations: Migration definitions for each component
"""

from .base_migration import (
    ConfigurationWarning,
    DataTransformWarning,
    LedgerInconsistencyError,
    Migration,
    MigrationContext,
    MigrationError,
    MigrationReport,
    SchemaDowngradeError,
    StructuralError,
)
from .encryption import EncryptionMode
from .ledger import VersionLedger
from .registry import MigrationRegistry, build_registry
from .version_manager import MigrationManager, RunResult
from .backup_manager import BackupManager

__all__ = [
    'ConfigurationWarning',
    'DataTransformWarning',
    'LedgerInconsistencyError',
    'Migration',
    'MigrationContext',
    'MigrationError',
    'MigrationReport',
    'SchemaDowngradeError',
    'StructuralError',
    'EncryptionMode',
    'VersionLedger',
    'MigrationRegistry',
    'build_registry',
    'MigrationManager',
    'RunResult',
    'BackupManager'
]
