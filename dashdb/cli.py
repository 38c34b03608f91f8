"""
dashdb Command-Line Interface

Operator access to the store's migrations and backups.

Usage:
    dashdb migrate
    dashdb status
    dashdb backups
    dashdb restore [BACKUP]
    dashdb rollback [--to VERSION]
"""

import sys
import logging
import argparse

from dashdb.config import DEFAULT_CONFIG_PATH, load_settings
from dashdb.migration.backup_manager import BackupManager
from dashdb.migration.base_migration import MigrationError
from dashdb.migration.registry import build_registry
from dashdb.startup import create_manager, open_database, run_startup_migrations

logger = logging.getLogger(__name__)


def cmd_migrate(args, settings):
    """Apply pending migrations."""
    print(f"Database: {settings.database_path}")
    try:
        result = run_startup_migrations(settings)
    except MigrationError as e:
        print(f"❌ Migration failed: {e}")
        return 1

    if not result.applied:
        print(f"✓ Already at version {result.migrated_to}, nothing to do")
        return 0

    print(f"✓ Migrated v{result.migrated_from} → v{result.migrated_to} "
          f"({result.applied_count} applied)")
    if result.skipped_rows:
        print(f"⚠️  {result.skipped_rows} rows could not be parsed and were left unchanged")
    return 0


def cmd_status(args, settings):
    """Show migration status."""
    if not settings.database_path.exists():
        print(f"❌ No database at {settings.database_path}")
        return 1

    registry = build_registry()
    conn = open_database(settings.database_path)
    try:
        status = create_manager(settings).get_migration_status(conn, registry)
    finally:
        conn.close()

    print(f"Database: {settings.database_path}")
    print(f"Current version:  {status['current_version']}")
    print(f"Expected version: {status['expected_version']}")
    if status['is_downgrade']:
        print("❌ Database is newer than this release")

    print(f"\nApplied ({status['applied_count']}):")
    for migration in status['applied_migrations']:
        print(f"  ✓ {migration['version']:3d}  {migration['name']}  ({migration['applied_at']})")

    print(f"\nPending ({status['pending_count']}):")
    for migration in status['pending_migrations']:
        print(f"  • {migration['version']:3d}  {migration['name']}: {migration['description']}")

    return 1 if status['is_downgrade'] else 0


def cmd_backups(args, settings):
    """List backups."""
    backups = BackupManager(settings.backup_path, settings.max_backups).list_backups()
    if not backups:
        print(f"No backups in {settings.backup_path}")
        return 0

    for backup in backups:
        print(f"{backup['filename']}  v{backup['version']}  "
              f"{backup['size']:,} bytes  {backup['created']:%Y-%m-%d %H:%M:%S}")
    return 0


def cmd_restore(args, settings):
    """Restore the database from a backup."""
    manager = BackupManager(settings.backup_path, settings.max_backups)
    backup = args.backup or manager.latest_backup()
    if backup is None:
        print(f"❌ No backups in {settings.backup_path}")
        return 1

    if manager.restore_backup(backup, settings.database_path):
        print(f"✓ Restored {backup} → {settings.database_path}")
        return 0
    print(f"❌ Could not restore {backup}")
    return 1


def cmd_rollback(args, settings):
    """Roll back migrations that implement down()."""
    registry = build_registry()
    conn = open_database(settings.database_path)
    try:
        rolled_back = create_manager(settings).rollback(conn, registry, args.to)
    except MigrationError as e:
        print(f"❌ Rollback failed: {e}")
        return 1
    finally:
        conn.close()

    if not rolled_back:
        print("Nothing to roll back")
    else:
        print(f"✓ Rolled back: {', '.join(str(v) for v in rolled_back)}")
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="dashdb - dashboard store migrations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dashdb migrate                       # Apply pending migrations (with backup)
  dashdb status                        # Show applied and pending migrations
  dashdb backups                       # List backups
  dashdb restore dashdb-v7-....db      # Restore a backup
  dashdb rollback --to 12              # Undo migrations above version 12
        """
    )

    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help=f'Store config file (default: {DEFAULT_CONFIG_PATH})')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    migrate_parser = subparsers.add_parser('migrate', help='Apply pending migrations')
    migrate_parser.set_defaults(func=cmd_migrate)

    status_parser = subparsers.add_parser('status', help='Show migration status')
    status_parser.set_defaults(func=cmd_status)

    backups_parser = subparsers.add_parser('backups', help='List backups')
    backups_parser.set_defaults(func=cmd_backups)

    restore_parser = subparsers.add_parser('restore', help='Restore a backup')
    restore_parser.add_argument('backup', nargs='?', help='Backup file name or path (default: newest)')
    restore_parser.set_defaults(func=cmd_restore)

    rollback_parser = subparsers.add_parser('rollback', help='Roll back migrations')
    rollback_parser.add_argument('--to', type=int, default=None,
                                 help='Target version (default: undo the last migration)')
    rollback_parser.set_defaults(func=cmd_rollback)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = load_settings(args.config)
    level = logging.DEBUG if args.verbose else getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        return args.func(args, settings)
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
