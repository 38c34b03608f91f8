"""
Automated backup management for database migrations.

Creates a versioned, timestamped copy of the database before pending
migrations run and restores it if they fail.
"""

import shutil
import logging
from pathlib import Path
from typing import List, Dict, Optional, Union
from datetime import datetime

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "dashdb"

# SQLite side files that must not outlive a restored main file
SIDE_FILE_SUFFIXES = ("-journal", "-wal", "-shm")


class BackupManager:
    """
    Manages database backups for safe migrations.

    Features:
    - One backup per startup that has pending migrations
    - Backup named after the schema version it holds
    - Only the newest max_backups files are kept
    - Restore functionality
    """

    def __init__(self, backup_dir: Union[str, Path] = "backups", max_backups: int = 3):
        """
        Initialize backup manager.

        Args:
            backup_dir: Directory to store backups
            max_backups: Number of backups to keep after each new one
        """
        if max_backups < 1:
            raise ValueError("max_backups must be at least 1")

        self.backup_dir = Path(backup_dir)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.max_backups = max_backups
        logger.debug(f"Backup manager initialized: {self.backup_dir} (keeping {max_backups})")

    def create_backup(self, db_path: Union[str, Path], version: int) -> Path:
        """
        Create a timestamped backup of a database.

        Args:
            db_path: Path to the database file
            version: Schema version the database is at

        Returns:
            Path to the backup file

        Raises:
            FileNotFoundError: If the database does not exist
            IOError: If backup creation fails
        """
        db_path = Path(db_path)
        if not db_path.exists():
            raise FileNotFoundError(f"Database not found: {db_path}")

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_path = self.backup_dir / f"{BACKUP_PREFIX}-v{version}-{timestamp}.db"

        try:
            logger.info(f"Creating backup: {db_path} → {backup_path}")
            shutil.copy2(db_path, backup_path)

            # Verify backup
            if backup_path.exists() and backup_path.stat().st_size == db_path.stat().st_size:
                logger.info(f"✓ Backup created successfully: {backup_path}")
                logger.debug(f"  Size: {backup_path.stat().st_size:,} bytes")
            else:
                raise IOError(f"Backup verification failed: {backup_path}")

        except OSError as e:
            logger.error(f"✗ Backup creation failed: {e}")
            raise IOError(f"Failed to create backup: {e}") from e

        self.prune()
        return backup_path

    def restore_backup(self, backup_path: Union[str, Path], target_path: Union[str, Path]) -> bool:
        """
        Restore a database from a backup.

        The caller must have closed every connection to target_path.

        Args:
            backup_path: Path to the backup file (or a file name inside backup_dir)
            target_path: Path to restore to

        Returns:
            True if successful, False otherwise
        """
        backup_path = self._resolve(backup_path)
        target_path = Path(target_path)

        if not backup_path.exists():
            logger.error(f"Backup not found: {backup_path}")
            return False

        try:
            logger.info(f"Restoring backup: {backup_path} → {target_path}")

            for suffix in SIDE_FILE_SUFFIXES:
                side_file = target_path.with_name(target_path.name + suffix)
                if side_file.exists():
                    side_file.unlink()

            shutil.copy2(backup_path, target_path)

            logger.info(f"✓ Restore complete: {target_path}")
            return True

        except OSError as e:
            logger.error(f"✗ Restore failed: {e}")
            return False

    def list_backups(self) -> List[Dict]:
        """
        List available backups, newest first.

        Returns:
            List of backup info dictionaries
        """
        backups = []

        for backup_file in self.backup_dir.glob(f"{BACKUP_PREFIX}-v*-*.db"):
            parsed = self._parse_name(backup_file.name)
            if parsed is None:
                continue
            version, created = parsed

            backups.append({
                'filename': backup_file.name,
                'path': backup_file,
                'version': version,
                'size': backup_file.stat().st_size,
                'created': created,
            })

        backups.sort(key=lambda b: b['created'], reverse=True)
        return backups

    def latest_backup(self) -> Optional[Path]:
        backups = self.list_backups()
        return backups[0]['path'] if backups else None

    def prune(self) -> int:
        """
        Delete all but the newest max_backups backups.

        Returns:
            Number of backups deleted
        """
        deleted = 0
        for backup in self.list_backups()[self.max_backups:]:
            try:
                backup['path'].unlink()
                deleted += 1
                logger.debug(f"Deleted old backup: {backup['filename']}")
            except OSError as e:
                logger.warning(f"Could not delete old backup {backup['filename']}: {e}")

        if deleted:
            logger.info(f"✓ Cleanup complete: {deleted} backups deleted")
        return deleted

    def _resolve(self, backup_path: Union[str, Path]) -> Path:
        backup_path = Path(backup_path)
        if not backup_path.exists() and (self.backup_dir / backup_path.name).exists():
            return self.backup_dir / backup_path.name
        return backup_path

    @staticmethod
    def _parse_name(filename: str):
        # dashdb-v{version}-{YYYYmmdd_HHMMSS_ffffff}.db
        stem = filename[:-len(".db")]
        try:
            _, version_part, timestamp = stem.split("-", 2)
            version = int(version_part[1:])
            created = datetime.strptime(timestamp, "%Y%m%d_%H%M%S_%f")
        except ValueError:
            return None
        return version, created
