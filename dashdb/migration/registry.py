"""
Migration registry: the ordered, immutable set of known migration units.
"""

import logging
from typing import Iterable, Iterator, List, Optional, Tuple

from .base_migration import Migration

logger = logging.getLogger(__name__)


class MigrationRegistry:
    """
    Migration units sorted by version.

    Versions must be unique; names are informational and may collide.
    The registry cannot be modified once constructed.
    """

    def __init__(self, migrations: Iterable[Migration]):
        ordered = sorted(migrations, key=lambda m: m.version)

        seen = {}
        for migration in ordered:
            if migration.version in seen:
                raise ValueError(
                    f"Duplicate migration version {migration.version}: "
                    f"{seen[migration.version]!r} and {migration!r}"
                )
            seen[migration.version] = migration

        self._migrations: Tuple[Migration, ...] = tuple(ordered)

    @property
    def migrations(self) -> Tuple[Migration, ...]:
        return self._migrations

    @property
    def latest_version(self) -> int:
        """Highest known version, 0 for an empty registry."""
        return self._migrations[-1].version if self._migrations else 0

    def get(self, version: int) -> Optional[Migration]:
        for migration in self._migrations:
            if migration.version == version:
                return migration
        return None

    def pending(self, applied_versions) -> List[Migration]:
        """Units whose version is not in the applied set, ascending."""
        return [m for m in self._migrations if m.version not in applied_versions]

    def up_to(self, version: int) -> "MigrationRegistry":
        """Registry truncated to units at or below ``version``."""
        return MigrationRegistry(m for m in self._migrations if m.version <= version)

    def __iter__(self) -> Iterator[Migration]:
        return iter(self._migrations)

    def __len__(self) -> int:
        return len(self._migrations)

    def __contains__(self, version) -> bool:
        return self.get(version) is not None

    def __repr__(self) -> str:
        return f"<MigrationRegistry units={len(self._migrations)} latest={self.latest_version}>"


def build_registry() -> MigrationRegistry:
    """
    Assemble every migration unit shipped with dashdb.

    Returns:
        The application's registry
    """
    from . import (
        core_migrations,
        dashboard_migrations,
        integration_migrations,
        monitor_migrations,
        media_migrations,
    )

    return MigrationRegistry(
        core_migrations.get_migrations()
        + dashboard_migrations.get_migrations()
        + integration_migrations.get_migrations()
        + monitor_migrations.get_migrations()
        + media_migrations.get_migrations()
    )
