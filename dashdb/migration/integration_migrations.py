"""
Migrations for integrations, their instances and their shares.

- Integration instances (several instances of one integration type)
- Move of the legacy single-instance settings into instances
- Per-integration sharing, later moved from type to instance level
- Rename of the uptime-kuma type across every reference
- Removal of the type-level unique index left behind by the share refactor
"""

import json
import sqlite3
import logging
from collections import defaultdict
from typing import Dict, List

from .base_migration import Migration, MigrationContext
from .encryption import encrypt_config
from .json_transforms import remap_widget_integration_ids, rewrite_json_columns
from .schema_utils import (
    add_column_if_absent,
    count_rows,
    drop_index_if_present,
    index_exists,
    new_id,
    table_exists,
)

logger = logging.getLogger(__name__)

LEGACY_INTEGRATIONS_KEY = "integrations"

# Keys of a legacy integration entry that no longer belong in its config
LEGACY_ONLY_KEYS = ("enabled", "sharing")

LEGACY_SHARE_INDEX = "idx_integration_shares_unique"
INSTANCE_SHARE_INDEX = "idx_integration_shares_instance_unique"

OLD_UPTIME_KUMA_TYPE = "uptime-kuma"
NEW_UPTIME_KUMA_TYPE = "uptimekuma"

WIDGET_PAYLOAD_COLUMNS = (
    ("user_preferences", "user_id", ("dashboard_config",)),
    ("dashboard_templates", "id", ("widgets", "mobile_widgets")),
    ("dashboard_backups", "id", ("widgets", "mobile_widgets")),
)


def instances_by_type(conn: sqlite3.Connection) -> Dict[str, List[str]]:
    """Instance ids grouped by integration type, in id order."""
    grouped = defaultdict(list)
    cursor = conn.execute("SELECT id, type FROM integration_instances ORDER BY id")
    for instance_id, integration_type in cursor.fetchall():
        grouped[integration_type].append(instance_id)
    return grouped


class AddIntegrationInstances(Migration):
    """Table of configured integration instances."""

    version = 4
    name = "add_integration_instances"
    description = "Create integration_instances table"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS integration_instances (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                display_name TEXT NOT NULL,
                config_encrypted TEXT NOT NULL,
                enabled INTEGER DEFAULT 1,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                updated_at INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_integration_instances_type ON integration_instances(type);
        """)

    def down(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.execute("DROP INDEX IF EXISTS idx_integration_instances_type")
        conn.execute("DROP TABLE IF EXISTS integration_instances")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return table_exists(conn, "integration_instances")


class MigrateIntegrationsToInstances(Migration):
    """
    Turn the legacy single-instance integration settings into instances.

    The legacy settings live in system_config under "integrations" as an
    object keyed by type. Each type becomes the instance "<type>-primary".
    The enabled flag moves to its own column, sharing settings are owned by
    integration_shares now, and types left with an empty config are not
    carried over. When integration_instances already has any row the unit
    does nothing, since the instances are then authoritative.
    """

    version = 5
    name = "migrate_integrations_to_instances"
    description = "Move legacy integration settings into integration_instances"

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        existing = count_rows(conn, "integration_instances")
        if existing:
            logger.debug(f"integration_instances already has {existing} rows, skipping")
            return

        row = conn.execute(
            "SELECT value FROM system_config WHERE key = ?", (LEGACY_INTEGRATIONS_KEY,)
        ).fetchone()
        if row is None:
            logger.debug("No legacy integration settings found")
            return

        try:
            legacy = json.loads(row[0])
        except (ValueError, TypeError) as e:
            logger.warning(f"Legacy integration settings are not valid JSON, skipping: {e}")
            return
        if not isinstance(legacy, dict):
            logger.warning("Legacy integration settings are not an object, skipping")
            return

        now = ctx.now()
        instances = []
        skipped = []
        for integration_type, settings in legacy.items():
            if not isinstance(settings, dict):
                skipped.append(integration_type)
                continue

            config = {k: v for k, v in settings.items() if k not in LEGACY_ONLY_KEYS}
            if not config:
                skipped.append(integration_type)
                continue

            instances.append((
                f"{integration_type}-primary",
                integration_type,
                integration_type.capitalize(),
                encrypt_config(config, ctx.encryption_mode, ctx.encryption_key),
                1 if settings.get("enabled") else 0,
                now,
            ))

        with conn:
            conn.executemany(
                """
                INSERT OR IGNORE INTO integration_instances
                (id, type, display_name, config_encrypted, enabled, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                instances
            )

        if ctx.report is not None:
            ctx.report.count("integration_instances.created", len(instances))
            ctx.report.count("integration_types.skipped", len(skipped))
        logger.info(f"✓ Migrated {len(instances)} integrations to instances, skipped={len(skipped)}")
        if skipped:
            logger.debug(f"Skipped integration types with empty config: {', '.join(skipped)}")


class AddIntegrationShares(Migration):
    """
    Per-integration sharing with users and groups.

    Shares are keyed by integration type here; the unique index over
    (integration_name, share_type, share_target) is superseded once
    shares move to instances and is dropped by a later migration.
    """

    version = 6
    name = "add_integration_shares"
    description = "Create integration_shares table"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS integration_shares (
                id TEXT PRIMARY KEY,
                integration_name TEXT NOT NULL,
                share_type TEXT NOT NULL,
                share_target TEXT,
                shared_by TEXT NOT NULL,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (shared_by) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_integration_shares_name ON integration_shares(integration_name);
            CREATE UNIQUE INDEX IF NOT EXISTS {LEGACY_SHARE_INDEX}
                ON integration_shares(integration_name, share_type, share_target);
        """)

    def down(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.execute("DROP TABLE IF EXISTS integration_shares")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return table_exists(conn, "integration_shares")


class RefactorIntegrationSharesForInstances(Migration):
    """
    Move shares from integration types to integration instances.

    Every type-level share is expanded to one share per instance of that
    type: the first instance takes over the original row, the others get
    new rows. Shares of types without any instance are deleted.
    """

    version = 11
    name = "refactor_integration_shares_for_instances"
    description = "Add integration_instance_id to integration_shares and expand type shares"

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        add_column_if_absent(conn, "integration_shares", "integration_instance_id", "TEXT")

        shares = conn.execute("""
            SELECT id, integration_name, share_type, share_target, shared_by, created_at
            FROM integration_shares
            WHERE integration_instance_id IS NULL
        """).fetchall()
        grouped = instances_by_type(conn)

        migrated = 0
        deleted = 0
        with conn:
            for share_id, integration_name, share_type, share_target, shared_by, created_at in shares:
                instance_ids = grouped.get(integration_name, [])
                if not instance_ids:
                    conn.execute("DELETE FROM integration_shares WHERE id = ?", (share_id,))
                    deleted += 1
                    continue

                conn.execute(
                    "UPDATE integration_shares SET integration_instance_id = ? WHERE id = ?",
                    (instance_ids[0], share_id)
                )
                for instance_id in instance_ids[1:]:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO integration_shares
                        (id, integration_name, integration_instance_id, share_type,
                         share_target, shared_by, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (new_id(), integration_name, instance_id, share_type,
                         share_target, shared_by, created_at)
                    )
                migrated += len(instance_ids)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_integration_shares_instance_id
            ON integration_shares(integration_instance_id)
        """)
        conn.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {INSTANCE_SHARE_INDEX}
            ON integration_shares(integration_instance_id, share_type, share_target)
        """)

        if ctx.report is not None:
            ctx.report.count("integration_shares.migrated", migrated)
            ctx.report.count("integration_shares.deleted", deleted)
        logger.info(f"✓ Integration shares moved to instances: migrated={migrated} deleted={deleted}")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return index_exists(conn, INSTANCE_SHARE_INDEX)


class RenameUptimeKumaType(Migration):
    """
    Rename the integration type "uptime-kuma" to "uptimekuma".

    Steps run in dependency order: the type column, then the instance ids
    derived from it, then every column referencing those ids, then the
    widget payloads. The id map is derived from both old and already
    renamed instances, so a re-run after a partial run still finishes the
    later steps.
    """

    version = 12
    name = "rename_uptime_kuma_type"
    description = "Rename integration type uptime-kuma to uptimekuma everywhere it is referenced"

    def _rename_type(self, conn):
        cursor = conn.execute(
            "UPDATE integration_instances SET type = ? WHERE type = ?",
            (NEW_UPTIME_KUMA_TYPE, OLD_UPTIME_KUMA_TYPE)
        )
        return cursor.rowcount

    def _rename_ids(self, conn) -> Dict[str, str]:
        old_prefix = f"{OLD_UPTIME_KUMA_TYPE}-"
        new_prefix = f"{NEW_UPTIME_KUMA_TYPE}-"

        old_ids = [row[0] for row in conn.execute(
            "SELECT id FROM integration_instances WHERE id LIKE ?", (f"{old_prefix}%",)
        ).fetchall()]

        for old_id in old_ids:
            new_id_value = new_prefix + old_id[len(old_prefix):]
            clash = conn.execute(
                "SELECT 1 FROM integration_instances WHERE id = ?", (new_id_value,)
            ).fetchone()
            if clash:
                logger.warning(f"Cannot rename {old_id}: {new_id_value} already exists")
                continue
            conn.execute(
                "UPDATE integration_instances SET id = ? WHERE id = ?", (new_id_value, old_id)
            )

        renamed = conn.execute(
            "SELECT id FROM integration_instances WHERE type = ? AND id LIKE ?",
            (NEW_UPTIME_KUMA_TYPE, f"{new_prefix}%")
        ).fetchall()
        return {old_prefix + row[0][len(new_prefix):]: row[0] for row in renamed}

    def _rename_references(self, conn, id_map: Dict[str, str]) -> int:
        changed = conn.execute(
            "UPDATE integration_shares SET integration_name = ? WHERE integration_name = ?",
            (NEW_UPTIME_KUMA_TYPE, OLD_UPTIME_KUMA_TYPE)
        ).rowcount
        for old_id, new_id_value in id_map.items():
            changed += conn.execute(
                "UPDATE integration_shares SET integration_instance_id = ? "
                "WHERE integration_instance_id = ?",
                (new_id_value, old_id)
            ).rowcount
            if table_exists(conn, "service_monitors"):
                changed += conn.execute(
                    "UPDATE service_monitors SET integration_instance_id = ? "
                    "WHERE integration_instance_id = ?",
                    (new_id_value, old_id)
                ).rowcount
        return changed

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        with conn:
            types_renamed = self._rename_type(conn)
            id_map = self._rename_ids(conn)
            references = self._rename_references(conn, id_map)

        def transform(raw_json):
            return remap_widget_integration_ids(raw_json, id_map)

        widgets_rewritten = 0
        if id_map:
            for table, key_column, columns in WIDGET_PAYLOAD_COLUMNS:
                widgets_rewritten += rewrite_json_columns(
                    conn, table, key_column, columns, transform, report=ctx.report
                )

        if ctx.report is not None:
            ctx.report.count("integration_instances.renamed", types_renamed)
            ctx.report.count("references.renamed", references)
        logger.info(
            f"✓ Renamed {OLD_UPTIME_KUMA_TYPE} → {NEW_UPTIME_KUMA_TYPE}: "
            f"instances={types_renamed} references={references} payloads={widgets_rewritten}"
        )


class DropLegacyShareUniqueIndex(Migration):
    """
    Drop the type-level unique index on integration_shares.

    While that index existed, a second instance of the same type could not
    be shared with the same target. Dropping it leaves the instance-level
    index as the only uniqueness rule. No share rows are touched.
    """

    version = 13
    name = "drop_legacy_share_unique_index"
    description = "Drop the type-level idx_integration_shares_unique index"

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        if not ctx.ledger.is_applied(AddIntegrationShares.version):
            logger.debug(f"Migration {AddIntegrationShares.version} not in ledger, index may never have existed")

        dropped = drop_index_if_present(conn, LEGACY_SHARE_INDEX)
        if dropped:
            logger.info(f"✓ Dropped legacy index {LEGACY_SHARE_INDEX}")
        else:
            logger.debug(f"Index {LEGACY_SHARE_INDEX} already absent")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return not index_exists(conn, LEGACY_SHARE_INDEX)


def get_migrations() -> List[Migration]:
    """
    Get all integration migrations in order.

    Returns:
        List of Migration instances
    """
    return [
        AddIntegrationInstances(),
        MigrateIntegrationsToInstances(),
        AddIntegrationShares(),
        RefactorIntegrationSharesForInstances(),
        RenameUptimeKumaType(),
        DropLegacyShareUniqueIndex(),
    ]
