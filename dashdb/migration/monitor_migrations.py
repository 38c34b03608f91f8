"""
Migrations for service monitoring.

- Monitor, share, history and hourly aggregate tables
- Link from monitors to the integration instance that owns them
- Move of the old system-status and service-monitoring integrations
  to the glances and monitor types
- Pruning of old check history
"""

import sqlite3
import logging
from typing import List

from .base_migration import Migration, MigrationContext
from .encryption import decrypt_config, encrypt_config
from .schema_utils import add_column_if_absent, index_exists, table_exists

logger = logging.getLogger(__name__)

MONITOR_TABLES = (
    "service_monitor_aggregates",
    "service_monitor_history",
    "service_monitor_shares",
    "service_monitors",
)

MONITOR_INSTANCE_ID = "monitor-primary"
GLANCES_INSTANCE_ID = "glances-primary"

HISTORY_RETENTION_DAYS = 30
AGGREGATE_RETENTION_DAYS = 90
SECONDS_PER_DAY = 86400


class AddServiceMonitors(Migration):
    """Tables for first-party and linked service monitors."""

    version = 7
    name = "add_service_monitors"
    description = "Create service monitor, share, history and aggregate tables"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS service_monitors (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                icon_id TEXT,
                type TEXT NOT NULL DEFAULT 'http',
                url TEXT,
                port INTEGER,
                interval_seconds INTEGER DEFAULT 60,
                timeout_seconds INTEGER DEFAULT 10,
                retries INTEGER DEFAULT 3,
                degraded_threshold_ms INTEGER DEFAULT 2000,
                expected_status_codes TEXT DEFAULT '["200-299"]',
                enabled INTEGER DEFAULT 1,
                maintenance INTEGER DEFAULT 0,
                uptime_kuma_id INTEGER,
                order_index INTEGER DEFAULT 0,
                notify_down INTEGER DEFAULT 1,
                notify_up INTEGER DEFAULT 1,
                notify_degraded INTEGER DEFAULT 0,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (owner_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (icon_id) REFERENCES custom_icons(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_service_monitors_owner ON service_monitors(owner_id);
            CREATE INDEX IF NOT EXISTS idx_service_monitors_enabled ON service_monitors(enabled);
            CREATE INDEX IF NOT EXISTS idx_service_monitors_uk_id ON service_monitors(uptime_kuma_id);

            CREATE TABLE IF NOT EXISTS service_monitor_shares (
                id TEXT PRIMARY KEY,
                monitor_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                notify INTEGER DEFAULT 0,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (monitor_id) REFERENCES service_monitors(id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_monitor_shares_monitor ON service_monitor_shares(monitor_id);
            CREATE INDEX IF NOT EXISTS idx_monitor_shares_user ON service_monitor_shares(user_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_monitor_shares_unique ON service_monitor_shares(monitor_id, user_id);

            CREATE TABLE IF NOT EXISTS service_monitor_history (
                id TEXT PRIMARY KEY,
                monitor_id TEXT NOT NULL,
                status TEXT NOT NULL,
                response_time_ms INTEGER,
                status_code INTEGER,
                error_message TEXT,
                checked_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (monitor_id) REFERENCES service_monitors(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_monitor_history_monitor ON service_monitor_history(monitor_id);
            CREATE INDEX IF NOT EXISTS idx_monitor_history_checked ON service_monitor_history(checked_at);
            CREATE INDEX IF NOT EXISTS idx_monitor_history_recent ON service_monitor_history(monitor_id, checked_at DESC);

            CREATE TABLE IF NOT EXISTS service_monitor_aggregates (
                id TEXT PRIMARY KEY,
                monitor_id TEXT NOT NULL,
                hour_start INTEGER NOT NULL,
                checks_total INTEGER DEFAULT 0,
                checks_up INTEGER DEFAULT 0,
                checks_degraded INTEGER DEFAULT 0,
                checks_down INTEGER DEFAULT 0,
                avg_response_ms INTEGER,
                FOREIGN KEY (monitor_id) REFERENCES service_monitors(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_monitor_aggregates_monitor ON service_monitor_aggregates(monitor_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_monitor_aggregates_unique
                ON service_monitor_aggregates(monitor_id, hour_start);

            CREATE TRIGGER IF NOT EXISTS update_service_monitors_timestamp
            AFTER UPDATE ON service_monitors
            BEGIN
                UPDATE service_monitors SET updated_at = strftime('%s', 'now') WHERE id = NEW.id;
            END;
        """)

        logger.debug(f"Created service monitoring tables: {', '.join(reversed(MONITOR_TABLES))}")

    def down(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.execute("DROP TRIGGER IF EXISTS update_service_monitors_timestamp")
        for table in MONITOR_TABLES:
            conn.execute(f"DROP TABLE IF EXISTS {table}")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return all(table_exists(conn, table) for table in MONITOR_TABLES)


class AddMonitorIntegrationLink(Migration):
    """Monitors belong to an integration instance."""

    version = 9
    name = "add_monitor_integration_link"
    description = "Add integration_instance_id to service_monitors"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        add_column_if_absent(conn, "service_monitors", "integration_instance_id", "TEXT")
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_service_monitors_integration
            ON service_monitors(integration_instance_id)
        """)

    def verify(self, conn: sqlite3.Connection) -> bool:
        return index_exists(conn, "idx_service_monitors_integration")


class MigrateMonitoringTypes(Migration):
    """
    Replace the systemstatus and servicemonitoring integrations.

    The nested systemstatus config ({"backend": "glances", "glances": {...}})
    becomes a flat glances-primary instance; a monitor-primary instance is
    created, inheriting the enabled state of servicemonitoring; existing
    monitors without an owning instance are assigned to monitor-primary.
    Configs are decrypted and re-encrypted with a fresh IV.
    """

    version = 10
    name = "migrate_monitoring_types"
    description = "Move systemstatus to glances and servicemonitoring to monitor instances"

    def _flatten_systemstatus(self, old_config):
        backend = old_config.get("backend")
        if backend == "glances" and isinstance(old_config.get("glances"), dict):
            return {
                "url": old_config["glances"].get("url") or "",
                "password": old_config["glances"].get("password") or "",
            }
        if backend == "custom" and isinstance(old_config.get("custom"), dict):
            return {
                "url": old_config["custom"].get("url") or "",
                "token": old_config["custom"].get("token") or "",
            }
        return {}

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        now = ctx.now()

        with conn:
            systemstatus = conn.execute(
                "SELECT id, config_encrypted, enabled FROM integration_instances WHERE type = 'systemstatus'"
            ).fetchone()
            if systemstatus is not None:
                old_id, stored, enabled = systemstatus
                new_config = self._flatten_systemstatus(
                    decrypt_config(stored, ctx.encryption_mode, ctx.encryption_key)
                )
                conn.execute(
                    """
                    INSERT OR IGNORE INTO integration_instances
                    (id, type, display_name, config_encrypted, enabled, created_at)
                    VALUES (?, 'glances', 'Glances', ?, ?, ?)
                    """,
                    (GLANCES_INSTANCE_ID,
                     encrypt_config(new_config, ctx.encryption_mode, ctx.encryption_key),
                     enabled, now)
                )
                conn.execute("DELETE FROM integration_instances WHERE id = ?", (old_id,))
                logger.debug(f"Replaced {old_id} with {GLANCES_INSTANCE_ID}")

            existing_monitor = conn.execute(
                "SELECT 1 FROM integration_instances WHERE id = ?", (MONITOR_INSTANCE_ID,)
            ).fetchone()
            if existing_monitor is None:
                servicemonitoring = conn.execute(
                    "SELECT enabled FROM integration_instances WHERE type = 'servicemonitoring'"
                ).fetchone()
                enabled = servicemonitoring[0] if servicemonitoring is not None else 1

                conn.execute(
                    """
                    INSERT INTO integration_instances
                    (id, type, display_name, config_encrypted, enabled, created_at)
                    VALUES (?, 'monitor', 'Service Monitor', ?, ?, ?)
                    """,
                    (MONITOR_INSTANCE_ID,
                     encrypt_config({"label": "Primary Monitors"},
                                    ctx.encryption_mode, ctx.encryption_key),
                     enabled, now)
                )
                logger.debug(f"Created {MONITOR_INSTANCE_ID}")

            # Removed even when monitor-primary already existed (re-run after a partial run)
            conn.execute("DELETE FROM integration_instances WHERE type = 'servicemonitoring'")

            assigned = conn.execute(
                "UPDATE service_monitors SET integration_instance_id = ? "
                "WHERE integration_instance_id IS NULL",
                (MONITOR_INSTANCE_ID,)
            ).rowcount

        if ctx.report is not None:
            ctx.report.count("service_monitors.assigned", assigned)
        logger.info(f"✓ Monitoring types migrated, monitors assigned={assigned}")


class PruneMonitorHistory(Migration):
    """
    Delete check history and hourly aggregates past their retention.

    Cutoffs are relative to the clock at run time, not to when the
    migration was written.
    """

    version = 16
    name = "prune_monitor_history"
    description = "Delete monitor check history older than 30 days and aggregates older than 90 days"

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        now = ctx.now()
        history_cutoff = now - HISTORY_RETENTION_DAYS * SECONDS_PER_DAY
        aggregate_cutoff = now - AGGREGATE_RETENTION_DAYS * SECONDS_PER_DAY

        with conn:
            history = conn.execute(
                "DELETE FROM service_monitor_history WHERE checked_at < ?", (history_cutoff,)
            ).rowcount
            aggregates = conn.execute(
                "DELETE FROM service_monitor_aggregates WHERE hour_start < ?", (aggregate_cutoff,)
            ).rowcount

        if ctx.report is not None:
            ctx.report.count("service_monitor_history.deleted", history)
            ctx.report.count("service_monitor_aggregates.deleted", aggregates)
        logger.info(f"✓ Pruned monitor history: history={history} aggregates={aggregates}")


def get_migrations() -> List[Migration]:
    """
    Get all monitoring migrations in order.

    Returns:
        List of Migration instances
    """
    return [
        AddServiceMonitors(),
        AddMonitorIntegrationLink(),
        MigrateMonitoringTypes(),
        PruneMonitorHistory(),
    ]
