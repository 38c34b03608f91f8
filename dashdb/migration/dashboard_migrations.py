"""
Migrations for dashboard layouts and templates.

- Template and per-user dashboard backup tables
- Grid row height halved, so every stored widget height doubles
"""

import sqlite3
import logging
from typing import List

from .base_migration import Migration, MigrationContext
from .json_transforms import rewrite_json_columns, scale_widget_heights
from .schema_utils import table_exists

logger = logging.getLogger(__name__)

HEIGHT_FACTOR = 2

# system_config key recording that stored heights are already in the new grid unit
GRID_SCALE_MARKER = "layout_grid_scale"

# (table, key column, JSON columns holding widget payloads)
LAYOUT_COLUMNS = (
    ("user_preferences", "user_id", ("dashboard_config",)),
    ("dashboard_templates", "id", ("widgets", "mobile_widgets")),
    ("dashboard_backups", "id", ("widgets", "mobile_widgets")),
)


class AddDashboardTemplates(Migration):
    """Saved dashboard templates and automatic layout backups."""

    version = 3
    name = "add_dashboard_templates"
    description = "Create dashboard_templates and dashboard_backups tables"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS dashboard_templates (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                category_id TEXT,
                widgets TEXT NOT NULL DEFAULT '[]',
                thumbnail TEXT,
                is_draft INTEGER DEFAULT 0,
                is_default INTEGER DEFAULT 0,
                shared_from_id TEXT,
                version INTEGER DEFAULT 1,
                mobile_layout_mode TEXT DEFAULT 'linked',
                mobile_widgets TEXT,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (owner_id) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_dashboard_templates_owner ON dashboard_templates(owner_id);

            CREATE TABLE IF NOT EXISTS dashboard_backups (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                widgets TEXT NOT NULL DEFAULT '[]',
                mobile_widgets TEXT,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_dashboard_backups_user ON dashboard_backups(user_id);
        """)

    def down(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.execute("DROP TABLE IF EXISTS dashboard_backups")
        conn.execute("DROP TABLE IF EXISTS dashboard_templates")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return table_exists(conn, "dashboard_templates") and table_exists(conn, "dashboard_backups")


class DoubleWidgetHeights(Migration):
    """
    Double every stored widget height.

    The grid row height went from 100px to 50px. Heights are scaled in
    user dashboards, templates and backups (desktop and mobile layouts).
    Scaling is not idempotent by itself, so the rewrite of all tables and
    a marker row in system_config commit in one transaction; a re-run
    that finds the marker does nothing. Unparseable payloads are left
    as they are and reported as skipped.
    """

    version = 8
    name = "double_widget_heights"
    description = "Double widget heights for the finer-grained grid"

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        marker = conn.execute(
            "SELECT value FROM system_config WHERE key = ?", (GRID_SCALE_MARKER,)
        ).fetchone()
        if marker is not None:
            logger.debug(f"Widget heights already scaled (grid scale {marker[0]}), skipping")
            return

        def transform(raw_json):
            return scale_widget_heights(raw_json, HEIGHT_FACTOR)

        rewritten = 0
        with conn:
            for table, key_column, columns in LAYOUT_COLUMNS:
                rewritten += rewrite_json_columns(
                    conn, table, key_column, columns, transform,
                    report=ctx.report, atomic=False
                )
            conn.execute(
                "INSERT INTO system_config (key, value) VALUES (?, ?)",
                (GRID_SCALE_MARKER, str(HEIGHT_FACTOR))
            )

        skipped = ctx.report.skipped_count if ctx.report is not None else 0
        logger.info(f"✓ Widget heights doubled: migrated={rewritten} skipped={skipped}")


def get_migrations() -> List[Migration]:
    """
    Get all dashboard migrations in order.

    Returns:
        List of Migration instances
    """
    return [
        AddDashboardTemplates(),
        DoubleWidgetHeights(),
    ]
