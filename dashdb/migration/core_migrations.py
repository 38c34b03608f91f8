"""
Migrations for the core account and settings tables.

- Initial schema (users, sessions, preferences, tabs, notifications,
  legacy integrations, system config, custom icons)
- Password-state flags on users
- Remediation of the placeholder credential given to proxy-auth accounts
"""

import sqlite3
import logging
from typing import List

from .base_migration import Migration, MigrationContext
from .schema_utils import add_column_if_absent, table_exists

logger = logging.getLogger(__name__)

# Never a valid bcrypt hash, so no password can ever verify against it
PASSWORD_SENTINEL = "!no-local-password"

CORE_TABLES = (
    "custom_icons",
    "system_config",
    "integrations",
    "notifications",
    "tab_groups",
    "user_preferences",
    "sessions",
    "users",
)


class InitialSchema(Migration):
    """Create the base tables of a fresh installation."""

    version = 1
    name = "initial_schema"
    description = "Create users, sessions, preferences, tabs, notifications, integrations, system config and icons"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        """Create base tables, indexes, seed config and timestamp triggers."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT UNIQUE NOT NULL,
                password TEXT NOT NULL,
                email TEXT,
                group_id TEXT NOT NULL DEFAULT 'user',
                is_setup_admin INTEGER DEFAULT 0,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                last_login INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);
            CREATE INDEX IF NOT EXISTS idx_users_group_id ON users(group_id);

            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                ip_address TEXT,
                user_agent TEXT,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                expires_at INTEGER NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at);

            CREATE TABLE IF NOT EXISTS user_preferences (
                user_id TEXT PRIMARY KEY,
                dashboard_config TEXT DEFAULT '{"widgets":[]}',
                tabs TEXT DEFAULT '[]',
                theme_config TEXT DEFAULT '{"mode":"system","primaryColor":"#3b82f6"}',
                sidebar_config TEXT DEFAULT '{"collapsed":false}',
                preferences TEXT DEFAULT '{}',
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS tab_groups (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                icon TEXT,
                tabs TEXT DEFAULT '[]',
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_tab_groups_user_id ON tab_groups(user_id);

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT,
                type TEXT DEFAULT 'info',
                read INTEGER DEFAULT 0,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id);
            CREATE INDEX IF NOT EXISTS idx_notifications_created_at ON notifications(created_at);

            CREATE TABLE IF NOT EXISTS integrations (
                service_name TEXT PRIMARY KEY,
                enabled INTEGER DEFAULT 0,
                url TEXT,
                api_key TEXT,
                settings TEXT DEFAULT '{}',
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
            );

            CREATE TABLE IF NOT EXISTS system_config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
            );

            CREATE TABLE IF NOT EXISTS custom_icons (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                file_path TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                uploaded_by TEXT,
                uploaded_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (uploaded_by) REFERENCES users(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_custom_icons_uploaded_by ON custom_icons(uploaded_by);

            CREATE TRIGGER IF NOT EXISTS update_user_preferences_timestamp
            AFTER UPDATE ON user_preferences
            BEGIN
                UPDATE user_preferences SET updated_at = strftime('%s', 'now') WHERE user_id = NEW.user_id;
            END;

            CREATE TRIGGER IF NOT EXISTS update_system_config_timestamp
            AFTER UPDATE ON system_config
            BEGIN
                UPDATE system_config SET updated_at = strftime('%s', 'now') WHERE key = NEW.key;
            END;
        """)

        # Seed rows are INSERT OR IGNORE so existing settings survive a re-run
        seeds = [
            ("groups", '{"admin":{"name":"Admin","permissions":["*"]},'
                       '"user":{"name":"User","permissions":["view_tabs","view_widgets"]}}'),
            ("appName", '"Dashboard"'),
            ("proxyAuth", '{"enabled":false,"headerName":"Remote-User","autoCreateUsers":false}'),
        ]
        conn.executemany(
            "INSERT OR IGNORE INTO system_config (key, value) VALUES (?, ?)", seeds
        )

        logger.debug(f"Initial schema created ({len(CORE_TABLES)} tables)")

    def down(self, conn: sqlite3.Connection, ctx: MigrationContext):
        """Drop the base tables (destroys all data)."""
        conn.execute("DROP TRIGGER IF EXISTS update_user_preferences_timestamp")
        conn.execute("DROP TRIGGER IF EXISTS update_system_config_timestamp")
        for table in CORE_TABLES:
            conn.execute(f"DROP TABLE IF EXISTS {table}")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return all(table_exists(conn, table) for table in CORE_TABLES)


class AddUserAuthFlags(Migration):
    """Track forced password resets and accounts without a local password."""

    version = 2
    name = "add_user_auth_flags"
    description = "Add require_password_reset and has_local_password to users"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        """Add each column only if it is missing."""
        added_reset = add_column_if_absent(
            conn, "users", "require_password_reset", "INTEGER NOT NULL DEFAULT 0"
        )
        added_local = add_column_if_absent(
            conn, "users", "has_local_password", "INTEGER NOT NULL DEFAULT 1"
        )

        if added_reset and added_local:
            logger.debug("Added require_password_reset and has_local_password")
        elif added_reset or added_local:
            existing = "has_local_password" if added_reset else "require_password_reset"
            logger.debug(f"Added one column, {existing} already existed")
        else:
            logger.debug("Both user auth columns already exist, nothing to do")


class RemediateProxyPlaceholderPasswords(Migration):
    """
    Invalidate the shared placeholder password of proxy-auth accounts.

    Accounts auto-created by reverse-proxy authentication were given a hash
    of a fixed, publicly known string, so anyone could log in to them
    directly. Their password is replaced with a sentinel that can never
    verify, and their sessions are revoked. Accounts with a real local
    password (has_local_password = 1) are never touched.
    """

    version = 14
    name = "remediate_proxy_placeholder_passwords"
    description = "Replace placeholder credentials of proxy-only accounts with an unusable sentinel"

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        cursor = conn.execute(
            "SELECT id FROM users WHERE has_local_password = 0 AND password != ?",
            (PASSWORD_SENTINEL,)
        )
        user_ids = [row[0] for row in cursor.fetchall()]

        if not user_ids:
            logger.debug("No proxy-only accounts need remediation")
            return

        sessions_revoked = 0
        with conn:
            for user_id in user_ids:
                conn.execute(
                    "UPDATE users SET password = ? WHERE id = ? AND has_local_password = 0",
                    (PASSWORD_SENTINEL, user_id)
                )
                deleted = conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
                sessions_revoked += deleted.rowcount

        if ctx.report is not None:
            ctx.report.count("users.remediated", len(user_ids))
            ctx.report.count("sessions.revoked", sessions_revoked)
        logger.info(
            f"✓ Remediated {len(user_ids)} proxy-only accounts, "
            f"revoked {sessions_revoked} sessions"
        )


def get_migrations() -> List[Migration]:
    """
    Get all core migrations in order.

    Returns:
        List of Migration instances
    """
    return [
        InitialSchema(),
        AddUserAuthFlags(),
        RemediateProxyPlaceholderPasswords(),
    ]
