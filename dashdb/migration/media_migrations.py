"""
Migrations for the local media library index.
"""

import sqlite3
import logging
from typing import List

from .base_migration import Migration, MigrationContext
from .schema_utils import table_exists, trigger_exists

logger = logging.getLogger(__name__)

FTS_TRIGGERS = ("media_library_ai", "media_library_ad", "media_library_au")


class AddMediaLibrary(Migration):
    """
    Index of media items pulled from media-server integrations.

    Adds the media_library table, per-instance sync status, and an FTS5
    index over titles, summaries and credits kept in sync by triggers.
    """

    version = 15
    name = "add_media_library"
    description = "Create media_library, library_sync_status and the media_library_fts index"
    schema_only = True

    def up(self, conn: sqlite3.Connection, ctx: MigrationContext):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS media_library (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                integration_instance_id TEXT NOT NULL,
                media_type TEXT NOT NULL
                    CHECK(media_type IN ('movie', 'show', 'season', 'episode', 'music', 'photo')),
                library_key TEXT,
                item_key TEXT NOT NULL,
                title TEXT NOT NULL,
                original_title TEXT,
                sort_title TEXT,
                year INTEGER,
                thumb TEXT,
                art TEXT,
                summary TEXT,
                genres TEXT,
                studio TEXT,
                director TEXT,
                actors TEXT,
                rating REAL,
                content_rating TEXT,
                duration INTEGER,
                added_at INTEGER,
                updated_at INTEGER,
                tmdb_id INTEGER,
                imdb_id TEXT,
                indexed_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(integration_instance_id, item_key)
            );
            CREATE INDEX IF NOT EXISTS idx_media_library_integration ON media_library(integration_instance_id);
            CREATE INDEX IF NOT EXISTS idx_media_library_type ON media_library(media_type);
            CREATE INDEX IF NOT EXISTS idx_media_library_title ON media_library(title);
            CREATE INDEX IF NOT EXISTS idx_media_library_year ON media_library(year);
            CREATE INDEX IF NOT EXISTS idx_media_library_tmdb ON media_library(tmdb_id);

            CREATE TABLE IF NOT EXISTS library_sync_status (
                integration_instance_id TEXT PRIMARY KEY,
                total_items INTEGER DEFAULT 0,
                indexed_items INTEGER DEFAULT 0,
                last_sync_started TEXT,
                last_sync_completed TEXT,
                sync_status TEXT DEFAULT 'idle'
                    CHECK(sync_status IN ('idle', 'syncing', 'error', 'completed')),
                error_message TEXT
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS media_library_fts USING fts5(
                title,
                original_title,
                summary,
                actors,
                director,
                content=media_library,
                content_rowid=id
            );

            CREATE TRIGGER IF NOT EXISTS media_library_ai AFTER INSERT ON media_library BEGIN
                INSERT INTO media_library_fts(rowid, title, original_title, summary, actors, director)
                VALUES (NEW.id, NEW.title, NEW.original_title, NEW.summary, NEW.actors, NEW.director);
            END;

            CREATE TRIGGER IF NOT EXISTS media_library_ad AFTER DELETE ON media_library BEGIN
                INSERT INTO media_library_fts(media_library_fts, rowid, title, original_title, summary, actors, director)
                VALUES ('delete', OLD.id, OLD.title, OLD.original_title, OLD.summary, OLD.actors, OLD.director);
            END;

            CREATE TRIGGER IF NOT EXISTS media_library_au AFTER UPDATE ON media_library BEGIN
                INSERT INTO media_library_fts(media_library_fts, rowid, title, original_title, summary, actors, director)
                VALUES ('delete', OLD.id, OLD.title, OLD.original_title, OLD.summary, OLD.actors, OLD.director);
                INSERT INTO media_library_fts(rowid, title, original_title, summary, actors, director)
                VALUES (NEW.id, NEW.title, NEW.original_title, NEW.summary, NEW.actors, NEW.director);
            END;
        """)

        logger.debug("Created media_library, library_sync_status, media_library_fts and sync triggers")

    def down(self, conn: sqlite3.Connection, ctx: MigrationContext):
        for trigger in FTS_TRIGGERS:
            conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")
        conn.execute("DROP TABLE IF EXISTS media_library_fts")
        conn.execute("DROP TABLE IF EXISTS library_sync_status")
        conn.execute("DROP TABLE IF EXISTS media_library")

    def verify(self, conn: sqlite3.Connection) -> bool:
        return (
            table_exists(conn, "media_library")
            and table_exists(conn, "media_library_fts")
            and all(trigger_exists(conn, trigger) for trigger in FTS_TRIGGERS)
        )


def get_migrations() -> List[Migration]:
    """
    Get all media migrations in order.

    Returns:
        List of Migration instances
    """
    return [
        AddMediaLibrary(),
    ]
