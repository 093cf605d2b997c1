"""Schema migration system for cortexmem.

Uses SQLite's built-in ``PRAGMA user_version`` to track schema versions.
Migrations are additive-only -- no destructive changes are ever applied.

Usage::

    from cortexmem.migrations import ensure_schema, ensure_fts

    conn = sqlite3.connect("memories.db")
    version = ensure_schema(conn)
    fts_available = ensure_fts(conn)
"""

from __future__ import annotations

import logging
import sqlite3
from typing import NamedTuple

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Migration definition
# ---------------------------------------------------------------------------


class Migration(NamedTuple):
    """A single schema migration step.

    Attributes:
        version: The target schema version after this migration.
        description: Human-readable description of the change.
        statements: SQL statements to execute.
    """

    version: int
    description: str
    statements: list[str]


# ---------------------------------------------------------------------------
# Full schema (for fresh installs)
# ---------------------------------------------------------------------------

_FULL_SCHEMA: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS memories (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id      TEXT,
        content         TEXT NOT NULL,
        type            TEXT NOT NULL
                        CHECK (type IN ('fact', 'decision', 'code', 'config', 'note')),
        source          TEXT NOT NULL,
        tags            TEXT,
        metadata        TEXT,
        embedding       BLOB,
        embedding_model TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_project_id ON memories (project_id);",
    "CREATE INDEX IF NOT EXISTS idx_memories_type ON memories (type);",
    "CREATE INDEX IF NOT EXISTS idx_memories_source ON memories (source);",
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories (created_at);",
    "CREATE INDEX IF NOT EXISTS idx_memories_project_type ON memories (project_id, type);",
]

# Keyword index over ``content``.  External-content FTS5 table kept in sync
# by triggers; the update triggers only fire when ``content`` changes.
_FTS_SCHEMA: list[str] = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
        content,
        content='memories',
        content_rowid='id'
    );
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
        INSERT INTO memories_fts(rowid, content) VALUES (new.id, new.content);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content)
        VALUES ('delete', old.id, old.content);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_bu BEFORE UPDATE ON memories
    WHEN old.content != new.content BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content)
        VALUES ('delete', old.id, old.content);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE ON memories
    WHEN old.content != new.content BEGIN
        INSERT INTO memories_fts(rowid, content) VALUES (new.id, new.content);
    END;
    """,
]

# ---------------------------------------------------------------------------
# Migration list (incremental upgrades)
# ---------------------------------------------------------------------------

MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        description="Initial schema",
        statements=[],
    ),
]

LATEST_VERSION: int = MIGRATIONS[-1].version


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Read the current schema version (``PRAGMA user_version``)."""
    cur = conn.execute("PRAGMA user_version")
    row = cur.fetchone()
    return row[0] if row else 0


def ensure_schema(conn: sqlite3.Connection) -> int:
    """Ensure the database schema is up to date.

    Fresh databases get the full schema stamped at :data:`LATEST_VERSION`.
    Existing databases only receive migrations newer than their
    ``user_version``.  Each migration runs inside a transaction; if one
    fails the version is not bumped and the next open retries it.

    Args:
        conn: An open SQLite connection.

    Returns:
        The schema version after all migrations have been applied.
    """
    current = get_schema_version(conn)

    if current > LATEST_VERSION:
        logger.warning(
            "Database schema version (%d) is newer than the library supports (%d). "
            "Skipping migrations. Consider upgrading cortexmem.",
            current,
            LATEST_VERSION,
        )
        return current

    if not _table_exists(conn, "memories"):
        logger.debug("Fresh database detected -- creating schema at version %d", LATEST_VERSION)
        for stmt in _FULL_SCHEMA:
            conn.execute(stmt)
        conn.execute(f"PRAGMA user_version = {LATEST_VERSION}")
        conn.commit()
        return LATEST_VERSION

    if current == 0:
        current = 1
        conn.execute(f"PRAGMA user_version = {current}")
        conn.commit()

    for migration in MIGRATIONS:
        if migration.version <= current:
            continue
        logger.info("Applying migration v%d: %s", migration.version, migration.description)
        try:
            for stmt in migration.statements:
                conn.execute(stmt)
            conn.execute(f"PRAGMA user_version = {migration.version}")
            conn.commit()
            current = migration.version
        except sqlite3.Error:
            conn.rollback()
            logger.exception("Migration v%d failed -- rolling back", migration.version)
            raise

    return current


def ensure_fts(conn: sqlite3.Connection) -> bool:
    """Create the FTS5 keyword index and its sync triggers.

    Returns:
        ``True`` if FTS5 is usable, ``False`` if this SQLite build lacks
        the extension (keyword search then falls back to ``LIKE``).
    """
    fts_existed = _table_exists(conn, "memories_fts")
    try:
        for stmt in _FTS_SCHEMA:
            conn.execute(stmt)
        if not fts_existed:
            # Index rows written before the FTS table existed.
            conn.execute("INSERT INTO memories_fts(memories_fts) VALUES ('rebuild')")
        conn.commit()
    except sqlite3.OperationalError as exc:
        # Typical message: "no such module: fts5"
        conn.rollback()
        logger.info("FTS5 not available, falling back to LIKE search: %s", exc)
        return False
    return True


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    """Check whether a table exists in the database."""
    cur = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cur.fetchone() is not None
