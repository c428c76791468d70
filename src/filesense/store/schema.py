"""Schema definition and versioned migrations for the index database."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

CURRENT_SCHEMA_VERSION = 2


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="indexed files table",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS indexed_files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                file_type INTEGER NOT NULL DEFAULT 0,
                byte_size INTEGER NOT NULL DEFAULT 0,
                modified_at INTEGER NOT NULL DEFAULT 0,
                indexed_at INTEGER NOT NULL DEFAULT 0,
                embedding BLOB
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_path ON indexed_files(path)",
            """
            CREATE INDEX IF NOT EXISTS idx_modified
                ON indexed_files(modified_at)
            """,
        ),
    ),
    Migration(
        version=2,
        description="content hash column",
        statements=(
            "ALTER TABLE indexed_files ADD COLUMN content_hash BLOB",
            """
            CREATE INDEX IF NOT EXISTS idx_content_hash
                ON indexed_files(content_hash)
            """,
        ),
    ),
)


def _is_tolerated(statement: str, exc: sqlite3.OperationalError) -> bool:
    # an ALTER that already ran before a crash fails with "duplicate column"
    return statement.lstrip().upper().startswith(
        "ALTER"
    ) and "duplicate column" in str(exc)


def read_version(conn: sqlite3.Connection) -> int:
    row = conn.execute(
        "SELECT name FROM sqlite_master "
        "WHERE type = 'table' AND name = 'schema_version'"
    ).fetchone()
    if row is None:
        return 0
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def migrate(
    conn: sqlite3.Connection,
    migrations: tuple[Migration, ...] = MIGRATIONS,
    target: int = CURRENT_SCHEMA_VERSION,
) -> int:
    """Bring the database up to ``target`` inside one transaction.

    The connection must be in autocommit mode (``isolation_level=None``).
    If any step fails the whole migration rolls back and the previous
    version stays intact.

    Returns:
        The schema version after migrating.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(version INTEGER PRIMARY KEY)"
        )
        current = read_version(conn)
        if current > target:
            raise sqlite3.DatabaseError(
                f"schema version {current} is newer than supported "
                f"version {target}"
            )

        applied = current
        for migration in sorted(migrations, key=lambda m: m.version):
            if migration.version <= current or migration.version > target:
                continue
            logger.debug(
                "applying migration %d (%s)",
                migration.version,
                migration.description,
            )
            for statement in migration.statements:
                try:
                    conn.execute(statement)
                except sqlite3.OperationalError as e:
                    if not _is_tolerated(statement, e):
                        raise
                    logger.debug("migration step already applied: %s", e)
            applied = migration.version

        if applied != current:
            conn.execute("DELETE FROM schema_version")
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (applied,)
            )
        conn.execute("COMMIT")
    except BaseException:
        conn.execute("ROLLBACK")
        raise

    if applied != current:
        logger.info("migrated schema from v%d to v%d", current, applied)
    return applied
