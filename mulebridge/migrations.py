"""Versioned schema migrations for the download history database.

Each step is idempotent: it inspects the live schema before creating or
altering anything, so replaying a step against a database that already has
its changes is harmless. Steps run in ascending order and the stored version
is bumped after each one, so an interrupted upgrade resumes where it stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import MigrationError

log = logging.getLogger(__name__)

HISTORY_TABLE = "download_history"
VERSION_TABLE = "schema_version"


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up: Callable[[Connection], None]


def _columns(conn: Connection, table: str) -> set[str]:
    return {col["name"] for col in inspect(conn).get_columns(table)}


def _has_table(conn: Connection, table: str) -> bool:
    return inspect(conn).has_table(table)


def _add_column(conn: Connection, existing: set[str], name: str, ddl: str) -> None:
    if name not in existing:
        conn.execute(text(f"ALTER TABLE {HISTORY_TABLE} ADD COLUMN {name} {ddl}"))


def _v1_initial(conn: Connection) -> None:
    conn.execute(text(
        f"""
        CREATE TABLE IF NOT EXISTS {HISTORY_TABLE} (
            hash TEXT PRIMARY KEY,
            filename TEXT NOT NULL,
            size INTEGER,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            deleted_at TEXT,
            username TEXT
        )
        """
    ))
    conn.execute(text(f"CREATE INDEX IF NOT EXISTS idx_started_at ON {HISTORY_TABLE}(started_at)"))
    conn.execute(text(f"CREATE INDEX IF NOT EXISTS idx_completed_at ON {HISTORY_TABLE}(completed_at)"))
    _add_column(conn, _columns(conn, HISTORY_TABLE), "client_type", "TEXT DEFAULT 'amule'")
    conn.execute(text(f"CREATE INDEX IF NOT EXISTS idx_client_type ON {HISTORY_TABLE}(client_type)"))


def _v2_status(conn: Connection) -> None:
    existing = _columns(conn, HISTORY_TABLE)
    _add_column(conn, existing, "status", "TEXT DEFAULT 'downloading'")
    _add_column(conn, existing, "last_seen_at", "TEXT")
    # Backfill status for rows written before the column existed
    conn.execute(text(
        f"UPDATE {HISTORY_TABLE} SET status = 'deleted' "
        "WHERE deleted_at IS NOT NULL AND status != 'deleted'"
    ))
    conn.execute(text(
        f"UPDATE {HISTORY_TABLE} SET status = 'completed' "
        "WHERE completed_at IS NOT NULL AND deleted_at IS NULL AND status != 'completed'"
    ))
    conn.execute(text(
        f"UPDATE {HISTORY_TABLE} SET status = 'downloading' "
        "WHERE completed_at IS NULL AND deleted_at IS NULL"
    ))
    conn.execute(text(f"CREATE INDEX IF NOT EXISTS idx_status ON {HISTORY_TABLE}(status)"))


def _v3_transfer_stats(conn: Connection) -> None:
    existing = _columns(conn, HISTORY_TABLE)
    _add_column(conn, existing, "downloaded", "INTEGER DEFAULT 0")
    _add_column(conn, existing, "uploaded", "INTEGER DEFAULT 0")
    _add_column(conn, existing, "ratio", "REAL DEFAULT 0")
    _add_column(conn, existing, "tracker_domain", "TEXT")


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "initial schema with client_type", _v1_initial),
    Migration(2, "status and last_seen_at", _v2_status),
    Migration(3, "transfer stats", _v3_transfer_stats),
)

CURRENT_VERSION = MIGRATIONS[-1].version


def _ensure_version_table(conn: Connection) -> None:
    conn.execute(text(
        f"""
        CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL DEFAULT 0
        )
        """
    ))


def get_version(conn: Connection) -> int | None:
    row = conn.execute(text(f"SELECT version FROM {VERSION_TABLE} WHERE id = 1")).first()
    return row[0] if row else None


def set_version(conn: Connection, version: int) -> None:
    conn.execute(
        text(
            f"INSERT INTO {VERSION_TABLE} (id, version) VALUES (1, :version) "
            "ON CONFLICT(id) DO UPDATE SET version = excluded.version"
        ),
        {"version": version},
    )


def detect_existing_version(conn: Connection) -> int:
    """Infer the version of a database created before versioning existed."""
    if not _has_table(conn, HISTORY_TABLE):
        return 0
    return 1 if "client_type" in _columns(conn, HISTORY_TABLE) else 0


async def run_migrations(engine: AsyncEngine, migrations: tuple[Migration, ...] = MIGRATIONS) -> int:
    """
    Bring the database up to the latest version. Returns the final version.
    Raises MigrationError when any step fails; the caller must not continue.
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(_ensure_version_table)
            current = await conn.run_sync(get_version)
            if current is None:
                current = await conn.run_sync(detect_existing_version)
                await conn.run_sync(set_version, current)
                log.info("History: detected existing database at version %s", current)
    except SQLAlchemyError as e:
        raise MigrationError(0, str(e)) from e

    for migration in migrations:
        if migration.version <= current:
            continue
        log.info("History: running migration v%s -> v%s (%s)",
                 current, migration.version, migration.description)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(migration.up)
                await conn.run_sync(set_version, migration.version)
        except SQLAlchemyError as e:
            log.error("History: migration to v%s failed: %s", migration.version, e)
            raise MigrationError(migration.version, str(e)) from e
        current = migration.version
        log.info("History: migration to v%s completed", current)

    return current
