"""Database schema creation and versioning.

All CREATE TABLE statements for the persistent store and the local cache.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("bitacora.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Folders ─────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS folders (
    id          TEXT NOT NULL,
    owner_id    TEXT NOT NULL,
    name        TEXT NOT NULL,
    color       TEXT,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL,
    PRIMARY KEY (owner_id, id)
);

-- ── 2. Books ───────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS books (
    id          TEXT NOT NULL,
    owner_id    TEXT NOT NULL,
    name        TEXT NOT NULL,
    description TEXT,
    context     TEXT DEFAULT '',
    folder_id   TEXT,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL,
    PRIMARY KEY (owner_id, id)
);

CREATE INDEX IF NOT EXISTS idx_books_folder ON books(owner_id, folder_id);

-- ── 3. Entries ─────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS entries (
    id             TEXT PRIMARY KEY,
    owner_id       TEXT NOT NULL,
    original_text  TEXT NOT NULL,
    book_id        TEXT NOT NULL,
    type           TEXT NOT NULL,
    summary        TEXT NOT NULL,
    status         TEXT NOT NULL DEFAULT 'COMPLETED',
    created_at     INTEGER NOT NULL,
    updated_at     INTEGER NOT NULL,
    FOREIGN KEY (owner_id, book_id) REFERENCES books(owner_id, id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_entries_owner ON entries(owner_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_entries_book  ON entries(owner_id, book_id);

-- ── 4. Tasks (embedded in entries) ─────────────────────────────────
CREATE TABLE IF NOT EXISTS tasks (
    id               TEXT PRIMARY KEY,
    entry_id         TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    position         INTEGER NOT NULL DEFAULT 0,
    description      TEXT NOT NULL,
    assignee         TEXT,
    due_date         TEXT,
    priority         TEXT DEFAULT 'MEDIUM',
    is_done          INTEGER NOT NULL DEFAULT 0,
    completion_notes TEXT,
    created_at       INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_entry ON tasks(entry_id, position);

-- ── 5. Entities (annotations) ──────────────────────────────────────
CREATE TABLE IF NOT EXISTS entities (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id  TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    name      TEXT NOT NULL,
    type      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entities_entry ON entities(entry_id);

-- ── 6. Local cache key/value storage ───────────────────────────────
CREATE TABLE IF NOT EXISTS cache_entries (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (datetime('now'))
);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.Error:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    # v2: entries remember a reference to the attachment used during analysis.
    await _ensure_column(db, "entries", "attachment_ref", "TEXT")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
