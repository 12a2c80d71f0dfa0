"""SQLite database schema and initialization."""

from __future__ import annotations

import aiosqlite

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    cookies TEXT DEFAULT '[]',
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    login_status TEXT DEFAULT 'pending',
    telegram_chat_id TEXT,
    purge_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS login_tokens (
    token TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    purge_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_email ON sessions(email);
CREATE INDEX IF NOT EXISTS idx_sessions_telegram ON sessions(telegram_chat_id);
CREATE INDEX IF NOT EXISTS idx_sessions_purge ON sessions(purge_at);
CREATE INDEX IF NOT EXISTS idx_tokens_purge ON login_tokens(purge_at);
"""


async def initialize_db(db: aiosqlite.Connection):
    """Create tables and indexes if they don't exist."""
    await db.executescript(SCHEMA)
    await db.commit()
