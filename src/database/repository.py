"""Async repository for durable session records and login tokens."""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Callable, Optional

import aiosqlite

from ..config import LOGIN_TOKEN_TTL_SECONDS
from ..models.session import LoginStatus, Session

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SessionRepository:
    """Key-value session store with TTL, backed by SQLite.

    Rows carry a purge deadline; anything past it reads as absent and is
    deleted on access. Safe to share between processes (unlike browser
    handles, which only live in the process that launched them).
    """

    def __init__(self, db: aiosqlite.Connection, clock: Callable[[], float] = time.time):
        self._db = db
        self._clock = clock

    # ── Sessions ─────────────────────────────────────────────────────────────

    async def save(self, session: Session, ttl_seconds: Optional[int] = None):
        """Insert or replace a session. TTL defaults to the session's own expiry."""
        ttl = ttl_seconds if ttl_seconds is not None else session.seconds_remaining()
        purge_at = self._clock() + max(ttl, 0)
        await self._db.execute(
            """
            INSERT INTO sessions (
                session_id, email, cookies, created_at, expires_at,
                login_status, telegram_chat_id, purge_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                email = excluded.email,
                cookies = excluded.cookies,
                expires_at = excluded.expires_at,
                login_status = excluded.login_status,
                telegram_chat_id = excluded.telegram_chat_id,
                purge_at = excluded.purge_at
            """,
            (
                session.session_id,
                session.email,
                json.dumps(session.cookies),
                session.created_at.isoformat(),
                session.expires_at.isoformat(),
                session.login_status.value,
                session.telegram_chat_id,
                purge_at,
            ),
        )
        await self._db.commit()

    async def get(self, session_id: str) -> Optional[Session]:
        """Get a live session by ID, dropping it if it has expired."""
        async with self._db.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            data = dict(zip([d[0] for d in cursor.description], row))

        if data["purge_at"] <= self._clock():
            await self.delete(session_id)
            return None

        session = self._row_to_session(data)
        if session.is_expired:
            logger.info(f"Session {session_id} expired, removing it.")
            await self.delete(session_id)
            return None
        return session

    async def get_by_telegram_chat_id(self, telegram_chat_id: str) -> Optional[Session]:
        """Most recent live session created for a chat."""
        return await self._get_latest("telegram_chat_id", telegram_chat_id)

    async def get_latest_for_email(self, email: str) -> Optional[Session]:
        """Most recent live session for an email address."""
        return await self._get_latest("email", email)

    async def update(self, session_id: str, **changes) -> Optional[Session]:
        """Apply field changes to a stored session, keeping its remaining TTL."""
        existing = await self.get(session_id)
        if existing is None:
            return None
        updated = existing.model_copy(update=changes)
        await self.save(updated)
        return updated

    async def mark_logged_in(self, session_id: str, cookies: list[dict]) -> Optional[Session]:
        return await self.update(session_id, cookies=cookies, login_status=LoginStatus.LOGGED_IN)

    async def delete(self, session_id: str):
        """Delete a session and any login tokens pointing at it."""
        await self._db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        await self._db.execute("DELETE FROM login_tokens WHERE session_id = ?", (session_id,))
        await self._db.commit()

    # ── Login tokens ─────────────────────────────────────────────────────────

    async def save_login_token(
        self,
        token: str,
        session_id: str,
        ttl_seconds: int = LOGIN_TOKEN_TTL_SECONDS,
    ):
        await self._db.execute(
            "INSERT OR REPLACE INTO login_tokens (token, session_id, purge_at) VALUES (?, ?, ?)",
            (token, session_id, self._clock() + ttl_seconds),
        )
        await self._db.commit()

    async def get_session_id_for_token(self, token: str) -> Optional[str]:
        async with self._db.execute(
            "SELECT session_id, purge_at FROM login_tokens WHERE token = ?", (token,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        if row[1] <= self._clock():
            await self.delete_token(token)
            return None
        return row[0]

    async def delete_token(self, token: str):
        await self._db.execute("DELETE FROM login_tokens WHERE token = ?", (token,))
        await self._db.commit()

    # ── Maintenance ──────────────────────────────────────────────────────────

    async def purge_expired(self) -> int:
        """Remove every expired session and token. Returns the number of sessions removed."""
        now = self._clock()
        cursor = await self._db.execute("DELETE FROM sessions WHERE purge_at <= ?", (now,))
        removed = cursor.rowcount
        await self._db.execute("DELETE FROM login_tokens WHERE purge_at <= ?", (now,))
        await self._db.commit()
        if removed:
            logger.info(f"Purged {removed} expired session(s).")
        return removed

    async def _get_latest(self, column: str, value: str) -> Optional[Session]:
        async with self._db.execute(
            f"SELECT session_id FROM sessions WHERE {column} = ? AND purge_at > ? "
            "ORDER BY created_at DESC",
            (value, self._clock()),
        ) as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            session = await self.get(row[0])
            if session is not None:
                return session
        return None

    def _row_to_session(self, data: dict) -> Session:
        """Convert a database row to a Session model."""
        try:
            cookies = json.loads(data.get("cookies") or "[]")
        except json.JSONDecodeError:
            cookies = []
        return Session(
            session_id=data["session_id"],
            email=data["email"],
            cookies=cookies,
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            login_status=data.get("login_status") or LoginStatus.PENDING,
            telegram_chat_id=data.get("telegram_chat_id"),
        )
