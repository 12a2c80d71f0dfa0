"""Pydantic models for session state."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class LoginStatus(str, Enum):
    PENDING = "pending"
    LOGGED_IN = "logged_in"
    EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """Durable identity and credentials for one Darwinbox user.

    The live browser is owned by the BrowserContextManager and never stored
    here; only cookies, email and expiry survive a restart.
    """

    session_id: str
    email: str
    cookies: list[dict] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    login_status: LoginStatus = LoginStatus.PENDING
    telegram_chat_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        email: str,
        ttl_seconds: int,
        telegram_chat_id: Optional[str] = None,
    ) -> Session:
        now = utcnow()
        return cls(
            session_id=session_id,
            email=email,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            telegram_chat_id=telegram_chat_id,
        )

    @property
    def is_expired(self) -> bool:
        return utcnow() >= self.expires_at

    def seconds_remaining(self) -> int:
        return max(0, int((self.expires_at - utcnow()).total_seconds()))

    def is_logged_in(self, browser_live: bool) -> bool:
        """Cookies alone never mean an active session; the browser must be open too."""
        return bool(self.cookies) and browser_live


class SessionStatus(BaseModel):
    """Login state reported to callers."""

    session_id: Optional[str] = None
    email: str = ""
    logged_in: bool = False
    browser_open: bool = False
    login_status: LoginStatus = LoginStatus.PENDING
    cookie_count: int = 0
    message: str = ""
