"""Camoufox browser contexts: one headed, persistent profile per session."""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from pathlib import Path
from typing import Optional

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import BrowserContext, Page

from ..config import BROWSER_HEADLESS, BROWSER_PROFILE_DIR, BROWSER_TIMEOUT
from ..constants import (
    DARWINBOX_HOME_URL,
    DARWINBOX_HOST,
    DEFAULT_TIMINGS,
    LOCK_ERROR_HINTS,
    PROFILE_LOCK_FILES,
    SELECTORS,
    Timings,
)

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class BrowserLaunchError(RuntimeError):
    """No usable browser could be obtained for a session."""


class BrowserHandle:
    """A live Camoufox context and its pages. Only valid in this process."""

    def __init__(self, session_id: str, context: BrowserContext, camoufox=None):
        self.session_id = session_id
        self.context = context
        self._camoufox = camoufox

    def open_pages(self) -> list[Page]:
        try:
            return [p for p in self.context.pages if not p.is_closed()]
        except Exception:
            return []

    @property
    def page(self) -> Optional[Page]:
        pages = self.open_pages()
        return pages[0] if pages else None

    async def get_page(self) -> Page:
        """The session's single reusable page, opening one if none is left."""
        page = self.page
        if page is None:
            page = await self.context.new_page()
            page.set_default_timeout(BROWSER_TIMEOUT)
        return page


class BrowserContextManager:
    """Creates, validates, and recreates per-session browser contexts.

    Handles live in a process-local map: a session must stay pinned to the
    process that launched its browser. Callers serialize work per session;
    nothing here locks.
    """

    def __init__(
        self,
        profile_root: Path = BROWSER_PROFILE_DIR,
        home_url: str = DARWINBOX_HOME_URL,
        headless: bool = BROWSER_HEADLESS,
        timings: Timings = DEFAULT_TIMINGS,
    ):
        self.profile_root = Path(profile_root)
        self.home_url = home_url
        self.headless = headless
        self.timings = timings
        self._handles: dict[str, BrowserHandle] = {}

    def get(self, session_id: str) -> Optional[BrowserHandle]:
        return self._handles.get(session_id)

    def profile_dir(self, session_id: str) -> Path:
        return self.profile_root / _UNSAFE_PATH_CHARS.sub("_", session_id)

    async def is_live(self, handle: Optional[BrowserHandle]) -> bool:
        """A context is live if it has an open page that still runs scripts."""
        if handle is None:
            return False
        page = handle.page
        if page is None:
            return False
        try:
            await asyncio.wait_for(
                page.evaluate("() => document.readyState"),
                timeout=self.timings.liveness_probe_timeout,
            )
            return True
        except Exception as e:
            logger.warning(f"Browser for session {handle.session_id} is unresponsive: {e}")
            return False

    async def is_session_live(self, session_id: str) -> bool:
        return await self.is_live(self.get(session_id))

    async def ensure_context(
        self,
        session_id: str,
        cookies: Optional[list[dict]] = None,
    ) -> BrowserHandle:
        """Return a live handle for the session, recreating it if it died.

        Raises:
            BrowserLaunchError: if every launch attempt failed.
        """
        handle = self.get(session_id)
        if handle is not None:
            if await self.is_live(handle):
                if cookies:
                    await self.restore_cookies(handle, cookies)
                return handle
            logger.info(f"Browser context for session {session_id} is dead, recreating it.")
            await self.close(handle)
            await asyncio.sleep(self.timings.dead_context_settle)

        handle = await self._launch(session_id)
        self._handles[session_id] = handle
        if cookies:
            await self.restore_cookies(handle, cookies)
        return handle

    async def restore_cookies(self, handle: BrowserHandle, cookies: list[dict]) -> bool:
        """Inject cookies unless the context already holds the same number.

        Returns True if cookies were written.
        """
        if not cookies:
            return False
        try:
            existing = await handle.context.cookies()
        except Exception as e:
            logger.warning(f"Could not read cookies for session {handle.session_id}: {e}")
            existing = []
        if len(existing) == len(cookies):
            logger.info(f"Session {handle.session_id} already has {len(existing)} cookies, skipping restore.")
            return False
        await handle.context.add_cookies(cookies)
        logger.info(f"Restored {len(cookies)} cookies into session {handle.session_id}.")
        return True

    async def check_login(self, handle: BrowserHandle) -> dict:
        """Look for the post-login marker on the session's page.

        Returns:
            dict with keys: logged_in, cookies, message
        """
        page = await handle.get_page()
        try:
            if DARWINBOX_HOST in (page.url or ""):
                await page.reload(
                    wait_until="domcontentloaded",
                    timeout=self.timings.navigation_timeout_ms,
                )
            else:
                await page.goto(
                    self.home_url,
                    wait_until="domcontentloaded",
                    timeout=self.timings.navigation_timeout_ms,
                )
        except Exception as e:
            logger.warning(f"Navigation during login check failed: {e}")

        try:
            await page.wait_for_selector(
                SELECTORS["login_marker"],
                state="visible",
                timeout=self.timings.login_marker_timeout_ms,
            )
        except Exception:
            return {
                "logged_in": False,
                "cookies": [],
                "message": "Not logged in yet. Please complete login in the browser window.",
            }

        cookies = await handle.context.cookies()
        logger.info(f"Login confirmed for session {handle.session_id} ({len(cookies)} cookies).")
        return {"logged_in": True, "cookies": cookies, "message": "Logged in to Darwinbox."}

    async def close(self, handle: BrowserHandle):
        """Close a context, ignoring errors from an already-dead browser."""
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]
        try:
            await handle.context.close()
        except Exception as e:
            logger.warning(f"Error closing context for session {handle.session_id}: {e}")
        try:
            if handle._camoufox is not None:
                await handle._camoufox.__aexit__(None, None, None)
        except Exception as e:
            logger.warning(f"Error closing camoufox for session {handle.session_id}: {e}")
        finally:
            handle._camoufox = None

    async def close_session(self, session_id: str) -> bool:
        handle = self.get(session_id)
        if handle is None:
            return False
        await self.close(handle)
        logger.info(f"Browser for session {session_id} closed.")
        return True

    async def close_all(self):
        for handle in list(self._handles.values()):
            await self.close(handle)

    # ── Launch ───────────────────────────────────────────────────────────────

    def _remove_profile_locks(self, profile_dir: Path) -> list[str]:
        removed = []
        for name in PROFILE_LOCK_FILES:
            path = profile_dir / name
            # parent.lock may be a dangling symlink, which exists() misses.
            if path.exists() or path.is_symlink():
                try:
                    path.unlink()
                    removed.append(name)
                except OSError as e:
                    logger.warning(f"Could not remove stale profile lock {path}: {e}")
        if removed:
            logger.info(f"Removed stale profile locks: {', '.join(removed)}")
        return removed

    async def _launch(self, session_id: str) -> BrowserHandle:
        profile_dir = self.profile_dir(session_id)
        profile_dir.mkdir(parents=True, exist_ok=True)
        self._remove_profile_locks(profile_dir)

        attempts = self.timings.launch_attempts
        context: Optional[BrowserContext] = None
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            camoufox = AsyncCamoufox(
                persistent_context=True,
                user_data_dir=str(profile_dir),
                headless=self.headless,
                humanize=True,
                i_know_what_im_doing=True,
                config={"forceScopeAccess": True},
                disable_coop=True,
            )
            try:
                logger.info(
                    f"Launching Camoufox for session {session_id} "
                    f"(attempt {attempt}/{attempts}, headless={self.headless})..."
                )
                context = await camoufox.__aenter__()
                break
            except Exception as e:
                last_error = e
                lock_problem = any(hint in str(e) for hint in LOCK_ERROR_HINTS)
                logger.warning(f"Launch attempt {attempt} failed: {e}")
                if attempt == attempts:
                    break
                if lock_problem:
                    self._remove_profile_locks(profile_dir)
                    await asyncio.sleep(self.timings.lock_backoff)
                else:
                    await asyncio.sleep(self.timings.launch_backoff * attempt)

        if context is None:
            logger.error(f"Could not launch browser for session {session_id}: {last_error}")
            raise BrowserLaunchError(
                f"Failed to launch browser after {attempts} attempts: {last_error}"
            )

        handle = BrowserHandle(session_id, context, camoufox)
        await asyncio.sleep(self.timings.post_launch_settle)
        await self._navigate_home(handle)
        return handle

    async def _navigate_home(self, handle: BrowserHandle):
        """Load the home page straight away; an idle headed window closes itself."""
        attempts = self.timings.home_navigation_attempts
        for attempt in range(1, attempts + 1):
            try:
                page = await handle.get_page()
                await page.goto(
                    self.home_url,
                    wait_until="domcontentloaded",
                    timeout=self.timings.navigation_timeout_ms,
                )
                logger.info(f"Session {handle.session_id} browser at {page.url}")
                return
            except Exception as e:
                logger.warning(f"Home navigation attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.timings.home_navigation_backoff)

        if handle.open_pages():
            logger.warning("Home navigation failed but the browser is still open; continuing.")
            return

        await self.close(handle)
        raise BrowserLaunchError("Browser closed itself before reaching the home page.")
