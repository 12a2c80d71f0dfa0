"""Unit tests for BrowserContextManager.

AsyncCamoufox is patched out; no real browser is launched.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.constants import DARWINBOX_HOME_URL, SELECTORS
from src.session_manager.browser import BrowserContextManager, BrowserLaunchError

from tests.helpers import make_context, make_page


@pytest.fixture()
def context():
    return make_context(cookies=[{"name": "sid", "value": "1"}])


@pytest.fixture()
def mock_camoufox(context):
    with patch("src.session_manager.browser.AsyncCamoufox") as cls:
        instance = cls.return_value
        instance.__aenter__ = AsyncMock(return_value=context)
        instance.__aexit__ = AsyncMock(return_value=None)
        yield cls


@pytest.fixture()
def manager(tmp_path, fast_timings):
    return BrowserContextManager(profile_root=tmp_path / "profiles", timings=fast_timings)


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------

class TestLaunch:
    async def test_launch_uses_persistent_headed_profile(self, manager, mock_camoufox, tmp_path):
        handle = await manager.ensure_context("sess-1")

        kwargs = mock_camoufox.call_args.kwargs
        assert kwargs["persistent_context"] is True
        assert kwargs["headless"] is False
        assert kwargs["user_data_dir"] == str(tmp_path / "profiles" / "sess-1")
        assert manager.get("sess-1") is handle

    async def test_navigates_home_right_after_launch(self, manager, mock_camoufox, context):
        await manager.ensure_context("sess-1")
        context.pages[0].goto.assert_awaited()
        assert context.pages[0].goto.await_args.args[0] == DARWINBOX_HOME_URL

    async def test_stale_profile_locks_removed(self, manager, mock_camoufox):
        profile = manager.profile_dir("sess-1")
        profile.mkdir(parents=True)
        for name in ("lock", "parent.lock", ".parentlock"):
            (profile / name).write_text("")
        (profile / "prefs.js").write_text("")

        await manager.ensure_context("sess-1")

        assert sorted(p.name for p in profile.iterdir()) == ["prefs.js"]

    async def test_retries_then_succeeds(self, manager, mock_camoufox, context):
        mock_camoufox.return_value.__aenter__ = AsyncMock(
            side_effect=[RuntimeError("profile already in use"), context]
        )
        handle = await manager.ensure_context("sess-1")
        assert handle.context is context
        assert mock_camoufox.call_count == 2

    async def test_gives_up_after_three_attempts(self, manager, mock_camoufox):
        mock_camoufox.return_value.__aenter__ = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(BrowserLaunchError):
            await manager.ensure_context("sess-1")
        assert mock_camoufox.call_count == 3
        assert manager.get("sess-1") is None

    async def test_failed_home_navigation_is_fine_while_pages_open(self, manager, mock_camoufox, context):
        context.pages[0].goto = AsyncMock(side_effect=RuntimeError("timeout"))
        handle = await manager.ensure_context("sess-1")
        assert handle is manager.get("sess-1")
        assert context.pages[0].goto.await_count == manager.timings.home_navigation_attempts

    async def test_browser_that_closed_itself_is_fatal(self, manager, mock_camoufox, context):
        page = context.pages[0]
        page.goto = AsyncMock(side_effect=RuntimeError("closed"))
        page.is_closed.return_value = True
        context.new_page = AsyncMock(side_effect=RuntimeError("closed"))

        with pytest.raises(BrowserLaunchError):
            await manager.ensure_context("sess-1")
        context.close.assert_awaited()


# ---------------------------------------------------------------------------
# Liveness and recreation
# ---------------------------------------------------------------------------

class TestLiveness:
    async def test_live_handle_is_reused(self, manager, mock_camoufox):
        first = await manager.ensure_context("sess-1")
        second = await manager.ensure_context("sess-1")
        assert first is second
        assert mock_camoufox.call_count == 1

    async def test_context_without_pages_is_dead(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")
        context.pages = []
        assert not await manager.is_live(handle)

    async def test_unresponsive_page_is_dead(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        context.pages[0].evaluate = AsyncMock(side_effect=hang)
        manager.timings = replace(manager.timings, liveness_probe_timeout=0.05)
        assert not await manager.is_live(handle)

    async def test_dead_handle_closed_before_recreate(self, manager, mock_camoufox, context):
        old = await manager.ensure_context("sess-1")
        context.pages[0].evaluate = AsyncMock(side_effect=RuntimeError("Target closed"))

        fresh_context = make_context()
        mock_camoufox.return_value.__aenter__ = AsyncMock(return_value=fresh_context)
        new = await manager.ensure_context("sess-1")

        assert new is not old
        assert new.context is fresh_context
        context.close.assert_awaited()
        mock_camoufox.return_value.__aexit__.assert_awaited()
        assert manager.get("sess-1") is new

    async def test_close_ignores_errors(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")
        context.close = AsyncMock(side_effect=RuntimeError("already gone"))
        await manager.close(handle)
        assert manager.get("sess-1") is None

    async def test_close_session(self, manager, mock_camoufox):
        await manager.ensure_context("sess-1")
        assert await manager.close_session("sess-1")
        assert not await manager.close_session("sess-1")


# ---------------------------------------------------------------------------
# Cookies and login
# ---------------------------------------------------------------------------

class TestCookies:
    async def test_cookies_injected_on_new_context(self, manager, mock_camoufox, context):
        context.cookies = AsyncMock(return_value=[])
        cookies = [{"name": "a", "value": "1"}, {"name": "b", "value": "2"}]
        await manager.ensure_context("sess-1", cookies)
        context.add_cookies.assert_awaited_once_with(cookies)

    async def test_same_cookie_count_skips_injection(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")
        written = await manager.restore_cookies(handle, [{"name": "other", "value": "x"}])
        assert written is False
        context.add_cookies.assert_not_awaited()

    async def test_empty_cookie_list_is_a_no_op(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")
        assert await manager.restore_cookies(handle, []) is False
        context.cookies.assert_not_awaited()


class TestCheckLogin:
    async def test_marker_present_returns_cookies(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")
        result = await manager.check_login(handle)

        assert result["logged_in"] is True
        assert result["cookies"] == [{"name": "sid", "value": "1"}]
        selector = context.pages[0].wait_for_selector.await_args.args[0]
        assert selector == SELECTORS["login_marker"]

    async def test_reloads_when_already_on_darwinbox(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")
        page = context.pages[0]
        page.url = "https://zepto.darwinbox.in/dashboard"
        page.goto.reset_mock()

        await manager.check_login(handle)

        page.reload.assert_awaited()
        page.goto.assert_not_awaited()

    async def test_missing_marker_means_not_logged_in(self, manager, mock_camoufox, context):
        handle = await manager.ensure_context("sess-1")
        context.pages[0].wait_for_selector = AsyncMock(side_effect=TimeoutError("no marker"))

        result = await manager.check_login(handle)

        assert result["logged_in"] is False
        assert result["cookies"] == []


def test_profile_dir_is_filesystem_safe(tmp_path):
    manager = BrowserContextManager(profile_root=tmp_path)
    assert manager.profile_dir("../evil/id").parent == tmp_path


def test_page_property_skips_closed_pages():
    closed = make_page()
    closed.is_closed.return_value = True
    open_page = make_page()
    context = MagicMock()
    context.pages = [closed, open_page]

    from src.session_manager.browser import BrowserHandle

    assert BrowserHandle("s", context).page is open_page
