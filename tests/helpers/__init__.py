"""Playwright fakes shared by the unit tests.

Pages, locators and contexts are MagicMock objects whose async methods are
AsyncMocks, so no real browser is ever started.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

LOCATOR_ASYNC_METHODS = (
    "click",
    "scroll_into_view_if_needed",
    "fill",
    "press_sequentially",
    "evaluate",
    "set_input_files",
    "wait_for",
    "inner_html",
)

PAGE_ASYNC_METHODS = (
    "goto",
    "reload",
    "wait_for_selector",
    "wait_for_load_state",
    "click",
)


def make_locator(count: int = 1, visible: bool = True) -> MagicMock:
    locator = MagicMock()
    locator.first = locator
    locator.count = AsyncMock(return_value=count)
    locator.is_visible = AsyncMock(return_value=visible)
    for name in LOCATOR_ASYNC_METHODS:
        setattr(locator, name, AsyncMock())
    return locator


def make_page(default_count: int = 1, default_visible: bool = True, url: str = "about:blank") -> MagicMock:
    """A fake Page. ``page.locators`` maps selector -> locator, created on first use."""
    page = MagicMock()
    page.url = url
    page.is_closed = MagicMock(return_value=False)
    for name in PAGE_ASYNC_METHODS:
        setattr(page, name, AsyncMock())
    page.evaluate = AsyncMock(return_value=True)
    page.locators = {}

    def locator(selector: str):
        if selector not in page.locators:
            page.locators[selector] = make_locator(default_count, default_visible)
        return page.locators[selector]

    page.locator = MagicMock(side_effect=locator)
    page.set_default_timeout = MagicMock()
    return page


def make_context(pages: list | None = None, cookies: list | None = None) -> MagicMock:
    context = MagicMock()
    context.pages = pages if pages is not None else [make_page()]
    context.cookies = AsyncMock(return_value=cookies or [])
    context.add_cookies = AsyncMock()
    context.new_page = AsyncMock(side_effect=lambda: make_page())
    context.close = AsyncMock()
    return context


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
