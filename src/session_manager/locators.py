"""Shared element-resolution helpers for the Darwinbox page drivers."""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import Awaitable, Callable, Optional, Sequence

from playwright.async_api import Locator, Page

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

POLL_INTERVAL = 0.25


async def wait_until(
    predicate: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float = POLL_INTERVAL,
) -> bool:
    """Poll an async predicate until it returns True or timeout (seconds) passes.

    The predicate is always evaluated at least once. Exceptions count as False.
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            if await predicate():
                return True
        except Exception as e:
            logger.debug(f"wait_until predicate raised: {e}")
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(interval)


async def _is_visible(locator: Locator) -> bool:
    return await locator.count() > 0 and await locator.is_visible()


async def first_visible(
    page: Page,
    candidates: Sequence[str],
    timeout_ms: int,
    rounds: int = 1,
    round_delay: float = 0.0,
) -> Optional[tuple[str, Locator]]:
    """Resolve the first visible element from an ordered list of selectors.

    Candidates are tried most specific first. Each round gives every
    candidate a share of timeout_ms; rounds are separated by round_delay
    seconds so a slow re-render gets another chance.
    """
    per_candidate = max(timeout_ms / 1000 / max(len(candidates), 1), 0)
    for attempt in range(rounds):
        for selector in candidates:
            locator = page.locator(selector).first
            if await wait_until(lambda: _is_visible(locator), per_candidate):
                return selector, locator
        if attempt < rounds - 1:
            logger.info(f"No candidate visible (round {attempt + 1}/{rounds}), retrying...")
            await asyncio.sleep(round_delay)
    return None


async def click_first_visible(
    page: Page,
    candidates: Sequence[str],
    timeout_ms: int,
    rounds: int = 1,
    round_delay: float = 0.0,
) -> Optional[str]:
    """Click the first visible candidate. Returns the selector clicked, or None."""
    found = await first_visible(page, candidates, timeout_ms, rounds, round_delay)
    if found is None:
        return None
    selector, locator = found
    try:
        await locator.scroll_into_view_if_needed()
    except Exception as e:
        logger.debug(f"Could not scroll {selector} into view: {e}")
    await locator.click()
    return selector
