"""Click the expense form's save button and wait for the save to land."""

from __future__ import annotations

import asyncio
import logging
import sys

from playwright.async_api import Page

from ..constants import DEFAULT_TIMINGS, SAVE_BUTTON_CANDIDATES, Timings
from ..models.result import StepResult
from .locators import click_first_visible

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SaveController:
    def __init__(self, timings: Timings = DEFAULT_TIMINGS):
        self.timings = timings

    async def submit(self, page: Page) -> StepResult:
        """Save the current expense. A missing or unclickable button fails the record."""
        try:
            clicked = await click_first_visible(
                page, SAVE_BUTTON_CANDIDATES, self.timings.candidate_timeout_ms
            )
        except Exception as e:
            logger.warning(f"Save click failed: {e}")
            return StepResult.record_failed(f"Could not click Save: {e}")
        if clicked is None:
            logger.warning("No Save button found.")
            return StepResult.record_failed("Save button not found")

        logger.info(f"Save clicked via {clicked}")
        await asyncio.sleep(self.timings.save_settle)
        try:
            await page.wait_for_load_state(
                "networkidle", timeout=self.timings.save_network_idle_timeout_ms
            )
        except Exception:
            logger.debug("Network did not go idle after save; continuing.")
        return StepResult.success("Expense saved")
