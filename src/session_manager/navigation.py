"""Drives Darwinbox from its home page to an empty "add expense" form."""

from __future__ import annotations

import asyncio
import logging
import sys

from playwright.async_api import Page

from ..constants import (
    CREATE_EXPENSE_CANDIDATES,
    DARWINBOX_HOME_URL,
    DEFAULT_TIMINGS,
    SELECTORS,
    SKIP_MANUAL_ENTRY_CANDIDATES,
    Timings,
)
from ..models.result import StepResult
from .locators import click_first_visible

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# (step name, selector) clicked in order once the home page shows the login marker.
FORM_PATH = (
    ("Reimbursements menu", SELECTORS["reimbursements_menu"]),
    ("CREATE button", SELECTORS["create_button"]),
    ("Request Reimbursement", SELECTORS["request_reimbursement"]),
    ("Create report", SELECTORS["create_report"]),
    ("+ Create Expense", SELECTORS["create_expense"]),
    ("Skip & Add Expenses Manually", SELECTORS["skip_manual_entry"]),
)

NOT_LOGGED_IN = "Not logged in to Darwinbox. Please log in again."


class NavigationDriver:
    def __init__(self, home_url: str = DARWINBOX_HOME_URL, timings: Timings = DEFAULT_TIMINGS):
        self.home_url = home_url
        self.timings = timings

    async def navigate_to_expense_form(self, page: Page) -> StepResult:
        """Home -> reimbursements -> new report -> new manual expense form.

        No step is retried here. A missing login marker or a failed step is
        fatal for the batch and names the step that failed.
        """
        t = self.timings
        logger.info("Step 1: Navigating to Darwinbox home...")
        try:
            await page.goto(self.home_url, wait_until="domcontentloaded", timeout=t.navigation_timeout_ms)
        except Exception as e:
            return StepResult.fatal(f"Step 1 (home page) failed: {e}")

        try:
            await page.wait_for_selector(
                SELECTORS["login_marker"], state="visible", timeout=t.login_marker_timeout_ms
            )
        except Exception:
            logger.warning("Login marker not found on home page.")
            return StepResult.fatal(NOT_LOGGED_IN)

        for number, (name, selector) in enumerate(FORM_PATH, start=2):
            logger.info(f"Step {number}: {name}...")
            try:
                await page.wait_for_selector(selector, state="visible", timeout=t.step_timeout_ms)
                await page.click(selector)
            except Exception as e:
                logger.warning(f"Step {number} ({name}) failed: {e}")
                return StepResult.fatal(f"Step {number} ({name}) failed: {e}")
            await asyncio.sleep(t.step_settle)

        step = len(FORM_PATH) + 2
        logger.info(f"Step {step}: Waiting for expense form...")
        try:
            await page.wait_for_selector(SELECTORS["expense_form"], timeout=t.form_timeout_ms)
        except Exception as e:
            return StepResult.fatal(f"Step {step} (expense form) failed: {e}")

        logger.info("Expense form ready.")
        return StepResult.success("Reached the expense form")

    async def open_next_expense(self, page: Page) -> StepResult:
        """Open another expense form inside the report already on screen.

        Re-navigating would throw away the open report, so any failure here
        is fatal for the rest of the batch.
        """
        t = self.timings
        if page.is_closed():
            return StepResult.fatal("Browser page was closed")

        try:
            await page.evaluate("() => window.scrollTo(0, 0)")
        except Exception as e:
            logger.debug(f"Could not scroll to top: {e}")

        try:
            clicked = await click_first_visible(
                page,
                CREATE_EXPENSE_CANDIDATES,
                t.candidate_timeout_ms,
                rounds=t.advance_attempts,
                round_delay=t.advance_settle,
            )
        except Exception as e:
            logger.warning(f'"+ Create Expense" click failed: {e}')
            return StepResult.fatal(f'Could not click "+ Create Expense": {e}')
        if clicked is None:
            return StepResult.fatal('Could not find the "+ Create Expense" button')
        logger.info(f'"+ Create Expense" clicked via {clicked}')
        await asyncio.sleep(t.step_settle)

        try:
            skipped = await click_first_visible(page, SKIP_MANUAL_ENTRY_CANDIDATES, t.candidate_timeout_ms)
        except Exception as e:
            logger.warning(f'"Skip & Add Expenses Manually" click failed: {e}')
            return StepResult.fatal(f'Could not click "Skip & Add Expenses Manually": {e}')
        if skipped is None:
            return StepResult.fatal('Could not find "Skip & Add Expenses Manually"')
        await asyncio.sleep(t.step_settle)

        try:
            await page.wait_for_selector(SELECTORS["expense_form"], timeout=t.form_timeout_ms)
        except Exception as e:
            return StepResult.fatal(f"Next expense form did not open: {e}")
        return StepResult.success("Next expense form open")
