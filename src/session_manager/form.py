"""Fill the Darwinbox "add expense" form for one expense record."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..constants import DEFAULT_TIMINGS, SELECTORS, Timings, datepicker_day, dropdown_option
from ..models.expense import ExpenseRecord
from ..models.result import StepResult
from .parser import clean_catalogue, parse_form_dropdowns

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# Semantic UI only opens a dropdown when its wrapper is clicked, not the search input.
OPEN_DROPDOWN_JS = """
(index) => {
    const inputs = document.querySelectorAll('#addExpenses input.search');
    let element = inputs[index] || null;
    while (element) {
        if (element.classList.contains('ui') && element.classList.contains('dropdown')) {
            element.click();
            return true;
        }
        element = element.parentElement;
    }
    return false;
}
"""

# The datepicker ignores typed input; its selects must be set and a change fired.
SET_DATEPICKER_SELECT_JS = """
([selector, value]) => {
    const select = document.querySelector(selector);
    if (!select) return false;
    select.value = String(value);
    select.dispatchEvent(new Event('change', { bubbles: true }));
    return true;
}
"""

CLICK_DAY_JS = """
({ day, month, year }) => {
    const cells = document.querySelectorAll('td[data-handler="selectDay"]');
    for (const cell of cells) {
        const link = cell.querySelector('a.ui-state-default');
        if (link
            && cell.getAttribute('data-month') === String(month)
            && cell.getAttribute('data-year') === String(year)
            && link.getAttribute('data-date') === String(day)) {
            link.click();
            return true;
        }
    }
    return false;
}
"""

SET_HIDDEN_VALUE_JS = """
(el, value) => {
    el.value = value;
    el.dispatchEvent(new Event('change', { bubbles: true }));
}
"""

FIRE_INPUT_EVENTS_JS = """
(el) => {
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
}
"""


class FormFillEngine:
    """Selects dropdowns, fills fields and attaches the receipt.

    A single field failing only adds a warning. Dropdown selection and the
    receipt upload are the steps that can fail a record.
    """

    def __init__(self, timings: Timings = DEFAULT_TIMINGS):
        self.timings = timings

    # ── Dropdowns ────────────────────────────────────────────────────────────

    async def _open_dropdown(self, page: Page, index: int):
        if not await page.evaluate(OPEN_DROPDOWN_JS, index):
            raise RuntimeError(f"Dropdown #{index + 1} not found in the expense form")
        await asyncio.sleep(self.timings.dropdown_open_settle)

    async def _choose_option(self, page: Page, value: str):
        option = page.locator(dropdown_option(value)).first
        await option.wait_for(state="attached", timeout=self.timings.option_timeout_ms)
        await option.evaluate("(el) => el.click()")

    async def select_category_and_expense_type(
        self,
        page: Page,
        category_id: str,
        expense_type_id: str,
    ) -> StepResult:
        """Pick the category, wait for the dependent list to reload, then pick the type."""
        try:
            logger.info(f"Selecting category {category_id}...")
            await self._open_dropdown(page, 0)
            await self._choose_option(page, category_id)
            await asyncio.sleep(self.timings.category_repopulate_settle)

            logger.info(f"Selecting expense type {expense_type_id}...")
            await self._open_dropdown(page, 1)
            await self._choose_option(page, expense_type_id)
            # The rest of the form is rebuilt for the chosen expense type.
            await asyncio.sleep(self.timings.expense_type_settle)
        except PlaywrightTimeoutError as e:
            # Option not rendered yet; the dependent list may still be loading.
            logger.warning(f"Dropdown option did not appear: {e}")
            return StepResult.retryable(f"Dropdown option did not appear: {e}")
        except Exception as e:
            logger.warning(f"Category selection failed: {e}")
            return StepResult.record_failed(f"Error selecting category/expense type: {e}")
        return StepResult.success("Category and expense type selected")

    # ── Fields ───────────────────────────────────────────────────────────────

    async def _visible(self, page: Page, selector: str):
        locator = page.locator(selector).first
        await locator.wait_for(state="visible", timeout=self.timings.field_timeout_ms)
        await locator.scroll_into_view_if_needed()
        return locator

    async def _fill_text(self, page: Page, selector: str, value: str):
        locator = await self._visible(page, selector)
        await locator.fill(value)
        await asyncio.sleep(self.timings.field_settle)

    async def _fill_amount(self, page: Page, record: ExpenseRecord):
        amount = record.amount_text()
        locator = await self._visible(page, SELECTORS["amount"])
        await locator.click()
        await locator.fill("")
        await locator.press_sequentially(amount, delay=self.timings.type_delay_ms)
        await locator.evaluate(FIRE_INPUT_EVENTS_JS)

        hidden = page.locator(SELECTORS["amount_hidden"]).first
        if await hidden.count() > 0:
            await hidden.evaluate(SET_HIDDEN_VALUE_JS, amount)
        await asyncio.sleep(self.timings.field_settle)

    async def _fill_merchant(self, page: Page, record: ExpenseRecord):
        await self._fill_text(page, SELECTORS["merchant"], record.merchant)

    async def _fill_invoice_number(self, page: Page, record: ExpenseRecord):
        if record.invoice_number:
            await self._fill_text(page, SELECTORS["invoice_number"], record.invoice_number)

    async def _fill_description(self, page: Page, record: ExpenseRecord):
        await self._fill_text(page, SELECTORS["description"], record.description)

    async def _select_date(self, page: Page, record: ExpenseRecord):
        t = self.timings
        day, month_index, year = record.picker_date()
        logger.info(f"Selecting date {record.date.isoformat()} (picker month index {month_index})")

        date_input = await self._visible(page, SELECTORS["date"])
        await date_input.click(force=True)
        await page.wait_for_selector(SELECTORS["datepicker"], timeout=t.datepicker_timeout_ms)

        await page.evaluate(SET_DATEPICKER_SELECT_JS, [SELECTORS["datepicker_year"], year])
        await page.evaluate(SET_DATEPICKER_SELECT_JS, [SELECTORS["datepicker_month"], month_index])
        await asyncio.sleep(t.datepicker_rerender_settle)
        await page.wait_for_selector(SELECTORS["datepicker_day_cell"], timeout=t.day_grid_timeout_ms)

        if await page.evaluate(CLICK_DAY_JS, {"day": day, "month": month_index, "year": year}):
            return

        logger.info("Day cell not clicked via script, trying locator...")
        link = page.locator(datepicker_day(day, month_index, year)).first
        if await link.count() == 0:
            raise RuntimeError(f"Day {record.date.isoformat()} not shown in the calendar")
        await link.click()

    async def _upload_file(self, page: Page, file_path: Path) -> StepResult:
        path = Path(file_path)
        if not path.exists():
            return StepResult.record_failed(f"Receipt file not found: {path}")

        file_input = page.locator(SELECTORS["file_input"]).first
        try:
            if await file_input.count() == 0:
                return StepResult.record_failed("File upload input not found")
            await file_input.set_input_files(str(path))
        except Exception as e:
            logger.warning(f"Receipt upload failed: {e}")
            return StepResult.record_failed(f"File upload failed: {e}")

        await asyncio.sleep(self.timings.upload_settle)
        try:
            await page.wait_for_selector(
                SELECTORS["upload_confirmation"],
                timeout=self.timings.upload_confirmation_timeout_ms,
            )
        except Exception:
            logger.info("No upload confirmation shown; the file may still be attached.")
            return StepResult.success(
                "Receipt attached",
                ["Upload confirmation not shown; check the attachment before approving."],
            )
        return StepResult.success("Receipt attached")

    async def fill_expense_form(self, page: Page, record: ExpenseRecord) -> StepResult:
        """Fill every field, date second to last and the receipt last.

        Attaching the file re-renders parts of the form, so nothing may be
        typed after it.
        """
        warnings: list[str] = []
        steps = (
            ("Amount", self._fill_amount),
            ("Merchant", self._fill_merchant),
            ("Invoice number", self._fill_invoice_number),
            ("Description", self._fill_description),
            ("Expense date", self._select_date),
        )
        for name, fill in steps:
            try:
                await fill(page, record)
                logger.info(f"{name} filled")
            except Exception as e:
                logger.warning(f"Could not fill {name}: {e}")
                warnings.append(f"{name} not filled: {e}")

        upload = await self._upload_file(page, record.file_path)
        if not upload.ok:
            return StepResult.record_failed(upload.message, warnings)
        return StepResult.success("Form filled", warnings + upload.warnings)

    # ── Category catalogue ───────────────────────────────────────────────────

    async def _form_dropdowns(self, page: Page) -> list[list[dict]]:
        html = await page.locator(SELECTORS["expense_form"]).first.inner_html()
        return parse_form_dropdowns(html)

    async def scrape_category_catalogue(self, page: Page) -> list[dict]:
        """Select each category on an open expense form and record its expense types."""
        dropdowns = await self._form_dropdowns(page)
        if not dropdowns:
            raise RuntimeError("No dropdowns found in the expense form")

        categories = []
        for category in dropdowns[0]:
            if category["value"] in ("", "0"):
                continue
            expense_types: list[dict] = []
            try:
                await self._open_dropdown(page, 0)
                await self._choose_option(page, category["value"])
                await asyncio.sleep(self.timings.category_repopulate_settle)
                dropdowns = await self._form_dropdowns(page)
                if len(dropdowns) > 1:
                    expense_types = dropdowns[1]
            except Exception as e:
                logger.warning(f"Could not read expense types for {category['title']!r}: {e}")
            logger.info(f"{category['title']}: {len(expense_types)} expense types")
            categories.append({**category, "expenseTypes": expense_types})

        return clean_catalogue(categories)
