"""Darwinbox URLs, CSS selectors, timings, and the default category catalogue."""

from dataclasses import dataclass

# ── URLs ─────────────────────────────────────────────────────────────────────

DARWINBOX_BASE = "https://zepto.darwinbox.in"
DARWINBOX_HOME_URL = f"{DARWINBOX_BASE}/"
DARWINBOX_HOST = "zepto.darwinbox.in"

# ── CSS Selectors ────────────────────────────────────────────────────────────

SELECTORS = {
    # Only rendered for an authenticated user
    "login_marker": 'img[src="/images/Icons_latest/attendance.png"]',

    # Path to the expense form
    "reimbursements_menu": 'img[src="/images/Icons_latest/reimbursement.png"]',
    "create_button": "button#createButtonTop",
    "request_reimbursement": 'a.dropdown-item:has-text("Request Reimbursement")',
    "create_report": 'button.db-btn.style-primary:has-text("CREATE")',
    "create_expense": "a.add_expense_button",
    "skip_manual_entry": "a.add_expense_manual_ocr",
    "expense_form": "#addExpenses",

    # Dependent dropdowns inside the form
    "dropdown_search_inputs": "#addExpenses input.search",
    "dropdown_item": "#addExpenses div.menu div.item[data-value]",

    # Form fields
    "amount": "input.amount",
    "amount_hidden": 'input[name="UserExpensesForm[amount]"][type="hidden"]',
    "merchant": '#UserExpensesForm_merchant, input[name="UserExpensesForm[merchant]"]',
    "invoice_number": (
        '#UserExpensesForm_invoice_number, input[name="UserExpensesForm[invoice_number]"]'
    ),
    "description": '#UserExpensesForm_itemName, textarea[name="UserExpensesForm[itemName]"]',
    "date": 'input.expense_date.hasDatepicker, input[name="UserExpensesForm[date]"]',
    "file_input": '#uploadBtn, input[type="file"][name="upload[]"]',
    "upload_confirmation": '.file-name, .upload-success, [class*="upload"]',

    # jQuery UI datepicker
    "datepicker": ".ui-datepicker, select.ui-datepicker-month",
    "datepicker_year": "select.ui-datepicker-year",
    "datepicker_month": "select.ui-datepicker-month",
    "datepicker_day_cell": 'td[data-handler="selectDay"]',
}


def dropdown_option(value: str) -> str:
    """Selector for one option of a form dropdown by its data-value."""
    return f'#addExpenses div.menu div.item[data-value="{value}"]'


def datepicker_day(day: int, month_index: int, year: int) -> str:
    """Selector for a day cell; month_index is zero-based like the widget."""
    return (
        f'td[data-handler="selectDay"][data-month="{month_index}"][data-year="{year}"] '
        f'a.ui-state-default[data-date="{day}"]'
    )


# ── Selector candidates (most to least specific) ─────────────────────────────

SAVE_BUTTON_CANDIDATES = (
    "button.btn.btn-primary.db-btn.ripple.amplify-submit-button#add_exp",
    "button.amplify-submit-button#add_exp",
    "button.db-btn#add_exp",
    "button.btn-primary#add_exp",
    "button#add_exp",
    "#add_exp",
)

CREATE_EXPENSE_CANDIDATES = (
    "a.add_expense_button",
    ".add_expense_button",
    'a:has-text("+ Create Expense")',
    'button:has-text("+ Create Expense")',
    'span:has-text("+ Create Expense")',
    'a[href*="add_expense"]',
    '[class*="add_expense"]',
)

SKIP_MANUAL_ENTRY_CANDIDATES = (
    "a.add_expense_manual_ocr",
    'a:has-text("Skip & Add Expenses Manually")',
    ".add_expense_manual_ocr",
    'a:has-text("Skip")',
)

# ── Profile lock artifacts left by a crashed Firefox ─────────────────────────

PROFILE_LOCK_FILES = ("lock", "parent.lock", ".parentlock")

LOCK_ERROR_HINTS = (
    "Target page, context or browser has been closed",
    "already in use",
    "lock",
)

# ── Timings ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Timings:
    """Every fixed wait used against the Darwinbox UI.

    Settle delays are in seconds and only cover UI updates with no observable
    readiness signal. Timeouts are in milliseconds, as Playwright expects.
    """

    # Browser lifecycle
    launch_attempts: int = 3
    launch_backoff: float = 2.0
    lock_backoff: float = 5.0
    post_launch_settle: float = 2.0
    home_navigation_attempts: int = 3
    home_navigation_backoff: float = 2.0
    liveness_probe_timeout: float = 2.0
    dead_context_settle: float = 2.0

    # Navigation
    navigation_timeout_ms: int = 30000
    login_marker_timeout_ms: int = 5000
    step_timeout_ms: int = 10000
    step_settle: float = 1.0
    form_timeout_ms: int = 10000

    # Dropdowns: options of the second dropdown only exist once the
    # category change has been round-tripped by the widget.
    dropdown_open_settle: float = 0.8
    category_repopulate_settle: float = 1.5
    expense_type_settle: float = 2.0
    option_timeout_ms: int = 5000

    # Fields
    field_timeout_ms: int = 5000
    field_settle: float = 0.15
    type_delay_ms: int = 30
    datepicker_timeout_ms: int = 5000
    datepicker_rerender_settle: float = 0.8
    day_grid_timeout_ms: int = 3000
    upload_settle: float = 1.0
    upload_confirmation_timeout_ms: int = 3000

    # Save and advance
    save_settle: float = 1.5
    save_network_idle_timeout_ms: int = 5000
    candidate_timeout_ms: int = 3000
    advance_attempts: int = 3
    advance_settle: float = 2.0


DEFAULT_TIMINGS = Timings()

# ── Reimbursement categories ─────────────────────────────────────────────────

BUSINESS_TRAVEL_CATEGORY = "a66f40962b1f55"
AIRPORT_TRANSFER_TYPE = "a64aea39add3ea"
LOCAL_CONVEYANCE_TYPE = "a64aea3aa222d4"
MEALS_TYPE = "a64acfb46e8520"

# Used when no scraped catalogue is on disk. Scrape the live form to pick up
# the remaining expense types (lodging, flights, ...).
DEFAULT_CATALOGUE = [
    {
        "value": BUSINESS_TRAVEL_CATEGORY,
        "title": "Business Travel Expense",
        "expenseTypes": [
            {"value": AIRPORT_TRANSFER_TYPE, "title": "Business Travel - Airport Transfer"},
            {"value": LOCAL_CONVEYANCE_TYPE, "title": "Business Travel - Local conveyance"},
            {"value": MEALS_TYPE, "title": "Business Travel - Meals"},
        ],
    },
]

# ── Receipt extraction ───────────────────────────────────────────────────────

SUPPORTED_IMAGE_TYPES = {
    "image/png": "image/png",
    "image/jpeg": "image/jpeg",
    "image/jpg": "image/jpeg",
    "image/gif": "image/gif",
    "image/webp": "image/webp",
}

EXTENSION_CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
