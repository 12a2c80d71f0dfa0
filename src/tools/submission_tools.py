"""MCP tools for submitting expenses to Darwinbox."""

from __future__ import annotations

import json

from .invoice_tools import resolve_file
from .session_tools import _call_session_manager, open_session

# Long enough for a full report of a dozen expenses in the headed browser.
SUBMIT_TIMEOUT = 900.0


async def _logged_in_session(email: str) -> tuple[str, str]:
    """Return (session_id, error). error is empty when the session is usable."""
    result = await open_session(email)
    if "error" in result:
        return "", f"Error: {result['error']}"
    if not result.get("logged_in"):
        return "", (
            f"Not logged in to Darwinbox. {result.get('message', '')} "
            "Log in using the browser window, then try again."
        )
    return result["session_id"], ""


def _format_summary(result: dict) -> str:
    lines = [result.get("message", "")]
    for r in result.get("results", []):
        status = "OK" if r.get("success") else f"FAILED: {r.get('error')}"
        lines.append(f"  {r.get('index', 0) + 1}. {status}")
        lines.extend(f"     warning: {w}" for w in r.get("warnings", []))
    lines.append(f"Task ID: {result.get('taskId', '')}")
    return "\n".join(lines)


async def submit_reimbursement(
    file_path: str,
    date: str,
    amount: float,
    merchant: str,
    description: str,
    invoice_number: str = "",
    category: str = "",
    email: str = "",
) -> str:
    """Submit one expense: navigate to the form, fill it, attach the receipt and save.

    Args:
        file_path: Receipt image path or filename in ~/Downloads.
        date: Expense date, YYYY-MM-DD.
        amount: Expense amount.
        merchant: Business name on the receipt.
        description: What was bought, e.g. "Airport transfer to Terminal 2".
        invoice_number: Optional invoice number.
        category: Travel, Food, Accommodation, Office Supplies or Other.
        email: Darwinbox login email (defaults to DEFAULT_EMAIL).
    """
    try:
        path = resolve_file(file_path)
    except FileNotFoundError as e:
        return f"Error: {e}"

    session_id, error = await _logged_in_session(email)
    if error:
        return error

    result = await _call_session_manager(
        "POST",
        "/submit",
        data={
            "sessionId": session_id,
            "date": date,
            "amount": str(amount),
            "merchant": merchant,
            "invoiceNumber": invoice_number,
            "description": description,
            "category": category,
        },
        files=[("file", (path.name, path.read_bytes(), "application/octet-stream"))],
        timeout=SUBMIT_TIMEOUT,
    )
    if "error" in result and "results" not in result:
        return f"Error: {result['error']}"

    return _format_summary(result)


async def process_multiple_invoices(invoices: list[dict], email: str = "") -> str:
    """Submit several expenses in one reimbursement report, in order.

    Args:
        invoices: Objects with filePath, date (YYYY-MM-DD), amount, merchant,
            description, and optionally invoiceNumber and category.
        email: Darwinbox login email (defaults to DEFAULT_EMAIL).
    """
    if not invoices:
        return "Error: at least one invoice is required."

    files = []
    payload = []
    for i, invoice in enumerate(invoices):
        try:
            path = resolve_file(invoice.get("filePath", ""))
        except FileNotFoundError as e:
            return f"Error in invoice {i + 1}: {e}"
        files.append((f"file_{i}", (path.name, path.read_bytes(), "application/octet-stream")))
        payload.append({k: v for k, v in invoice.items() if k != "filePath"})

    session_id, error = await _logged_in_session(email)
    if error:
        return error

    result = await _call_session_manager(
        "POST",
        "/bulk-submit",
        data={"sessionId": session_id, "invoices": json.dumps(payload)},
        files=files,
        timeout=SUBMIT_TIMEOUT,
    )
    if "error" in result and "results" not in result:
        return f"Error: {result['error']}"

    return _format_summary(result)


async def get_submission_progress(task_id: str) -> str:
    """Progress of a running submission as a percentage and message."""
    result = await _call_session_manager("GET", "/submit-progress", params={"taskId": task_id})
    if "error" in result:
        return f"Error: {result['error']}"
    return f"{result.get('progress', 0)}% - {result.get('message', '')}"


async def refresh_category_catalogue(email: str = "") -> str:
    """Re-read every category and expense type from the live Darwinbox form."""
    session_id, error = await _logged_in_session(email)
    if error:
        return error

    result = await _call_session_manager(
        "POST", "/categories/refresh", {"sessionId": session_id}, timeout=SUBMIT_TIMEOUT
    )
    if "error" in result:
        return f"Error: {result['error']}"

    lines = [
        f"Saved {result.get('categoryCount', 0)} categories "
        f"({result.get('expenseTypeCount', 0)} expense types):"
    ]
    for category in result.get("categories", []):
        lines.append(f"- {category['title']}: {len(category['expenseTypes'])} expense types")
    return "\n".join(lines)
