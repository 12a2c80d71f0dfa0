"""MCP Server entry point for Darwinbox expense reimbursements.

Exposes 8 tools via the Model Context Protocol:
- Session: login, check_login_status, logout
- Receipts: extract_invoice_data
- Submission: submit_reimbursement, process_multiple_invoices,
  get_submission_progress, refresh_category_catalogue

The Session Manager HTTP service (aiohttp on localhost:8025) is auto-started
as part of the MCP server lifecycle, so no separate process is needed.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import SESSION_MANAGER_HOST, SESSION_MANAGER_PORT, ensure_dirs
from .tools.invoice_tools import extract_invoice_data
from .tools.session_tools import check_login_status, login, logout
from .tools.submission_tools import (
    get_submission_progress,
    process_multiple_invoices,
    refresh_category_catalogue,
    submit_reimbursement,
)

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("darwinbox-reimbursements")

ensure_dirs()


# ── Lifespan: run the reimbursement service in-process ───────────────────────


async def _start_service() -> AppRunner | None:
    """Serve the HTTP app on the configured port; None if the port is taken."""
    from .session_manager.manager import create_app

    runner = AppRunner(create_app())
    await runner.setup()
    address = f"{SESSION_MANAGER_HOST}:{SESSION_MANAGER_PORT}"
    try:
        await TCPSite(runner, SESSION_MANAGER_HOST, SESSION_MANAGER_PORT).start()
    except OSError as e:
        # A standalone `python -m src.session_manager` already owns the port.
        logger.info(f"Reimbursement service already listening on {address} ({e})")
        await runner.cleanup()
        return None
    logger.info(f"Reimbursement service started on {address}")
    return runner


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Keep the browser service up for as long as the MCP server runs."""
    runner = await _start_service()
    try:
        yield {"service_owned": runner is not None}
    finally:
        if runner is not None:
            # Closes every browser and waits for running batches.
            await runner.cleanup()
            logger.info("Reimbursement service stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "darwinbox-reimbursements",
    lifespan=lifespan,
    instructions=(
        "Darwinbox reimbursements - submit expense claims from receipt images. "
        "The Session Manager starts automatically with this server. "
        "Call login first; if it reports the browser is not logged in, ask the "
        "user to log in in the browser window and then call check_login_status. "
        "Read each receipt (with your own vision or extract_invoice_data), then "
        "call submit_reimbursement for one receipt or process_multiple_invoices "
        "for several, which files them all in one report."
    ),
)


# ── Session Tools ────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_login(email: str = "") -> str:
    """Log in to Darwinbox with a persistent browser session.

    The session is reused for the same email, so this only needs calling
    about once a day. Opens a visible browser for manual login if needed.

    Args:
        email: Darwinbox login email. Empty uses the configured default.
    """
    return await login(email)


@mcp.tool()
async def tool_check_login_status(session_id: str) -> str:
    """Check whether a Darwinbox session is logged in and its browser open.

    Args:
        session_id: Session ID returned by login.
    """
    return await check_login_status(session_id)


@mcp.tool()
async def tool_logout(session_id: str) -> str:
    """Close the session's browser and delete its saved cookies."""
    return await logout(session_id)


# ── Receipt Tools ────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_extract_invoice_data(file_path: str) -> str:
    """Extract date, amount, merchant, invoice number, description and category from a receipt.

    Also returns the Darwinbox category/expense-type ids the receipt maps to.

    Args:
        file_path: Full path, or a filename in ~/Downloads (PNG, JPEG, WEBP, GIF).
    """
    return await extract_invoice_data(file_path)


# ── Submission Tools ─────────────────────────────────────────────────────────


@mcp.tool()
async def tool_submit_reimbursement(
    file_path: str,
    date: str,
    amount: float,
    merchant: str,
    description: str,
    invoice_number: str = "",
    category: str = "",
    email: str = "",
) -> str:
    """Submit one reimbursement with its receipt attached.

    Navigates to Reimbursements, creates a report and an expense, fills the
    form, uploads the receipt and saves. Requires a logged-in session.

    Args:
        file_path: Receipt path or filename in ~/Downloads.
        date: Expense date (YYYY-MM-DD).
        amount: Expense amount.
        merchant: Business name, not an address.
        description: Specific purpose, e.g. "Airport transfer to Terminal 2".
        invoice_number: Invoice number, if printed.
        category: Travel, Food, Accommodation, Office Supplies or Other.
        email: Darwinbox login email. Empty uses the configured default.
    """
    return await submit_reimbursement(
        file_path, date, amount, merchant, description, invoice_number, category, email,
    )


@mcp.tool()
async def tool_process_multiple_invoices(invoices: list[dict], email: str = "") -> str:
    """Submit several receipts in one browser session and one report.

    Each invoice: {filePath, date (YYYY-MM-DD), amount, merchant, description,
    invoiceNumber?, category?}. Returns per-invoice success or failure.

    Args:
        invoices: Invoice objects, submitted in the given order.
        email: Darwinbox login email. Empty uses the configured default.
    """
    return await process_multiple_invoices(invoices, email)


@mcp.tool()
async def tool_get_submission_progress(task_id: str) -> str:
    """Get the progress percentage and current step of a submission.

    Args:
        task_id: Task ID reported by a submission.
    """
    return await get_submission_progress(task_id)


@mcp.tool()
async def tool_refresh_category_catalogue(email: str = "") -> str:
    """Re-scrape every reimbursement category and expense type from Darwinbox.

    The saved catalogue is used to map receipts to expense types.
    """
    return await refresh_category_catalogue(email)


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting Darwinbox reimbursements MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
