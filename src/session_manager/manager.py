"""Session Manager HTTP service.

Runs as a local web server that bridges the MCP server (and any chat bot
or web UI) to the Camoufox browsers. Owns the session store, the live
browser handles, progress tracking and the receipt scratch area.

Endpoints:
    POST /login                 - Create or reuse a session, open its browser
    GET  /login/status          - Login state by sessionId or telegramChatId
    GET  /login/validate        - Resolve a login-link token to its session
    POST /telegram/init-login   - Issue a login link for a chat
    POST /logout                - Close the browser and forget the session
    POST /ocr                   - Extract fields from one receipt image
    POST /batch-upload          - Store receipts for a later bulk submit
    GET  /batch-upload          - Metadata of a stored receipt
    GET  /batch-file            - Raw bytes of a stored receipt
    POST /submit                - Submit one expense
    POST /bulk-submit           - Submit many expenses in one report
    GET  /submit-progress       - Poll a submission's progress
    POST /categories/refresh    - Re-scrape the category catalogue
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
import sys
import uuid
from pathlib import Path
from typing import Optional

import aiosqlite
from aiohttp import web
from pydantic import ValidationError

from ..config import (
    DB_PATH,
    DEFAULT_EMAIL,
    LOGIN_TOKEN_TTL_SECONDS,
    PUBLIC_BASE_URL,
    SCRATCH_DIR,
    SESSION_MANAGER_HOST,
    SESSION_MANAGER_PORT,
    SESSION_TTL_SECONDS,
    ensure_dirs,
)
from ..constants import DEFAULT_TIMINGS, SUPPORTED_IMAGE_TYPES, Timings
from ..database.models import initialize_db
from ..database.repository import SessionRepository
from ..invoices.classifier import CategoryClassifier, save_catalogue
from ..invoices.extractor import ExtractionError, InvoiceExtractor
from ..models.expense import BatchSummary, BatchTask, ExpenseRecord
from ..models.session import Session, SessionStatus
from .browser import BrowserContextManager, BrowserLaunchError
from .orchestrator import BatchOrchestrator, skip_batch
from .progress import ProgressTracker
from .uploads import UploadStore, new_id

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class SessionManager:
    """Orchestrates sessions, browsers and expense submissions."""

    def __init__(
        self,
        db_path: Path = DB_PATH,
        scratch_dir: Path = SCRATCH_DIR,
        timings: Timings = DEFAULT_TIMINGS,
        browsers: Optional[BrowserContextManager] = None,
        extractor: Optional[InvoiceExtractor] = None,
        classifier: Optional[CategoryClassifier] = None,
        orchestrator: Optional[BatchOrchestrator] = None,
    ):
        self.db_path = Path(db_path)
        self.db: aiosqlite.Connection | None = None
        self.repo: SessionRepository | None = None
        self.browsers = browsers or BrowserContextManager(timings=timings)
        self.tracker = ProgressTracker()
        self.uploads = UploadStore(scratch_dir)
        self.extractor = extractor or InvoiceExtractor()
        self.classifier = classifier or CategoryClassifier.from_file()
        self.orchestrator = orchestrator or BatchOrchestrator(
            self.browsers, self.tracker, timings=timings
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    async def setup(self):
        """Initialize database connection."""
        ensure_dirs()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = await aiosqlite.connect(str(self.db_path))
        await initialize_db(self.db)
        self.repo = SessionRepository(self.db)
        await self.repo.purge_expired()

    async def cleanup(self):
        """Clean up resources."""
        pending = [t for t in self._tasks.values() if not t.done()]
        if pending:
            logger.info(f"Waiting for {len(pending)} running submission(s)...")
            await asyncio.gather(*pending, return_exceptions=True)
        await self.browsers.close_all()
        if self.db:
            await self.db.close()

    def lock_for(self, session_id: str) -> asyncio.Lock:
        """One lock per session: a session's page is never driven by two batches."""
        return self._locks.setdefault(session_id, asyncio.Lock())

    # ── Sessions ─────────────────────────────────────────────────────────────

    async def status_of(self, session: Session) -> SessionStatus:
        browser_open = await self.browsers.is_session_live(session.session_id)
        logged_in = session.is_logged_in(browser_open)
        if logged_in:
            message = "Logged in."
        elif browser_open:
            message = "Browser is open. Please log in to Darwinbox in the browser window."
        else:
            message = "Browser is not open. Call login to open it."
        return SessionStatus(
            session_id=session.session_id,
            email=session.email,
            logged_in=logged_in,
            browser_open=browser_open,
            login_status=session.login_status,
            cookie_count=len(session.cookies),
            message=message,
        )

    async def refresh_login(self, session: Session) -> Session:
        """Check the live browser for the login marker and store fresh cookies."""
        handle = self.browsers.get(session.session_id)
        if handle is None or not await self.browsers.is_live(handle):
            return session
        if self.lock_for(session.session_id).locked():
            # A submission is driving the page; leave it alone.
            return session
        async with self.lock_for(session.session_id):
            result = await self.browsers.check_login(handle)
        if result["logged_in"]:
            return await self.repo.mark_logged_in(session.session_id, result["cookies"]) or session
        return session

    async def login(self, email: str = "", session_id: Optional[str] = None) -> SessionStatus:
        """Open (or reuse) the session's browser and report whether it is logged in.

        Raises:
            LookupError: if session_id names no live session.
            BrowserLaunchError: if no browser could be launched.
        """
        session = None
        if session_id:
            session = await self.repo.get(session_id)
            if session is None:
                raise LookupError("Session not found or expired.")
        elif email:
            session = await self.repo.get_latest_for_email(email)
            if session is not None:
                logger.info(f"Reusing session {session.session_id} for {email}")

        if session is None:
            session = Session.new(uuid.uuid4().hex, email, SESSION_TTL_SECONDS)
            await self.repo.save(session)
            logger.info(f"Created session {session.session_id} for {email}")

        async with self.lock_for(session.session_id):
            handle = await self.browsers.ensure_context(session.session_id, session.cookies)
            result = await self.browsers.check_login(handle)
        if result["logged_in"]:
            session = await self.repo.mark_logged_in(session.session_id, result["cookies"]) or session

        status = await self.status_of(session)
        if not status.logged_in:
            status.message = result["message"]
        return status

    async def logout(self, session_id: str) -> bool:
        async with self.lock_for(session_id):
            closed = await self.browsers.close_session(session_id)
        await self.repo.delete(session_id)
        self._locks.pop(session_id, None)
        logger.info(f"Session {session_id} logged out (browser closed: {closed}).")
        return closed

    async def init_telegram_login(self, chat_id: str, email: str) -> dict:
        if not EMAIL_PATTERN.match(email or ""):
            raise ValueError("A valid email address is required.")
        session = Session.new(uuid.uuid4().hex, email, SESSION_TTL_SECONDS, telegram_chat_id=chat_id)
        await self.repo.save(session)
        token = secrets.token_hex(32)
        await self.repo.save_login_token(token, session.session_id, LOGIN_TOKEN_TTL_SECONDS)
        logger.info(f"Issued login link for chat {chat_id} (session {session.session_id})")
        return {
            "success": True,
            "loginUrl": f"{PUBLIC_BASE_URL.rstrip('/')}/login/{token}",
            "sessionId": session.session_id,
            "expiresIn": LOGIN_TOKEN_TTL_SECONDS,
        }

    async def validate_token(self, token: str) -> Optional[dict]:
        session_id = await self.repo.get_session_id_for_token(token)
        if session_id is None:
            return None
        session = await self.repo.get(session_id)
        if session is None:
            await self.repo.delete_token(token)
            return None
        status = await self.status_of(session)
        return {
            "valid": True,
            "sessionId": session.session_id,
            "email": session.email,
            "telegramChatId": session.telegram_chat_id,
            "alreadyLoggedIn": status.logged_in,
        }

    # ── Receipts ─────────────────────────────────────────────────────────────

    async def extract(self, data: bytes, content_type: str) -> dict:
        extracted = await self.extractor.extract(data, content_type)
        mapping = self.classifier.classify(extracted.category, extracted.description, extracted.merchant)
        return {
            **extracted.model_dump(by_alias=True),
            **mapping.model_dump(by_alias=True),
        }

    def build_record(self, invoice: dict, file_path: Path, temporary: bool) -> ExpenseRecord:
        """ExpenseRecord from a client invoice dict, classifying when ids are missing."""
        data = dict(invoice)
        if not data.get("categoryValue") or not data.get("expenseTypeValue"):
            mapping = self.classifier.classify(
                data.get("category", ""), data.get("description", ""), data.get("merchant", "")
            )
            data["categoryValue"] = mapping.category_value
            data["expenseTypeValue"] = mapping.expense_type_value
        data["filePath"] = file_path
        data["temporary"] = temporary
        return ExpenseRecord.model_validate(data)

    # ── Submissions ──────────────────────────────────────────────────────────

    def start_batch(self, session: Session, task: BatchTask) -> asyncio.Task:
        """Run a batch in the background; it finishes even if the caller disconnects."""

        async def run() -> BatchSummary:
            try:
                async with self.lock_for(session.session_id):
                    # A logout may have run while this batch waited for the lock.
                    current = await self.repo.get(session.session_id)
                    if current is None:
                        return skip_batch(task, self.tracker, "Session was logged out.")
                    return await self.orchestrator.submit(task, current.cookies)
            finally:
                for invoice_id in task.upload_ids:
                    self.uploads.remove(invoice_id)

        def finished(job: asyncio.Task):
            self._tasks.pop(task.task_id, None)
            if not job.cancelled() and job.exception() is not None:
                logger.error(f"Batch {task.task_id} failed: {job.exception()}")

        job = asyncio.create_task(run(), name=f"batch-{task.task_id}")
        self._tasks[task.task_id] = job
        job.add_done_callback(finished)
        return job

    async def refresh_categories(self, session: Session) -> list[dict]:
        async with self.lock_for(session.session_id):
            handle = await self.browsers.ensure_context(session.session_id, session.cookies)
            page = await handle.get_page()
            navigation = await self.orchestrator.navigator.navigate_to_expense_form(page)
            if not navigation.ok:
                raise RuntimeError(navigation.message)
            catalogue = await self.orchestrator.form.scrape_category_catalogue(page)
        if not catalogue:
            raise RuntimeError("No categories found on the expense form.")
        save_catalogue(catalogue)
        self.classifier = CategoryClassifier(catalogue)
        return catalogue


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body."}), content_type="application/json"
        )
    return body if isinstance(body, dict) else {}


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _get_session(mgr: SessionManager, session_id: str) -> Optional[Session]:
    if not session_id:
        return None
    return await mgr.repo.get(session_id)


async def handle_login(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _json_body(request)
    session_id = body.get("sessionId")
    email = (body.get("email") or DEFAULT_EMAIL).strip()

    if not session_id and not email:
        return _error("email or sessionId is required.", 400)

    try:
        status = await mgr.login(email=email, session_id=session_id)
    except LookupError as e:
        return _error(str(e), 404)
    except BrowserLaunchError as e:
        logger.error(f"Login failed: {e}", exc_info=True)
        return _error(str(e), 500)

    return web.json_response({"success": True, **status.model_dump(mode="json")})


async def handle_login_status(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    session_id = request.query.get("sessionId")
    chat_id = request.query.get("telegramChatId")

    if session_id:
        session = await mgr.repo.get(session_id)
    elif chat_id:
        session = await mgr.repo.get_by_telegram_chat_id(chat_id)
    else:
        return _error("sessionId or telegramChatId is required.", 400)

    if session is None:
        return web.json_response(
            {"loggedIn": False, "error": "Session not found or expired."}, status=404
        )

    session = await mgr.refresh_login(session)
    status = await mgr.status_of(session)
    return web.json_response({"loggedIn": status.logged_in, **status.model_dump(mode="json")})


async def handle_login_validate(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    token = request.query.get("token", "")
    if not token:
        return _error("token is required.", 400)

    result = await mgr.validate_token(token)
    if result is None:
        return web.json_response({"valid": False, "error": "Invalid or expired login link."}, status=404)
    return web.json_response(result)


async def handle_telegram_init_login(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _json_body(request)
    chat_id = str(body.get("chatId") or body.get("telegramChatId") or "")
    email = (body.get("email") or "").strip()

    if not chat_id:
        return _error("chatId is required.", 400)
    try:
        result = await mgr.init_telegram_login(chat_id, email)
    except ValueError as e:
        return _error(str(e), 400)
    return web.json_response(result)


async def handle_logout(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _json_body(request)
    session_id = body.get("sessionId", "")
    if not session_id:
        return _error("sessionId is required.", 400)

    closed = await mgr.logout(session_id)
    return web.json_response({"success": True, "browserClosed": closed, "message": "Logged out."})


async def handle_ocr(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    form = await request.post()
    upload = form.get("file")
    if upload is None or not hasattr(upload, "file"):
        return _error("No file provided.", 400)

    content_type = (upload.content_type or "").lower()
    if content_type not in SUPPORTED_IMAGE_TYPES:
        return _error(
            f"Unsupported file type: {content_type or 'unknown'}. "
            "Supported formats: png, jpg, jpeg, gif, webp",
            400,
        )

    try:
        data = await mgr.extract(upload.file.read(), content_type)
    except ExtractionError as e:
        logger.error(f"Extraction failed: {e}")
        return _error(f"Could not read invoice: {e}", 500)
    except Exception as e:
        logger.error(f"Extraction failed: {e}", exc_info=True)
        return _error(f"Failed to process invoice: {e}", 500)

    return web.json_response({"success": True, "data": data})


async def handle_batch_upload(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    form = await request.post()
    files = [f for f in form.getall("files", []) if hasattr(f, "file")]
    if not files:
        return _error("No files provided.", 400)

    uploaded = [
        mgr.uploads.save_upload(f.file.read(), f.filename, f.content_type) for f in files
    ]
    return web.json_response({
        "success": True,
        "invoiceIds": [u["id"] for u in uploaded],
        "invoices": uploaded,
    })


async def handle_get_batch_upload(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    invoice_id = request.query.get("invoiceId", "")
    if not invoice_id:
        return _error("invoiceId is required.", 400)
    try:
        metadata = mgr.uploads.get_metadata(invoice_id)
    except ValueError as e:
        return _error(str(e), 400)
    if metadata is None:
        return _error("Invoice not found.", 404)
    return web.json_response(metadata)


async def handle_batch_file(request: web.Request) -> web.StreamResponse:
    mgr: SessionManager = request.app["manager"]
    invoice_id = request.query.get("invoiceId", "")
    if not invoice_id:
        return _error("invoiceId is required.", 400)
    try:
        metadata = mgr.uploads.get_metadata(invoice_id)
        path = mgr.uploads.file_path(invoice_id)
    except ValueError as e:
        return _error(str(e), 400)
    if metadata is None or path is None:
        return _error("File not found.", 404)
    return web.FileResponse(path, headers={"Content-Type": metadata.get("fileType", "application/octet-stream")})


async def _run_submission(
    mgr: SessionManager,
    session: Session,
    task: BatchTask,
    wait: bool,
) -> web.Response:
    job = mgr.start_batch(session, task)
    if not wait:
        return web.json_response({"success": True, "taskId": task.task_id, "status": "started"}, status=202)

    try:
        summary = await asyncio.shield(job)
    except BrowserLaunchError as e:
        return _error(str(e), 500)
    except Exception as e:
        logger.error(f"Submission {task.task_id} failed: {e}", exc_info=True)
        return _error(f"Failed to submit expenses: {e}", 500)

    return web.json_response({
        "success": not summary.aborted and summary.failed_count == 0,
        "message": summary.message,
        **summary.model_dump(by_alias=True, mode="json"),
    })


def _wants_wait(value) -> bool:
    return str(value if value is not None else "true").lower() not in ("false", "0", "no")


async def handle_submit(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    form = await request.post()
    session_id = form.get("sessionId", "")
    upload = form.get("file")

    session = await _get_session(mgr, session_id)
    if session is None:
        return _error("Session not found. Please login first.", 401)
    if upload is None or not hasattr(upload, "file"):
        return _error("No file provided.", 400)

    invoice = {k: v for k, v in form.items() if isinstance(v, str)}
    path = mgr.uploads.write_temp_receipt(upload.file.read(), upload.filename)
    try:
        record = mgr.build_record(invoice, path, temporary=True)
    except ValidationError as e:
        path.unlink(missing_ok=True)
        return _error(f"Invalid expense data: {e}", 400)

    task = BatchTask(
        task_id=form.get("taskId") or new_id("task"),
        session_id=session.session_id,
        records=[record],
    )
    return await _run_submission(mgr, session, task, _wants_wait(form.get("wait")))


async def handle_bulk_submit(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    form = await request.post()
    session_id = form.get("sessionId", "")
    invoices_json = form.get("invoices", "")

    session = await _get_session(mgr, session_id)
    if session is None:
        return _error("Session not found. Please login first.", 401)
    if not invoices_json:
        return _error("Invoices data is required.", 400)
    try:
        invoices = json.loads(invoices_json)
    except json.JSONDecodeError:
        return _error("Invalid invoices data format.", 400)
    if not isinstance(invoices, list) or not invoices:
        return _error("At least one invoice is required.", 400)

    records: list[ExpenseRecord] = []
    written: list[Path] = []
    upload_ids: list[str] = []
    try:
        for i, invoice in enumerate(invoices):
            upload = form.get(f"file_{i}")
            if not isinstance(invoice, dict):
                raise ValueError(f"Invoice {i + 1}: expected an object")
            if upload is not None and hasattr(upload, "file"):
                path = mgr.uploads.write_temp_receipt(upload.file.read(), upload.filename)
                written.append(path)
            elif invoice.get("invoiceId"):
                path = mgr.uploads.file_path(invoice["invoiceId"])
                if path is None:
                    raise ValueError(f"Invoice {i + 1}: uploaded file {invoice['invoiceId']} not found")
                upload_ids.append(invoice["invoiceId"])
            else:
                raise ValueError(f"Invoice {i + 1}: no file provided")
            records.append(mgr.build_record(invoice, path, temporary=True))
    except (ValueError, ValidationError) as e:
        for path in written:
            path.unlink(missing_ok=True)
        return _error(str(e), 400)

    task = BatchTask(
        task_id=form.get("taskId") or new_id("task"),
        session_id=session.session_id,
        records=records,
        upload_ids=upload_ids,
    )
    return await _run_submission(mgr, session, task, _wants_wait(form.get("wait")))


async def handle_submit_progress(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    task_id = request.query.get("taskId", "")
    if not task_id:
        return _error("taskId is required.", 400)
    return web.json_response(mgr.tracker.get_progress(task_id))


async def handle_refresh_categories(request: web.Request) -> web.Response:
    mgr: SessionManager = request.app["manager"]
    body = await _json_body(request)
    session = await _get_session(mgr, body.get("sessionId", ""))
    if session is None:
        return _error("Session not found. Please login first.", 401)

    try:
        catalogue = await mgr.refresh_categories(session)
    except Exception as e:
        logger.error(f"Category refresh failed: {e}", exc_info=True)
        return _error(str(e), 500)

    return web.json_response({
        "success": True,
        "categoryCount": len(catalogue),
        "expenseTypeCount": sum(len(c["expenseTypes"]) for c in catalogue),
        "categories": catalogue,
    })


# ── App Factory ──────────────────────────────────────────────────────────────


def create_app(manager: Optional[SessionManager] = None) -> web.Application:
    async def on_startup(app: web.Application):
        mgr = manager or SessionManager()
        await mgr.setup()
        app["manager"] = mgr
        logger.info(f"Session Manager started on {SESSION_MANAGER_HOST}:{SESSION_MANAGER_PORT}")

    async def on_cleanup(app: web.Application):
        mgr: SessionManager = app["manager"]
        await mgr.cleanup()
        logger.info("Session Manager stopped.")

    app = web.Application()
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_post("/login", handle_login)
    app.router.add_get("/login/status", handle_login_status)
    app.router.add_get("/login/validate", handle_login_validate)
    app.router.add_post("/telegram/init-login", handle_telegram_init_login)
    app.router.add_post("/logout", handle_logout)
    app.router.add_post("/ocr", handle_ocr)
    app.router.add_post("/batch-upload", handle_batch_upload)
    app.router.add_get("/batch-upload", handle_get_batch_upload)
    app.router.add_get("/batch-file", handle_batch_file)
    app.router.add_post("/submit", handle_submit)
    app.router.add_post("/bulk-submit", handle_bulk_submit)
    app.router.add_get("/submit-progress", handle_submit_progress)
    app.router.add_post("/categories/refresh", handle_refresh_categories)

    return app


def main():
    """Run the session manager as a standalone HTTP service."""
    app = create_app()
    web.run_app(app, host=SESSION_MANAGER_HOST, port=SESSION_MANAGER_PORT)


if __name__ == "__main__":
    main()
