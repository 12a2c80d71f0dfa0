"""MCP tools for Darwinbox login sessions."""

from __future__ import annotations

import json

import httpx

from ..config import DEFAULT_EMAIL, SESSION_MANAGER_URL


async def _call_session_manager(
    method: str,
    path: str,
    json_body: dict | None = None,
    params: dict | None = None,
    data: dict | None = None,
    files: list | None = None,
    timeout: float = 120.0,
) -> dict:
    """Make a request to the session manager HTTP service."""
    url = f"{SESSION_MANAGER_URL}{path}"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            if method == "GET":
                resp = await client.get(url, params=params)
            elif files is not None or data is not None:
                resp = await client.post(url, data=data, files=files)
            else:
                resp = await client.post(url, json=json_body or {})

            if resp.status_code >= 400:
                body = resp.json()
                return {"error": body.get("error", f"HTTP {resp.status_code}"), **body}
            return resp.json()

    except httpx.ConnectError:
        return {
            "error": "Session Manager is not reachable at "
            f"{SESSION_MANAGER_URL}. It should auto-start with the MCP server. "
            "If running standalone: python -m src.session_manager"
        }
    except httpx.TimeoutException:
        return {"error": "Session Manager timed out. The browser may still be working."}
    except Exception as e:
        return {"error": f"Failed to connect to Session Manager: {e}"}


async def open_session(email: str = "") -> dict:
    """Create or reuse the session for an email and open its browser."""
    return await _call_session_manager("POST", "/login", {"email": email or DEFAULT_EMAIL})


async def login(email: str = "") -> str:
    """Log in to Darwinbox with a persistent browser session.

    Reuses the newest session for the email when one exists. If the browser
    is not logged in yet, a window opens for the user to log in manually.

    Args:
        email: Darwinbox login email (defaults to DEFAULT_EMAIL).

    Returns:
        Login status message including the session ID.
    """
    if not (email or DEFAULT_EMAIL):
        return "Error: an email address is required (or set DEFAULT_EMAIL)."

    result = await open_session(email)
    if "error" in result:
        return f"Error: {result['error']}"

    session_id = result.get("session_id", "")
    if result.get("logged_in"):
        return f"Logged in to Darwinbox as {result.get('email')}. Session ID: {session_id}"
    return (
        f"{result.get('message', '')}\n\n"
        "Please log in to Darwinbox in the browser window, then call "
        f"check_login_status. Session ID: {session_id}"
    )


async def check_login_status(session_id: str) -> str:
    """Check whether a session's browser is open and logged in.

    Returns:
        JSON-formatted session status.
    """
    result = await _call_session_manager("GET", "/login/status", params={"sessionId": session_id})

    if "error" in result and not result.get("session_id"):
        return f"Error: {result['error']}"

    return json.dumps(result, indent=2)


async def logout(session_id: str) -> str:
    """Close the session's browser and forget its cookies."""
    result = await _call_session_manager("POST", "/logout", {"sessionId": session_id})

    if "error" in result:
        return f"Error: {result['error']}"

    return result.get("message", "Logged out.")
