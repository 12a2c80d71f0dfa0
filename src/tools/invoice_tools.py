"""MCP tool for reading receipt images."""

from __future__ import annotations

import json
from pathlib import Path

from ..constants import EXTENSION_CONTENT_TYPES, SUPPORTED_IMAGE_TYPES
from .session_tools import _call_session_manager

SEARCH_DIRS = (Path.home() / "Downloads", Path("/mnt/user-data/uploads"))


def resolve_file(file_path: str) -> Path:
    """Accept a full path or a bare filename found in Downloads or the upload folder."""
    path = Path(file_path).expanduser()
    if path.exists():
        return path
    if path.name == file_path:
        for directory in SEARCH_DIRS:
            candidate = directory / file_path
            if candidate.exists():
                return candidate
    raise FileNotFoundError(f"File not found: {file_path}")


async def extract_invoice_data(file_path: str) -> str:
    """Extract date, amount, merchant, invoice number, description and category.

    Args:
        file_path: Full path, or a filename in ~/Downloads.

    Returns:
        JSON with the extracted fields plus the Darwinbox category and
        expense-type ids they map to.
    """
    try:
        path = resolve_file(file_path)
    except FileNotFoundError as e:
        return f"Error: {e}"

    content_type = EXTENSION_CONTENT_TYPES.get(path.suffix.lower(), "")
    if content_type not in SUPPORTED_IMAGE_TYPES:
        return f"Error: unsupported file type {path.suffix}. Supported: png, jpg, jpeg, gif, webp"

    result = await _call_session_manager(
        "POST",
        "/ocr",
        files=[("file", (path.name, path.read_bytes(), content_type))],
    )
    if "error" in result:
        return f"Error: {result['error']}"

    return json.dumps(result.get("data", {}), indent=2)
