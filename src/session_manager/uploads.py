"""Scratch storage for uploaded receipts awaiting submission."""

from __future__ import annotations

import json
import logging
import re
import secrets
import sys
import time
from pathlib import Path
from typing import Optional

from ..config import SCRATCH_DIR
from ..constants import EXTENSION_CONTENT_TYPES

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

_VALID_ID = re.compile(r"^[A-Za-z0-9_-]+$")
DEFAULT_EXTENSION = ".pdf"


def new_id(prefix: str = "invoice") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class UploadStore:
    """Writes ``<id><ext>`` plus ``<id>.json`` metadata into the scratch directory.

    Every file here is temporary: a batch deletes the receipts it used.
    """

    def __init__(self, scratch_dir: Path = SCRATCH_DIR):
        self.scratch_dir = Path(scratch_dir)

    def _metadata_path(self, invoice_id: str) -> Path:
        if not _VALID_ID.match(invoice_id or ""):
            raise ValueError(f"Invalid invoice id: {invoice_id!r}")
        return self.scratch_dir / f"{invoice_id}.json"

    def save_upload(self, data: bytes, filename: str, content_type: str = "") -> dict:
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        invoice_id = new_id()
        extension = Path(filename or "").suffix.lower() or DEFAULT_EXTENSION
        file_path = self.scratch_dir / f"{invoice_id}{extension}"
        file_path.write_bytes(data)

        metadata = {
            "id": invoice_id,
            "fileName": filename,
            "fileSize": len(data),
            "fileType": content_type or EXTENSION_CONTENT_TYPES.get(extension, "application/octet-stream"),
            "filePath": str(file_path),
            "status": "uploaded",
        }
        self._metadata_path(invoice_id).write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        logger.info(f"Stored upload {invoice_id} ({filename}, {len(data)} bytes)")
        return metadata

    def get_metadata(self, invoice_id: str) -> Optional[dict]:
        path = self._metadata_path(invoice_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def file_path(self, invoice_id: str) -> Optional[Path]:
        metadata = self.get_metadata(invoice_id)
        if metadata is None:
            return None
        path = Path(metadata["filePath"])
        return path if path.exists() else None

    def write_temp_receipt(self, data: bytes, filename: str, prefix: str = "receipt") -> Path:
        """Write a receipt for immediate submission; the batch deletes it."""
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        extension = Path(filename or "").suffix.lower() or DEFAULT_EXTENSION
        path = self.scratch_dir / f"{new_id(prefix)}{extension}"
        path.write_bytes(data)
        return path

    def remove(self, invoice_id: str):
        """Delete an upload's metadata and file, ignoring ones already gone."""
        metadata = self.get_metadata(invoice_id)
        if metadata:
            Path(metadata["filePath"]).unlink(missing_ok=True)
        self._metadata_path(invoice_id).unlink(missing_ok=True)
