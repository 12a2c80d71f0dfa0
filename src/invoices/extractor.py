"""Receipt field extraction through the Anthropic vision API."""

from __future__ import annotations

import base64
import json
import logging
import re
import sys
from pathlib import Path
from typing import Optional

from anthropic import AsyncAnthropic

from ..config import ANTHROPIC_API_KEY, EXTRACTION_MAX_TOKENS, EXTRACTION_MODEL
from ..constants import EXTENSION_CONTENT_TYPES, SUPPORTED_IMAGE_TYPES
from ..models.expense import ExtractedInvoice

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

EXTRACTION_PROMPT = """Extract the following information from this invoice/receipt image:

1. Date (format: YYYY-MM-DD)
2. Total Amount (number only, no currency symbols)
3. Merchant/Vendor name (business name, not an address)
4. Invoice number (if printed)
5. Description/Purpose (what was purchased, be specific, e.g. "Airport transfer to Terminal 2")
6. Category (suggest one: Travel, Food, Accommodation, Office Supplies, Other)

Return ONLY a valid JSON object in this exact format:
{
  "date": "YYYY-MM-DD",
  "amount": 0,
  "merchant": "string",
  "invoiceNumber": "string",
  "description": "string",
  "category": "string"
}

If any field cannot be determined, use empty string for strings and 0 for amount."""

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class ExtractionError(ValueError):
    """The extraction response held no parseable JSON object."""


def _first_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} block, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def parse_extraction_response(text: str) -> ExtractedInvoice:
    """Pull the single JSON object out of a free-form model response.

    Tolerates markdown code fences and trailing commas. Anything without a
    parseable object is an error, never a partial result.
    """
    fenced = _FENCE.search(text or "")
    candidate = _first_json_object(fenced.group(1) if fenced else (text or ""))
    if candidate is None and fenced:
        candidate = _first_json_object(text)
    if candidate is None:
        raise ExtractionError("No JSON object found in extraction response")

    try:
        data = json.loads(_TRAILING_COMMA.sub(r"\1", candidate))
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Invalid JSON in extraction response: {e}") from e
    if not isinstance(data, dict):
        raise ExtractionError("Extraction response JSON is not an object")

    return ExtractedInvoice.model_validate(data)


def normalise_media_type(mime_type: str) -> str:
    """Map an upload's mime type onto one the vision API accepts (png if unknown)."""
    return SUPPORTED_IMAGE_TYPES.get((mime_type or "").lower(), "image/png")


def guess_media_type(path: Path) -> str:
    return EXTENSION_CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


class InvoiceExtractor:
    """Turns receipt images into ExtractedInvoice records."""

    def __init__(self, client: Optional[AsyncAnthropic] = None, model: str = EXTRACTION_MODEL):
        self._client = client
        self._model = model

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            if not ANTHROPIC_API_KEY:
                raise RuntimeError("ANTHROPIC_API_KEY is not set; receipt extraction is unavailable.")
            self._client = AsyncAnthropic(api_key=ANTHROPIC_API_KEY)
        return self._client

    async def extract(self, image: bytes, mime_type: str) -> ExtractedInvoice:
        media_type = normalise_media_type(mime_type)
        logger.info(f"Extracting invoice fields ({len(image)} bytes, {media_type})")
        message = await self.client.messages.create(
            model=self._model,
            max_tokens=EXTRACTION_MAX_TOKENS,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": base64.b64encode(image).decode("ascii"),
                            },
                        },
                        {"type": "text", "text": EXTRACTION_PROMPT},
                    ],
                }
            ],
        )
        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        extracted = parse_extraction_response(text)
        logger.info(
            f"Extracted: {extracted.merchant!r} {extracted.amount} on {extracted.date!r} "
            f"({extracted.category})"
        )
        return extracted

    async def extract_file(self, path: Path) -> ExtractedInvoice:
        path = Path(path)
        media_type = guess_media_type(path)
        if media_type not in SUPPORTED_IMAGE_TYPES:
            raise ExtractionError(
                f"Unsupported file format: {path.suffix or path.name}. "
                "Supported formats: png, jpg, jpeg, gif, webp"
            )
        return await self.extract(path.read_bytes(), media_type)
