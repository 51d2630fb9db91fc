"""
Image2Sheet Backend — Image Validation & Table Rendering
=========================================================

What:  Pure helpers around an extraction: base64 image validation and
       decoding, Markdown / CSV rendering and a quality score.
Who:   ExtractionService (both guest and authenticated paths).
"""

import base64
import binascii
import re
from typing import Any, Dict, List, Optional

from image2sheet.config import settings
from image2sheet.exceptions import ValidationError
from image2sheet.services.llm_base import TableData

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")
_BASE64_BODY = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")

# Characters of the base64 payload kept on the history row as a preview
PREVIEW_CHARS = 1000


def strip_data_url(image: str) -> str:
    """Remove a leading `data:image/<type>;base64,` prefix, if any."""
    return _DATA_URL_PREFIX.sub("", image.strip(), count=1)


def decode_image(image: str, max_bytes: Optional[int] = None) -> bytes:
    """
    Validate a base64 image payload and return the raw bytes.

    Raises:
        ValidationError: Empty, too large, or not valid base64
    """
    max_bytes = max_bytes or settings.max_image_bytes
    if not image:
        raise ValidationError("No image provided", field="image")

    payload = strip_data_url(image)

    # Checked on the encoded length first so oversized payloads are never decoded
    if len(payload) > max_bytes * 4 / 3:
        raise ValidationError(
            f"Image too large (maximum {max_bytes // (1024 * 1024)}MB)",
            field="image",
        )
    if not payload or not _BASE64_BODY.match(payload):
        raise ValidationError("Invalid image format", field="image")

    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid image format", field="image")


def image_preview(image: str) -> str:
    return strip_data_url(image)[:PREVIEW_CHARS]


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def to_markdown(table: TableData) -> str:
    """
    Render as a GitHub-flavoured Markdown table.

    Example:
        | Name | Qty |
        | --- | --- |
        | Apple | 3 |
    """
    headers = [_cell(h) for h in table["headers"]]
    lines = [
        "| " + " | ".join(headers) + " |",
        "| " + " | ".join("---" for _ in headers) + " |",
    ]
    lines.extend("| " + " | ".join(_cell(c) for c in row) + " |" for row in table["rows"])
    return "\n".join(lines)


def _csv_escape(value: Any) -> str:
    text = _cell(value)
    if "," in text or '"' in text or "\n" in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def to_csv(table: TableData) -> str:
    """Render as CSV; values containing a comma, quote or newline are quoted."""
    lines: List[str] = [",".join(_csv_escape(h) for h in table["headers"])]
    lines.extend(",".join(_csv_escape(c) for c in row) for row in table["rows"])
    return "\n".join(lines)


def analyze_quality(table: TableData) -> Dict[str, Any]:
    """
    Completeness metrics for an extracted table.

    quality: "high" above 90% complete, "medium" above 70%, else "low".
    An empty table (no cells) scores 0% complete.
    """
    headers = table["headers"]
    rows = table["rows"]

    total_cells = len(rows) * len(headers)
    empty_cells = sum(1 for row in rows for cell in row if cell is None or cell == "")
    completeness = ((total_cells - empty_cells) / total_cells * 100) if total_cells else 0.0

    if completeness > 90:
        quality = "high"
    elif completeness > 70:
        quality = "medium"
    else:
        quality = "low"

    return {
        "total_rows": len(rows),
        "total_columns": len(headers),
        "total_cells": total_cells,
        "empty_cells": empty_cells,
        "completeness": round(completeness, 2),
        "consistent_columns": all(len(row) == len(headers) for row in rows),
        "quality": quality,
    }
