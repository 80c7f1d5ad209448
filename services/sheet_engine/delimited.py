"""Delimited text (CSV) decode and encode.

A CSV carries one sheet. Metadata that plain text cannot hold travels in
an optional first line:

    ##SHEET_META=<base64 of the metadata JSON>

The JSON uses the single-sheet form of the metadata payload (`cells`,
`columnWidths`, `conditionalFormatting`, `charts`).
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import json
import logging
from typing import Any, List, Optional

from .cells import Sheet, display_text
from .metadata import apply_sheet_payload, build_sheet_payload, has_metadata, parse_payload


logger = logging.getLogger(__name__)

META_PREFIX = "##SHEET_META="
STARTER_HEADER = ["Name", "Email", "Phone", "Department"]


def starter_grid() -> List[List[Any]]:
    return [list(STARTER_HEADER), [""] * len(STARTER_HEADER)]


def split_meta_header(text: str) -> tuple:
    """Return (csv body, payload JSON text or None)."""
    if not text.startswith(META_PREFIX):
        return text, None
    first, _, rest = text.partition("\n")
    encoded = first[len(META_PREFIX):].strip()
    try:
        payload_text = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        logger.warning(f"[DECODE] Ignoring unreadable CSV metadata header: {e}")
        payload_text = None
    return rest, payload_text


def parse_rows(text: str) -> List[List[Any]]:
    """Parse CSV text. Quoted fields may hold commas, newlines and "" escapes."""
    body = text.strip("\r\n")
    if not body.strip():
        return []
    reader = csv.reader(io.StringIO(body, newline=""))
    rows = [row for row in reader]
    width = max((len(r) for r in rows), default=0)
    return [row + [""] * (width - len(row)) for row in rows]


def read_delimited(data: bytes, name: str = "Sheet1") -> Sheet:
    """Decode CSV bytes into one sheet, applying the metadata header if any."""
    text = data.decode("utf-8-sig").replace("\r\n", "\n")
    if not text.strip():
        logger.info("[DECODE] Empty CSV, starting from the default header row")
        return Sheet(name=name, grid=starter_grid())

    body, payload_text = split_meta_header(text)
    rows = parse_rows(body)
    sheet = Sheet(name=name, grid=rows or starter_grid())

    payload = parse_payload(payload_text)
    if payload is not None:
        apply_sheet_payload(sheet, payload)
    logger.info(
        f"[DECODE] CSV: {sheet.row_count} row(s), {sheet.col_count} column(s), "
        f"metadata={'yes' if payload is not None else 'no'}"
    )
    return sheet


def _field(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return display_text(value)


def rows_to_csv(grid: List[List[Any]]) -> str:
    """Fields holding a comma, quote or newline are quoted; quotes are doubled."""
    lines = []
    for row in grid:
        cells = []
        for value in row:
            text = _field(value)
            if "," in text or '"' in text or "\n" in text:
                text = '"' + text.replace('"', '""') + '"'
            cells.append(text)
        lines.append(",".join(cells))
    return "\n".join(lines)


def write_delimited(sheet: Sheet, include_metadata: bool = True) -> bytes:
    """Encode one sheet as CSV. The metadata header is written only when needed."""
    body = rows_to_csv(sheet.grid)
    header: Optional[str] = None
    if include_metadata:
        payload = build_sheet_payload(sheet, 0)
        if has_metadata(payload):
            raw = payload.to_payload()
            raw.pop("index", None)
            raw.pop("name", None)
            encoded = base64.b64encode(json.dumps(raw, separators=(",", ":")).encode("utf-8"))
            header = META_PREFIX + encoded.decode("ascii")
    text = f"{header}\n{body}" if header else body
    logger.info(f"[ENCODE] CSV: {sheet.row_count} row(s), metadata={'yes' if header else 'no'}")
    return text.encode("utf-8")
