"""Container detection and error-response sniffing for decode input."""

from __future__ import annotations

import json
import logging
import re
from typing import Literal, Optional

from ..engine_config import get_engine_settings
from .errors import ServerErrorMasquerade, UnsupportedContainer


logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_CONTENT_TYPE = "text/csv"

ZIP_MAGIC = b"PK\x03\x04"

_SPREADSHEETML = re.compile(r"spreadsheetml|officedocument\.spreadsheetml\.sheet", re.IGNORECASE)

ContainerKind = Literal["xlsx", "delimited"]


def is_xlsx(data: bytes, filename: Optional[str] = None, content_type: Optional[str] = None) -> bool:
    """Extension, then declared content type, then the ZIP local-file-header magic."""
    if filename and filename.lower().endswith(".xlsx"):
        return True
    if content_type and _SPREADSHEETML.search(content_type):
        return True
    return data[:4] == ZIP_MAGIC


def sniff_error_response(data: bytes, limit: Optional[int] = None) -> None:
    """Raise ServerErrorMasquerade if a small payload is really an error body.

    JSON bodies are reported with their `error`/`message` field; HTML
    pages are reported as such. Anything else passes.
    """
    limit = get_engine_settings().error_sniff_bytes if limit is None else limit
    if len(data) >= limit or data[:4] == ZIP_MAGIC:
        return
    text = data.decode("utf-8", errors="replace").strip()
    if not text:
        return

    if text[0] in "{[":
        try:
            body = json.loads(text)
        except ValueError:
            body = None
        if isinstance(body, dict):
            server_message = body.get("error") or body.get("message") or body.get("detail")
            if isinstance(server_message, dict):
                server_message = server_message.get("message") or json.dumps(server_message)
            logger.error(f"[DECODE] Payload is a JSON error response: {server_message}")
            raise ServerErrorMasquerade(
                "json",
                f"Server returned an error response instead of a spreadsheet: "
                f"{server_message or 'no message'}",
                server_message=str(server_message) if server_message else None,
            )

    lowered = text[:200].lower()
    if "<!doctype" in lowered or "<html" in lowered:
        logger.error("[DECODE] Payload is an HTML error page")
        raise ServerErrorMasquerade(
            "html", "Server returned an HTML error page instead of a spreadsheet"
        )


def detect_container(
    data: bytes,
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
) -> ContainerKind:
    """Pick the decoder for a payload, sniffing error bodies first."""
    sniff_error_response(data)
    if is_xlsx(data, filename, content_type):
        return "xlsx"
    if b"\x00" in data[:4096]:
        raise UnsupportedContainer("Payload is binary but not a spreadsheet container")
    try:
        data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise UnsupportedContainer("Payload is neither UTF-8 delimited text nor XLSX") from e
    return "delimited"
