"""Codec entry points: bytes in, Workbook out (and back).

Decoding always builds a new Workbook. Callers that hold a workbook swap
it in only after a decode succeeds (`decode_into`), so a failed or
cancelled decode leaves their state untouched.

The async variants run the blocking work in a worker thread. Cancelling
the awaiting task abandons the result; nothing is written back.
"""

from __future__ import annotations

import asyncio
import logging
import zipfile
from io import BytesIO
from typing import Literal, Optional
from xml.etree import ElementTree as ET

from ..engine_config import get_engine_settings
from .delimited import read_delimited, write_delimited
from .detect import CSV_CONTENT_TYPE, XLSX_CONTENT_TYPE, detect_container
from .errors import MalformedInput, UnsupportedContainer
from .metadata import apply_payload, parse_payload
from .parser import read_xlsx
from .workbook import Workbook
from .writer import write_xlsx


logger = logging.getLogger(__name__)

ExportFormat = Literal["xlsx", "csv"]

CONTENT_TYPES = {
    "xlsx": XLSX_CONTENT_TYPE,
    "csv": CSV_CONTENT_TYPE,
}


# =============================================================================
# DECODE
# =============================================================================

def _decode_xlsx(data: bytes) -> Workbook:
    try:
        with zipfile.ZipFile(BytesIO(data), "r") as zf:
            decoded = read_xlsx(zf)
    except zipfile.BadZipFile as e:
        logger.error(f"[DECODE] Not a valid ZIP container: {e}")
        raise UnsupportedContainer("File is not a readable spreadsheet container") from e
    except KeyError as e:
        logger.error(f"[DECODE] Container is missing a required part: {e}")
        raise UnsupportedContainer("Spreadsheet container has no workbook part") from e
    except ET.ParseError as e:
        logger.error(f"[DECODE] Container XML is malformed: {e}")
        raise UnsupportedContainer("Spreadsheet container holds malformed XML") from e

    sheets = decoded.sheets
    if not sheets:
        logger.warning("[DECODE] Container has no visible sheets; starting blank")

    payload = parse_payload(decoded.payload_text)
    if payload is not None and sheets:
        apply_payload(sheets, payload)

    workbook = Workbook(sheets=sheets, active_index=decoded.active_index)
    logger.info(
        f"[DECODE] XLSX: {len(workbook.sheets)} sheet(s), "
        f"metadata={'yes' if payload is not None else 'no'}"
    )
    return workbook


def decode_bytes(
    data: bytes,
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
) -> Workbook:
    """Decode a payload into a new Workbook.

    Raises:
        MalformedInput: payload is over the configured size limit
        ServerErrorMasquerade: payload is a JSON or HTML error body
        UnsupportedContainer: payload is neither CSV text nor XLSX
    """
    limit = get_engine_settings().max_upload_bytes
    if len(data) > limit:
        raise MalformedInput(f"Payload is {len(data)} bytes; the limit is {limit}")

    kind = detect_container(data, filename, content_type)
    logger.info(f"[DECODE] {filename or '<bytes>'}: {len(data)} bytes as {kind}")
    if kind == "xlsx":
        return _decode_xlsx(data)

    sheet = read_delimited(data, name=_sheet_name_for(filename))
    return Workbook(sheets=[sheet])


def _sheet_name_for(filename: Optional[str]) -> str:
    if not filename:
        return "Sheet1"
    stem = filename.rsplit("/", 1)[-1].rsplit(".", 1)[0].strip()
    return stem[:31] or "Sheet1"


def decode_into(
    workbook: Workbook,
    data: bytes,
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
) -> Workbook:
    """Decode and swap the result into an existing workbook on success."""
    decoded = decode_bytes(data, filename, content_type)
    workbook.replace_with(decoded)
    return workbook


# =============================================================================
# ENCODE
# =============================================================================

def encode_workbook(workbook: Workbook, fmt: ExportFormat = "xlsx") -> bytes:
    """Encode a workbook. CSV carries the active sheet only."""
    if fmt == "xlsx":
        return write_xlsx(workbook.sheets, active_index=workbook.active_index)
    if fmt == "csv":
        return write_delimited(workbook.active_sheet)
    raise MalformedInput(f"Unknown export format: {fmt}")


def content_type_for(fmt: ExportFormat) -> str:
    try:
        return CONTENT_TYPES[fmt]
    except KeyError:
        raise MalformedInput(f"Unknown export format: {fmt}")


# =============================================================================
# ASYNC
# =============================================================================

async def decode_bytes_async(
    data: bytes,
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
) -> Workbook:
    return await asyncio.to_thread(decode_bytes, data, filename, content_type)


async def decode_into_async(
    workbook: Workbook,
    data: bytes,
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
) -> Workbook:
    """Async decode; the swap happens on the loop thread after the decode returns."""
    decoded = await decode_bytes_async(data, filename, content_type)
    workbook.replace_with(decoded)
    return workbook


async def encode_workbook_async(workbook: Workbook, fmt: ExportFormat = "xlsx") -> bytes:
    return await asyncio.to_thread(encode_workbook, workbook, fmt)
