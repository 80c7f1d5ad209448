"""Embedded metadata payload.

Rules, charts and per-cell metadata that the container cannot express
natively travel as one JSON document:

    {
      "version": 1,
      "sheets": [
        {"index": 0, "name": "Sheet1",
         "conditionalFormatting": [...], "charts": [...],
         "cells": {"3-1": {"type": "dropdown", "source": [...], ...}},
         "columnWidths": {"0": 120}}
      ]
    }

Every key is optional and unknown keys are ignored. A payload without
`sheets` is read as describing the first sheet through its top-level keys.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .cells import Sheet
from .schemas import (
    DATE_FORMATS,
    CellFormat,
    CellKey,
    CellMetaEntry,
    CellTypeMeta,
    ChartDefinition,
    ConditionalRule,
    MetadataPayload,
    SheetMetaPayload,
)


logger = logging.getLogger(__name__)

PAYLOAD_VERSION = 1


# =============================================================================
# BUILD
# =============================================================================

def _cell_entries(sheet: Sheet) -> Dict[str, Dict[str, Any]]:
    keys = set(sheet.cell_types) | set(sheet.cell_formats) | set(sheet.cell_styles) | set(sheet.links)
    entries: Dict[str, Dict[str, Any]] = {}
    for key in sorted(keys):
        entry = CellMetaEntry()
        meta = sheet.cell_types.get(key)
        if meta is not None:
            entry.type = meta.type
            entry.source = meta.source
            entry.numeric_format = meta.numeric_format
            entry.date_format = meta.date_format
        fmt = sheet.cell_formats.get(key)
        if fmt is not None and fmt.class_name:
            entry.class_name = fmt.class_name
        styles = sheet.cell_styles.get(key)
        if styles:
            entry.styles = dict(styles)
        link = sheet.links.get(key)
        if link and key not in sheet.detected_links:
            entry.link = link
        payload = entry.to_payload()
        if payload:
            entries[key.to_token()] = payload
    return entries


def build_sheet_payload(sheet: Sheet, index: int) -> SheetMetaPayload:
    return SheetMetaPayload(
        index=index,
        name=sheet.name,
        conditional_formatting=[r.to_payload() for r in sheet.conditional_rules] or None,
        charts=[c.to_payload() for c in sheet.charts] or None,
        cells=_cell_entries(sheet) or None,
        column_widths={str(col): w for col, w in sorted(sheet.column_widths.items())} or None,
    )


def build_payload(sheets: List[Sheet]) -> MetadataPayload:
    return MetadataPayload(
        version=PAYLOAD_VERSION,
        sheets=[build_sheet_payload(sheet, i) for i, sheet in enumerate(sheets)],
    )


def dump_payload(sheets: List[Sheet]) -> str:
    return json.dumps(build_payload(sheets).to_payload(), separators=(",", ":"))


def has_metadata(payload: SheetMetaPayload) -> bool:
    return any([
        payload.conditional_formatting,
        payload.charts,
        payload.cells,
        payload.column_widths,
    ])


# =============================================================================
# APPLY
# =============================================================================

def parse_payload(text: Optional[str]) -> Optional[MetadataPayload]:
    """Parse payload JSON. Unreadable payloads are logged and ignored."""
    if not text:
        return None
    try:
        raw = json.loads(text)
    except ValueError as e:
        logger.warning(f"[DECODE] Metadata payload is not valid JSON: {e}")
        return None
    if not isinstance(raw, dict):
        logger.warning("[DECODE] Metadata payload is not a JSON object")
        return None
    try:
        return MetadataPayload.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"[DECODE] Metadata payload rejected: {e.error_count()} error(s)")
        return None


def _apply_cells(sheet: Sheet, cells: Dict[str, Dict[str, Any]]) -> None:
    for token, raw in cells.items():
        try:
            key = CellKey.from_token(token)
            entry = CellMetaEntry.model_validate(raw)
        except (ValueError, ValidationError) as e:
            logger.warning(f"[DECODE] Skipping cell metadata {token}: {e}")
            continue

        if entry.type is not None:
            date_format = entry.date_format if entry.date_format in DATE_FORMATS else None
            sheet.cell_types[key] = CellTypeMeta(
                type=entry.type,
                source=entry.source,
                numeric_format=entry.numeric_format,
                date_format=date_format,
            )
        if entry.class_name:
            sheet.cell_formats[key] = CellFormat(class_name=entry.class_name)
        if entry.styles:
            sheet.cell_styles[key] = {k: str(v) for k, v in entry.styles.items()}
        if entry.link:
            sheet.links[key] = entry.link
            sheet.detected_links.discard(key)


def apply_sheet_payload(sheet: Sheet, payload: SheetMetaPayload) -> None:
    """Apply one sheet's metadata. Malformed rules or charts are skipped."""
    if payload.conditional_formatting is not None:
        rules: List[ConditionalRule] = []
        for i, raw in enumerate(payload.conditional_formatting):
            try:
                rule = ConditionalRule.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"[DECODE] Skipping conditional rule #{i} on '{sheet.name}': {e.error_count()} error(s)")
                continue
            if any(r.id == rule.id for r in rules):
                logger.warning(f"[DECODE] Skipping duplicate rule id {rule.id} on '{sheet.name}'")
                continue
            rules.append(rule)
        sheet.conditional_rules = rules

    if payload.charts is not None:
        charts: List[ChartDefinition] = []
        for i, raw in enumerate(payload.charts):
            try:
                charts.append(ChartDefinition.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"[DECODE] Skipping chart #{i} on '{sheet.name}': {e.error_count()} error(s)")
        sheet.charts = charts

    if payload.cells:
        _apply_cells(sheet, payload.cells)

    if payload.column_widths:
        for col, width in payload.column_widths.items():
            try:
                index = int(col)
            except ValueError:
                continue
            if index >= 0 and width > 0:
                sheet.column_widths[index] = float(width)


def apply_payload(sheets: List[Sheet], payload: MetadataPayload) -> None:
    """Dispatch a workbook payload onto decoded sheets."""
    if not sheets:
        return
    if payload.sheets is None:
        apply_sheet_payload(sheets[0], payload)
        return
    for position, entry in enumerate(payload.sheets):
        index = entry.index if entry.index is not None else position
        if 0 <= index < len(sheets):
            apply_sheet_payload(sheets[index], entry)
        else:
            logger.warning(f"[DECODE] Metadata for missing sheet index {index} ignored")
