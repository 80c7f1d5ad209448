"""API routes for workbook editing sessions.

- Upload CSV/XLSX -> decode into an in-memory workbook
- Edit cells, sheets, conditional formatting rules and charts
- Read render overlays and chart data
- Export back to XLSX or CSV
"""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field

from services.sheet_engine import (
    MalformedInput,
    OverlayRecomputer,
    PanelInput,
    PartialApplyFailure,
    RuleSet,
    ServerErrorMasquerade,
    SheetEngineError,
    UnsupportedContainer,
    Workbook,
    add_chart,
    add_rule_from_panel,
    chart_data_for,
    decode_bytes_async,
    delete_chart,
    encode_workbook_async,
    scan_links,
)
from services.sheet_engine.addressing import parse_cell_ref
from services.sheet_engine.cells import Sheet
from services.sheet_engine.codec import content_type_for
from services.sheet_engine.metadata import build_sheet_payload


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workbooks", tags=["workbooks"])

# In-memory storage for active editing sessions
_active_workbooks: dict[str, Workbook] = {}
_workbook_names: dict[str, str] = {}


# =============================================================================
# MODELS
# =============================================================================

class CellEdit(BaseModel):
    """Set one cell value."""
    cell: str  # Cell reference e.g. "A1"
    value: str | int | float | bool | None


class BatchCellEditRequest(BaseModel):
    """Edit multiple cells of one sheet as a single change."""
    sheet: Optional[int] = None  # Sheet index; defaults to the active sheet
    edits: list[CellEdit]


class InsertRequest(BaseModel):
    after: int = -1
    count: int = Field(default=1, ge=1)


class SheetCreateRequest(BaseModel):
    name: Optional[str] = None


class SheetRenameRequest(BaseModel):
    name: str


class RuleMoveRequest(BaseModel):
    direction: Literal["up", "down"]


class RulePanelRequest(BaseModel):
    """Raw rule-creation panel state."""
    mode: Literal["numeric", "text", "date", "colorScale", "topN", "bottomN"] = "numeric"
    operator: str = "gt"
    text_operator: str = "contains"
    date_operator: str = "today"
    a1_range: str = ""
    value: str = ""
    value2: str = ""
    stop_if_true: bool = False
    min_color: str = "#F8696B"
    max_color: str = "#63BE7B"
    text_color: str = ""
    fill_color: str = ""
    bold: bool = False
    italic: bool = False
    underline: bool = False
    selection: Optional[list[int]] = None


# =============================================================================
# HELPERS
# =============================================================================

def _http_error(e: SheetEngineError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(e, ServerErrorMasquerade):
        return HTTPException(502, {"kind": e.kind, "message": str(e), "serverMessage": e.server_message})
    if isinstance(e, UnsupportedContainer):
        return HTTPException(415, str(e))
    if isinstance(e, MalformedInput):
        return HTTPException(400, str(e))
    if isinstance(e, PartialApplyFailure):
        return HTTPException(500, str(e))
    return HTTPException(500, str(e))


def _get_workbook(workbook_id: str) -> Workbook:
    if workbook_id not in _active_workbooks:
        raise HTTPException(404, "Workbook not found")
    return _active_workbooks[workbook_id]


def _get_sheet(workbook: Workbook, index: Optional[int]) -> Sheet:
    if index is None:
        return workbook.active_sheet
    try:
        return workbook.sheet_at(index)
    except MalformedInput:
        raise HTTPException(404, f"Sheet not found: {index}")


def _sheet_summary(sheet: Sheet, index: int) -> dict:
    return {
        "id": sheet.id,
        "index": index,
        "name": sheet.name,
        "rows": sheet.row_count,
        "cols": sheet.col_count,
        "ruleCount": len(sheet.conditional_rules),
        "chartCount": len(sheet.charts),
    }


def _workbook_summary(workbook_id: str, workbook: Workbook) -> dict:
    return {
        "workbookId": workbook_id,
        "name": _workbook_names.get(workbook_id),
        "activeIndex": workbook.active_index,
        "sheets": [_sheet_summary(s, i) for i, s in enumerate(workbook.sheets)],
    }


def _register(workbook: Workbook, name: Optional[str]) -> str:
    _active_workbooks[workbook.id] = workbook
    _workbook_names[workbook.id] = name or "Untitled"
    return workbook.id


# =============================================================================
# WORKBOOK ENDPOINTS
# =============================================================================

@router.post("/", response_model=dict)
async def upload_workbook(file: UploadFile = File(...)):
    """Upload a CSV or XLSX file and open it as an editing session."""
    if not file.filename:
        raise HTTPException(400, "No filename provided")

    content = await file.read()
    try:
        workbook = await decode_bytes_async(content, file.filename, file.content_type)
    except SheetEngineError as e:
        logger.error(f"[API] Upload of '{file.filename}' rejected: {e}")
        raise _http_error(e)

    for sheet in workbook.sheets:
        scan_links(sheet)
    workbook_id = _register(workbook, file.filename)
    logger.info(f"[API] Opened '{file.filename}' as {workbook_id}")
    return _workbook_summary(workbook_id, workbook)


@router.post("/blank", response_model=dict)
async def create_workbook():
    """Create an empty workbook with one sheet."""
    workbook = Workbook()
    workbook_id = _register(workbook, None)
    return _workbook_summary(workbook_id, workbook)


@router.get("/{workbook_id}")
async def get_workbook(workbook_id: str):
    workbook = _get_workbook(workbook_id)
    return _workbook_summary(workbook_id, workbook)


@router.delete("/{workbook_id}")
async def close_workbook(workbook_id: str):
    _get_workbook(workbook_id)
    _active_workbooks.pop(workbook_id, None)
    _workbook_names.pop(workbook_id, None)
    return {"closed": workbook_id}


@router.get("/{workbook_id}/export/{fmt}")
async def export_workbook(workbook_id: str, fmt: Literal["xlsx", "csv"]):
    """Export the workbook. CSV carries the active sheet only."""
    workbook = _get_workbook(workbook_id)
    try:
        data = await encode_workbook_async(workbook, fmt)
    except SheetEngineError as e:
        raise _http_error(e)

    base = (_workbook_names.get(workbook_id) or "workbook").rsplit(".", 1)[0]
    return Response(
        content=data,
        media_type=content_type_for(fmt),
        headers={"Content-Disposition": f'attachment; filename="{base}.{fmt}"'},
    )


# =============================================================================
# CELL ENDPOINTS
# =============================================================================

@router.get("/{workbook_id}/sheets/{index}")
async def get_sheet(workbook_id: str, index: int):
    """Full sheet state: values plus metadata in payload form."""
    workbook = _get_workbook(workbook_id)
    sheet = _get_sheet(workbook, index)
    return {
        **_sheet_summary(sheet, index),
        "grid": sheet.grid,
        "meta": build_sheet_payload(sheet, index).to_payload(),
    }


@router.post("/{workbook_id}/cells")
async def edit_cells(workbook_id: str, batch: BatchCellEditRequest):
    """Edit multiple cells at once (one change)."""
    workbook = _get_workbook(workbook_id)
    sheet = _get_sheet(workbook, batch.sheet)

    try:
        updates = []
        for edit in batch.edits:
            key = parse_cell_ref(edit.cell)
            updates.append((key.row, key.col, edit.value))
        sheet.set_values(updates)
        scan_links(sheet)
    except SheetEngineError as e:
        raise _http_error(e)

    return _workbook_summary(workbook_id, workbook)


@router.post("/{workbook_id}/sheets/{index}/rows")
async def insert_rows(workbook_id: str, index: int, request: InsertRequest):
    workbook = _get_workbook(workbook_id)
    sheet = _get_sheet(workbook, index)
    try:
        sheet.insert_rows(request.after, request.count)
    except SheetEngineError as e:
        raise _http_error(e)
    return _sheet_summary(sheet, index)


@router.post("/{workbook_id}/sheets/{index}/columns")
async def insert_columns(workbook_id: str, index: int, request: InsertRequest):
    workbook = _get_workbook(workbook_id)
    sheet = _get_sheet(workbook, index)
    try:
        sheet.insert_columns(request.after, request.count)
    except SheetEngineError as e:
        raise _http_error(e)
    return _sheet_summary(sheet, index)


# =============================================================================
# SHEET ENDPOINTS
# =============================================================================

@router.get("/{workbook_id}/sheets")
async def list_sheets(workbook_id: str):
    workbook = _get_workbook(workbook_id)
    return [_sheet_summary(s, i) for i, s in enumerate(workbook.sheets)]


@router.post("/{workbook_id}/sheets")
async def add_sheet(workbook_id: str, request: SheetCreateRequest):
    workbook = _get_workbook(workbook_id)
    workbook.add_sheet(request.name)
    return _workbook_summary(workbook_id, workbook)


@router.post("/{workbook_id}/sheets/{index}/duplicate")
async def duplicate_sheet(workbook_id: str, index: int):
    workbook = _get_workbook(workbook_id)
    _get_sheet(workbook, index)
    workbook.duplicate_sheet(index)
    return _workbook_summary(workbook_id, workbook)


@router.patch("/{workbook_id}/sheets/{index}")
async def rename_sheet(workbook_id: str, index: int, request: SheetRenameRequest):
    workbook = _get_workbook(workbook_id)
    _get_sheet(workbook, index)
    try:
        workbook.rename_sheet(index, request.name)
    except SheetEngineError as e:
        raise _http_error(e)
    return _workbook_summary(workbook_id, workbook)


@router.delete("/{workbook_id}/sheets/{index}")
async def delete_sheet(workbook_id: str, index: int):
    workbook = _get_workbook(workbook_id)
    _get_sheet(workbook, index)
    if not workbook.delete_sheet(index):
        raise HTTPException(400, "Cannot delete the only sheet in a workbook")
    return _workbook_summary(workbook_id, workbook)


@router.post("/{workbook_id}/sheets/{index}/activate")
async def activate_sheet(workbook_id: str, index: int):
    workbook = _get_workbook(workbook_id)
    _get_sheet(workbook, index)
    workbook.switch_active(index)
    return _workbook_summary(workbook_id, workbook)


# =============================================================================
# CONDITIONAL FORMATTING ENDPOINTS
# =============================================================================

@router.get("/{workbook_id}/sheets/{index}/rules")
async def list_rules(workbook_id: str, index: int):
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    return [rule.to_payload() for rule in RuleSet(sheet).rules]


@router.post("/{workbook_id}/sheets/{index}/rules")
async def add_rule(workbook_id: str, index: int, rule: dict[str, Any]):
    """Add a rule from a definition (camelCase keys, as in the saved payload)."""
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    try:
        created = RuleSet(sheet).add(rule)
    except SheetEngineError as e:
        logger.warning(f"[API] Rule rejected on '{sheet.name}': {e}")
        raise _http_error(e)
    return created.to_payload()


@router.post("/{workbook_id}/sheets/{index}/rules/panel")
async def add_rule_from_panel_input(workbook_id: str, index: int, panel: RulePanelRequest):
    """Add a rule from the rule-creation panel fields."""
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    try:
        created = add_rule_from_panel(sheet, PanelInput(**panel.model_dump()))
    except SheetEngineError as e:
        logger.warning(f"[API] Panel rule rejected on '{sheet.name}': {e}")
        raise _http_error(e)
    return created.to_payload()


@router.patch("/{workbook_id}/sheets/{index}/rules/{rule_id}")
async def update_rule(workbook_id: str, index: int, rule_id: str, changes: dict[str, Any]):
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    try:
        updated = RuleSet(sheet).update(rule_id, changes)
    except SheetEngineError as e:
        raise _http_error(e)
    return updated.to_payload()


@router.delete("/{workbook_id}/sheets/{index}/rules/{rule_id}")
async def delete_rule(workbook_id: str, index: int, rule_id: str):
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    if not RuleSet(sheet).remove(rule_id):
        raise HTTPException(404, f"Rule not found: {rule_id}")
    return {"deleted": rule_id}


@router.post("/{workbook_id}/sheets/{index}/rules/{rule_id}/move")
async def move_rule(workbook_id: str, index: int, rule_id: str, request: RuleMoveRequest):
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    try:
        moved = RuleSet(sheet).move(rule_id, request.direction)
    except SheetEngineError as e:
        raise _http_error(e)
    return {"moved": moved, "rules": [r.to_payload() for r in RuleSet(sheet).rules]}


@router.get("/{workbook_id}/sheets/{index}/overlays")
async def get_overlays(workbook_id: str, index: int):
    """Render overlays (classes and styles keyed by "row-col")."""
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    recomputer = OverlayRecomputer(lambda: sheet, debounce_ms=0)
    overlays = await recomputer.recompute_async()
    return overlays.to_payload() if overlays is not None else recomputer.overlays.to_payload()


# =============================================================================
# CHART ENDPOINTS
# =============================================================================

@router.post("/{workbook_id}/sheets/{index}/charts")
async def create_chart(workbook_id: str, index: int, chart: dict[str, Any]):
    workbook = _get_workbook(workbook_id)
    sheet = _get_sheet(workbook, index)
    try:
        created = add_chart(sheet, chart, taken_ids=workbook.all_chart_ids())
    except SheetEngineError as e:
        raise _http_error(e)
    return created.to_payload()


@router.delete("/{workbook_id}/sheets/{index}/charts/{chart_id}")
async def remove_chart(workbook_id: str, index: int, chart_id: str):
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    if not delete_chart(sheet, chart_id):
        raise HTTPException(404, f"Chart not found: {chart_id}")
    return {"deleted": chart_id}


@router.get("/{workbook_id}/sheets/{index}/charts/{chart_id}/data")
async def get_chart_data(workbook_id: str, index: int, chart_id: str):
    sheet = _get_sheet(_get_workbook(workbook_id), index)
    try:
        data = chart_data_for(sheet, chart_id)
    except MalformedInput:
        raise HTTPException(404, f"Chart not found: {chart_id}")
    return data.to_payload()
