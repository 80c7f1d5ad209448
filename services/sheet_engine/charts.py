"""Chart definitions and chart data extraction."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .cells import Sheet, display_text, is_blank
from .conditional import coerce_number
from .errors import MalformedInput
from .schemas import ChartData, ChartDefinition, ChartPosition, ChartSeriesData, ChartSize


logger = logging.getLogger(__name__)


def extract_chart_data(grid: Sequence[Sequence[Any]], chart: ChartDefinition) -> ChartData:
    """Project a chart's data range into categories and series.

    The first row of the range names the series; each later row adds one
    category (from the category column) and one value per series column.
    Rows past the end of the grid are skipped; unparseable values become 0.
    """
    rng = chart.data_range
    category_col = rng.start_col + chart.options.category_column

    names: List[str] = []
    values: List[List[float]] = []
    categories: List[str] = []

    for row in range(rng.start_row, rng.end_row + 1):
        if row >= len(grid):
            continue
        cells = grid[row]

        def _cell(col: int) -> Any:
            return cells[col] if col < len(cells) else None

        if row == rng.start_row:
            for col in range(rng.start_col, rng.end_col + 1):
                if col == category_col:
                    continue
                header = _cell(col)
                names.append(
                    display_text(header) if not is_blank(header) else f"Series {col - rng.start_col + 1}"
                )
                values.append([])
            continue

        category = _cell(category_col)
        categories.append(display_text(category) if not is_blank(category) else f"Row {row + 1}")

        series_index = 0
        for col in range(rng.start_col, rng.end_col + 1):
            if col == category_col:
                continue
            number = coerce_number(_cell(col))
            values[series_index].append(number if number is not None else 0.0)
            series_index += 1

    colors = {s.name: s.color for s in chart.series if s.color}
    return ChartData(
        categories=categories,
        series=[
            ChartSeriesData(name=name, data=data, color=colors.get(name))
            for name, data in zip(names, values)
        ],
    )


# =============================================================================
# CHART CRUD
# =============================================================================

def _new_chart_id(taken: set) -> str:
    while True:
        chart_id = f"chart_{uuid.uuid4().hex[:12]}"
        if chart_id not in taken:
            return chart_id


def _find(sheet: Sheet, chart_id: str) -> ChartDefinition:
    for chart in sheet.charts:
        if chart.id == chart_id:
            return chart
    raise MalformedInput(f"Unknown chart: {chart_id}")


def add_chart(sheet: Sheet, data: Dict[str, Any], taken_ids: Optional[set] = None) -> ChartDefinition:
    """Validate and append a chart. `taken_ids` are ids used elsewhere in the workbook."""
    taken = set(taken_ids or set()) | {c.id for c in sheet.charts}
    payload = dict(data)
    if not payload.get("id") or payload["id"] in taken:
        payload["id"] = _new_chart_id(taken)
    try:
        chart = ChartDefinition.model_validate(payload)
    except ValidationError as e:
        raise MalformedInput(f"Invalid chart definition: {e.errors()[0].get('msg')}") from e
    sheet.charts = [*sheet.charts, chart]
    logger.info(f"[SHEETS] Added {chart.type} chart {chart.id} on '{sheet.name}'")
    return chart


def update_chart(sheet: Sheet, chart_id: str, changes: Dict[str, Any]) -> ChartDefinition:
    existing = _find(sheet, chart_id)
    merged = {**existing.model_dump(), **changes, "id": chart_id}
    try:
        updated = ChartDefinition.model_validate(merged)
    except ValidationError as e:
        raise MalformedInput(f"Invalid chart definition: {e.errors()[0].get('msg')}") from e
    sheet.charts = [updated if c.id == chart_id else c for c in sheet.charts]
    return updated


def delete_chart(sheet: Sheet, chart_id: str) -> bool:
    before = len(sheet.charts)
    sheet.charts = [c for c in sheet.charts if c.id != chart_id]
    return len(sheet.charts) != before


def move_chart(sheet: Sheet, chart_id: str, x: float, y: float) -> ChartDefinition:
    chart = _find(sheet, chart_id).model_copy(update={"position": ChartPosition(x=x, y=y)})
    sheet.charts = [chart if c.id == chart_id else c for c in sheet.charts]
    return chart


def resize_chart(sheet: Sheet, chart_id: str, width: float, height: float) -> ChartDefinition:
    if width <= 0 or height <= 0:
        raise MalformedInput(f"Invalid chart size: {width}x{height}")
    chart = _find(sheet, chart_id).model_copy(update={"size": ChartSize(width=width, height=height)})
    sheet.charts = [chart if c.id == chart_id else c for c in sheet.charts]
    return chart


def chart_data_for(sheet: Sheet, chart_id: str) -> ChartData:
    return extract_chart_data(sheet.grid, _find(sheet, chart_id))
