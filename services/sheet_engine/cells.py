"""Cell model: a sparse grid of values plus per-cell metadata maps.

All per-cell maps are keyed by `CellKey(row, col)`. Type metadata drives
input widgets; formats and styles drive rendering only, so they live in
separate maps.

Multi-cell edits go through `Sheet.batch()`, which stages the changes on
a draft copy and commits them in one step (one undo entry, one event).
"""

from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Union

from .addressing import shift_range
from .errors import MalformedInput, PartialApplyFailure, SheetEngineError
from .events import DataChanged, EventBus
from .schemas import (
    CellFormat,
    CellKey,
    CellRange,
    CellTypeMeta,
    ChartDefinition,
    ConditionalRule,
    StyleMap,
)


logger = logging.getLogger(__name__)

CellValue = Union[None, str, int, float, bool, date, datetime]


def is_formula(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("=")


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def display_text(value: Any) -> str:
    """Stringify a cell value the way it is shown in the grid."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _new_id() -> str:
    return uuid.uuid4().hex


def _shift_key(key: CellKey, axis: str, at: int, count: int) -> CellKey:
    if axis == "row" and key.row >= at:
        return CellKey(key.row + count, key.col)
    if axis == "col" and key.col >= at:
        return CellKey(key.row, key.col + count)
    return key


@dataclass
class Sheet:
    """One named grid with its metadata, rules and charts."""
    name: str
    grid: List[List[Any]] = field(default_factory=list)
    cell_types: Dict[CellKey, CellTypeMeta] = field(default_factory=dict)
    cell_formats: Dict[CellKey, CellFormat] = field(default_factory=dict)
    cell_styles: Dict[CellKey, StyleMap] = field(default_factory=dict)
    links: Dict[CellKey, str] = field(default_factory=dict)
    detected_links: Set[CellKey] = field(default_factory=set)
    column_widths: Dict[int, float] = field(default_factory=dict)
    conditional_rules: List[ConditionalRule] = field(default_factory=list)
    charts: List[ChartDefinition] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    events: Optional[EventBus] = field(default=None, repr=False, compare=False)

    # =========================================================================
    # DIMENSIONS
    # =========================================================================

    @property
    def row_count(self) -> int:
        return len(self.grid)

    @property
    def col_count(self) -> int:
        return max((len(r) for r in self.grid), default=0)

    def ensure_size(self, rows: int, cols: int) -> None:
        """Grow the grid so (rows-1, cols-1) is addressable. Never shrinks."""
        width = max(cols, self.col_count)
        while len(self.grid) < rows:
            self.grid.append([])
        for r in self.grid:
            if len(r) < width:
                r.extend([None] * (width - len(r)))

    def bounding_box(self) -> Optional[CellRange]:
        """Smallest range holding every non-blank value, or None for an empty sheet."""
        rows = [i for i, r in enumerate(self.grid) if any(not is_blank(v) for v in r)]
        if not rows:
            return None
        cols = [
            j for r in self.grid for j, v in enumerate(r) if not is_blank(v)
        ]
        return CellRange(start_row=0, start_col=0, end_row=max(rows), end_col=max(cols))

    # =========================================================================
    # VALUES
    # =========================================================================

    def get_value(self, row: int, col: int) -> CellValue:
        if row < 0 or col < 0 or row >= len(self.grid):
            return None
        r = self.grid[row]
        return r[col] if col < len(r) else None

    def set_value(self, row: int, col: int, value: CellValue) -> None:
        if row < 0 or col < 0:
            raise MalformedInput(f"Invalid cell position: ({row}, {col})")
        self.ensure_size(row + 1, col + 1)
        self.grid[row][col] = value
        self._grow_dropdown_sources(row, col, value)
        self._changed("values", 1)

    def set_values(self, updates: Sequence[tuple]) -> int:
        """Apply (row, col, value) triples as one change."""
        with self.batch("set values", scope="values") as draft:
            for row, col, value in updates:
                draft.set_value(row, col, value)
        return len(updates)

    def iter_values(self) -> Iterator[tuple]:
        """Yield (CellKey, value) for every non-blank cell, row-major."""
        for r, row in enumerate(self.grid):
            for c, value in enumerate(row):
                if not is_blank(value):
                    yield CellKey(r, c), value

    def _grow_dropdown_sources(self, row: int, col: int, value: Any) -> None:
        meta = self.cell_types.get(CellKey(row, col))
        if meta is None or meta.type != "dropdown":
            return
        text = display_text(value).strip()
        if not text or text in (meta.source or []):
            return
        for key, other in list(self.cell_types.items()):
            if key.col != col or other.type != "dropdown":
                continue
            source = list(other.source or [])
            if text not in source:
                source.append(text)
            self.cell_types[key] = other.model_copy(update={"source": sorted(source)})

    # =========================================================================
    # TYPE METADATA
    # =========================================================================

    def get_type(self, row: int, col: int) -> CellTypeMeta:
        return self.cell_types.get(CellKey(row, col)) or CellTypeMeta()

    def set_type(self, row: int, col: int, meta: CellTypeMeta) -> None:
        # re-validate so the type-family invariants hold on the stored copy
        self.cell_types[CellKey(row, col)] = CellTypeMeta.model_validate(meta.model_dump())
        self._changed("metadata", 1)

    def remove_type(self, row: int, col: int) -> None:
        self.cell_types.pop(CellKey(row, col), None)
        self._changed("metadata", 1)

    def set_type_range(self, range_: CellRange, meta: CellTypeMeta) -> int:
        with self.batch("set type", scope="metadata") as draft:
            for key in range_.cells():
                draft.set_type(key.row, key.col, meta)
        return range_.row_count * range_.col_count

    # =========================================================================
    # FORMATS, STYLES, LINKS
    # =========================================================================

    def get_format(self, row: int, col: int) -> CellFormat:
        return self.cell_formats.get(CellKey(row, col)) or CellFormat()

    def set_format(self, row: int, col: int, class_name: Optional[str]) -> None:
        key = CellKey(row, col)
        tags = " ".join(t for t in (class_name or "").split(" ") if t)
        if tags:
            self.cell_formats[key] = CellFormat(class_name=tags)
        else:
            self.cell_formats.pop(key, None)
        self._changed("metadata", 1)

    def remove_format(self, row: int, col: int) -> None:
        self.set_format(row, col, None)

    def get_style(self, row: int, col: int) -> StyleMap:
        return dict(self.cell_styles.get(CellKey(row, col), {}))

    def set_style(self, row: int, col: int, styles: StyleMap, merge: bool = True) -> None:
        """Merge (or replace) style properties. Empty-string values remove a key."""
        key = CellKey(row, col)
        current = dict(self.cell_styles.get(key, {})) if merge else {}
        for prop, value in styles.items():
            if value is None or value == "":
                current.pop(prop, None)
            else:
                current[prop] = str(value)
        if current:
            self.cell_styles[key] = current
        else:
            self.cell_styles.pop(key, None)
        self._changed("metadata", 1)

    def remove_style(self, row: int, col: int) -> None:
        self.cell_styles.pop(CellKey(row, col), None)
        self._changed("metadata", 1)

    def get_link(self, row: int, col: int) -> Optional[str]:
        return self.links.get(CellKey(row, col))

    def set_link(self, row: int, col: int, url: Optional[str]) -> None:
        key = CellKey(row, col)
        self.detected_links.discard(key)
        if url:
            self.links[key] = url
        else:
            self.links.pop(key, None)
        self._changed("metadata", 1)

    def remove_link(self, row: int, col: int) -> None:
        self.set_link(row, col, None)

    def update_range(
        self,
        range_: CellRange,
        edit: Callable[["Sheet", CellKey], None],
        label: str = "update range",
    ) -> int:
        """Run `edit(draft, key)` for every cell of the range as one change."""
        with self.batch(label, scope="metadata") as draft:
            for key in range_.cells():
                edit(draft, key)
        return range_.row_count * range_.col_count

    # =========================================================================
    # COLUMN WIDTHS
    # =========================================================================

    def get_column_width(self, col: int) -> Optional[float]:
        return self.column_widths.get(col)

    def set_column_width(self, col: int, width_px: Optional[float]) -> None:
        if width_px is None:
            self.column_widths.pop(col, None)
        elif width_px <= 0:
            raise MalformedInput(f"Invalid column width: {width_px}")
        else:
            self.column_widths[col] = float(width_px)
        self._changed("metadata", 0)

    # =========================================================================
    # STRUCTURAL EDITS
    # =========================================================================

    def insert_rows(self, after: int, count: int = 1) -> None:
        """Insert `count` blank rows below row `after` (-1 inserts at the top)."""
        if count <= 0:
            raise MalformedInput(f"Invalid row count: {count}")
        at = max(0, after + 1)
        width = self.col_count
        self.ensure_size(at, 0)
        for _ in range(count):
            self.grid.insert(at, [None] * width)
        self._shift_metadata("row", at, count)
        self._changed("structure", count * width)

    def insert_columns(self, after: int, count: int = 1) -> None:
        """Insert `count` blank columns right of column `after`."""
        if count <= 0:
            raise MalformedInput(f"Invalid column count: {count}")
        at = max(0, after + 1)
        self.ensure_size(0, at)
        for r in self.grid:
            r[at:at] = [None] * count
        self._shift_metadata("col", at, count)
        self.column_widths = {
            (c + count if c >= at else c): w for c, w in self.column_widths.items()
        }
        self._changed("structure", count * len(self.grid))

    def _shift_metadata(self, axis: str, at: int, count: int) -> None:
        self.cell_types = {_shift_key(k, axis, at, count): v for k, v in self.cell_types.items()}
        self.cell_formats = {_shift_key(k, axis, at, count): v for k, v in self.cell_formats.items()}
        self.cell_styles = {_shift_key(k, axis, at, count): v for k, v in self.cell_styles.items()}
        self.links = {_shift_key(k, axis, at, count): v for k, v in self.links.items()}
        self.detected_links = {_shift_key(k, axis, at, count) for k in self.detected_links}
        self.conditional_rules = [
            rule.model_copy(update={"range": shift_range(rule.range, axis, at, count)})
            for rule in self.conditional_rules
        ]
        self.charts = [
            chart.model_copy(update={"data_range": shift_range(chart.data_range, axis, at, count)})
            for chart in self.charts
        ]

    def clear_range(self, range_: CellRange, include_metadata: bool = False) -> int:
        """Blank the values of a range (and optionally its per-cell metadata)."""
        with self.batch("clear", scope="values") as draft:
            for key in range_.cells():
                if key.row < len(draft.grid) and key.col < len(draft.grid[key.row]):
                    draft.grid[key.row][key.col] = None
                if include_metadata:
                    draft.cell_types.pop(key, None)
                    draft.cell_formats.pop(key, None)
                    draft.cell_styles.pop(key, None)
                    draft.links.pop(key, None)
                    draft.detected_links.discard(key)
        return range_.row_count * range_.col_count

    def paste(self, row: int, col: int, block: Sequence[Sequence[Any]]) -> CellRange:
        """Paste a rectangular block with its top-left corner at (row, col)."""
        if not block or not block[0]:
            raise MalformedInput("Nothing to paste")
        width = len(block[0])
        if any(len(r) != width for r in block):
            raise MalformedInput("Pasted block is not rectangular")
        with self.batch("paste", scope="values") as draft:
            draft.ensure_size(row + len(block), col + width)
            for i, values in enumerate(block):
                for j, value in enumerate(values):
                    draft.grid[row + i][col + j] = value
        return CellRange(
            start_row=row, start_col=col, end_row=row + len(block) - 1, end_col=col + width - 1
        )

    # =========================================================================
    # BATCHING
    # =========================================================================

    def _draft(self) -> "Sheet":
        return Sheet(
            name=self.name,
            grid=[list(r) for r in self.grid],
            cell_types=dict(self.cell_types),
            cell_formats=dict(self.cell_formats),
            cell_styles={k: dict(v) for k, v in self.cell_styles.items()},
            links=dict(self.links),
            detected_links=set(self.detected_links),
            column_widths=dict(self.column_widths),
            conditional_rules=list(self.conditional_rules),
            charts=list(self.charts),
            id=self.id,
        )

    def _commit(self, draft: "Sheet") -> None:
        self.grid = draft.grid
        self.cell_types = draft.cell_types
        self.cell_formats = draft.cell_formats
        self.cell_styles = draft.cell_styles
        self.links = draft.links
        self.detected_links = draft.detected_links
        self.column_widths = draft.column_widths
        self.conditional_rules = draft.conditional_rules
        self.charts = draft.charts

    @contextmanager
    def batch(self, label: str = "batch", scope: str = "metadata") -> Iterator["Sheet"]:
        """Stage edits on a draft and commit them together.

        The draft publishes nothing; one DataChanged is published on commit.
        If the body raises, the sheet is left untouched.
        """
        draft = self._draft()
        try:
            yield draft
        except SheetEngineError:
            logger.warning(f"[SHEETS] {label} on '{self.name}' rolled back")
            raise
        except Exception as e:
            logger.error(f"[SHEETS] {label} on '{self.name}' failed: {e}")
            raise PartialApplyFailure(f"{label} failed: {e}") from e
        self._commit(draft)
        self._changed(scope, 0)

    def _changed(self, scope: str, count: int) -> None:
        if self.events is not None:
            self.events.publish(DataChanged(sheet_id=self.id, scope=scope, cell_count=count))

    # =========================================================================
    # COPY
    # =========================================================================

    def clone(self, name: Optional[str] = None) -> "Sheet":
        """Deep copy with a fresh sheet id. Chart ids are kept (see Workbook)."""
        return Sheet(
            name=name if name is not None else self.name,
            grid=copy.deepcopy(self.grid),
            cell_types={k: v.model_copy(deep=True) for k, v in self.cell_types.items()},
            cell_formats={k: v.model_copy() for k, v in self.cell_formats.items()},
            cell_styles={k: dict(v) for k, v in self.cell_styles.items()},
            links=dict(self.links),
            detected_links=set(self.detected_links),
            column_widths=dict(self.column_widths),
            conditional_rules=[r.model_copy(deep=True) for r in self.conditional_rules],
            charts=[c.model_copy(deep=True) for c in self.charts],
        )


# =============================================================================
# SEARCH
# =============================================================================

def search_cells(sheet: Sheet, query: str) -> List[CellKey]:
    """Case-insensitive substring search, row-major."""
    needle = (query or "").strip().lower()
    if not needle:
        return []
    return [key for key, value in sheet.iter_values() if needle in display_text(value).lower()]


class SearchCursor:
    """Walks search matches with wrap-around in both directions."""

    def __init__(self, sheet: Sheet, query: str):
        self.query = query
        self.matches = search_cells(sheet, query)
        self.position = -1

    def current(self) -> Optional[CellKey]:
        if self.position < 0 or not self.matches:
            return None
        return self.matches[self.position]

    def next(self) -> Optional[CellKey]:
        if not self.matches:
            return None
        self.position = (self.position + 1) % len(self.matches)
        return self.matches[self.position]

    def previous(self) -> Optional[CellKey]:
        if not self.matches:
            return None
        if self.position < 0:
            self.position = len(self.matches) - 1
        else:
            self.position = (self.position - 1) % len(self.matches)
        return self.matches[self.position]
