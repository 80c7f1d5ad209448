"""Workbook: an ordered list of sheets plus the active sheet index.

Sheet identity is `Sheet.id`; names are user labels and are not required
to be unique while editing.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from .cells import Sheet
from .charts import _new_chart_id
from .errors import MalformedInput
from .events import EventBus, SheetSwitched


logger = logging.getLogger(__name__)


def blank_grid(rows: int = 1, cols: int = 1) -> List[list]:
    return [[None] * cols for _ in range(rows)]


@dataclass
class Workbook:
    sheets: List[Sheet] = field(default_factory=list)
    active_index: int = 0
    events: EventBus = field(default_factory=EventBus)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not self.sheets:
            self.sheets.append(Sheet(name="Sheet1", grid=blank_grid()))
        for sheet in self.sheets:
            sheet.events = self.events
        if not 0 <= self.active_index < len(self.sheets):
            self.active_index = 0

    # =========================================================================
    # LOOKUP
    # =========================================================================

    @property
    def active_sheet(self) -> Sheet:
        return self.sheets[self.active_index]

    def sheet_at(self, index: int) -> Sheet:
        if not 0 <= index < len(self.sheets):
            raise MalformedInput(f"Sheet index out of range: {index}")
        return self.sheets[index]

    def find_sheet(self, sheet_id: str) -> Optional[Sheet]:
        for sheet in self.sheets:
            if sheet.id == sheet_id:
                return sheet
        return None

    def index_of(self, sheet_id: str) -> int:
        for i, sheet in enumerate(self.sheets):
            if sheet.id == sheet_id:
                return i
        raise MalformedInput(f"Unknown sheet: {sheet_id}")

    def all_chart_ids(self) -> set:
        return {chart.id for sheet in self.sheets for chart in sheet.charts}

    # =========================================================================
    # SHEET OPERATIONS
    # =========================================================================

    def add_sheet(self, name: Optional[str] = None, grid: Optional[List[list]] = None) -> Sheet:
        """Append a sheet named Sheet{n+1} (n = current count) unless named."""
        sheet = Sheet(
            name=name or f"Sheet{len(self.sheets) + 1}",
            grid=grid if grid is not None else blank_grid(),
        )
        sheet.events = self.events
        self.sheets.append(sheet)
        logger.info(f"[SHEETS] Added sheet '{sheet.name}' at index {len(self.sheets) - 1}")
        return sheet

    def duplicate_sheet(self, index: int) -> Sheet:
        """Deep-copy a sheet right after the original, with fresh chart ids."""
        source = self.sheet_at(index)
        copy = source.clone(name=f"{source.name} (copy)")
        taken = self.all_chart_ids()
        charts = []
        for chart in copy.charts:
            chart_id = _new_chart_id(taken)
            taken.add(chart_id)
            charts.append(chart.model_copy(update={"id": chart_id}))
        copy.charts = charts
        copy.events = self.events
        self.sheets.insert(index + 1, copy)
        if self.active_index > index:
            self.active_index += 1
        logger.info(f"[SHEETS] Duplicated sheet '{source.name}' -> '{copy.name}'")
        return copy

    def delete_sheet(self, index: int) -> bool:
        """Delete a sheet. Returns False (and changes nothing) for the last sheet."""
        self.sheet_at(index)
        if len(self.sheets) <= 1:
            logger.warning("[SHEETS] Refusing to delete the only remaining sheet")
            return False

        removed = self.sheets.pop(index)
        removed.events = None
        previous = self.active_index
        if index == previous:
            self.active_index = max(0, index - 1)
        elif index < previous:
            self.active_index = previous - 1
        self.active_index = min(self.active_index, len(self.sheets) - 1)
        logger.info(f"[SHEETS] Deleted sheet '{removed.name}' ({len(removed.charts)} chart(s))")

        if index == previous:
            self.events.publish(SheetSwitched(
                previous_index=previous,
                active_index=self.active_index,
                sheet_id=self.active_sheet.id,
            ))
        return True

    def rename_sheet(self, index: int, name: str) -> Sheet:
        sheet = self.sheet_at(index)
        clean = (name or "").strip()
        if not clean:
            raise MalformedInput("Sheet name cannot be empty")
        sheet.name = clean
        return sheet

    def switch_active(self, new_index: int, working: Optional[Sheet] = None) -> Sheet:
        """Make `new_index` the active sheet.

        `working` is the caller's in-progress copy of the outgoing sheet; it
        is written back into the workbook before the swap.
        """
        self.sheet_at(new_index)
        previous = self.active_index
        if working is not None:
            self.persist_active(working)
        self.active_index = new_index
        if previous != new_index:
            self.events.publish(SheetSwitched(
                previous_index=previous,
                active_index=new_index,
                sheet_id=self.active_sheet.id,
            ))
        return self.active_sheet

    def persist_active(self, working: Sheet) -> None:
        """Store a working copy of the active sheet back into the workbook."""
        current = self.active_sheet
        if working.id != current.id:
            raise MalformedInput("Working sheet does not belong to the active tab")
        working.events = self.events
        self.sheets[self.active_index] = working

    def replace_with(self, other: "Workbook") -> None:
        """Take over another workbook's sheets (used after a successful decode)."""
        self.sheets = other.sheets
        self.active_index = other.active_index
        for sheet in self.sheets:
            sheet.events = self.events
