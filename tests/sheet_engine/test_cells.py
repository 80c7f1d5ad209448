"""Tests for the cell model: values, metadata maps, batches and structure edits."""

import sys
from pathlib import Path

# Add project root to path (tests/sheet_engine/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from services.sheet_engine.addressing import make_range
from services.sheet_engine.cells import SearchCursor, Sheet, display_text, search_cells
from services.sheet_engine.errors import MalformedInput, PartialApplyFailure
from services.sheet_engine.events import DataChanged, EventBus
from services.sheet_engine.schemas import CellFormat, CellKey, CellTypeMeta, NumericFormat


def _sheet_with_events(grid=None):
    sheet = Sheet(name="Data", grid=grid if grid is not None else [[None]])
    bus = EventBus()
    received = []
    bus.subscribe(DataChanged, received.append)
    sheet.events = bus
    return sheet, received


class TestCellTypeMeta:
    """Type-family invariants."""

    def test_source_only_on_dropdown(self):
        meta = CellTypeMeta(type="numeric", source=["a"], numeric_format=NumericFormat(pattern="0.00"))
        assert meta.source is None
        assert meta.numeric_format.pattern == "0.00"

    def test_dropdown_gets_empty_source(self):
        assert CellTypeMeta(type="dropdown").source == []

    def test_date_defaults_format(self):
        assert CellTypeMeta(type="date").date_format == "MM/DD/YYYY"
        assert CellTypeMeta(type="text", date_format="YYYY-MM-DD").date_format is None


class TestValues:
    def test_set_value_grows_grid(self):
        sheet = Sheet(name="S")
        sheet.set_value(2, 3, "x")
        assert sheet.row_count == 3
        assert sheet.col_count == 4
        assert sheet.get_value(2, 3) == "x"
        assert sheet.get_value(10, 10) is None

    def test_negative_position_rejected(self):
        with pytest.raises(MalformedInput):
            Sheet(name="S").set_value(-1, 0, "x")

    def test_display_text(self):
        assert display_text(True) == "TRUE"
        assert display_text(3.0) == "3"
        assert display_text(2.5) == "2.5"
        assert display_text(None) == ""

    def test_dropdown_source_grows_for_whole_column(self):
        sheet = Sheet(name="S", grid=[["a"], ["a"], [None]])
        sheet.cell_types[CellKey(0, 0)] = CellTypeMeta(type="dropdown", source=["a"])
        sheet.cell_types[CellKey(1, 0)] = CellTypeMeta(type="dropdown", source=["a"])
        sheet.set_value(0, 0, "c")
        sheet.set_value(1, 0, "b")
        assert sheet.get_type(0, 0).source == ["a", "b", "c"]
        assert sheet.get_type(1, 0).source == ["a", "b", "c"]

    def test_set_style_merges_and_removes(self):
        sheet = Sheet(name="S", grid=[[1]])
        sheet.set_style(0, 0, {"color": "#FF0000", "fontSize": "12px"})
        sheet.set_style(0, 0, {"color": ""})
        assert sheet.get_style(0, 0) == {"fontSize": "12px"}
        sheet.set_style(0, 0, {"fontSize": ""})
        assert CellKey(0, 0) not in sheet.cell_styles


class TestBatch:
    """A batch commits once or not at all."""

    def test_set_values_publishes_one_event(self):
        sheet, received = _sheet_with_events()
        sheet.set_values([(0, 0, 1), (1, 1, 2), (2, 2, 3)])
        assert len(received) == 1
        assert received[0].scope == "values"
        assert sheet.get_value(2, 2) == 3

    def test_failure_leaves_sheet_untouched(self):
        sheet, received = _sheet_with_events([["keep"]])
        with pytest.raises(PartialApplyFailure):
            with sheet.batch("broken") as draft:
                draft.set_value(0, 0, "changed")
                draft.set_style(0, 0, {"color": "#000"})
                raise RuntimeError("boom")
        assert sheet.get_value(0, 0) == "keep"
        assert sheet.cell_styles == {}
        assert received == []

    def test_engine_errors_propagate_unchanged(self):
        sheet = Sheet(name="S", grid=[["keep"]])
        with pytest.raises(MalformedInput):
            with sheet.batch("bad") as draft:
                draft.set_value(0, 0, "changed")
                draft.set_value(-1, 0, "x")
        assert sheet.get_value(0, 0) == "keep"

    def test_update_range_is_one_change(self):
        sheet, received = _sheet_with_events([[1, 2], [3, 4]])
        count = sheet.update_range(
            make_range(0, 0, 1, 1),
            lambda draft, key: draft.set_format(key.row, key.col, "bold"),
        )
        assert count == 4
        assert len(received) == 1
        assert all(sheet.get_format(r, c).class_name == "bold" for r in range(2) for c in range(2))


class TestStructure:
    """Row/column insertion, clear and paste."""

    def test_insert_rows_shifts_metadata_and_keeps_formulas(self):
        sheet = Sheet(name="S", grid=[["=SUM(A2:A3)", 1], [2, 3]])
        sheet.cell_formats[CellKey(1, 0)] = CellFormat(class_name="bold")
        sheet.insert_rows(after=0)
        assert sheet.grid == [["=SUM(A2:A3)", 1], [None, None], [2, 3]]
        assert sheet.get_format(2, 0).class_name == "bold"
        assert CellKey(1, 0) not in sheet.cell_formats

    def test_insert_rows_at_top(self):
        sheet = Sheet(name="S", grid=[[1]])
        sheet.insert_rows(after=-1, count=2)
        assert sheet.grid == [[None], [None], [1]]

    def test_insert_columns_shifts_widths_and_types(self):
        sheet = Sheet(name="S", grid=[[1, 2, 3]])
        sheet.column_widths = {0: 80.0, 2: 120.0}
        sheet.cell_types[CellKey(0, 2)] = CellTypeMeta(type="checkbox")
        sheet.insert_columns(after=0)
        assert sheet.grid == [[1, None, 2, 3]]
        assert sheet.column_widths == {0: 80.0, 3: 120.0}
        assert sheet.get_type(0, 3).type == "checkbox"

    def test_clear_range(self):
        sheet = Sheet(name="S", grid=[[1, 2], [3, 4]])
        sheet.set_style(0, 0, {"color": "#000"})
        sheet.clear_range(make_range(0, 0, 0, 1))
        assert sheet.grid == [[None, None], [3, 4]]
        assert sheet.get_style(0, 0) == {"color": "#000"}
        sheet.clear_range(make_range(0, 0, 0, 0), include_metadata=True)
        assert sheet.get_style(0, 0) == {}

    def test_paste_grows_and_keeps_formulas(self):
        sheet = Sheet(name="S", grid=[[None]])
        pasted = sheet.paste(1, 1, [["=A1", 2], [3, 4]])
        assert pasted == make_range(1, 1, 2, 2)
        assert sheet.get_value(1, 1) == "=A1"
        assert sheet.get_value(2, 2) == 4

    def test_paste_rejects_ragged_block(self):
        sheet = Sheet(name="S", grid=[[None]])
        with pytest.raises(MalformedInput):
            sheet.paste(0, 0, [[1, 2], [3]])
        assert sheet.grid == [[None]]

    def test_clone_is_deep_with_new_id(self):
        sheet = Sheet(name="S", grid=[[1]])
        copy = sheet.clone("T")
        copy.set_value(0, 0, 9)
        assert sheet.get_value(0, 0) == 1
        assert copy.id != sheet.id
        assert copy.name == "T"


class TestSearch:
    def test_case_insensitive_row_major(self):
        sheet = Sheet(name="S", grid=[["Apple", "banana"], ["pineapple", 3]])
        assert search_cells(sheet, "APPLE") == [CellKey(0, 0), CellKey(1, 0)]
        assert search_cells(sheet, "   ") == []

    def test_cursor_wraps(self):
        sheet = Sheet(name="S", grid=[["Apple", "banana"], ["pineapple", 3]])
        cursor = SearchCursor(sheet, "apple")
        assert cursor.current() is None
        assert cursor.next() == CellKey(0, 0)
        assert cursor.next() == CellKey(1, 0)
        assert cursor.next() == CellKey(0, 0)
        assert cursor.previous() == CellKey(1, 0)

    def test_cursor_previous_from_start(self):
        sheet = Sheet(name="S", grid=[["x"], ["x"], ["y"]])
        cursor = SearchCursor(sheet, "x")
        assert cursor.previous() == CellKey(1, 0)
        assert SearchCursor(sheet, "zzz").next() is None
