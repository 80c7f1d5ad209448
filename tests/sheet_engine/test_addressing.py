"""Tests for A1 addressing and range helpers."""

import sys
from pathlib import Path

# Add project root to path (tests/sheet_engine/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from services.sheet_engine.addressing import (
    cell_ref,
    clamp_range,
    column_to_letter,
    letter_to_column,
    make_range,
    parse_a1_range,
    parse_cell_ref,
    range_to_a1,
    refs_to_sqref,
    resolve_target_range,
    shift_formula,
    shift_range,
    sqref_to_keys,
)
from services.sheet_engine.errors import MalformedInput
from services.sheet_engine.schemas import CellKey, CellRange


class TestColumnLetters:
    """Bijective base-26 column letters."""

    @pytest.mark.parametrize("index,letters", [
        (0, "A"), (25, "Z"), (26, "AA"), (27, "AB"), (701, "ZZ"), (702, "AAA"), (16383, "XFD"),
    ])
    def test_known_values(self, index, letters):
        assert column_to_letter(index) == letters
        assert letter_to_column(letters) == index

    def test_bijection_below_16384(self):
        for col in range(16384):
            assert letter_to_column(column_to_letter(col)) == col

    def test_lowercase_letters_accepted(self):
        assert letter_to_column("ab") == 27

    def test_invalid_inputs(self):
        with pytest.raises(MalformedInput):
            column_to_letter(-1)
        with pytest.raises(MalformedInput):
            letter_to_column("1")
        with pytest.raises(MalformedInput):
            letter_to_column("")


class TestCellRefs:
    def test_cell_ref(self):
        assert cell_ref(2, 1) == "B3"
        assert parse_cell_ref("B3") == CellKey(2, 1)
        assert parse_cell_ref("$C$10") == CellKey(9, 2)

    def test_bad_cell_ref(self):
        with pytest.raises(MalformedInput):
            parse_cell_ref("A0")
        with pytest.raises(MalformedInput):
            parse_cell_ref("12")


class TestA1Ranges:
    """Parsing and formatting of A1 ranges."""

    def test_parse_two_corner_range(self):
        assert parse_a1_range("A1:D10") == CellRange(start_row=0, start_col=0, end_row=9, end_col=3)

    def test_parse_reversed_range_is_normalized(self):
        assert parse_a1_range("D10:A1") == CellRange(start_row=0, start_col=0, end_row=9, end_col=3)

    def test_parse_single_cell(self):
        assert parse_a1_range("b3") == CellRange(start_row=2, start_col=1, end_row=2, end_col=1)

    @pytest.mark.parametrize("text", ["", "bogus", "A0", "A1:", "1A", "A1:B"])
    def test_malformed_returns_none(self, text):
        assert parse_a1_range(text) is None

    def test_round_trip(self):
        for r1, c1, r2, c2 in [(0, 0, 0, 0), (4, 2, 9, 27), (0, 700, 16383, 16383)]:
            rng = make_range(r1, c1, r2, c2)
            assert parse_a1_range(range_to_a1(rng)) == rng

    def test_range_to_a1_uses_two_corners(self):
        assert range_to_a1(make_range(2, 1, 2, 1)) == "B3:B3"


class TestTargetRange:
    """A1 text > selection > whole sheet > (0, 0), clamped to the data."""

    def test_a1_text_wins(self):
        rng = resolve_target_range("B2:C3", (0, 0, 0, 0), 10, 10)
        assert rng == CellRange(start_row=1, start_col=1, end_row=2, end_col=2)

    def test_bad_text_falls_back_to_selection(self):
        rng = resolve_target_range("ZZ", (3, 2, 1, 1), 10, 10)
        assert rng == CellRange(start_row=1, start_col=1, end_row=3, end_col=2)

    def test_whole_sheet_when_nothing_selected(self):
        rng = resolve_target_range("", None, 5, 3)
        assert rng == CellRange(start_row=0, start_col=0, end_row=4, end_col=2)

    def test_empty_sheet_falls_back_to_origin(self):
        rng = resolve_target_range(None, None, 0, 0)
        assert rng == CellRange(start_row=0, start_col=0, end_row=0, end_col=0)

    def test_clamped_to_data(self):
        rng = resolve_target_range("A1:Z100", None, 5, 3)
        assert rng == CellRange(start_row=0, start_col=0, end_row=4, end_col=2)
        assert clamp_range(make_range(8, 8, 9, 9), 5, 3) == make_range(4, 2, 4, 2)

    def test_negative_selection_falls_through(self):
        rng = resolve_target_range(None, [-1, 0, 0, 0], 5, 3)
        assert rng == CellRange(start_row=0, start_col=0, end_row=4, end_col=2)
        rng = resolve_target_range("", [0, 0, 1], 5, 3)
        assert rng == CellRange(start_row=0, start_col=0, end_row=4, end_col=2)


class TestShiftAndSqref:
    def test_shift_range_grows_when_straddling(self):
        rng = make_range(1, 0, 4, 0)
        assert shift_range(rng, "row", 2, 3) == make_range(1, 0, 7, 0)

    def test_shift_range_moves_when_after(self):
        rng = make_range(1, 3, 1, 5)
        assert shift_range(rng, "col", 2, 1) == make_range(1, 4, 1, 6)
        assert shift_range(rng, "col", 9, 1) == rng

    def test_refs_to_sqref_collapses_vertical_runs(self):
        keys = [CellKey(0, 0), CellKey(1, 0), CellKey(2, 0), CellKey(4, 0), CellKey(0, 1)]
        assert refs_to_sqref(keys) == "A1:A3 A5 B1"

    def test_sqref_to_keys(self):
        assert sqref_to_keys("A1 B2:B3") == [CellKey(0, 0), CellKey(1, 1), CellKey(2, 1)]
        assert sqref_to_keys("") == []

    def test_sqref_to_keys_clipped_to_extent(self):
        keys = sqref_to_keys("A2:A1048576 C1 B1:XFD1", max_row=2, max_col=1)
        assert keys == [CellKey(1, 0), CellKey(2, 0), CellKey(0, 1)]


class TestShiftFormula:
    """Relative references move; `$` parts and string literals do not."""

    def test_relative_refs_move(self):
        assert shift_formula("A1*2", 1, 0) == "A2*2"
        assert shift_formula("SUM(A1:B2)+C3", 2, 1) == "SUM(B3:C4)+D5"

    def test_absolute_parts_stay(self):
        assert shift_formula("$A$1+A$1+$A1", 3, 2) == "$A$1+C$1+$A4"

    def test_quoted_text_and_function_names_untouched(self):
        assert shift_formula('IF(A1>0,"A1",LOG10(B1))', 1, 0) == 'IF(A2>0,"A1",LOG10(B2))'

    def test_sheet_qualified_refs_move(self):
        assert shift_formula("Data!B2*A1", 1, 1) == "Data!C3*B2"

    def test_off_sheet_becomes_ref_error(self):
        assert shift_formula("A1+B2", -1, 0) == "#REF!+B1"
