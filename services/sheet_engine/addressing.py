"""Range & addressing utilities.

Rows/cols are zero-based internally; A1 addresses are one-based with
bijective base-26 column letters (0 -> "A", 25 -> "Z", 26 -> "AA").
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import MalformedInput
from .schemas import CellKey, CellRange


_CELL_RE = re.compile(r"^([A-Z]+)(\d+)$")
_RANGE_RE = re.compile(r"^([A-Z]+)(\d+)(?::([A-Z]+)(\d+))?$")


def column_to_letter(index: int) -> str:
    """Convert 0-indexed column number to letter(s). 0=A, 25=Z, 26=AA."""
    if index < 0:
        raise MalformedInput(f"Invalid column index: {index}")
    result = ""
    index += 1
    while index > 0:
        index -= 1
        result = chr(ord("A") + (index % 26)) + result
        index //= 26
    return result


def letter_to_column(letters: str) -> int:
    """Convert column letter(s) to 0-indexed number. A=0, Z=25, AA=26."""
    letters = (letters or "").strip().upper()
    if not letters or not letters.isalpha() or not letters.isascii():
        raise MalformedInput(f"Invalid column letters: {letters!r}")
    result = 0
    for char in letters:
        result = result * 26 + (ord(char) - ord("A") + 1)
    return result - 1


def cell_ref(row: int, col: int) -> str:
    """(2, 1) -> "B3"."""
    return f"{column_to_letter(col)}{row + 1}"


def parse_cell_ref(ref: str) -> CellKey:
    """Parse "B3" into CellKey(2, 1). `$` absolute markers are ignored."""
    match = _CELL_RE.match((ref or "").replace("$", "").strip().upper())
    if not match:
        raise MalformedInput(f"Invalid cell reference: {ref}")
    row = int(match.group(2))
    if row < 1:
        raise MalformedInput(f"Invalid cell reference: {ref}")
    return CellKey(row - 1, letter_to_column(match.group(1)))


def normalize_range(range_: CellRange) -> CellRange:
    """Reorder so start <= end component-wise."""
    return CellRange(
        start_row=min(range_.start_row, range_.end_row),
        start_col=min(range_.start_col, range_.end_col),
        end_row=max(range_.start_row, range_.end_row),
        end_col=max(range_.start_col, range_.end_col),
    )


def make_range(r1: int, c1: int, r2: int, c2: int) -> CellRange:
    """Build a normalized range from two corners in any order."""
    return CellRange(
        start_row=min(r1, r2),
        start_col=min(c1, c2),
        end_row=max(r1, r2),
        end_col=max(c1, c2),
    )


def parse_a1_range(text: str) -> Optional[CellRange]:
    """Parse "A1:D10" (or a single "B3") into a normalized range.

    Returns None on malformed input; callers decide the fallback.
    """
    if not text:
        return None
    match = _RANGE_RE.match(text.replace("$", "").strip().upper())
    if not match:
        return None
    r1 = int(match.group(2))
    c1 = letter_to_column(match.group(1))
    if match.group(3):
        r2 = int(match.group(4))
        c2 = letter_to_column(match.group(3))
    else:
        r2, c2 = r1, c1
    if r1 < 1 or r2 < 1:
        return None
    return make_range(r1 - 1, c1, r2 - 1, c2)


def range_to_a1(range_: CellRange) -> str:
    """Normalized range -> "A1:D10" (always the two-corner form)."""
    r = normalize_range(range_)
    return f"{cell_ref(r.start_row, r.start_col)}:{cell_ref(r.end_row, r.end_col)}"


def range_contains(range_: CellRange, row: int, col: int) -> bool:
    """Containment test; `range_` is assumed normalized."""
    return range_.start_row <= row <= range_.end_row and range_.start_col <= col <= range_.end_col


def whole_sheet_range(rows: int, cols: int) -> Optional[CellRange]:
    if rows <= 0 or cols <= 0:
        return None
    return CellRange(start_row=0, start_col=0, end_row=rows - 1, end_col=cols - 1)


def clamp_range(range_: CellRange, rows: int, cols: int) -> CellRange:
    """Clamp a range into the data bounds (at least the single cell (0, 0))."""
    max_row = max(0, rows - 1)
    max_col = max(0, cols - 1)
    sr = max(0, min(range_.start_row, max_row))
    er = max(0, min(range_.end_row, max_row))
    sc = max(0, min(range_.start_col, max_col))
    ec = max(0, min(range_.end_col, max_col))
    return make_range(sr, sc, er, ec)


def resolve_target_range(
    a1_text: Optional[str],
    selection: Optional[Sequence[int]],
    rows: int,
    cols: int,
) -> CellRange:
    """Resolve the range a new rule applies to.

    A1 text > current selection (r1, c1, r2, c2) > whole sheet > cell (0, 0).
    A bad A1 string or a selection with a negative corner is not an error
    here, it just falls through.
    """
    range_: Optional[CellRange] = None
    if a1_text and a1_text.strip():
        range_ = parse_a1_range(a1_text)
    if (
        range_ is None
        and selection is not None
        and len(selection) == 4
        and all(isinstance(v, int) and v >= 0 for v in selection)
    ):
        r1, c1, r2, c2 = selection
        range_ = make_range(r1, c1, r2, c2)
    if range_ is None:
        range_ = whole_sheet_range(rows, cols)
    if range_ is None:
        range_ = CellRange(start_row=0, start_col=0, end_row=0, end_col=0)
    return clamp_range(range_, rows, cols)


def shift_range(range_: CellRange, axis: str, at: int, count: int) -> CellRange:
    """Shift a range for `count` rows/cols inserted before index `at`.

    A range that straddles the insertion point grows; one entirely after
    it moves.
    """
    if axis == "row":
        sr, er = range_.start_row, range_.end_row
        if sr >= at:
            sr += count
        if er >= at:
            er += count
        return make_range(sr, range_.start_col, er, range_.end_col)
    sc, ec = range_.start_col, range_.end_col
    if sc >= at:
        sc += count
    if ec >= at:
        ec += count
    return make_range(range_.start_row, sc, range_.end_row, ec)


def refs_to_sqref(keys: Iterable[CellKey]) -> str:
    """Space-separated cell list, collapsing vertical runs into A1:A5 spans."""
    by_col: dict = {}
    for key in keys:
        by_col.setdefault(key.col, []).append(key.row)
    parts: List[str] = []
    for col in sorted(by_col):
        rows = sorted(set(by_col[col]))
        start = prev = rows[0]
        for row in rows[1:] + [None]:
            if row is not None and row == prev + 1:
                prev = row
                continue
            if start == prev:
                parts.append(cell_ref(start, col))
            else:
                parts.append(f"{cell_ref(start, col)}:{cell_ref(prev, col)}")
            if row is not None:
                start = prev = row
    return " ".join(parts)


def sqref_to_keys(sqref: str, max_row: Optional[int] = None, max_col: Optional[int] = None) -> List[CellKey]:
    """Expand "A1 B2:B4" into individual cell keys.

    With `max_row`/`max_col` (zero-based, inclusive) each part is clipped
    first, so a whole-column reference like "A2:A1048576" only yields the
    rows that exist.
    """
    keys: List[CellKey] = []
    for part in (sqref or "").split():
        range_ = parse_a1_range(part)
        if range_ is None:
            continue
        end_row, end_col = range_.end_row, range_.end_col
        if max_row is not None:
            if range_.start_row > max_row:
                continue
            end_row = min(end_row, max_row)
        if max_col is not None:
            if range_.start_col > max_col:
                continue
            end_col = min(end_col, max_col)
        keys.extend(make_range(range_.start_row, range_.start_col, end_row, end_col).cells())
    return keys


_FORMULA_REF = re.compile(r"(?<![A-Za-z0-9_.])(\$?)([A-Z]{1,3})(\$?)(\d+)(?![A-Za-z0-9_(])")
_QUOTED = re.compile(r'("[^"]*")')


def shift_formula(formula: str, row_offset: int, col_offset: int) -> str:
    """Move the relative references of a formula by an offset.

    `$`-anchored parts stay put and quoted string literals are left alone.
    A reference pushed off the sheet becomes "#REF!".
    """

    def _shift(match: "re.Match") -> str:
        col_abs, letters, row_abs, digits = match.groups()
        col = letter_to_column(letters)
        row = int(digits) - 1
        if not col_abs:
            col += col_offset
        if not row_abs:
            row += row_offset
        if col < 0 or row < 0:
            return "#REF!"
        return f"{col_abs}{column_to_letter(col)}{row_abs}{row + 1}"

    parts = _QUOTED.split(formula)
    return "".join(
        part if part.startswith('"') else _FORMULA_REF.sub(_shift, part)
        for part in parts
    )


def split_ref(ref: str) -> Tuple[str, int]:
    """"AB12" -> ("AB", 12)."""
    match = _CELL_RE.match(ref.upper())
    if not match:
        raise MalformedInput(f"Invalid cell reference: {ref}")
    return match.group(1), int(match.group(2))
