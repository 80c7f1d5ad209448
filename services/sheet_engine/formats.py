"""Formatting helpers applied over a selection.

Every helper commits through `Sheet.update_range`/`Sheet.batch`, so one
call is one change no matter how many cells it touches.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from .cells import Sheet, display_text, is_blank, is_formula
from .errors import MalformedInput
from .schemas import DATE_FORMATS, CellKey, CellRange, CellTypeMeta, NumericFormat


# =============================================================================
# TYPE PRESETS
# =============================================================================

NUMBER_PRESETS: Dict[str, NumericFormat] = {
    "currency": NumericFormat(pattern="$0,0.00", culture="en-US"),
    "percent": NumericFormat(pattern="0.00%"),
    "number": NumericFormat(pattern="0,0.00"),
}

DEFAULT_DROPDOWN_OPTIONS = ["Option 1", "Option 2", "Option 3"]

FORMAT_TAGS = ("bold", "italic", "underline")
ALIGN_TAGS = ("align-left", "align-center", "align-right")

Alignment = Literal["left", "center", "right"]


def apply_number_preset(sheet: Sheet, range_: CellRange, preset: str) -> int:
    """Tag a selection as numeric with one of NUMBER_PRESETS."""
    if preset not in NUMBER_PRESETS:
        raise MalformedInput(f"Unknown number format: {preset}")
    meta = CellTypeMeta(type="numeric", numeric_format=NUMBER_PRESETS[preset])
    return sheet.set_type_range(range_, meta)


def apply_date_format(sheet: Sheet, range_: CellRange, date_format: str = "MM/DD/YYYY") -> int:
    if date_format not in DATE_FORMATS:
        raise MalformedInput(f"Unknown date format: {date_format}")
    return sheet.set_type_range(range_, CellTypeMeta(type="date", date_format=date_format))


def apply_text_format(sheet: Sheet, range_: CellRange) -> int:
    return sheet.set_type_range(range_, CellTypeMeta(type="text"))


def apply_checkbox(sheet: Sheet, range_: CellRange) -> int:
    return sheet.set_type_range(range_, CellTypeMeta(type="checkbox"))


def collect_dropdown_options(sheet: Sheet, range_: CellRange) -> List[str]:
    """Sorted unique non-empty values found in the selected columns."""
    values = set()
    for row in sheet.grid:
        for col in range(range_.start_col, range_.end_col + 1):
            value = row[col] if col < len(row) else None
            if is_blank(value) or is_formula(value):
                continue
            text = display_text(value).strip()
            if text:
                values.add(text)
    return sorted(values) or list(DEFAULT_DROPDOWN_OPTIONS)


def apply_dropdown(sheet: Sheet, range_: CellRange, options: Optional[List[str]] = None) -> int:
    """Turn a selection into dropdown cells.

    Without explicit options the source is built from the selected columns.
    """
    source = _clean_options(options) if options is not None else collect_dropdown_options(sheet, range_)
    return sheet.set_type_range(range_, CellTypeMeta(type="dropdown", source=source))


def set_dropdown_options(sheet: Sheet, range_: CellRange, options: List[str]) -> int:
    """Replace the option list of the dropdown cells in a selection."""
    source = _clean_options(options)

    def _edit(draft: Sheet, key: CellKey) -> None:
        meta = draft.cell_types.get(key)
        if meta is not None and meta.type == "dropdown":
            draft.cell_types[key] = meta.model_copy(update={"source": list(source)})

    return sheet.update_range(range_, _edit, label="dropdown options")


def _clean_options(options: List[str]) -> List[str]:
    seen: List[str] = []
    for opt in options:
        text = str(opt).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


# =============================================================================
# CLASS-NAME TAGS
# =============================================================================

def split_tags(class_name: Optional[str]) -> List[str]:
    return [t for t in (class_name or "").split(" ") if t]


def add_tag(class_name: Optional[str], tag: str) -> str:
    tags = split_tags(class_name)
    if tag not in tags:
        tags.append(tag)
    return " ".join(tags)


def remove_tag(class_name: Optional[str], tag: str) -> str:
    return " ".join(t for t in split_tags(class_name) if t != tag)


def toggle_format(sheet: Sheet, range_: CellRange, tag: str) -> bool:
    """Toggle bold/italic/underline over a selection.

    If every cell already carries the tag it is removed everywhere,
    otherwise it is added everywhere. Returns the new state.
    """
    if tag not in FORMAT_TAGS:
        raise MalformedInput(f"Unknown format tag: {tag}")
    enable = not all(tag in sheet.get_format(k.row, k.col).tags() for k in range_.cells())

    def _edit(draft: Sheet, key: CellKey) -> None:
        current = draft.get_format(key.row, key.col).class_name
        draft.set_format(key.row, key.col, add_tag(current, tag) if enable else remove_tag(current, tag))

    sheet.update_range(range_, _edit, label=f"toggle {tag}")
    return enable


def set_alignment(sheet: Sheet, range_: CellRange, alignment: Optional[Alignment]) -> int:
    """Apply one alignment tag (or none); alignment tags exclude each other."""
    if alignment is not None and f"align-{alignment}" not in ALIGN_TAGS:
        raise MalformedInput(f"Unknown alignment: {alignment}")

    def _edit(draft: Sheet, key: CellKey) -> None:
        tags = [t for t in draft.get_format(key.row, key.col).tags() if t not in ALIGN_TAGS]
        if alignment is not None:
            tags.append(f"align-{alignment}")
        draft.set_format(key.row, key.col, " ".join(tags))

    return sheet.update_range(range_, _edit, label="alignment")


# =============================================================================
# STYLES
# =============================================================================

BORDER_LINES = {
    "thin": "1px solid #000",
    "thick": "2px solid #000",
    "dashed": "1px dashed #000",
}

BORDER_PRESETS = (
    "all", "outer", "inner", "top", "right", "bottom", "left",
    "thick-outer", "dashed-outer", "none",
)

_EDGE_KEYS = ("borderTop", "borderRight", "borderBottom", "borderLeft")

MIN_FONT_SIZE = 6
MAX_FONT_SIZE = 72


def _border_edges(preset: str, key: CellKey, range_: CellRange) -> List[str]:
    top = key.row == range_.start_row
    bottom = key.row == range_.end_row
    left = key.col == range_.start_col
    right = key.col == range_.end_col

    if preset == "all":
        return list(_EDGE_KEYS)
    if preset in ("outer", "thick-outer", "dashed-outer"):
        edges = []
        if top:
            edges.append("borderTop")
        if right:
            edges.append("borderRight")
        if bottom:
            edges.append("borderBottom")
        if left:
            edges.append("borderLeft")
        return edges
    if preset == "inner":
        edges = []
        if not bottom:
            edges.append("borderBottom")
        if not right:
            edges.append("borderRight")
        return edges
    if preset == "top":
        return ["borderTop"] if top else []
    if preset == "right":
        return ["borderRight"] if right else []
    if preset == "bottom":
        return ["borderBottom"] if bottom else []
    if preset == "left":
        return ["borderLeft"] if left else []
    return []


def apply_borders(sheet: Sheet, range_: CellRange, preset: str, line: str = "thin") -> int:
    """Apply a border preset over a selection.

    `thick-outer` and `dashed-outer` force their own line style; `none`
    removes every border edge from the selection.
    """
    if preset not in BORDER_PRESETS:
        raise MalformedInput(f"Unknown border preset: {preset}")
    if preset == "thick-outer":
        line = "thick"
    elif preset == "dashed-outer":
        line = "dashed"
    if line not in BORDER_LINES:
        raise MalformedInput(f"Unknown border style: {line}")
    css = BORDER_LINES[line]

    def _edit(draft: Sheet, key: CellKey) -> None:
        if preset == "none":
            draft.set_style(key.row, key.col, {edge: "" for edge in _EDGE_KEYS})
            return
        edges = _border_edges(preset, key, range_)
        if edges:
            draft.set_style(key.row, key.col, {edge: css for edge in edges})

    return sheet.update_range(range_, _edit, label=f"borders {preset}")


def set_font_size(sheet: Sheet, range_: CellRange, size: float) -> int:
    px = int(round(max(MIN_FONT_SIZE, min(MAX_FONT_SIZE, size))))
    return sheet.update_range(
        range_,
        lambda draft, key: draft.set_style(key.row, key.col, {"fontSize": f"{px}px"}),
        label="font size",
    )


def set_text_color(sheet: Sheet, range_: CellRange, color: Optional[str]) -> int:
    return sheet.update_range(
        range_,
        lambda draft, key: draft.set_style(key.row, key.col, {"color": color or ""}),
        label="text color",
    )


def set_fill_color(sheet: Sheet, range_: CellRange, color: Optional[str]) -> int:
    return sheet.update_range(
        range_,
        lambda draft, key: draft.set_style(key.row, key.col, {"backgroundColor": color or ""}),
        label="fill color",
    )
