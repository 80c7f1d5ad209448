"""XLSX Parser - Decodes XLSX containers into sheets.

Handles:
- Multiple worksheets (the hidden metadata sheet is read, not exposed)
- Shared strings, inline strings and rich text (flattened)
- Formulas (rehydrated as "=..." values, shared formulas rebuilt per cell)
- Booleans (tagged as checkbox cells)
- List data validation with literal options (tagged as dropdown cells)
- Date cells (ISO `t="d"` values, native date formats, or a format with
  year and day tokens)
- Fonts, fills, borders and alignment (mapped to format tags and styles)
- Hyperlinks and custom column widths
"""

from __future__ import annotations

import logging
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from ..engine_config import get_engine_settings
from .addressing import parse_a1_range, parse_cell_ref, shift_formula, sqref_to_keys
from .cells import Sheet
from .errors import MalformedInput
from .schemas import DATE_FORMATS, CellFormat, CellKey, CellTypeMeta, NumericFormat


logger = logging.getLogger(__name__)


# =============================================================================
# NAMESPACES
# =============================================================================

NS = {
    "main": "http://schemas.openxmlformats.org/spreadsheetml/2006/main",
    "r": "http://schemas.openxmlformats.org/officeDocument/2006/relationships",
    "rel": "http://schemas.openxmlformats.org/package/2006/relationships",
    "ct": "http://schemas.openxmlformats.org/package/2006/content-types",
}

# Register namespaces
for prefix, uri in NS.items():
    ET.register_namespace(prefix if prefix != "main" else "", uri)

META_SHEET_NAME = "_internal_meta"
META_SENTINEL = "GRIDBOOK_META_JSON"

EXCEL_EPOCH = datetime(1899, 12, 30)

# Built-in number formats that render as dates
BUILTIN_DATE_FORMATS = {14, 15, 16, 17, 22, 27, 30, 36, 45, 46, 47, 50, 57}
BUILTIN_NUMBER_FORMATS = {
    2: "0.00",
    3: "#,##0",
    4: "#,##0.00",
    9: "0%",
    10: "0.00%",
    14: "mm-dd-yy",
}

_LIST_LITERAL = re.compile(r'^"(.*)"$', re.DOTALL)


# =============================================================================
# PARSED CONTAINER PARTS
# =============================================================================

@dataclass
class StyleInfo:
    fonts: List[Dict[str, Any]] = field(default_factory=list)
    fills: List[Dict[str, Any]] = field(default_factory=list)
    borders: List[Dict[str, Any]] = field(default_factory=list)
    cell_xfs: List[Dict[str, Any]] = field(default_factory=list)
    number_formats: Dict[int, str] = field(default_factory=dict)


@dataclass
class DecodedWorkbook:
    sheets: List[Sheet]
    active_index: int = 0
    payload_text: Optional[str] = None


# =============================================================================
# SHARED STRINGS
# =============================================================================

def _flatten_text(el: ET.Element) -> str:
    """Plain text of an <si>/<is> element; rich text runs are concatenated."""
    ns = NS["main"]
    t_el = el.find(f"{{{ns}}}t")
    if t_el is not None:
        return t_el.text or ""
    parts = []
    for r in el.findall(f"{{{ns}}}r"):
        t = r.find(f"{{{ns}}}t")
        if t is not None and t.text:
            parts.append(t.text)
    return "".join(parts)


def _parse_shared_strings(zf: zipfile.ZipFile) -> List[str]:
    """Parse shared strings table."""
    shared_strings: List[str] = []
    try:
        with zf.open("xl/sharedStrings.xml") as f:
            root = ET.parse(f).getroot()
            for si in root.findall(f"{{{NS['main']}}}si"):
                shared_strings.append(_flatten_text(si))
    except KeyError:
        pass  # No shared strings
    return shared_strings


# =============================================================================
# STYLES
# =============================================================================

def _color_of(el: Optional[ET.Element]) -> Optional[str]:
    if el is None:
        return None
    return el.get("rgb")


def _parse_styles(zf: zipfile.ZipFile) -> StyleInfo:
    """Parse styles.xml for cell formatting."""
    style_info = StyleInfo()
    ns = NS["main"]

    try:
        with zf.open("xl/styles.xml") as f:
            root = ET.parse(f).getroot()
    except KeyError:
        return style_info  # No styles

    fonts_el = root.find(f"{{{ns}}}fonts")
    if fonts_el is not None:
        for font_el in fonts_el.findall(f"{{{ns}}}font"):
            font: Dict[str, Any] = {}
            sz_el = font_el.find(f"{{{ns}}}sz")
            if sz_el is not None:
                try:
                    font["size"] = float(sz_el.get("val", 11))
                except ValueError:
                    pass
            for tag, name in (("b", "bold"), ("i", "italic"), ("u", "underline")):
                tag_el = font_el.find(f"{{{ns}}}{tag}")
                if tag_el is not None and tag_el.get("val") not in ("0", "false", "none"):
                    font[name] = True
            color = _color_of(font_el.find(f"{{{ns}}}color"))
            if color:
                font["color"] = color
            style_info.fonts.append(font)

    fills_el = root.find(f"{{{ns}}}fills")
    if fills_el is not None:
        for fill_el in fills_el.findall(f"{{{ns}}}fill"):
            fill: Dict[str, Any] = {}
            pattern_el = fill_el.find(f"{{{ns}}}patternFill")
            if pattern_el is not None:
                fill["patternType"] = pattern_el.get("patternType")
                fill["fgColor"] = _color_of(pattern_el.find(f"{{{ns}}}fgColor"))
            style_info.fills.append(fill)

    borders_el = root.find(f"{{{ns}}}borders")
    if borders_el is not None:
        for border_el in borders_el.findall(f"{{{ns}}}border"):
            border: Dict[str, Any] = {}
            for side in ("left", "right", "top", "bottom"):
                side_el = border_el.find(f"{{{ns}}}{side}")
                if side_el is not None and side_el.get("style"):
                    border[side] = {
                        "style": side_el.get("style"),
                        "color": _color_of(side_el.find(f"{{{ns}}}color")),
                    }
            style_info.borders.append(border)

    cell_xfs_el = root.find(f"{{{ns}}}cellXfs")
    if cell_xfs_el is not None:
        for xf in cell_xfs_el.findall(f"{{{ns}}}xf"):
            xf_dict: Dict[str, Any] = {
                "fontId": int(xf.get("fontId", 0)),
                "fillId": int(xf.get("fillId", 0)),
                "borderId": int(xf.get("borderId", 0)),
                "numFmtId": int(xf.get("numFmtId", 0)),
            }
            alignment_el = xf.find(f"{{{ns}}}alignment")
            if alignment_el is not None:
                xf_dict["horizontal"] = alignment_el.get("horizontal")
            style_info.cell_xfs.append(xf_dict)

    num_fmts_el = root.find(f"{{{ns}}}numFmts")
    if num_fmts_el is not None:
        for num_fmt in num_fmts_el.findall(f"{{{ns}}}numFmt"):
            style_info.number_formats[int(num_fmt.get("numFmtId", 0))] = num_fmt.get("formatCode", "")

    return style_info


def argb_to_css(argb: Optional[str]) -> Optional[str]:
    """"FFFF0000" -> "#FF0000"."""
    if not argb:
        return None
    value = argb.strip()
    if len(value) == 8:
        return f"#{value[2:].upper()}"
    if len(value) == 6:
        return f"#{value.upper()}"
    return None


def border_to_css(style: str, color: Optional[str]) -> str:
    css_color = argb_to_css(color) or "#000000"
    if style in ("thick", "medium", "double"):
        return f"2px solid {css_color}"
    if "dash" in style or "dot" in style:
        return f"1px dashed {css_color}"
    return f"1px solid {css_color}"


def _number_format_code(xf: Dict[str, Any], style_info: StyleInfo) -> Tuple[int, Optional[str]]:
    fmt_id = xf.get("numFmtId", 0)
    code = style_info.number_formats.get(fmt_id) or BUILTIN_NUMBER_FORMATS.get(fmt_id)
    return fmt_id, code


def is_date_format(fmt_id: int, code: Optional[str]) -> bool:
    """Best-effort: built-in date ids, or a code with both year and day tokens."""
    if fmt_id in BUILTIN_DATE_FORMATS:
        return True
    if not code:
        return False
    # drop quoted literals and bracketed sections ([Red], [$-409])
    stripped = re.sub(r'"[^"]*"|\[[^\]]*\]', "", code).lower()
    return "y" in stripped and "d" in stripped


def map_date_format(code: Optional[str]) -> str:
    """Map a container date code onto the enumerated display formats."""
    default = get_engine_settings().default_date_format
    if default not in DATE_FORMATS:
        default = "MM/DD/YYYY"
    if not code:
        return default
    lowered = re.sub(r'"[^"]*"|\[[^\]]*\]', "", code).lower()
    positions = {}
    for token in ("y", "m", "d"):
        idx = lowered.find(token)
        if idx >= 0:
            positions[token] = idx
    if len(positions) != 3:
        return default
    order = "".join(sorted(positions, key=positions.get))
    sep = "/" if "/" in lowered else "-"
    candidate = {
        "mdy": f"MM{sep}DD{sep}YYYY",
        "dmy": f"DD{sep}MM{sep}YYYY",
        "ymd": f"YYYY{sep}MM{sep}DD",
    }.get(order)
    return candidate if candidate in DATE_FORMATS else default


def map_numeric_format(code: Optional[str]) -> Optional[NumericFormat]:
    """Map a container number code onto the display presets; None if unmapped."""
    if not code or code.lower() == "general":
        return None
    if "%" in code:
        return NumericFormat(pattern="0.00%")
    if "$" in code:
        return NumericFormat(pattern="$0,0.00", culture="en-US")
    if "#,##0" in code or code in ("0.00", "0"):
        return NumericFormat(pattern=code.replace("#,##0", "0,0"))
    return None


def from_serial(serial: float) -> datetime:
    return EXCEL_EPOCH + timedelta(days=serial)


# =============================================================================
# WORKSHEET PARSING
# =============================================================================

def _apply_cell_style(
    sheet: Sheet,
    key: CellKey,
    xf: Dict[str, Any],
    style_info: StyleInfo,
) -> None:
    tags: List[str] = []
    styles: Dict[str, str] = {}

    font_id = xf.get("fontId", 0)
    if font_id and font_id < len(style_info.fonts):
        font = style_info.fonts[font_id]
        for name in ("bold", "italic", "underline"):
            if font.get(name):
                tags.append(name)
        color = argb_to_css(font.get("color"))
        if color:
            styles["color"] = color
        size = font.get("size")
        if size and size != 11:
            styles["fontSize"] = f"{int(round(size))}px"

    fill_id = xf.get("fillId", 0)
    if fill_id and fill_id < len(style_info.fills):
        fill = style_info.fills[fill_id]
        background = argb_to_css(fill.get("fgColor")) if fill.get("patternType") == "solid" else None
        if background:
            styles["backgroundColor"] = background

    border_id = xf.get("borderId", 0)
    if border_id and border_id < len(style_info.borders):
        for side, edge in style_info.borders[border_id].items():
            styles[f"border{side.capitalize()}"] = border_to_css(edge["style"], edge.get("color"))

    horizontal = xf.get("horizontal")
    if horizontal in ("left", "center", "right"):
        tags.append(f"align-{horizontal}")

    if tags:
        sheet.cell_formats[key] = CellFormat(class_name=" ".join(tags))
    if styles:
        sheet.cell_styles[key] = styles


def _formula_text(
    f_el: ET.Element,
    key: CellKey,
    shared_formulas: Dict[str, Tuple[str, CellKey]],
) -> Optional[str]:
    """Formula text of a cell; shared-formula dependents are rebuilt from their master."""
    text = f_el.text
    si = f_el.get("si")
    if f_el.get("t") != "shared" or si is None:
        return text
    if text:
        shared_formulas[si] = (text, key)
        return text
    if si not in shared_formulas:
        logger.warning(f"[DECODE] Shared formula {si} used before its master cell")
        return None
    master, anchor = shared_formulas[si]
    return shift_formula(master, key.row - anchor.row, key.col - anchor.col)


def _parse_iso_date(raw: str) -> Any:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return raw


def _cell_value(
    cell_el: ET.Element,
    shared_strings: List[str],
    key: Optional[CellKey] = None,
    shared_formulas: Optional[Dict[str, Tuple[str, CellKey]]] = None,
) -> Any:
    ns = NS["main"]
    data_type = cell_el.get("t")

    f_el = cell_el.find(f"{{{ns}}}f")
    if f_el is not None:
        if key is not None and shared_formulas is not None:
            formula = _formula_text(f_el, key, shared_formulas)
        else:
            formula = f_el.text
        if formula:
            return f"={formula}"

    if data_type == "inlineStr":
        is_el = cell_el.find(f"{{{ns}}}is")
        return _flatten_text(is_el) if is_el is not None else ""

    v_el = cell_el.find(f"{{{ns}}}v")
    raw_value = v_el.text if v_el is not None else None
    if raw_value is None:
        return None

    if data_type == "s":
        try:
            return shared_strings[int(raw_value)]
        except (ValueError, IndexError):
            return raw_value
    if data_type == "b":
        return raw_value.strip() in ("1", "true")
    if data_type == "d":
        return _parse_iso_date(raw_value)
    if data_type in ("str", "e"):
        return raw_value
    try:
        if "." in raw_value or "E" in raw_value.upper():
            return float(raw_value)
        return int(raw_value)
    except ValueError:
        return raw_value


def _parse_cells(
    sheet: Sheet,
    sheet_el: ET.Element,
    shared_strings: List[str],
    style_info: StyleInfo,
) -> Dict[CellKey, Any]:
    """Parse cells into a sparse map, tagging types and styles on the sheet."""
    ns = NS["main"]
    values: Dict[CellKey, Any] = {}
    shared_formulas: Dict[str, Tuple[str, CellKey]] = {}

    sheet_data = sheet_el.find(f"{{{ns}}}sheetData")
    if sheet_data is None:
        return values

    for row_el in sheet_data.findall(f"{{{ns}}}row"):
        for cell_el in row_el.findall(f"{{{ns}}}c"):
            ref = cell_el.get("r")
            if not ref:
                continue
            try:
                key = parse_cell_ref(ref)
            except MalformedInput:
                continue

            value = _cell_value(cell_el, shared_strings, key, shared_formulas)

            style_index = int(cell_el.get("s", 0)) if cell_el.get("s") else 0
            xf = style_info.cell_xfs[style_index] if style_index < len(style_info.cell_xfs) else {}
            if style_index and xf:
                _apply_cell_style(sheet, key, xf, style_info)

            fmt_id, code = _number_format_code(xf, style_info) if xf else (0, None)
            if isinstance(value, bool):
                sheet.cell_types[key] = CellTypeMeta(type="checkbox")
            elif isinstance(value, datetime):
                if value.time() == datetime.min.time():
                    value = value.date()
                sheet.cell_types[key] = CellTypeMeta(type="date", date_format=map_date_format(code))
            elif isinstance(value, (int, float)) and is_date_format(fmt_id, code):
                moment = from_serial(float(value))
                value = moment.date() if moment.time() == datetime.min.time() else moment
                sheet.cell_types[key] = CellTypeMeta(type="date", date_format=map_date_format(code))
            elif code and (isinstance(value, (int, float)) or value is None):
                numeric_format = map_numeric_format(code)
                if numeric_format is not None:
                    sheet.cell_types[key] = CellTypeMeta(type="numeric", numeric_format=numeric_format)

            if value is not None:
                values[key] = value
    return values


def _parse_data_validations(sheet: Sheet, sheet_el: ET.Element, extent: Tuple[int, int]) -> None:
    """List validations with a quoted literal become dropdown cells.

    Only cells inside the sheet extent are tagged; a validation over a
    whole column does not grow the grid.
    """
    ns = NS["main"]
    dv_el = sheet_el.find(f"{{{ns}}}dataValidations")
    if dv_el is None:
        return

    for dv in dv_el.findall(f"{{{ns}}}dataValidation"):
        if dv.get("type") != "list":
            continue
        formula1_el = dv.find(f"{{{ns}}}formula1")
        formula1 = formula1_el.text if formula1_el is not None and formula1_el.text else ""
        match = _LIST_LITERAL.match(formula1.strip())
        if not match:
            # Range references (Sheet2!A1:A5) are not expanded
            continue
        options = [opt.strip() for opt in match.group(1).split(",") if opt.strip()]
        for key in sqref_to_keys(dv.get("sqref", ""), *extent):
            sheet.cell_types[key] = CellTypeMeta(type="dropdown", source=list(options))


def _read_rels(zf: zipfile.ZipFile, rels_path: str) -> Dict[str, str]:
    id_to_target: Dict[str, str] = {}
    try:
        with zf.open(rels_path) as f:
            rels_root = ET.parse(f).getroot()
    except KeyError:
        return id_to_target
    for rel in rels_root.findall(f"{{{NS['rel']}}}Relationship"):
        rel_id = rel.get("Id")
        target = rel.get("Target")
        if rel_id and target:
            id_to_target[rel_id] = target
    return id_to_target


def _parse_hyperlinks(
    sheet: Sheet,
    zf: zipfile.ZipFile,
    sheet_el: ET.Element,
    sheet_path: str,
    extent: Tuple[int, int],
) -> None:
    """Parse hyperlinks from a worksheet, clipped to the sheet extent."""
    ns = NS["main"]
    r_ns = NS["r"]

    hl_el = sheet_el.find(f"{{{ns}}}hyperlinks")
    if hl_el is None:
        return

    rels_path = sheet_path.replace("worksheets/", "worksheets/_rels/").replace(".xml", ".xml.rels")
    id_to_target = _read_rels(zf, rels_path)

    for hl in hl_el.findall(f"{{{ns}}}hyperlink"):
        r_id = hl.get(f"{{{r_ns}}}id")
        target = id_to_target.get(r_id) if r_id else None
        if not target and hl.get("location"):
            target = f"#{hl.get('location')}"
        if not target:
            continue
        for key in sqref_to_keys(hl.get("ref", ""), *extent):
            sheet.links[key] = target


def _parse_columns(sheet: Sheet, sheet_el: ET.Element) -> None:
    """Custom column widths, converted to pixels."""
    ns = NS["main"]
    cols_el = sheet_el.find(f"{{{ns}}}cols")
    if cols_el is None:
        return
    ratio = get_engine_settings().pixels_per_width_unit
    for col in cols_el.findall(f"{{{ns}}}col"):
        if col.get("customWidth") != "1" or not col.get("width"):
            continue
        min_col = int(col.get("min", 1))
        max_col = min(int(col.get("max", min_col)), min_col + 255)
        width = float(col.get("width"))
        for c in range(min_col, max_col + 1):
            sheet.column_widths[c - 1] = round(width * ratio, 2)


def _sheet_extent(sheet: Sheet, sheet_el: ET.Element, values: Dict[CellKey, Any]) -> Tuple[int, int]:
    """Last (row, col) holding data or formatting, widened by the <dimension> ref."""
    keys = list(values) + list(sheet.cell_types) + list(sheet.cell_formats) + list(sheet.cell_styles)
    max_row = max((k.row for k in keys), default=0)
    max_col = max((k.col for k in keys), default=0)
    dimension_el = sheet_el.find(f"{{{NS['main']}}}dimension")
    if dimension_el is not None:
        dimension = parse_a1_range(dimension_el.get("ref", ""))
        if dimension is not None:
            max_row = max(max_row, dimension.end_row)
            max_col = max(max_col, dimension.end_col)
    return max_row, max_col


def parse_sheet(
    zf: zipfile.ZipFile,
    sheet_path: str,
    sheet_name: str,
    shared_strings: List[str],
    style_info: StyleInfo,
) -> Sheet:
    """Parse a single worksheet from the XLSX archive."""
    with zf.open(sheet_path) as f:
        sheet_el = ET.parse(f).getroot()

    sheet = Sheet(name=sheet_name)
    values = _parse_cells(sheet, sheet_el, shared_strings, style_info)
    extent = _sheet_extent(sheet, sheet_el, values)
    _parse_data_validations(sheet, sheet_el, extent)
    _parse_hyperlinks(sheet, zf, sheet_el, sheet_path, extent)
    _parse_columns(sheet, sheet_el)

    keys = list(values) + list(sheet.cell_types) + list(sheet.cell_formats) + list(sheet.cell_styles)
    rows = max((k.row for k in keys), default=0) + 1
    cols = max((k.col for k in keys), default=0) + 1
    sheet.grid = [[None] * cols for _ in range(rows)]
    for key, value in values.items():
        sheet.grid[key.row][key.col] = value
    return sheet


def _read_meta_sheet(zf: zipfile.ZipFile, sheet_path: str, shared_strings: List[str]) -> Optional[str]:
    """Payload text from the auxiliary sheet: A1 sentinel, JSON from A2 down."""
    with zf.open(sheet_path) as f:
        sheet_el = ET.parse(f).getroot()
    scratch = Sheet(name=META_SHEET_NAME)
    values = _parse_cells(scratch, sheet_el, shared_strings, StyleInfo())
    if values.get(CellKey(0, 0)) != META_SENTINEL:
        logger.warning("[DECODE] Metadata sheet present but sentinel missing; ignored")
        return None
    chunks = []
    row = 1
    while CellKey(row, 0) in values:
        chunks.append(str(values[CellKey(row, 0)]))
        row += 1
    return "".join(chunks) or None


# =============================================================================
# WORKBOOK PARSING
# =============================================================================

def read_xlsx(zf: zipfile.ZipFile) -> DecodedWorkbook:
    """Parse an opened XLSX archive into sheets plus the raw payload text."""
    shared_strings = _parse_shared_strings(zf)
    style_info = _parse_styles(zf)

    with zf.open("xl/workbook.xml") as f:
        wb_root = ET.parse(f).getroot()

    ns = NS["main"]
    r_ns = NS["r"]

    sheet_infos: List[Dict[str, Any]] = []
    sheets_el = wb_root.find(f"{{{ns}}}sheets")
    if sheets_el is not None:
        for sheet in sheets_el.findall(f"{{{ns}}}sheet"):
            sheet_infos.append({
                "name": sheet.get("name") or "",
                "r_id": sheet.get(f"{{{r_ns}}}id"),
            })

    id_to_target = _read_rels(zf, "xl/_rels/workbook.xml.rels")

    sheets: List[Sheet] = []
    payload_text: Optional[str] = None
    meta_position: Optional[int] = None
    for position, info in enumerate(sheet_infos):
        target = id_to_target.get(info.get("r_id") or "", "")
        if not target:
            continue
        # Build full path
        sheet_path = target[1:] if target.startswith("/") else f"xl/{target}"

        try:
            if info["name"] == META_SHEET_NAME:
                payload_text = _read_meta_sheet(zf, sheet_path, shared_strings)
                meta_position = position
                continue
            sheets.append(parse_sheet(zf, sheet_path, info["name"], shared_strings, style_info))
        except KeyError:
            # Sheet file not found
            logger.warning(f"[DECODE] Sheet part missing for '{info['name']}': {sheet_path}")
            continue

    active_index = 0
    book_views = wb_root.find(f"{{{ns}}}bookViews")
    if book_views is not None:
        wv = book_views.find(f"{{{ns}}}workbookView")
        if wv is not None:
            try:
                active_index = int(wv.get("activeTab", 0))
            except ValueError:
                active_index = 0
    if meta_position is not None and active_index > meta_position:
        active_index -= 1

    return DecodedWorkbook(sheets=sheets, active_index=active_index, payload_text=payload_text)
