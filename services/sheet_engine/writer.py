"""XLSX Writer - Encodes sheets into an XLSX container.

Builds a fresh package from the in-memory model:
1. Cell values in row-major order (formulas written as <f>, no cached value)
2. Format tags, styles and type metadata mapped onto fonts, fills, borders,
   alignment and number formats in styles.xml
3. Dropdown cells as list-type data validation, links as native hyperlinks
4. Column widths (explicit pixels / ratio, else auto-fit)
5. Everything else (rules, charts, per-cell metadata) as a JSON payload in a
   hidden auxiliary sheet
"""

from __future__ import annotations

import logging
import re
import zipfile
from datetime import date, datetime
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET
from xml.sax.saxutils import quoteattr

from ..engine_config import get_engine_settings
from .addressing import cell_ref, range_to_a1, refs_to_sqref
from .cells import Sheet, display_text, is_formula
from .metadata import dump_payload
from .parser import META_SENTINEL, META_SHEET_NAME, NS
from .schemas import CellKey, CellRange, CellTypeMeta


logger = logging.getLogger(__name__)


# =============================================================================
# NAMESPACES & CONSTANTS
# =============================================================================

REL_TYPES = {
    "officeDocument": "http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument",
    "worksheet": "http://schemas.openxmlformats.org/officeDocument/2006/relationships/worksheet",
    "styles": "http://schemas.openxmlformats.org/officeDocument/2006/relationships/styles",
    "sharedStrings": "http://schemas.openxmlformats.org/officeDocument/2006/relationships/sharedStrings",
    "hyperlink": "http://schemas.openxmlformats.org/officeDocument/2006/relationships/hyperlink",
}

CONTENT_TYPES = {
    "workbook": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml",
    "worksheet": "application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml",
    "styles": "application/vnd.openxmlformats-officedocument.spreadsheetml.styles+xml",
    "sharedStrings": "application/vnd.openxmlformats-officedocument.spreadsheetml.sharedStrings+xml",
}

# Excel caps a cell at 32767 characters; longer payloads continue in A3, A4, ...
META_CHUNK_SIZE = 32000

XML_DECLARATION = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'

EXCEL_EPOCH = datetime(1899, 12, 30)

DATE_FORMAT_CODES = {
    "MM/DD/YYYY": "mm/dd/yyyy",
    "DD/MM/YYYY": "dd/mm/yyyy",
    "YYYY-MM-DD": "yyyy-mm-dd",
    "DD-MM-YYYY": "dd-mm-yyyy",
    "MM-DD-YYYY": "mm-dd-yyyy",
}

NAMED_COLORS = {
    "black": "000000",
    "white": "FFFFFF",
    "red": "FF0000",
    "blue": "0000FF",
    "green": "008000",
    "yellow": "FFFF00",
    "orange": "FFA500",
    "gray": "808080",
    "grey": "808080",
    "purple": "800080",
}

_RGB_FUNC = re.compile(r"^rgba?\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)")
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")


# =============================================================================
# VALUE & STYLE CONVERSION
# =============================================================================

def css_color_to_argb(color: Optional[str]) -> Optional[str]:
    """"#FF0000" / "#f00" / "red" / "rgb(255, 0, 0)" -> "FFFF0000"."""
    if not color:
        return None
    value = color.strip()
    if value.lower() in NAMED_COLORS:
        return "FF" + NAMED_COLORS[value.lower()]
    match = _RGB_FUNC.match(value.lower())
    if match:
        r, g, b = (max(0, min(255, int(x))) for x in match.groups())
        return f"FF{r:02X}{g:02X}{b:02X}"
    hex_value = value.lstrip("#")
    if len(hex_value) == 3:
        hex_value = "".join(ch * 2 for ch in hex_value)
    if len(hex_value) == 6 and re.fullmatch(r"[0-9a-fA-F]{6}", hex_value):
        return "FF" + hex_value.upper()
    return None


def parse_css_border(css: Optional[str]) -> Optional[Tuple[str, Optional[str]]]:
    """"2px solid #000" -> ("thick", "FF000000"); None for "none"/empty."""
    if not css:
        return None
    parts = css.lower().split()
    if not parts or "none" in parts:
        return None
    width = 1
    color = None
    style = "solid"
    for part in css.split():
        lowered = part.lower()
        if lowered.endswith("px"):
            try:
                width = float(lowered[:-2])
            except ValueError:
                pass
        elif lowered in ("solid", "dashed", "dotted", "double"):
            style = lowered
        else:
            color = css_color_to_argb(part) or color
    if style in ("dashed", "dotted"):
        return "dashed", color
    if width >= 2:
        return "thick", color
    return "thin", color


def numeral_to_excel(pattern: Optional[str]) -> Optional[str]:
    """Display pattern ("$0,0.00") -> Excel format code ("$#,##0.00")."""
    if not pattern:
        return None
    return pattern.replace("0,0", "#,##0")


def to_serial(value: date) -> float:
    if isinstance(value, datetime):
        delta = value.replace(tzinfo=None) - EXCEL_EPOCH
    else:
        delta = datetime(value.year, value.month, value.day) - EXCEL_EPOCH
    return delta.days + delta.seconds / 86400


def _format_number(value: float) -> str:
    if isinstance(value, int):
        return str(value)
    return repr(float(value)) if not float(value).is_integer() else str(int(value))


def safe_sheet_names(names: List[str]) -> List[str]:
    """Container-legal, unique sheet names (max 31 chars, no []:*?/\\)."""
    result: List[str] = []
    taken = {META_SHEET_NAME.lower()}
    for i, name in enumerate(names):
        base = _INVALID_SHEET_CHARS.sub("_", (name or "").strip()).strip("'")[:31] or f"Sheet{i + 1}"
        candidate = base
        n = 2
        while candidate.lower() in taken:
            suffix = f" ({n})"
            candidate = base[: 31 - len(suffix)] + suffix
            n += 1
        taken.add(candidate.lower())
        result.append(candidate)
    return result


# =============================================================================
# SHARED STRINGS
# =============================================================================

class _SharedStrings:
    """Shared string table; one index per distinct text."""

    def __init__(self) -> None:
        self.index: Dict[str, int] = {}
        self.count = 0

    def get_index(self, value: str) -> int:
        self.count += 1
        if value not in self.index:
            self.index[value] = len(self.index)
        return self.index[value]

    def to_xml(self) -> bytes:
        ns = NS["main"]
        root = ET.Element(f"{{{ns}}}sst")
        root.set("count", str(self.count))
        root.set("uniqueCount", str(len(self.index)))
        for text, _ in sorted(self.index.items(), key=lambda x: x[1]):
            si = ET.SubElement(root, f"{{{ns}}}si")
            t = ET.SubElement(si, f"{{{ns}}}t")
            t.text = text
            # Preserve whitespace
            if text and (text[0].isspace() or text[-1].isspace() or "\n" in text):
                t.set("{http://www.w3.org/XML/1998/namespace}space", "preserve")
        return _serialize(root)


# =============================================================================
# STYLES
# =============================================================================

class _StyleRegistry:
    """Deduplicates fonts, fills, borders, number formats and cellXfs."""

    def __init__(self) -> None:
        self.fonts: List[tuple] = [(False, False, False, None, None)]
        self.fills: List[Optional[str]] = [None, "gray125"]
        self.borders: List[tuple] = [(None, None, None, None)]
        self.num_fmts: Dict[str, int] = {}
        self.xfs: List[tuple] = [(0, 0, 0, 0, None)]

    @staticmethod
    def _add(items: list, item) -> int:
        if item in items:
            return items.index(item)
        items.append(item)
        return len(items) - 1

    def num_fmt_id(self, code: Optional[str]) -> int:
        if not code:
            return 0
        builtin = {"0.00%": 10, "0%": 9, "0.00": 2, "#,##0": 3, "#,##0.00": 4}
        if code in builtin:
            return builtin[code]
        if code not in self.num_fmts:
            self.num_fmts[code] = 164 + len(self.num_fmts)
        return self.num_fmts[code]

    def xf_for(
        self,
        tags: List[str],
        styles: Dict[str, str],
        number_format: Optional[str],
    ) -> int:
        size = None
        font_size = styles.get("fontSize")
        if font_size:
            try:
                size = float(font_size.lower().replace("px", "").strip())
            except ValueError:
                size = None
        font = (
            "bold" in tags or styles.get("fontWeight") in ("bold", "700"),
            "italic" in tags or styles.get("fontStyle") == "italic",
            "underline" in tags or styles.get("textDecoration") == "underline",
            css_color_to_argb(styles.get("color")),
            size,
        )
        fill = css_color_to_argb(styles.get("backgroundColor"))
        border = tuple(
            parse_css_border(styles.get(edge))
            for edge in ("borderLeft", "borderRight", "borderTop", "borderBottom")
        )
        align = None
        for tag in tags:
            if tag.startswith("align-"):
                align = tag[len("align-"):]

        xf = (
            self._add(self.fonts, font),
            self._add(self.fills, fill) if fill else 0,
            self._add(self.borders, border),
            self.num_fmt_id(number_format),
            align,
        )
        return self._add(self.xfs, xf)

    def to_xml(self) -> bytes:
        ns = NS["main"]
        root = ET.Element(f"{{{ns}}}styleSheet")

        if self.num_fmts:
            num_fmts_el = ET.SubElement(root, f"{{{ns}}}numFmts", count=str(len(self.num_fmts)))
            for code, fmt_id in self.num_fmts.items():
                ET.SubElement(num_fmts_el, f"{{{ns}}}numFmt", numFmtId=str(fmt_id), formatCode=code)

        fonts_el = ET.SubElement(root, f"{{{ns}}}fonts", count=str(len(self.fonts)))
        for bold, italic, underline, color, size in self.fonts:
            font_el = ET.SubElement(fonts_el, f"{{{ns}}}font")
            if bold:
                ET.SubElement(font_el, f"{{{ns}}}b")
            if italic:
                ET.SubElement(font_el, f"{{{ns}}}i")
            if underline:
                ET.SubElement(font_el, f"{{{ns}}}u")
            ET.SubElement(font_el, f"{{{ns}}}sz", val=_format_number(size or 11))
            if color:
                ET.SubElement(font_el, f"{{{ns}}}color", rgb=color)
            ET.SubElement(font_el, f"{{{ns}}}name", val="Calibri")

        fills_el = ET.SubElement(root, f"{{{ns}}}fills", count=str(len(self.fills)))
        for i, fill in enumerate(self.fills):
            fill_el = ET.SubElement(fills_el, f"{{{ns}}}fill")
            if i == 0:
                ET.SubElement(fill_el, f"{{{ns}}}patternFill", patternType="none")
            elif i == 1:
                ET.SubElement(fill_el, f"{{{ns}}}patternFill", patternType="gray125")
            else:
                pattern_el = ET.SubElement(fill_el, f"{{{ns}}}patternFill", patternType="solid")
                ET.SubElement(pattern_el, f"{{{ns}}}fgColor", rgb=fill)
                ET.SubElement(pattern_el, f"{{{ns}}}bgColor", indexed="64")

        borders_el = ET.SubElement(root, f"{{{ns}}}borders", count=str(len(self.borders)))
        for border in self.borders:
            border_el = ET.SubElement(borders_el, f"{{{ns}}}border")
            for side, edge in zip(("left", "right", "top", "bottom"), border):
                side_el = ET.SubElement(border_el, f"{{{ns}}}{side}")
                if edge is not None:
                    style, color = edge
                    side_el.set("style", style)
                    ET.SubElement(side_el, f"{{{ns}}}color", rgb=color or "FF000000")
            ET.SubElement(border_el, f"{{{ns}}}diagonal")

        style_xfs_el = ET.SubElement(root, f"{{{ns}}}cellStyleXfs", count="1")
        ET.SubElement(style_xfs_el, f"{{{ns}}}xf", numFmtId="0", fontId="0", fillId="0", borderId="0")

        xfs_el = ET.SubElement(root, f"{{{ns}}}cellXfs", count=str(len(self.xfs)))
        for font_id, fill_id, border_id, num_fmt_id, align in self.xfs:
            xf_el = ET.SubElement(
                xfs_el,
                f"{{{ns}}}xf",
                numFmtId=str(num_fmt_id),
                fontId=str(font_id),
                fillId=str(fill_id),
                borderId=str(border_id),
                xfId="0",
            )
            if font_id:
                xf_el.set("applyFont", "1")
            if fill_id:
                xf_el.set("applyFill", "1")
            if border_id:
                xf_el.set("applyBorder", "1")
            if num_fmt_id:
                xf_el.set("applyNumberFormat", "1")
            if align:
                xf_el.set("applyAlignment", "1")
                ET.SubElement(xf_el, f"{{{ns}}}alignment", horizontal=align)

        cell_styles_el = ET.SubElement(root, f"{{{ns}}}cellStyles", count="1")
        ET.SubElement(cell_styles_el, f"{{{ns}}}cellStyle", name="Normal", xfId="0", builtinId="0")

        return _serialize(root)


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

def _serialize(root: ET.Element) -> bytes:
    buffer = BytesIO()
    ET.ElementTree(root).write(buffer, xml_declaration=True, encoding="UTF-8")
    result = buffer.getvalue()
    # Fix XML declaration for Excel compatibility
    return result.replace(b"<?xml version='1.0' encoding='UTF-8'?>", XML_DECLARATION)


def _relationships_xml(rels: List[Tuple[str, str, str, bool]]) -> bytes:
    """(id, type, target, external) tuples -> a .rels part."""
    lines = [XML_DECLARATION.decode(), f'<Relationships xmlns="{NS["rel"]}">']
    for rel_id, rel_type, target, external in rels:
        mode = ' TargetMode="External"' if external else ""
        lines.append(
            f"<Relationship Id={quoteattr(rel_id)} Type={quoteattr(rel_type)} "
            f"Target={quoteattr(target)}{mode}/>"
        )
    lines.append("</Relationships>")
    return "".join(lines).encode("utf-8")


def _content_types_xml(sheet_count: int) -> bytes:
    parts = [
        XML_DECLARATION.decode(),
        f'<Types xmlns="{NS["ct"]}">',
        '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>',
        '<Default Extension="xml" ContentType="application/xml"/>',
        f'<Override PartName="/xl/workbook.xml" ContentType="{CONTENT_TYPES["workbook"]}"/>',
    ]
    for i in range(1, sheet_count + 1):
        parts.append(
            f'<Override PartName="/xl/worksheets/sheet{i}.xml" ContentType="{CONTENT_TYPES["worksheet"]}"/>'
        )
    parts.append(f'<Override PartName="/xl/styles.xml" ContentType="{CONTENT_TYPES["styles"]}"/>')
    parts.append(
        f'<Override PartName="/xl/sharedStrings.xml" ContentType="{CONTENT_TYPES["sharedStrings"]}"/>'
    )
    parts.append("</Types>")
    return "".join(parts).encode("utf-8")


def _workbook_xml(names: List[str], hidden: List[bool], active_index: int) -> bytes:
    ns = NS["main"]
    r_ns = NS["r"]
    root = ET.Element(f"{{{ns}}}workbook")
    book_views = ET.SubElement(root, f"{{{ns}}}bookViews")
    ET.SubElement(book_views, f"{{{ns}}}workbookView", activeTab=str(active_index))
    sheets_el = ET.SubElement(root, f"{{{ns}}}sheets")
    for i, (name, is_hidden) in enumerate(zip(names, hidden), start=1):
        sheet_el = ET.SubElement(sheets_el, f"{{{ns}}}sheet", name=name, sheetId=str(i))
        if is_hidden:
            sheet_el.set("state", "hidden")
        sheet_el.set(f"{{{r_ns}}}id", f"rId{i}")
    return _serialize(root)


# =============================================================================
# WORKSHEETS
# =============================================================================

def _number_format_for(meta: Optional[CellTypeMeta], value: Any) -> Optional[str]:
    if meta is not None and meta.type == "numeric" and meta.numeric_format:
        return numeral_to_excel(meta.numeric_format.pattern)
    if meta is not None and meta.type == "date":
        return DATE_FORMAT_CODES.get(meta.date_format or "", "mm/dd/yyyy")
    if isinstance(value, (date, datetime)):
        default = get_engine_settings().default_date_format
        return DATE_FORMAT_CODES.get(default, "mm/dd/yyyy")
    return None


def _column_widths(sheet: Sheet, col_count: int) -> Dict[int, float]:
    settings = get_engine_settings()
    widths: Dict[int, float] = {}
    for col in range(col_count):
        explicit = sheet.column_widths.get(col)
        if explicit:
            widths[col] = round(explicit / settings.pixels_per_width_unit, 2)
            continue
        longest = max(
            (len(display_text(row[col])) for row in sheet.grid if col < len(row) and row[col] is not None),
            default=0,
        )
        if longest:
            widths[col] = min(longest + 2, settings.autofit_max_width)
    for col, px in sheet.column_widths.items():
        if col not in widths:
            widths[col] = round(px / settings.pixels_per_width_unit, 2)
    return widths


def _write_cell(
    row_el: ET.Element,
    key: CellKey,
    value: Any,
    style_id: int,
    strings: _SharedStrings,
) -> None:
    ns = NS["main"]
    cell_el = ET.SubElement(row_el, f"{{{ns}}}c", r=cell_ref(key.row, key.col))
    if style_id:
        cell_el.set("s", str(style_id))
    if value is None or value == "":
        return
    if isinstance(value, bool):
        cell_el.set("t", "b")
        ET.SubElement(cell_el, f"{{{ns}}}v").text = "1" if value else "0"
    elif isinstance(value, (int, float)):
        ET.SubElement(cell_el, f"{{{ns}}}v").text = _format_number(value)
    elif isinstance(value, (date, datetime)):
        ET.SubElement(cell_el, f"{{{ns}}}v").text = _format_number(to_serial(value))
    elif is_formula(value) and len(value) > 1:
        ET.SubElement(cell_el, f"{{{ns}}}f").text = value[1:]
    else:
        cell_el.set("t", "s")
        ET.SubElement(cell_el, f"{{{ns}}}v").text = str(strings.get_index(str(value)))


def _worksheet_xml(
    sheet: Sheet,
    strings: _SharedStrings,
    styles: _StyleRegistry,
) -> Tuple[bytes, List[Tuple[str, str, str, bool]]]:
    ns = NS["main"]
    r_ns = NS["r"]
    root = ET.Element(f"{{{ns}}}worksheet")

    row_count = sheet.row_count
    col_count = sheet.col_count
    for key in list(sheet.cell_types) + list(sheet.cell_formats) + list(sheet.cell_styles):
        row_count = max(row_count, key.row + 1)
        col_count = max(col_count, key.col + 1)

    if row_count and col_count:
        dimension = range_to_a1(CellRange(start_row=0, start_col=0, end_row=row_count - 1, end_col=col_count - 1))
    else:
        dimension = "A1"
    ET.SubElement(root, f"{{{ns}}}dimension", ref=dimension)

    widths = _column_widths(sheet, col_count)
    if widths:
        cols_el = ET.SubElement(root, f"{{{ns}}}cols")
        for col in sorted(widths):
            col_el = ET.SubElement(
                cols_el, f"{{{ns}}}col",
                min=str(col + 1), max=str(col + 1), width=_format_number(widths[col]),
            )
            if col in sheet.column_widths:
                col_el.set("customWidth", "1")

    sheet_data = ET.SubElement(root, f"{{{ns}}}sheetData")
    for r in range(row_count):
        row_values = sheet.grid[r] if r < len(sheet.grid) else []
        cells = []
        for c in range(col_count):
            key = CellKey(r, c)
            value = row_values[c] if c < len(row_values) else None
            meta = sheet.cell_types.get(key)
            fmt = sheet.cell_formats.get(key)
            cell_styles = sheet.cell_styles.get(key, {})
            number_format = _number_format_for(meta, value)
            tags = fmt.tags() if fmt else []
            if value is None and not (tags or cell_styles or number_format):
                continue
            style_id = styles.xf_for(tags, cell_styles, number_format) if (tags or cell_styles or number_format) else 0
            cells.append((key, value, style_id))
        if not cells:
            continue
        row_el = ET.SubElement(sheet_data, f"{{{ns}}}row", r=str(r + 1))
        for key, value, style_id in cells:
            _write_cell(row_el, key, value, style_id, strings)

    # Dropdowns -> list validation, grouped by identical option lists
    groups: Dict[Tuple[str, ...], List[CellKey]] = {}
    for key, meta in sheet.cell_types.items():
        if meta.type == "dropdown" and meta.source:
            groups.setdefault(tuple(meta.source), []).append(key)
    if groups:
        dvs_el = ET.SubElement(root, f"{{{ns}}}dataValidations", count=str(len(groups)))
        for source, keys in groups.items():
            dv_el = ET.SubElement(
                dvs_el, f"{{{ns}}}dataValidation",
                type="list", allowBlank="1", showErrorMessage="1", sqref=refs_to_sqref(keys),
            )
            ET.SubElement(dv_el, f"{{{ns}}}formula1").text = '"' + ",".join(source) + '"'

    rels: List[Tuple[str, str, str, bool]] = []
    explicit_links = {k: v for k, v in sheet.links.items() if k not in sheet.detected_links}
    if explicit_links:
        links_el = ET.SubElement(root, f"{{{ns}}}hyperlinks")
        for i, (key, url) in enumerate(sorted(explicit_links.items()), start=1):
            rel_id = f"rId{i}"
            link_el = ET.SubElement(links_el, f"{{{ns}}}hyperlink", ref=cell_ref(key.row, key.col))
            link_el.set(f"{{{r_ns}}}id", rel_id)
            rels.append((rel_id, REL_TYPES["hyperlink"], url, True))

    return _serialize(root), rels


def _meta_sheet_xml(payload: str, strings: _SharedStrings) -> bytes:
    ns = NS["main"]
    root = ET.Element(f"{{{ns}}}worksheet")
    sheet_data = ET.SubElement(root, f"{{{ns}}}sheetData")
    chunks = [payload[i:i + META_CHUNK_SIZE] for i in range(0, len(payload), META_CHUNK_SIZE)] or [""]
    for r, text in enumerate([META_SENTINEL] + chunks):
        row_el = ET.SubElement(sheet_data, f"{{{ns}}}row", r=str(r + 1))
        _write_cell(row_el, CellKey(r, 0), text, 0, strings)
    return _serialize(root)


# =============================================================================
# PACKAGE
# =============================================================================

def write_xlsx(sheets: List[Sheet], active_index: int = 0, include_metadata: bool = True) -> bytes:
    """Encode sheets into XLSX bytes."""
    strings = _SharedStrings()
    styles = _StyleRegistry()

    names = safe_sheet_names([s.name for s in sheets])
    parts: Dict[str, bytes] = {}
    for i, sheet in enumerate(sheets, start=1):
        sheet_xml, rels = _worksheet_xml(sheet, strings, styles)
        parts[f"xl/worksheets/sheet{i}.xml"] = sheet_xml
        if rels:
            parts[f"xl/worksheets/_rels/sheet{i}.xml.rels"] = _relationships_xml(rels)

    hidden = [False] * len(sheets)
    if include_metadata:
        payload = dump_payload(sheets)
        parts[f"xl/worksheets/sheet{len(sheets) + 1}.xml"] = _meta_sheet_xml(payload, strings)
        names = names + [META_SHEET_NAME]
        hidden.append(True)

    sheet_count = len(names)
    workbook_rels = [
        (f"rId{i}", REL_TYPES["worksheet"], f"worksheets/sheet{i}.xml", False)
        for i in range(1, sheet_count + 1)
    ]
    workbook_rels.append((f"rId{sheet_count + 1}", REL_TYPES["styles"], "styles.xml", False))
    workbook_rels.append((f"rId{sheet_count + 2}", REL_TYPES["sharedStrings"], "sharedStrings.xml", False))

    active = active_index if 0 <= active_index < len(sheets) else 0

    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf_out:
        zf_out.writestr("[Content_Types].xml", _content_types_xml(sheet_count))
        zf_out.writestr(
            "_rels/.rels",
            _relationships_xml([("rId1", REL_TYPES["officeDocument"], "xl/workbook.xml", False)]),
        )
        zf_out.writestr("xl/workbook.xml", _workbook_xml(names, hidden, active))
        zf_out.writestr("xl/_rels/workbook.xml.rels", _relationships_xml(workbook_rels))
        for path, data in parts.items():
            zf_out.writestr(path, data)
        zf_out.writestr("xl/styles.xml", styles.to_xml())
        zf_out.writestr("xl/sharedStrings.xml", strings.to_xml())

    result = buffer.getvalue()
    logger.info(
        f"[ENCODE] Wrote {len(sheets)} sheet(s), {len(strings.index)} shared string(s), "
        f"{len(styles.xfs)} cell format(s), {len(result)} bytes"
    )
    return result
