"""Pydantic schemas for the tabular document model.

These schemas model the editable representation of a workbook:
- Cell ranges and cell keys
- Per-cell type metadata (text/numeric/date/checkbox/dropdown)
- Conditional formatting rules (tagged condition union)
- Chart definitions and extracted chart data
- The embedded metadata payload carried inside saved files

Field names are snake_case in Python and camelCase on the wire
(`stopIfTrue`, `columnWidths`, ...), so the same models read both the
API bodies and the JSON payload stored in saved workbooks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model: camelCase aliases, unknown keys ignored."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# ADDRESSING
# =============================================================================

class CellKey(NamedTuple):
    """Zero-based (row, col) lookup key for every per-cell map."""
    row: int
    col: int

    def to_token(self) -> str:
        """Wire form used in JSON payloads, e.g. "3-1"."""
        return f"{self.row}-{self.col}"

    @classmethod
    def from_token(cls, token: str) -> "CellKey":
        parts = str(token).split("-")
        if len(parts) != 2:
            raise ValueError(f"Invalid cell key: {token}")
        row, col = int(parts[0]), int(parts[1])
        if row < 0 or col < 0:
            raise ValueError(f"Invalid cell key: {token}")
        return cls(row, col)


class CellRange(CamelModel):
    """Rectangular cell region, zero-based and inclusive on both ends."""
    start_row: int = Field(ge=0)
    start_col: int = Field(ge=0)
    end_row: int = Field(ge=0)
    end_col: int = Field(ge=0)

    @property
    def row_count(self) -> int:
        return abs(self.end_row - self.start_row) + 1

    @property
    def col_count(self) -> int:
        return abs(self.end_col - self.start_col) + 1

    def key(self) -> tuple:
        return (self.start_row, self.start_col, self.end_row, self.end_col)

    def cells(self):
        """Iterate cell keys in row-major order (range must be normalized)."""
        for r in range(self.start_row, self.end_row + 1):
            for c in range(self.start_col, self.end_col + 1):
                yield CellKey(r, c)


# =============================================================================
# CELL METADATA
# =============================================================================

CellType = Literal["text", "numeric", "date", "checkbox", "dropdown"]

DateFormat = Literal["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD", "DD-MM-YYYY", "MM-DD-YYYY"]

DATE_FORMATS: List[str] = ["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD", "DD-MM-YYYY", "MM-DD-YYYY"]


class NumericFormat(CamelModel):
    """Display pattern for numeric cells, e.g. "$0,0.00" with culture "en-US"."""
    pattern: Optional[str] = None
    culture: Optional[str] = None


class CellTypeMeta(CamelModel):
    """Input type of a cell.

    `source` is present iff type == "dropdown"; `date_format` iff type == "date";
    `numeric_format` only survives on numeric cells.
    """
    type: CellType = "text"
    source: Optional[List[str]] = None
    numeric_format: Optional[NumericFormat] = None
    date_format: Optional[DateFormat] = None

    @model_validator(mode="after")
    def _enforce_type_family(self) -> "CellTypeMeta":
        if self.type == "dropdown":
            if self.source is None:
                self.source = []
        else:
            self.source = None
        if self.type == "date":
            if self.date_format is None:
                self.date_format = "MM/DD/YYYY"
        else:
            self.date_format = None
        if self.type != "numeric":
            self.numeric_format = None
        return self


class CellFormat(CamelModel):
    """Render-only format tags, space-joined (e.g. "bold align-center")."""
    class_name: Optional[str] = None

    def tags(self) -> List[str]:
        return [t for t in (self.class_name or "").split(" ") if t.strip()]


# CSS-like property map: {"color": "#FF0000", "backgroundColor": "#FFFF00", ...}
StyleMap = Dict[str, str]


# =============================================================================
# CONDITIONAL FORMATTING
# =============================================================================

NumericOperator = Literal["gt", "gte", "lt", "lte", "eq", "neq", "between", "topN", "bottomN"]
TextOperator = Literal[
    "contains", "startsWith", "endsWith", "eq", "neq", "isEmpty", "isNotEmpty", "duplicate", "unique"
]
DateOperator = Literal[
    "today", "yesterday", "tomorrow", "inLastNDays", "inNextNDays",
    "thisWeek", "lastWeek", "nextWeek", "thisMonth", "lastMonth", "nextMonth",
    "before", "after", "on", "notOn",
]


class NumericCondition(CamelModel):
    kind: Literal["numeric"] = "numeric"
    operator: NumericOperator
    value: Optional[float] = None
    value2: Optional[float] = None

    @model_validator(mode="after")
    def _check_operands(self) -> "NumericCondition":
        if self.operator == "between":
            if self.value is None or self.value2 is None:
                raise ValueError("'between' needs both value and value2")
        elif self.operator in ("topN", "bottomN"):
            if self.value is None or self.value <= 0 or float(self.value) != int(self.value):
                raise ValueError(f"'{self.operator}' needs a positive integer count")
        return self

    @property
    def is_aggregate(self) -> bool:
        return self.operator in ("topN", "bottomN")


class TextCondition(CamelModel):
    kind: Literal["text"] = "text"
    operator: TextOperator
    value: Optional[str] = None

    @property
    def is_aggregate(self) -> bool:
        return self.operator in ("duplicate", "unique")


class DateCondition(CamelModel):
    kind: Literal["date"] = "date"
    operator: DateOperator
    value: Optional[Union[int, float, str]] = None  # ISO date, or N for the N-days operators

    @property
    def is_aggregate(self) -> bool:
        return False


class ColorScaleCondition(CamelModel):
    kind: Literal["colorScale"] = "colorScale"
    min_color: str
    max_color: str

    @property
    def is_aggregate(self) -> bool:
        return True


Condition = Annotated[
    Union[NumericCondition, TextCondition, DateCondition, ColorScaleCondition],
    Field(discriminator="kind"),
]


class RuleFormat(CamelModel):
    class_name: Optional[str] = None
    styles: StyleMap = {}


class ConditionalRule(CamelModel):
    """A conditional formatting rule scoped to a range.

    Lower priority numbers are evaluated first. The range is always
    stored normalized.
    """
    id: str
    range: CellRange
    condition: Condition
    format: RuleFormat = Field(default_factory=RuleFormat)
    stop_if_true: bool = False
    priority: int = 0
    label: Optional[str] = None

    @model_validator(mode="after")
    def _normalize_range(self) -> "ConditionalRule":
        r = self.range
        self.range = CellRange(
            start_row=min(r.start_row, r.end_row),
            start_col=min(r.start_col, r.end_col),
            end_row=max(r.start_row, r.end_row),
            end_col=max(r.start_col, r.end_col),
        )
        return self


@dataclass
class OverlayMaps:
    """Derived per-cell presentation attributes handed to the renderer."""
    classes: Dict[CellKey, str] = field(default_factory=dict)
    styles: Dict[CellKey, StyleMap] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "classes": {k.to_token(): v for k, v in self.classes.items()},
            "styles": {k.to_token(): dict(v) for k, v in self.styles.items()},
        }


# =============================================================================
# CHARTS
# =============================================================================

ChartType = Literal["line", "bar", "area", "pie", "scatter", "composed"]


class ChartPosition(CamelModel):
    x: float = 0
    y: float = 0


class ChartSize(CamelModel):
    width: float = 480
    height: float = 320


class ChartSeriesRef(CamelModel):
    """Optional explicit series binding (kept for round-trip)."""
    id: str
    name: str
    data_range: CellRange
    color: Optional[str] = None


class ChartOptions(CamelModel):
    title: Optional[str] = None
    x_axis_label: Optional[str] = None
    y_axis_label: Optional[str] = None
    category_column: int = Field(default=0, ge=0)  # relative to data_range.start_col
    show_legend: bool = True
    show_grid: bool = True


class ChartDefinition(CamelModel):
    id: str
    name: str = ""
    type: ChartType = "bar"
    position: ChartPosition = Field(default_factory=ChartPosition)
    size: ChartSize = Field(default_factory=ChartSize)
    data_range: CellRange
    series: List[ChartSeriesRef] = []
    options: ChartOptions = Field(default_factory=ChartOptions)


class ChartSeriesData(CamelModel):
    name: str
    data: List[float] = []
    color: Optional[str] = None


class ChartData(CamelModel):
    categories: List[str] = []
    series: List[ChartSeriesData] = []


# =============================================================================
# EMBEDDED METADATA PAYLOAD
# =============================================================================

class CellMetaEntry(CamelModel):
    """Everything the engine knows about one cell beyond its value."""
    type: Optional[CellType] = None
    source: Optional[List[str]] = None
    numeric_format: Optional[NumericFormat] = None
    date_format: Optional[str] = None
    class_name: Optional[str] = None
    styles: Optional[StyleMap] = None
    link: Optional[str] = None


class SheetMetaPayload(CamelModel):
    """Per-sheet metadata. Rules and charts are kept raw and validated one by one."""
    index: Optional[int] = None
    name: Optional[str] = None
    conditional_formatting: Optional[List[Dict[str, Any]]] = None
    charts: Optional[List[Dict[str, Any]]] = None
    cells: Optional[Dict[str, Dict[str, Any]]] = None
    column_widths: Optional[Dict[str, float]] = None


class MetadataPayload(SheetMetaPayload):
    """Top-level payload.

    Top-level keys describe the first sheet (single-sheet form); `sheets`
    carries one entry per sheet for multi-sheet workbooks.
    """
    version: Optional[int] = None
    sheets: Optional[List[SheetMetaPayload]] = None
