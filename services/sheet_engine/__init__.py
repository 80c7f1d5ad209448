"""Sheet Engine - tabular document model, conditional formatting, charts and codec.

This module handles:
1. A sparse cell grid with per-cell type, format, style and link metadata
2. Multi-sheet workbooks with an active sheet
3. Conditional formatting rules evaluated into render overlays
4. Chart data extraction from cell ranges
5. XLSX and CSV encode/decode, with engine state carried in a hidden payload
"""

from .addressing import (
    column_to_letter,
    letter_to_column,
    parse_a1_range,
    range_to_a1,
    resolve_target_range,
)
from .cells import Sheet, SearchCursor, search_cells
from .charts import add_chart, chart_data_for, delete_chart, extract_chart_data
from .codec import (
    decode_bytes,
    decode_bytes_async,
    decode_into,
    decode_into_async,
    encode_workbook,
    encode_workbook_async,
)
from .conditional import (
    OverlayRecomputer,
    PanelInput,
    RuleSet,
    add_rule_from_panel,
    build_rule_from_panel,
    compute_overlays,
    compute_sheet_overlays,
    evaluate_condition,
)
from .errors import (
    MalformedInput,
    PartialApplyFailure,
    ServerErrorMasquerade,
    SheetEngineError,
    UnsupportedContainer,
)
from .events import DataChanged, EventBus, RulesChanged, SheetSwitched
from .links import detect_link, scan_links
from .schemas import (
    CellFormat,
    CellKey,
    CellRange,
    CellTypeMeta,
    ChartData,
    ChartDefinition,
    ConditionalRule,
    NumericFormat,
    OverlayMaps,
)
from .workbook import Workbook

__all__ = [
    # Model
    "CellKey",
    "CellRange",
    "CellTypeMeta",
    "CellFormat",
    "NumericFormat",
    "Sheet",
    "Workbook",
    "SearchCursor",
    "search_cells",
    # Addressing
    "column_to_letter",
    "letter_to_column",
    "parse_a1_range",
    "range_to_a1",
    "resolve_target_range",
    # Conditional formatting
    "ConditionalRule",
    "OverlayMaps",
    "RuleSet",
    "PanelInput",
    "OverlayRecomputer",
    "evaluate_condition",
    "compute_overlays",
    "compute_sheet_overlays",
    "build_rule_from_panel",
    "add_rule_from_panel",
    # Charts
    "ChartDefinition",
    "ChartData",
    "extract_chart_data",
    "add_chart",
    "delete_chart",
    "chart_data_for",
    # Links
    "detect_link",
    "scan_links",
    # Events
    "EventBus",
    "DataChanged",
    "RulesChanged",
    "SheetSwitched",
    # Codec
    "decode_bytes",
    "decode_bytes_async",
    "decode_into",
    "decode_into_async",
    "encode_workbook",
    "encode_workbook_async",
    # Errors
    "SheetEngineError",
    "MalformedInput",
    "UnsupportedContainer",
    "ServerErrorMasquerade",
    "PartialApplyFailure",
]
