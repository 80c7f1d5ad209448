"""Conditional formatting: rule storage, evaluation and recomputation.

Evaluation walks every cell of the grid's bounding box and applies the
sheet's rules in ascending priority order:

1. Rules whose range does not contain the cell are skipped.
2. Range-aggregate conditions (color scale, top/bottom-N, duplicate/unique)
   read an aggregate computed once per range for the whole pass.
3. A match appends the rule's className and merges its styles over the
   cell's accumulated styles (later rules win on colliding keys).
4. A matching rule with stop_if_true ends evaluation for that cell only.

The result is an `OverlayMaps` (classes + styles per cell) for the renderer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from ..engine_config import get_engine_settings
from .addressing import range_contains, resolve_target_range
from .cells import Sheet, display_text
from .errors import MalformedInput
from .events import DataChanged, EventBus, RulesChanged
from .schemas import (
    CellKey,
    CellRange,
    ColorScaleCondition,
    ConditionalRule,
    DateCondition,
    NumericCondition,
    OverlayMaps,
    TextCondition,
)


logger = logging.getLogger(__name__)


# =============================================================================
# VALUE COERCION
# =============================================================================

_DATE_PARSE_FORMATS = ("%m/%d/%Y", "%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y", "%m-%d-%Y", "%Y/%m/%d")


def coerce_number(value: Any) -> Optional[float]:
    """Number, or numeric text with thousands separators; None otherwise."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value == value and value not in (float("inf"), float("-inf")) else None
    if isinstance(value, (date, datetime)):
        return None
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return None


def coerce_text(value: Any) -> str:
    return display_text(value)


def coerce_date(value: Any) -> Optional[date]:
    """Calendar day of a cell value (time of day is discarded)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_PARSE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


# =============================================================================
# CONDITION EVALUATION
# =============================================================================

def _evaluate_numeric(value: Any, condition: NumericCondition) -> bool:
    v = coerce_number(value)
    if v is None:
        return False
    a = condition.value if condition.value is not None else 0.0
    op = condition.operator
    if op == "gt":
        return v > a
    if op == "gte":
        return v >= a
    if op == "lt":
        return v < a
    if op == "lte":
        return v <= a
    if op == "eq":
        return v == a
    if op == "neq":
        return v != a
    if op == "between":
        low, high = sorted((condition.value, condition.value2))
        return low <= v <= high
    return False


def _evaluate_text(value: Any, condition: TextCondition) -> bool:
    s = coerce_text(value)
    needle = (condition.value or "").lower()
    op = condition.operator
    if op == "contains":
        return needle in s.lower()
    if op == "startsWith":
        return s.lower().startswith(needle)
    if op == "endsWith":
        return s.lower().endswith(needle)
    if op == "eq":
        return s.lower() == needle
    if op == "neq":
        return s.lower() != needle
    if op == "isEmpty":
        return s.strip() == ""
    if op == "isNotEmpty":
        return s.strip() != ""
    return False


def _week_start(day: date) -> date:
    # weeks run Sunday..Saturday
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _month_bounds(year: int, month: int) -> tuple:
    while month < 1:
        month += 12
        year -= 1
    while month > 12:
        month -= 12
        year += 1
    start = date(year, month, 1)
    nxt = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, nxt - timedelta(days=1)


def _day_count(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return 0
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def _evaluate_date(value: Any, condition: DateCondition, today: date) -> bool:
    d = coerce_date(value)
    if d is None:
        return False
    op = condition.operator
    if op == "today":
        return d == today
    if op == "yesterday":
        return d == today - timedelta(days=1)
    if op == "tomorrow":
        return d == today + timedelta(days=1)
    if op in ("inLastNDays", "inNextNDays"):
        n = _day_count(condition.value)
        if n is None:
            return False
        if op == "inLastNDays":
            return today - timedelta(days=n) <= d <= today
        return today <= d <= today + timedelta(days=n)
    if op in ("thisWeek", "lastWeek", "nextWeek"):
        start = _week_start(today) + timedelta(days={"thisWeek": 0, "lastWeek": -7, "nextWeek": 7}[op])
        return start <= d <= start + timedelta(days=6)
    if op in ("thisMonth", "lastMonth", "nextMonth"):
        offset = {"thisMonth": 0, "lastMonth": -1, "nextMonth": 1}[op]
        start, end = _month_bounds(today.year, today.month + offset)
        return start <= d <= end
    anchor = coerce_date(condition.value) if condition.value not in (None, "") else None
    if anchor is None:
        return False
    if op == "before":
        return d < anchor
    if op == "after":
        return d > anchor
    if op == "on":
        return d == anchor
    if op == "notOn":
        return d != anchor
    return False


def evaluate_condition(value: Any, condition, today: Optional[date] = None) -> bool:
    """Evaluate a non-aggregate condition against one cell value."""
    if isinstance(condition, NumericCondition):
        return _evaluate_numeric(value, condition)
    if isinstance(condition, TextCondition):
        return _evaluate_text(value, condition)
    if isinstance(condition, DateCondition):
        return _evaluate_date(value, condition, today or date.today())
    return False


# =============================================================================
# RANGE AGGREGATES
# =============================================================================

@dataclass
class RangeAggregates:
    """Per-pass cache of aggregates keyed by range corners."""
    grid: Sequence[Sequence[Any]]
    numbers: Dict[tuple, List[float]] = field(default_factory=dict)
    text_counts: Dict[tuple, Dict[str, int]] = field(default_factory=dict)

    def _cell(self, r: int, c: int) -> Any:
        if r >= len(self.grid):
            return None
        row = self.grid[r]
        return row[c] if c < len(row) else None

    def sorted_numbers(self, range_: CellRange) -> List[float]:
        key = range_.key()
        if key not in self.numbers:
            values = []
            for cell in range_.cells():
                v = coerce_number(self._cell(cell.row, cell.col))
                if v is not None:
                    values.append(v)
            self.numbers[key] = sorted(values)
        return self.numbers[key]

    def counts(self, range_: CellRange) -> Dict[str, int]:
        key = range_.key()
        if key not in self.text_counts:
            counts: Dict[str, int] = {}
            for cell in range_.cells():
                s = coerce_text(self._cell(cell.row, cell.col))
                if s.strip() == "":
                    continue
                counts[s] = counts.get(s, 0) + 1
            self.text_counts[key] = counts
        return self.text_counts[key]


def _hex_to_rgb(color: str) -> Optional[tuple]:
    h = (color or "").strip().lstrip("#")
    if len(h) == 3:
        h = "".join(ch * 2 for ch in h)
    if len(h) != 6:
        return None
    try:
        return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)
    except ValueError:
        return None


def interpolate_color(min_color: str, max_color: str, t: float) -> Optional[str]:
    c1 = _hex_to_rgb(min_color)
    c2 = _hex_to_rgb(max_color)
    if c1 is None or c2 is None:
        return None
    t = max(0.0, min(1.0, t))
    r, g, b = (int(round(a + (b - a) * t)) for a, b in zip(c1, c2))
    return f"rgb({r}, {g}, {b})"


def _color_scale_style(value: Any, condition: ColorScaleCondition, rng: CellRange,
                       agg: RangeAggregates) -> Optional[str]:
    nums = agg.sorted_numbers(rng)
    v = coerce_number(value)
    if not nums or v is None:
        return None
    low, high = nums[0], nums[-1]
    t = 0.5 if high == low else (v - low) / (high - low)
    return interpolate_color(condition.min_color, condition.max_color, t)


def _matches_rank(value: Any, condition: NumericCondition, rng: CellRange,
                  agg: RangeAggregates) -> bool:
    nums = agg.sorted_numbers(rng)
    v = coerce_number(value)
    if not nums or v is None:
        return False
    n = int(condition.value)
    if condition.operator == "topN":
        return v >= nums[max(0, len(nums) - n)]
    return v <= nums[min(len(nums) - 1, n - 1)]


def _matches_frequency(value: Any, condition: TextCondition, rng: CellRange,
                       agg: RangeAggregates) -> bool:
    s = coerce_text(value)
    if s.strip() == "":
        return False
    count = agg.counts(rng).get(s, 0)
    return count > 1 if condition.operator == "duplicate" else count <= 1


# =============================================================================
# OVERLAY COMPUTATION
# =============================================================================

def sort_rules(rules: Sequence[ConditionalRule]) -> List[ConditionalRule]:
    return sorted(rules, key=lambda r: r.priority)


def compute_overlays(
    grid: Sequence[Sequence[Any]],
    rules: Sequence[ConditionalRule],
    today: Optional[date] = None,
) -> OverlayMaps:
    """Full evaluation pass over the grid's bounding box."""
    overlays = OverlayMaps()
    if not grid or not rules:
        return overlays

    today = today or date.today()
    ordered = sort_rules(rules)
    agg = RangeAggregates(grid=grid)
    num_rows = len(grid)
    num_cols = max((len(r) for r in grid), default=0)

    for r in range(num_rows):
        row = grid[r]
        for c in range(num_cols):
            value = row[c] if c < len(row) and row[c] is not None else ""
            key = CellKey(r, c)
            for rule in ordered:
                if not range_contains(rule.range, r, c):
                    continue

                cond = rule.condition
                extra_style: Optional[Dict[str, str]] = None
                if isinstance(cond, ColorScaleCondition):
                    bg = _color_scale_style(value, cond, rule.range, agg)
                    matched = bg is not None
                    if matched:
                        extra_style = {"backgroundColor": bg}
                elif isinstance(cond, NumericCondition) and cond.is_aggregate:
                    matched = _matches_rank(value, cond, rule.range, agg)
                elif isinstance(cond, TextCondition) and cond.is_aggregate:
                    matched = _matches_frequency(value, cond, rule.range, agg)
                else:
                    matched = evaluate_condition(value, cond, today)

                if not matched:
                    continue

                if extra_style:
                    overlays.styles[key] = {**overlays.styles.get(key, {}), **extra_style}
                if rule.format.class_name:
                    existing = overlays.classes.get(key)
                    overlays.classes[key] = (
                        f"{existing} {rule.format.class_name}".strip() if existing else rule.format.class_name
                    )
                if rule.format.styles:
                    overlays.styles[key] = {**overlays.styles.get(key, {}), **rule.format.styles}
                if rule.stop_if_true:
                    break

    logger.debug(
        f"[CF] Evaluated {len(ordered)} rule(s) over {num_rows}x{num_cols}: "
        f"{len(overlays.classes)} class / {len(overlays.styles)} style overlay(s), "
        f"{len(agg.numbers) + len(agg.text_counts)} range aggregate(s)"
    )
    return overlays


def compute_sheet_overlays(sheet: Sheet, today: Optional[date] = None) -> OverlayMaps:
    return compute_overlays(sheet.grid, sheet.conditional_rules, today)


# =============================================================================
# RULE MUTATIONS
# =============================================================================

def _new_rule_id(existing: Sequence[ConditionalRule]) -> str:
    taken = {r.id for r in existing}
    while True:
        rule_id = f"cf_{uuid.uuid4().hex[:12]}"
        if rule_id not in taken:
            return rule_id


def build_rule(data: Dict[str, Any], rule_id: str, priority: int) -> ConditionalRule:
    """Validate a rule definition (camelCase or snake_case keys)."""
    try:
        return ConditionalRule.model_validate({**data, "id": rule_id, "priority": priority})
    except ValidationError as e:
        raise MalformedInput(f"Invalid conditional formatting rule: {e.errors()[0].get('msg')}") from e


class RuleSet:
    """Mutations over one sheet's rules. Each mutation publishes RulesChanged."""

    def __init__(self, sheet: Sheet):
        self.sheet = sheet

    @property
    def rules(self) -> List[ConditionalRule]:
        return sort_rules(self.sheet.conditional_rules)

    def get(self, rule_id: str) -> Optional[ConditionalRule]:
        for rule in self.sheet.conditional_rules:
            if rule.id == rule_id:
                return rule
        return None

    def add(self, data: Dict[str, Any]) -> ConditionalRule:
        """Add a rule with a fresh id; priority defaults to the current count."""
        current = self.sheet.conditional_rules
        priority = data.get("priority")
        if priority is None:
            priority = len(current)
        fields = {k: v for k, v in data.items() if k not in ("id", "priority")}
        rule = build_rule(fields, _new_rule_id(current), priority)
        self.sheet.conditional_rules = [*current, rule]
        logger.info(f"[CF] Added rule {rule.id} ({rule.condition.kind}) on '{self.sheet.name}'")
        self._publish("add", rule.id)
        return rule

    def update(self, rule_id: str, changes: Dict[str, Any]) -> ConditionalRule:
        existing = self.get(rule_id)
        if existing is None:
            raise MalformedInput(f"Unknown rule: {rule_id}")
        merged = {**existing.model_dump(by_alias=True), **changes}
        for name in changes:
            # a snake_case change must not lose to the stored camelCase key
            if to_camel(name) != name:
                merged.pop(to_camel(name), None)
        merged.pop("id", None)
        priority = merged.pop("priority", existing.priority)
        updated = build_rule(merged, rule_id, priority)
        self.sheet.conditional_rules = [
            updated if r.id == rule_id else r for r in self.sheet.conditional_rules
        ]
        self._publish("update", rule_id)
        return updated

    def remove(self, rule_id: str) -> bool:
        before = len(self.sheet.conditional_rules)
        self.sheet.conditional_rules = [r for r in self.sheet.conditional_rules if r.id != rule_id]
        removed = len(self.sheet.conditional_rules) != before
        if removed:
            self._publish("remove", rule_id)
        return removed

    def move(self, rule_id: str, direction: Literal["up", "down"]) -> bool:
        """Swap priority with the neighbour in priority order. False at the ends."""
        ordered = self.rules
        idx = next((i for i, r in enumerate(ordered) if r.id == rule_id), None)
        if idx is None:
            raise MalformedInput(f"Unknown rule: {rule_id}")
        other_idx = idx - 1 if direction == "up" else idx + 1
        if other_idx < 0 or other_idx >= len(ordered):
            return False
        a, b = ordered[idx], ordered[other_idx]
        pa, pb = a.priority, b.priority
        if pa == pb:
            # equal priorities would make the swap a no-op; fall back to positions
            pa, pb = idx, other_idx
        swapped = {a.id: pb, b.id: pa}
        self.sheet.conditional_rules = [
            r.model_copy(update={"priority": swapped[r.id]}) if r.id in swapped else r
            for r in self.sheet.conditional_rules
        ]
        self._publish("move", rule_id)
        return True

    def replace_all(self, rules: Sequence[ConditionalRule]) -> None:
        self.sheet.conditional_rules = list(rules)
        self._publish("replace", None)

    def _publish(self, action: str, rule_id: Optional[str]) -> None:
        if self.sheet.events is not None:
            self.sheet.events.publish(RulesChanged(sheet_id=self.sheet.id, action=action, rule_id=rule_id))


# =============================================================================
# RULE-CREATION PANEL
# =============================================================================

DEFAULT_FILL_COLOR = "#FACC15"
DEFAULT_TEXT_COLOR = "#111827"
DEFAULT_RANK_COUNT = 10

PanelMode = Literal["numeric", "text", "date", "colorScale", "topN", "bottomN"]


@dataclass
class PanelInput:
    """Raw state of the rule-creation panel."""
    mode: PanelMode = "numeric"
    operator: str = "gt"
    text_operator: str = "contains"
    date_operator: str = "today"
    a1_range: str = ""
    value: str = ""
    value2: str = ""
    stop_if_true: bool = False
    min_color: str = "#F8696B"
    max_color: str = "#63BE7B"
    text_color: str = ""
    fill_color: str = ""
    bold: bool = False
    italic: bool = False
    underline: bool = False
    selection: Optional[Sequence[int]] = None


def _panel_number(raw: str) -> Optional[float]:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def build_rule_from_panel(panel: PanelInput, rows: int, cols: int) -> Dict[str, Any]:
    """Turn panel input into a rule definition ready for `RuleSet.add`.

    The range comes from the A1 text, else the selection, else the whole
    sheet, else cell (0, 0), clamped to the data size.
    """
    range_ = resolve_target_range(panel.a1_range, panel.selection, rows, cols)
    styles: Dict[str, str] = {
        "backgroundColor": panel.fill_color or DEFAULT_FILL_COLOR,
        "color": panel.text_color or DEFAULT_TEXT_COLOR,
    }
    if panel.bold:
        styles["fontWeight"] = "700"
    if panel.italic:
        styles["fontStyle"] = "italic"
    if panel.underline:
        styles["textDecoration"] = "underline"

    rule: Dict[str, Any] = {
        "range": range_.model_dump(),
        "format": {"styles": styles},
        "stop_if_true": panel.stop_if_true,
    }

    if panel.mode == "colorScale":
        rule["condition"] = {"kind": "colorScale", "min_color": panel.min_color, "max_color": panel.max_color}
        rule["format"] = {"styles": {}}
        rule["stop_if_true"] = False
    elif panel.mode in ("topN", "bottomN"):
        n = _panel_number(panel.value)
        rule["condition"] = {
            "kind": "numeric",
            "operator": panel.mode,
            "value": n if n is not None else DEFAULT_RANK_COUNT,
        }
    elif panel.mode == "text":
        rule["condition"] = {"kind": "text", "operator": panel.text_operator, "value": panel.value}
    elif panel.mode == "date":
        rule["condition"] = {"kind": "date", "operator": panel.date_operator, "value": panel.value or None}
    else:
        rule["condition"] = {
            "kind": "numeric",
            "operator": panel.operator,
            "value": _panel_number(panel.value),
            "value2": _panel_number(panel.value2),
        }
    return rule


def add_rule_from_panel(sheet: Sheet, panel: PanelInput) -> ConditionalRule:
    data = build_rule_from_panel(panel, sheet.row_count, sheet.col_count)
    return RuleSet(sheet).add(data)


# =============================================================================
# RECOMPUTATION
# =============================================================================

class OverlayRecomputer:
    """Keeps a sheet's overlays current.

    Every request bumps a generation counter; a result is committed only if
    its generation is still the latest, so a slow stale pass can never
    overwrite a newer one.
    """

    def __init__(
        self,
        sheet_supplier: Callable[[], Sheet],
        today: Optional[Callable[[], date]] = None,
        debounce_ms: Optional[int] = None,
    ):
        self._sheet_supplier = sheet_supplier
        self._today = today or date.today
        settings = get_engine_settings()
        self.debounce_ms = settings.recompute_debounce_ms if debounce_ms is None else debounce_ms
        self.generation = 0
        self.committed_generation = 0
        self.overlays = OverlayMaps()
        self._unsubscribe: List[Callable[[], None]] = []

    def request(self) -> int:
        self.generation += 1
        return self.generation

    def _snapshot(self) -> tuple:
        sheet = self._sheet_supplier()
        return [list(r) for r in sheet.grid], list(sheet.conditional_rules)

    def _commit(self, generation: int, overlays: OverlayMaps) -> bool:
        if generation != self.generation:
            logger.debug(f"[CF] Discarding stale overlays (gen {generation} < {self.generation})")
            return False
        self.overlays = overlays
        self.committed_generation = generation
        return True

    def recompute(self) -> OverlayMaps:
        generation = self.request()
        grid, rules = self._snapshot()
        self._commit(generation, compute_overlays(grid, rules, self._today()))
        return self.overlays

    async def recompute_async(self) -> Optional[OverlayMaps]:
        """Debounced off-loop recompute. Returns None when superseded."""
        generation = self.request()
        if self.debounce_ms > 0:
            await asyncio.sleep(self.debounce_ms / 1000)
        if generation != self.generation:
            return None
        grid, rules = self._snapshot()
        overlays = await asyncio.to_thread(compute_overlays, grid, rules, self._today())
        if not self._commit(generation, overlays):
            return None
        return overlays

    def attach(self, events: EventBus) -> None:
        """Recompute on data or rule changes of the supplied sheet."""

        def _on_change(message) -> None:
            if message.sheet_id == self._sheet_supplier().id:
                self.recompute()

        self._unsubscribe.append(events.subscribe(DataChanged, _on_change))
        self._unsubscribe.append(events.subscribe(RulesChanged, _on_change))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
