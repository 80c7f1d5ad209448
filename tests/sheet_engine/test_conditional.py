"""Tests for conditional formatting: evaluation, rule mutations, recomputation."""

import asyncio
import sys
from datetime import date
from pathlib import Path

# Add project root to path (tests/sheet_engine/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from services.sheet_engine import conditional
from services.sheet_engine.addressing import parse_a1_range
from services.sheet_engine.cells import Sheet
from services.sheet_engine.conditional import (
    DEFAULT_FILL_COLOR,
    DEFAULT_TEXT_COLOR,
    OverlayRecomputer,
    PanelInput,
    RangeAggregates,
    RuleSet,
    build_rule_from_panel,
    coerce_number,
    compute_overlays,
    evaluate_condition,
    interpolate_color,
)
from services.sheet_engine.errors import MalformedInput
from services.sheet_engine.events import EventBus, RulesChanged
from services.sheet_engine.schemas import (
    CellKey,
    CellRange,
    ConditionalRule,
    DateCondition,
    NumericCondition,
    OverlayMaps,
    TextCondition,
)


TODAY = date(2024, 5, 15)  # a Wednesday


def _rule(rule_id, a1, condition, styles=None, class_name=None, priority=0, stop=False):
    return ConditionalRule.model_validate({
        "id": rule_id,
        "range": parse_a1_range(a1).model_dump(),
        "condition": condition,
        "format": {"className": class_name, "styles": styles or {}},
        "priority": priority,
        "stopIfTrue": stop,
    })


def _styled(overlays, style_key="backgroundColor"):
    return {key for key, styles in overlays.styles.items() if style_key in styles}


class TestAggregateConditions:
    """Top/bottom-N, duplicate/unique and color scales."""

    def test_top_n(self):
        grid = [[1], [5], [3], [9], [2]]
        rule = _rule("r1", "A1:A5", {"kind": "numeric", "operator": "topN", "value": 2},
                     styles={"backgroundColor": "#FF0"})
        overlays = compute_overlays(grid, [rule], TODAY)
        assert _styled(overlays) == {CellKey(1, 0), CellKey(3, 0)}

    def test_bottom_n(self):
        grid = [[1], [5], [3], [9], [2]]
        rule = _rule("r1", "A1:A5", {"kind": "numeric", "operator": "bottomN", "value": 2},
                     styles={"backgroundColor": "#FF0"})
        overlays = compute_overlays(grid, [rule], TODAY)
        assert _styled(overlays) == {CellKey(0, 0), CellKey(4, 0)}

    def test_duplicate_and_unique(self):
        grid = [["a"], ["b"], ["a"], ["c"]]
        dup = _rule("d", "A1:A4", {"kind": "text", "operator": "duplicate"}, class_name="dup")
        uniq = _rule("u", "A1:A4", {"kind": "text", "operator": "unique"}, class_name="uniq")
        assert set(compute_overlays(grid, [dup], TODAY).classes) == {CellKey(0, 0), CellKey(2, 0)}
        assert set(compute_overlays(grid, [uniq], TODAY).classes) == {CellKey(1, 0), CellKey(3, 0)}

    def test_blank_cells_never_duplicate(self):
        grid = [["a"], [None], [""], ["a"]]
        dup = _rule("d", "A1:A4", {"kind": "text", "operator": "duplicate"}, class_name="dup")
        assert set(compute_overlays(grid, [dup], TODAY).classes) == {CellKey(0, 0), CellKey(3, 0)}

    def test_color_scale_endpoints(self):
        grid = [[0], [10]]
        rule = _rule("c", "A1:A2", {"kind": "colorScale", "minColor": "#000000", "maxColor": "#FFFFFF"})
        overlays = compute_overlays(grid, [rule], TODAY)
        assert overlays.styles[CellKey(0, 0)]["backgroundColor"] == "rgb(0, 0, 0)"
        assert overlays.styles[CellKey(1, 0)]["backgroundColor"] == "rgb(255, 255, 255)"

    def test_interpolate_color_midpoint(self):
        assert interpolate_color("#000000", "#FFFFFF", 0.5) == "rgb(128, 128, 128)"
        assert interpolate_color("nope", "#FFFFFF", 0.5) is None

    def test_rank_count_must_be_positive_integer(self):
        with pytest.raises(ValueError):
            NumericCondition(operator="topN", value=0)
        with pytest.raises(ValueError):
            NumericCondition(operator="between", value=1)

    def test_aggregates_computed_once_per_range(self, monkeypatch):
        calls = []
        real = conditional.coerce_number

        def counting(value):
            calls.append(value)
            return real(value)

        monkeypatch.setattr(conditional, "coerce_number", counting)
        agg = RangeAggregates([[1], [5], [3]])
        first = agg.sorted_numbers(parse_a1_range("A1:A3"))
        second = agg.sorted_numbers(parse_a1_range("A1:A3"))
        assert first == [1.0, 3.0, 5.0]
        assert second is first
        assert len(calls) == 3
        assert len(agg.numbers) == 1

    def test_one_aggregate_pass_per_overlay_computation(self, monkeypatch):
        computed = []

        class CountingAggregates(RangeAggregates):
            def sorted_numbers(self, range_):
                if range_.key() not in self.numbers:
                    computed.append(range_.key())
                return super().sorted_numbers(range_)

        monkeypatch.setattr(conditional, "RangeAggregates", CountingAggregates)
        grid = [[1], [5], [3], [9], [2]]
        top = _rule("t", "A1:A5", {"kind": "numeric", "operator": "topN", "value": 2},
                    styles={"backgroundColor": "#FF0"})
        bottom = _rule("b", "A1:A5", {"kind": "numeric", "operator": "bottomN", "value": 1},
                       class_name="low", priority=1)
        overlays = compute_overlays(grid, [top, bottom], TODAY)
        assert _styled(overlays) == {CellKey(1, 0), CellKey(3, 0)}
        assert set(overlays.classes) == {CellKey(0, 0)}
        assert len(computed) == 1


class TestRuleOrdering:
    """Priority merge and stopIfTrue."""

    def test_later_priority_merges_over_earlier(self):
        grid = [[5]]
        first = _rule("a", "A1", {"kind": "numeric", "operator": "gt", "value": 1},
                      styles={"color": "#111111", "backgroundColor": "#AAAAAA"}, priority=0)
        second = _rule("b", "A1", {"kind": "numeric", "operator": "gt", "value": 2},
                       styles={"color": "#222222"}, priority=1)
        overlays = compute_overlays(grid, [second, first], TODAY)
        assert overlays.styles[CellKey(0, 0)] == {"color": "#222222", "backgroundColor": "#AAAAAA"}

    def test_class_names_accumulate(self):
        grid = [[5]]
        first = _rule("a", "A1", {"kind": "numeric", "operator": "gt", "value": 1}, class_name="hi", priority=0)
        second = _rule("b", "A1", {"kind": "numeric", "operator": "gt", "value": 2}, class_name="warn", priority=1)
        assert compute_overlays(grid, [first, second], TODAY).classes[CellKey(0, 0)] == "hi warn"

    def test_stop_if_true_is_per_cell(self):
        grid = [[5], [1]]
        stopper = _rule("a", "A1:A2", {"kind": "numeric", "operator": "gt", "value": 3},
                        styles={"color": "#FF0000"}, priority=0, stop=True)
        other = _rule("b", "A1:A2", {"kind": "numeric", "operator": "gt", "value": 0},
                      styles={"backgroundColor": "#00FF00"}, priority=1)
        overlays = compute_overlays(grid, [stopper, other], TODAY)
        assert overlays.styles[CellKey(0, 0)] == {"color": "#FF0000"}
        assert overlays.styles[CellKey(1, 0)] == {"backgroundColor": "#00FF00"}

    def test_cells_outside_range_untouched(self):
        grid = [[5, 5]]
        rule = _rule("a", "A1", {"kind": "numeric", "operator": "gt", "value": 1}, styles={"color": "#000"})
        assert set(compute_overlays(grid, [rule], TODAY).styles) == {CellKey(0, 0)}


class TestSingleCellConditions:
    def test_numeric_operators(self):
        assert evaluate_condition("1,200", NumericCondition(operator="gt", value=1000))
        assert evaluate_condition(1, NumericCondition(operator="gt"))  # value defaults to 0
        assert evaluate_condition(5, NumericCondition(operator="between", value=10, value2=1))
        assert not evaluate_condition("abc", NumericCondition(operator="lt", value=10))
        assert not evaluate_condition(True, NumericCondition(operator="gt", value=0))

    def test_text_operators_ignore_case(self):
        assert evaluate_condition("Hello World", TextCondition(operator="contains", value="WORLD"))
        assert evaluate_condition("Hello", TextCondition(operator="eq", value="hello"))
        assert evaluate_condition("Hello", TextCondition(operator="startsWith", value="he"))
        assert evaluate_condition("", TextCondition(operator="isEmpty"))
        assert not evaluate_condition("x", TextCondition(operator="isEmpty"))

    def test_relative_dates(self):
        this_week = DateCondition(operator="thisWeek")
        assert evaluate_condition(date(2024, 5, 12), this_week, TODAY)  # Sunday
        assert evaluate_condition(date(2024, 5, 18), this_week, TODAY)  # Saturday
        assert not evaluate_condition(date(2024, 5, 11), this_week, TODAY)
        assert evaluate_condition("2024-04-30", DateCondition(operator="lastMonth"), TODAY)
        assert evaluate_condition("05/14/2024", DateCondition(operator="yesterday"), TODAY)

    def test_in_last_n_days_is_inclusive(self):
        cond = DateCondition(operator="inLastNDays", value=7)
        assert evaluate_condition(date(2024, 5, 8), cond, TODAY)
        assert evaluate_condition(TODAY, cond, TODAY)
        assert not evaluate_condition(date(2024, 5, 7), cond, TODAY)
        assert not evaluate_condition(date(2024, 5, 16), cond, TODAY)

    def test_anchored_dates(self):
        assert evaluate_condition("2024-01-01", DateCondition(operator="before", value="2024-02-01"), TODAY)
        assert not evaluate_condition("not a date", DateCondition(operator="before", value="2024-02-01"), TODAY)

    def test_coerce_number(self):
        assert coerce_number(" 1,234.5 ") == 1234.5
        assert coerce_number(None) is None
        assert coerce_number(False) is None


class TestRuleSet:
    """Rule mutations on a sheet."""

    def _sheet(self):
        sheet = Sheet(name="S", grid=[[1], [2], [3]])
        sheet.events = EventBus()
        return sheet

    def _data(self, value=1):
        return {
            "range": {"startRow": 0, "startCol": 0, "endRow": 2, "endCol": 0},
            "condition": {"kind": "numeric", "operator": "gt", "value": value},
            "format": {"styles": {"color": "#FF0000"}},
        }

    def test_add_assigns_id_and_priority(self):
        rules = RuleSet(self._sheet())
        first = rules.add(self._data())
        second = rules.add(self._data())
        assert first.id.startswith("cf_")
        assert first.id != second.id
        assert (first.priority, second.priority) == (0, 1)

    def test_explicit_priority_kept(self):
        rules = RuleSet(self._sheet())
        assert rules.add({**self._data(), "priority": 7}).priority == 7

    def test_invalid_rule_rejected(self):
        rules = RuleSet(self._sheet())
        bad = {**self._data(), "condition": {"kind": "numeric", "operator": "between", "value": 1}}
        with pytest.raises(MalformedInput):
            rules.add(bad)
        with pytest.raises(MalformedInput):
            rules.add({**self._data(), "condition": {"kind": "sparkle"}})
        assert rules.rules == []

    def test_update_accepts_both_key_styles(self):
        rules = RuleSet(self._sheet())
        rule = rules.add(self._data())
        updated = rules.update(rule.id, {"stop_if_true": True, "condition": {"kind": "numeric", "operator": "lt", "value": 9}})
        assert updated.stop_if_true is True
        assert updated.condition.operator == "lt"
        assert updated.priority == rule.priority
        assert rules.update(rule.id, {"stopIfTrue": False}).stop_if_true is False

    def test_update_unknown_rule(self):
        with pytest.raises(MalformedInput):
            RuleSet(self._sheet()).update("nope", {})

    def test_move_swaps_with_neighbour(self):
        rules = RuleSet(self._sheet())
        a = rules.add(self._data(1))
        b = rules.add(self._data(2))
        assert rules.move(b.id, "up") is True
        assert [r.id for r in rules.rules] == [b.id, a.id]
        assert rules.move(b.id, "up") is False
        assert rules.move(a.id, "down") is False

    def test_remove_publishes(self):
        sheet = self._sheet()
        seen = []
        sheet.events.subscribe(RulesChanged, seen.append)
        rules = RuleSet(sheet)
        rule = rules.add(self._data())
        assert rules.remove(rule.id) is True
        assert rules.remove(rule.id) is False
        assert [m.action for m in seen] == ["add", "remove"]


class TestPanel:
    """Rule creation from panel input."""

    def test_top_n_defaults(self):
        data = build_rule_from_panel(PanelInput(mode="topN"), rows=5, cols=2)
        assert data["condition"] == {"kind": "numeric", "operator": "topN", "value": 10}
        assert data["range"] == {"start_row": 0, "start_col": 0, "end_row": 4, "end_col": 1}
        assert data["format"]["styles"] == {"backgroundColor": DEFAULT_FILL_COLOR, "color": DEFAULT_TEXT_COLOR}

    def test_range_clamped_and_styles(self):
        panel = PanelInput(mode="numeric", operator="gt", value="3", a1_range="A1:Z100", bold=True)
        data = build_rule_from_panel(panel, rows=3, cols=2)
        assert data["range"]["end_row"] == 2
        assert data["range"]["end_col"] == 1
        assert data["format"]["styles"]["fontWeight"] == "700"
        rule = RuleSet(Sheet(name="S", grid=[[1, 2]] * 3)).add(data)
        assert rule.condition.value == 3.0

    def test_selection_used_when_no_text(self):
        data = build_rule_from_panel(PanelInput(mode="text", value="x", selection=(1, 1, 2, 1)), rows=5, cols=5)
        assert data["range"] == {"start_row": 1, "start_col": 1, "end_row": 2, "end_col": 1}
        assert data["condition"]["operator"] == "contains"


class TestRecompute:
    """Generation-guarded recomputation."""

    def test_stale_results_are_discarded(self):
        sheet = Sheet(name="S", grid=[[1]])
        recomputer = OverlayRecomputer(lambda: sheet, today=lambda: TODAY, debounce_ms=0)
        stale = recomputer.request()
        latest = recomputer.request()
        assert recomputer._commit(stale, OverlayMaps()) is False
        assert recomputer._commit(latest, OverlayMaps()) is True
        assert recomputer.committed_generation == latest

    def test_newer_async_request_supersedes(self):
        sheet = Sheet(name="S", grid=[[5]])
        RuleSet(sheet).add({
            "range": {"startRow": 0, "startCol": 0, "endRow": 0, "endCol": 0},
            "condition": {"kind": "numeric", "operator": "gt", "value": 1},
            "format": {"styles": {"color": "#FF0000"}},
        })
        recomputer = OverlayRecomputer(lambda: sheet, today=lambda: TODAY, debounce_ms=20)

        async def run():
            return await asyncio.gather(recomputer.recompute_async(), recomputer.recompute_async())

        first, second = asyncio.run(run())
        assert first is None
        assert second.styles[CellKey(0, 0)] == {"color": "#FF0000"}
        assert recomputer.committed_generation == 2

    def test_attach_recomputes_on_change(self):
        bus = EventBus()
        sheet = Sheet(name="S", grid=[[0]], events=bus)
        RuleSet(sheet).add({
            "range": {"startRow": 0, "startCol": 0, "endRow": 0, "endCol": 0},
            "condition": {"kind": "numeric", "operator": "gt", "value": 1},
            "format": {"className": "big"},
        })
        recomputer = OverlayRecomputer(lambda: sheet, today=lambda: TODAY, debounce_ms=0)
        recomputer.attach(bus)
        sheet.set_value(0, 0, 5)
        assert recomputer.overlays.classes == {CellKey(0, 0): "big"}
        recomputer.detach()
        sheet.set_value(0, 0, 0)
        assert recomputer.overlays.classes == {CellKey(0, 0): "big"}
