"""
RiskDef.run(): grouping, breach classification, trade stops, result shape.
"""

import math
from unittest.mock import Mock, patch

import pytest

from src.openrisk.admin import AccountDisabler
from src.openrisk.engine import (
    AttributeSelector,
    GroupAttribute,
    PredicateSelector,
    RiskDef,
    classify,
)
from src.openrisk.expression import parse_expression
from src.openrisk.params import RiskParamDef
from src.openrisk.schema import NAN_MARKER, Breach, GroupResult, RankedEntry, to_payload


def param(name, formula, **kwargs):
    return RiskParamDef(name, parse_expression(formula), **kwargs)


def predicate(source):
    return PredicateSelector(parse_expression(source, "group", boolean=True))


@pytest.fixture
def disabler():
    return Mock(spec=AccountDisabler)


class TestClassify:
    def test_strict_comparison(self):
        assert classify(10.0, 0.0, 10.0) == 0
        assert classify(0.0, 0.0, 10.0) == 0
        assert classify(10.5, 0.0, 10.0) == 1
        assert classify(-0.5, 0.0, 10.0) == -1

    def test_nan_bounds_never_breach(self):
        assert classify(1e12, math.nan, math.nan) == 0
        assert classify(-1e12, math.nan, math.nan) == 0


class TestGrouping:
    def test_no_selectors_is_one_unnamed_group(self, positions):
        risk = RiskDef("r", params=[param("gross", "sum(notional)")])
        assert risk.run(positions) == [GroupResult("", 4500.0)]

    def test_attribute_groups_sorted_within_selector(self, positions):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            params=[param("gross", "sum(notional)")],
        )
        assert risk.run(positions) == [
            GroupResult("Energy", 500.0),
            GroupResult("Tech", 4000.0),
        ]

    def test_selectors_keep_declaration_order(self, positions):
        risk = RiskDef(
            "r",
            selectors=[
                AttributeSelector(GroupAttribute.SECTOR),
                AttributeSelector(GroupAttribute.ACC),
            ],
            params=[param("gross", "sum(notional)")],
        )
        groups = [row.group for row in risk.run(positions)]
        assert groups == ["Energy", "Tech", "acc1", "acc2"]

    def test_position_can_sit_in_several_groups(self, positions):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.ACC), predicate("notional >= 1000")],
            group_names=["acc", "large"],
            params=[param("n", "len(qty)")],
        )
        assert risk.run(positions) == [
            GroupResult("acc1", 2.0),
            GroupResult("acc2", 1.0),
            GroupResult("large", 2.0),
        ]

    def test_match_all_selector_uses_configured_name(self, positions):
        risk = RiskDef(
            "r",
            selectors=[predicate("True")],
            group_names=["everything"],
            params=[param("n", "len(qty)")],
        )
        assert risk.run(positions) == [GroupResult("everything", 3.0)]

    def test_group_name_back_filled_from_selector(self):
        risk = RiskDef("r", selectors=[AttributeSelector(GroupAttribute.SECTOR), predicate("qty > 0")])
        assert risk.group_names == ["sector", "qty > 0"]

    def test_empty_label_excluded(self, positions, position_factory):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            params=[param("n", "len(qty)")],
        )
        unsectored = position_factory("CASH", 3, 1, 1.0, sector="")
        groups = [row.group for row in risk.run(positions + [unsectored])]
        assert groups == ["Energy", "Tech"]

    def test_filter_applies_before_grouping(self, positions):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            filter_expr=parse_expression("notional > 600", "filter", boolean=True),
            params=[param("n", "len(qty)")],
        )
        assert risk.run(positions) == [GroupResult("Tech", 2.0)]

    def test_failed_filter_keeps_position(self, positions, position_factory):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            filter_expr=parse_expression("extra.live == 1", "filter", boolean=True),
            params=[param("n", "len(qty)")],
        )
        live = position_factory("IBM", 3, 1, 1.0, sector="Tech", live=1)
        dead = position_factory("ORCL", 3, 1, 1.0, sector="Tech", live=0)
        # the fixture positions have no 'live' column: evaluation fails, they stay
        assert risk.run(positions + [live, dead]) == [
            GroupResult("Energy", 1.0),
            GroupResult("Tech", 3.0),
        ]
        assert risk.last_diagnostics.degraded_evaluations == 3

    def test_failed_predicate_leaves_position_ungrouped(self, positions, position_factory):
        risk = RiskDef(
            "r",
            selectors=[predicate("extra.live == 1")],
            group_names=["live"],
            params=[param("n", "len(qty)")],
        )
        live = position_factory("IBM", 3, 1, 1.0, live=1)
        assert risk.run(positions + [live]) == [GroupResult("live", 1.0)]

    def test_first_selector_owns_a_shared_label(self, positions):
        risk = RiskDef(
            "r",
            selectors=[predicate('sector == "Tech"'), AttributeSelector(GroupAttribute.SECTOR)],
            group_names=["Tech", "sector"],
            params=[param("gross", "sum(notional)", upper_bound=[10000.0, 100.0])],
        )
        result = risk.run(positions)
        # both selectors feed the shared Tech bucket, but selector 0 owns its bound
        assert result == [
            GroupResult("Tech", 8000.0),
            GroupResult("Energy", 500.0, Breach(1)),
        ]


class TestBreaches:
    def test_bound_index_clamps_to_last(self, positions):
        risk = RiskDef(
            "r",
            selectors=[predicate('sector == "Energy"'), predicate('sector == "Tech"'), predicate("True")],
            group_names=["energy", "tech", "all"],
            params=[param("gross", "sum(notional)", upper_bound=[1000.0, 3500.0])],
        )
        assert risk.run(positions) == [
            GroupResult("energy", 500.0),
            GroupResult("tech", 4000.0, Breach(1)),
            GroupResult("all", 4500.0, Breach(1)),
        ]

    def test_lower_breach(self, positions):
        risk = RiskDef("r", params=[param("gross", "sum(notional)", lower_bound=[5000.0])])
        assert risk.run(positions) == [GroupResult("", 4500.0, Breach(-1))]

    def test_value_equal_to_bound_is_not_a_breach(self, positions):
        risk = RiskDef("r", params=[param("gross", "sum(notional)", upper_bound=[4500.0], lower_bound=[4500.0])])
        assert risk.run(positions) == [GroupResult("", 4500.0)]

    def test_no_bounds_never_breach(self, positions):
        risk = RiskDef("r", params=[param("gross", "sum(notional)")])
        assert risk.run(positions)[0].breach is None

    def test_nan_marker_is_not_classified(self, positions):
        risk = RiskDef("r", params=[param("avg", "mean(extra.missing)", upper_bound=[0.0])])
        assert risk.run(positions) == [GroupResult("", NAN_MARKER)]

    def test_empty_snapshot_is_none(self):
        risk = RiskDef("r", params=[param("gross", "sum(notional)")])
        assert risk.run([]) is None

    def test_ranked_entries_classified_individually(self, positions, disabler):
        risk = RiskDef(
            "r",
            params=[param("top", "top(notional, 0)", upper_bound=[2000.0], lower_bound=[600.0], trade_stop=True)],
            disabler=disabler,
        )
        assert risk.run(positions) == [
            GroupResult(
                "",
                [
                    RankedEntry("AAPL", 1000.0),
                    RankedEntry("MSFT", 3000.0, Breach(1)),
                    RankedEntry("XOM", 500.0, Breach(-1)),
                ],
            )
        ]
        # per-entry breaches never stop trading
        disabler.disable.assert_not_called()


class TestTradeStops:
    def test_breach_disables_every_account_in_group(self, positions, disabler):
        risk = RiskDef(
            "limits",
            params=[param("gross", "sum(notional)", upper_bound=[1000.0], trade_stop=True)],
            disabler=disabler,
        )
        result = risk.run(positions, portfolio_name="main", user_id=7)

        assert result == [GroupResult("", 4500.0, Breach(1, trade_stop=True))]
        assert sorted(call.args[0] for call in disabler.disable.call_args_list) == [1, 2]
        reason = disabler.disable.call_args_list[0].args[1]
        assert reason == (
            "OpenRisk: 7 'main' 'limits' 'gross' '' value 4500.000000 "
            "out of range [NaN, 1000.000000]"
        )
        assert risk.last_diagnostics.trade_stops == 2

    def test_infinite_bound_in_reason(self, positions, disabler):
        risk = RiskDef(
            "limits",
            params=[param("gross", "sum(notional)", upper_bound=[1000.0], lower_bound=[-math.inf], trade_stop=True)],
            disabler=disabler,
        )
        risk.run(positions)
        assert disabler.disable.call_args_list[0].args[1].endswith("out of range [-Inf, 1000.000000]")

    def test_one_disable_per_account_across_groups(self, positions, disabler):
        risk = RiskDef(
            "limits",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            params=[param("gross", "sum(notional)", upper_bound=[100.0], trade_stop=True)],
            disabler=disabler,
        )
        risk.run(positions)
        # Energy (acc 1) and Tech (acc 1, 2) both breach
        accounts = [call.args[0] for call in disabler.disable.call_args_list]
        assert sorted(accounts) == [1, 2]
        # last breaching group's reason wins
        reasons = {call.args[0]: call.args[1] for call in disabler.disable.call_args_list}
        assert "'Tech'" in reasons[1]

    def test_one_disable_per_account_across_params(self, positions, disabler):
        risk = RiskDef(
            "limits",
            params=[
                param("gross", "sum(notional)", upper_bound=[100.0], trade_stop=True),
                param("count", "len(qty)", upper_bound=[1.0], trade_stop=True),
            ],
            disabler=disabler,
        )
        risk.run(positions)
        assert disabler.disable.call_count == 2

    def test_each_run_disables_again(self, positions, disabler):
        risk = RiskDef(
            "limits",
            params=[param("gross", "sum(notional)", upper_bound=[100.0], trade_stop=True)],
            disabler=disabler,
        )
        risk.run(positions)
        risk.run(positions)
        assert disabler.disable.call_count == 4

    def test_breach_without_trade_stop_disables_nothing(self, positions, disabler):
        risk = RiskDef(
            "limits",
            params=[param("gross", "sum(notional)", upper_bound=[100.0])],
            disabler=disabler,
        )
        assert risk.run(positions) == [GroupResult("", 4500.0, Breach(1))]
        disabler.disable.assert_not_called()

    def test_disable_failure_does_not_abort_run(self, positions, disabler):
        disabler.disable.side_effect = RuntimeError("admin down")
        risk = RiskDef(
            "limits",
            params=[param("gross", "sum(notional)", upper_bound=[100.0], trade_stop=True)],
            disabler=disabler,
        )
        assert risk.run(positions) == [GroupResult("", 4500.0, Breach(1, trade_stop=True))]
        assert disabler.disable.call_count == 2
        assert risk.last_diagnostics.disable_failures == 2


class TestResultShape:
    def test_single_param_returns_flat_list(self, positions):
        risk = RiskDef("r", params=[param("gross", "sum(notional)")])
        assert isinstance(risk.run(positions), list)

    def test_multi_param_returns_mapping(self, positions):
        risk = RiskDef("r", params=[param("gross", "sum(notional)"), param("n", "len(qty)")])
        assert risk.run(positions) == {
            "gross": [GroupResult("", 4500.0)],
            "n": [GroupResult("", 3.0)],
        }

    def test_multi_param_with_no_output_is_none(self, position_factory):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            params=[param("gross", "sum(notional)"), param("n", "len(qty)")],
        )
        assert risk.run([position_factory("CASH", 1, 1, 1.0, sector="")]) is None

    def test_no_params_is_none(self, positions):
        assert RiskDef("r").run(positions) is None

    def test_payload(self, positions):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            params=[
                param("gross", "sum(notional)", upper_bound=[1000.0], trade_stop=True),
                param("avg", "mean(extra.missing)"),
                param("top", "top(notional, 1)", upper_bound=[1000.0]),
            ],
        )
        assert to_payload(risk.run(positions)) == {
            "gross": [["Energy", 500.0], ["Tech", 4000.0, [1, True]]],
            "avg": [["Energy", NAN_MARKER], ["Tech", NAN_MARKER]],
            "top": [["Energy", [["XOM", 500.0]]], ["Tech", [["MSFT", 3000.0, [1]]]]],
        }

    def test_call_pairs_become_ranked_entries(self, positions):
        risk = RiskDef("r", params=[param("ext", 'call("m", "f")', upper_bound=[1.0])])
        with patch("src.openrisk.params.call_python", return_value=[("A", 2.0), ("B", 0.5)]):
            result = risk.run(positions)
        assert result == [GroupResult("", [RankedEntry("A", 2.0, Breach(1)), RankedEntry("B", 0.5)])]


class TestHistory:
    def test_history_exposed_per_param(self, positions):
        risk = RiskDef(
            "r",
            selectors=[AttributeSelector(GroupAttribute.SECTOR)],
            params=[
                RiskParamDef("gross", parse_expression("sum(notional)"), graph=True, clock=lambda: 100.0),
                param("n", "len(qty)"),
            ],
        )
        risk.run(positions)
        assert risk.history() == {
            "gross": {"Energy": [[100.0, 500.0]], "Tech": [[100.0, 4000.0]]},
        }
