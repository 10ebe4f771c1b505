"""
Risk Definition Engine - group, evaluate, compare, stop

RiskDef.run() takes one snapshot of positions and:
1. Splits them into named groups, one selector at a time
   (attribute selectors like "sector", or boolean expressions)
2. Evaluates every parameter formula for every group
3. Flags values outside the group's [lower, upper] bounds
4. Disables the accounts behind a breaching group when the parameter is
   marked trade_stop - at most once per account per run

Usage:
    risk = RiskDef(
        name="sector_exposure",
        selectors=[AttributeSelector(GroupAttribute.SECTOR)],
        params=[RiskParamDef("gross", parse_expression("sum(abs(notional))"),
                             upper_bound=[1_000_000], trade_stop=True)],
        disabler=AdminClient(),
    )
    result = risk.run(positions, portfolio_name="main", user_id=7)
    payload = to_payload(result)

Result shape:
- None when nothing was produced
- [GroupResult, ...] for a single parameter
- {param_name: [GroupResult, ...]} for several (empty ones omitted)

Group order is deterministic: per selector, newly seen labels in sorted
order, selectors in declaration order. A label belongs to the first
selector that produced it; that selector's index picks the bounds.

The same RiskDef must not be run concurrently with itself.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from .admin import AccountDisabler, LoggingDisabler
from .expression import Expression
from .params import RiskParamDef
from .schema import (
    NAN_MARKER,
    Breach,
    GroupResult,
    Position,
    RankedEntry,
    RunDiagnostics,
    RunResult,
    is_number,
)

logger = logging.getLogger(__name__)


class GroupAttribute(Enum):
    """Predefined group selector tokens."""
    SECTOR = "sector"
    INDUSTRY = "industry"
    SUBINDUSTRY = "subindustry"
    MARKET = "market"
    TYPE = "type"
    CURRENCY = "currency"
    ACC = "acc"


PREDEFINED_GROUPS = [attribute.value for attribute in GroupAttribute]


@dataclass(frozen=True)
class AttributeSelector:
    """Groups by a security attribute, or by account name."""
    attribute: GroupAttribute

    @property
    def text(self) -> str:
        return self.attribute.value

    def label(self, position: Position, name: str) -> str:
        security = position.security
        if self.attribute is GroupAttribute.SECTOR:
            return security.sector
        if self.attribute is GroupAttribute.INDUSTRY:
            return security.industry
        if self.attribute is GroupAttribute.SUBINDUSTRY:
            return security.sub_industry
        if self.attribute is GroupAttribute.MARKET:
            return security.market
        if self.attribute is GroupAttribute.TYPE:
            return security.type
        if self.attribute is GroupAttribute.CURRENCY:
            return security.currency
        return position.acc_name


@dataclass(frozen=True)
class PredicateSelector:
    """Puts a position in the group called `name` when the expression is true."""
    expression: Expression
    source: Optional[str] = None

    @property
    def text(self) -> str:
        return self.source if self.source is not None else self.expression.source

    def label(self, position: Position, name: str) -> str:
        value = self.expression.evaluate(position)
        if isinstance(value, bool) and value:
            return name
        return ""


GroupSelector = Union[AttributeSelector, PredicateSelector]


def classify(value: float, lower: float, upper: float) -> int:
    """-1 below lower, 1 above upper, 0 inside. NaN bounds never breach."""
    if value < lower:
        return -1
    if value > upper:
        return 1
    return 0


class RiskDef:
    """A named set of risk parameters evaluated over the same grouping."""

    def __init__(
        self,
        name: str,
        params: Optional[List[RiskParamDef]] = None,
        selectors: Optional[List[GroupSelector]] = None,
        group_names: Optional[List[str]] = None,
        display_name: str = "",
        filter_expr: Optional[Expression] = None,
        path: str = "",
        disabler: Optional[AccountDisabler] = None,
    ):
        self.name = name
        self.display_name = display_name or name
        self.path = path
        self.selectors: List[GroupSelector] = list(selectors or [])
        self.group_names: List[str] = list(group_names or [])
        self.filter_expr = filter_expr
        self.disabler = disabler or LoggingDisabler()
        self.params: List[RiskParamDef] = []
        self.last_diagnostics: Optional[RunDiagnostics] = None

        for i, selector in enumerate(self.selectors):
            if i >= len(self.group_names):
                self.group_names.append(selector.text)

        for param in params or []:
            self.add_param(param)

    def add_param(self, param: RiskParamDef, first: bool = False) -> None:
        param.parent = self
        if first:
            self.params.insert(0, param)
        else:
            self.params.append(param)

    def run(
        self,
        positions: Sequence[Position],
        portfolio_name: str = "",
        user_id: int = 0,
    ) -> RunResult:
        """
        Evaluate every parameter over every group.

        Never raises for bad data: failed evaluations turn into NaN and are
        counted in last_diagnostics.
        """
        diagnostics = RunDiagnostics(positions=len(positions))
        self.last_diagnostics = diagnostics

        grouped, group_order, selector_index = self._group(positions, diagnostics)
        diagnostics.groups = len(group_order)

        disabled: Set[int] = set()
        report: Dict[str, List[GroupResult]] = {}

        for param in self.params:
            trade_stops: Dict[int, str] = {}
            out: List[GroupResult] = []

            for group in group_order:
                members = grouped.get(group)
                if not members:
                    continue
                value = param.run(group, members, diagnostics)
                lower, upper = param.bounds_for(selector_index.get(group, 0))

                if is_number(value):
                    direction = classify(value, lower, upper)
                    if direction:
                        breach = Breach(direction)
                        if param.trade_stop:
                            reason = (
                                f"OpenRisk: {user_id} '{portfolio_name}' '{self.name}' "
                                f"'{param.name}' '{group}' value {_fmt(value)} "
                                f"out of range [{_fmt(lower)}, {_fmt(upper)}]"
                            )
                            logger.warning(reason)
                            for position in members:
                                trade_stops[position.acc] = reason
                            breach.trade_stop = True
                        out.append(GroupResult(group, value, breach))
                        continue
                else:
                    ranked = _as_ranked(value)
                    if ranked is not None:
                        # per-entry breaches are informational, no trade stop
                        for entry in ranked:
                            if is_number(entry.value):
                                direction = classify(entry.value, lower, upper)
                                if direction:
                                    entry.breach = Breach(direction)
                        value = ranked

                out.append(GroupResult(group, value))

            self._flush_trade_stops(trade_stops, disabled, diagnostics)

            if out:
                if len(self.params) == 1:
                    self._log_diagnostics()
                    return out
                report[param.name] = out

        self._log_diagnostics()
        if report:
            return report
        return None

    def _group(
        self,
        positions: Sequence[Position],
        diagnostics: RunDiagnostics,
    ) -> Tuple[Dict[str, List[Position]], List[str], Dict[str, int]]:
        if not self.selectors:
            return {"": list(positions)}, [""], {}

        candidates = [p for p in positions if self._passes_filter(p, diagnostics)]
        grouped: Dict[str, List[Position]] = {}
        group_order: List[str] = []
        selector_index: Dict[str, int] = {}

        for igroup, selector in enumerate(self.selectors):
            name = self.group_names[igroup]
            new_labels: List[str] = []
            for position in candidates:
                try:
                    label = selector.label(position, name)
                except Exception as e:
                    diagnostics.degraded_evaluations += 1
                    logger.debug(f"Group '{name}' failed for {position.security.symbol}: {e}")
                    continue
                if not label:
                    continue
                if label not in grouped:
                    grouped[label] = []
                    new_labels.append(label)
                    selector_index[label] = igroup
                grouped[label].append(position)
            group_order.extend(sorted(new_labels))

        return grouped, group_order, selector_index

    def _passes_filter(self, position: Position, diagnostics: RunDiagnostics) -> bool:
        """Only an explicit False excludes; a failed filter keeps the position."""
        if self.filter_expr is None:
            return True
        try:
            value = self.filter_expr.evaluate(position)
        except Exception as e:
            diagnostics.degraded_evaluations += 1
            logger.debug(f"Filter failed for {position.security.symbol}: {e}")
            return True
        return not (isinstance(value, bool) and not value)

    def _flush_trade_stops(
        self,
        trade_stops: Dict[int, str],
        disabled: Set[int],
        diagnostics: RunDiagnostics,
    ) -> None:
        for acc, reason in trade_stops.items():
            if acc in disabled:
                continue
            disabled.add(acc)
            diagnostics.trade_stops += 1
            logger.warning(f"Trade stop: disabling account {acc}")
            try:
                self.disabler.disable(acc, reason)
            except Exception as e:
                diagnostics.disable_failures += 1
                logger.error(f"Failed to disable account {acc}: {e}")

    def _log_diagnostics(self) -> None:
        logger.debug(f"Risk '{self.name}' run: {self.last_diagnostics.to_dict()}")

    def history(self) -> Dict[str, Dict[str, List[List[float]]]]:
        """Chart data for every graphed parameter: param -> group -> samples."""
        return {
            param.name: param.history.to_dict()
            for param in self.params
            if param.history is not None
        }

    def __repr__(self) -> str:
        return f"RiskDef({self.name!r}, params={[p.name for p in self.params]})"


def _as_ranked(value: Any) -> Optional[List[RankedEntry]]:
    """Normalize a top() list, or a call() result of (label, value) pairs."""
    if not isinstance(value, list):
        return None
    if all(isinstance(item, RankedEntry) for item in value):
        return value
    if all(isinstance(item, (list, tuple)) and len(item) == 2 for item in value):
        return [RankedEntry(item[0], item[1]) for item in value]
    return None


def _fmt(value: float) -> str:
    """Bound text for trade stop reasons: NaN, +Inf, -Inf or %f."""
    if math.isnan(value):
        return NAN_MARKER
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return f"{value:f}"
