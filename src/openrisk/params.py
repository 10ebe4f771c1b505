"""
Risk Parameter - one formula evaluated over one group of positions

Evaluation protocol for run(group, positions):
1. call("module", "fn", ...) formulas go straight to the external bridge;
   variables are not evaluated for them.
2. Aggregate variables are computed once for the whole group.
3. The formula body runs once per position; per-position variables are
   refreshed for each position first, so they can read the aggregate ones.
4. The per-position values are reduced (sum / mean / std / len / top).
   A formula without a reducer is shown as top(formula, 10).
5. A NaN scalar leaves as the "NaN" marker.

A position that fails to evaluate becomes NaN for that position only.
The rest of the group, and every other parameter, carries on.
"""

import logging
import math
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import aggregators
from .bridge import call_python
from .expression import DEFAULT_TOP_COUNT, AggregateKind, Expression
from .history import HistoryCompactor
from .schema import (
    NAN_MARKER,
    NamedExpression,
    Position,
    RankedEntry,
    RunDiagnostics,
    WindowDef,
    is_number,
)

if TYPE_CHECKING:
    from .engine import RiskDef

logger = logging.getLogger(__name__)


_REDUCERS = {
    AggregateKind.SUM: aggregators.total,
    AggregateKind.MEAN: aggregators.mean,
    AggregateKind.STD: aggregators.std,
    AggregateKind.LEN: aggregators.length,
}


class RiskParamDef:
    """
    A named formula with per-group bounds.

    Bounds are indexed by the selector that produced a group; an index past
    the end uses the last bound, and an empty list means unbounded.
    """

    def __init__(
        self,
        name: str,
        formula: Expression,
        upper_bound: Optional[List[float]] = None,
        lower_bound: Optional[List[float]] = None,
        trade_stop: bool = False,
        window: Optional[WindowDef] = None,
        variables: Optional[List[NamedExpression]] = None,
        graph: bool = False,
        parent: Optional["RiskDef"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.formula = formula
        self.upper_bound = list(upper_bound or [])
        self.lower_bound = list(lower_bound or [])
        self.trade_stop = trade_stop
        self.window = window or WindowDef()
        self.variables = list(variables or [])
        self.parent = parent
        self.graph = False
        self.history: Optional[HistoryCompactor] = None

        if graph:
            if not formula.is_aggregate:
                logger.warning(
                    f"Graph only allowable for aggregate formula, "
                    f"disabled for '{name}' ({formula.source})"
                )
            else:
                self.graph = True
                self.history = HistoryCompactor(clock)

    @property
    def module_path(self) -> str:
        return self.parent.path if self.parent is not None else ""

    def bounds_for(self, igroup: int) -> Tuple[float, float]:
        """(lower, upper) for the selector index, NaN where unbounded."""
        return _bound_at(self.lower_bound, igroup), _bound_at(self.upper_bound, igroup)

    def run(
        self,
        group: str,
        positions: Sequence[Position],
        diagnostics: Optional[RunDiagnostics] = None,
    ) -> Any:
        """
        Evaluate the formula for one group.

        Returns a float, NAN_MARKER, a list of RankedEntry, or for call()
        formulas whatever the external function returned.
        """
        if self.formula.aggregate is AggregateKind.CALL:
            module, function, args = self.formula.call_args
            value = call_python(module, function, args, positions, self.module_path)
            if self.history is not None and is_number(value):
                self.history.record(group, float(value))
            return value

        diagnostics = diagnostics if diagnostics is not None else RunDiagnostics()

        variables: Optional[Dict[str, Any]] = None
        if self.variables:
            variables = {}
            for var in self.variables:
                if var.expression.is_aggregate:
                    variables[var.name] = self._evaluate(
                        var.expression, positions, variables, diagnostics
                    )

        value = self._evaluate(self.formula, positions, variables, diagnostics, is_formula=True)

        if self.history is not None and is_number(value):
            self.history.record(group, float(value))

        if isinstance(value, float) and math.isnan(value):
            return NAN_MARKER
        return value

    def _evaluate(
        self,
        expression: Expression,
        positions: Sequence[Position],
        variables: Optional[Dict[str, Any]],
        diagnostics: RunDiagnostics,
        is_formula: bool = False,
    ) -> Any:
        aggregate = expression.aggregate
        count = expression.count
        if is_formula and aggregate is AggregateKind.NONE:
            aggregate = AggregateKind.TOP
            count = DEFAULT_TOP_COUNT

        if aggregate is AggregateKind.CALL:
            module, function, args = expression.call_args
            return call_python(module, function, args, positions, self.module_path)

        values: List[float] = []
        for position in positions:
            if is_formula and self.variables:
                self._resolve_position_variables(position, variables, diagnostics)
            values.append(self._evaluate_position(expression, position, variables, diagnostics))

        if aggregate is AggregateKind.TOP:
            pairs = [(p.security.symbol, v) for p, v in zip(positions, values)]
            return [RankedEntry(label, value) for label, value in aggregators.top(pairs, count)]
        return _REDUCERS[aggregate](values)

    def _resolve_position_variables(
        self,
        position: Position,
        variables: Dict[str, Any],
        diagnostics: RunDiagnostics,
    ) -> None:
        for var in self.variables:
            if var.expression.is_aggregate:
                continue
            try:
                variables[var.name] = var.expression.evaluate(position, variables)
            except Exception as e:
                diagnostics.degraded_evaluations += 1
                logger.debug(f"Variable '{var.name}' failed for {position.security.symbol}: {e}")
                variables[var.name] = math.nan

    def _evaluate_position(
        self,
        expression: Expression,
        position: Position,
        variables: Optional[Dict[str, Any]],
        diagnostics: RunDiagnostics,
    ) -> float:
        try:
            value = expression.evaluate(position, variables)
        except Exception as e:
            diagnostics.degraded_evaluations += 1
            logger.debug(f"'{self.name}' failed for {position.security.symbol}: {e}")
            return math.nan

        if isinstance(value, (int, float)):
            return float(value)
        diagnostics.degraded_evaluations += 1
        logger.debug(
            f"'{self.name}' gave non-numeric {value!r} for {position.security.symbol}"
        )
        return math.nan

    def __repr__(self) -> str:
        return f"RiskParamDef({self.name!r}, {self.formula.source!r})"


def _bound_at(bounds: List[float], igroup: int) -> float:
    if not bounds:
        return math.nan
    if igroup >= len(bounds):
        return bounds[-1]
    return bounds[igroup]
