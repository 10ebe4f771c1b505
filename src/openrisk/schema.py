"""
OpenRisk Schema - Positions In, Grouped Risk Values Out

Positions and their securities are handed to the engine as an immutable
snapshot. The engine hands back GroupResult rows, one per discovered
group, optionally carrying a Breach marker.

Wire shape (what to_list() / to_payload() produce):
    [group, value]
    [group, value, [-1 | 1]]
    [group, value, [-1 | 1, true]]     # trade stop triggered

value is a float, the literal "NaN" marker, or a ranked list of
[label, value(, breach)] entries.
"""

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

if TYPE_CHECKING:
    from .expression import Expression

# JSON has no NaN, so scalar NaN results leave the engine as this string
NAN_MARKER = "NaN"


def is_number(value: Any) -> bool:
    """True for int/float results (bools are not values)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class Security:
    """Static instrument attributes used for grouping and formulas."""
    symbol: str
    sector: str = ""
    industry: str = ""
    sub_industry: str = ""
    market: str = ""
    type: str = ""
    currency: str = ""
    multiplier: float = 1.0
    close: float = math.nan


@dataclass(frozen=True)
class Position:
    """
    One holding of one account.

    Formulas can reference every numeric field below by name, plus the
    derived notional / unrealized_pnl, plus anything in extra.
    """
    security: Security
    acc: int
    acc_name: str = ""
    qty: float = 0.0
    avg_px: float = 0.0
    market_price: float = math.nan
    realized_pnl: float = 0.0
    commission: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def price(self) -> float:
        """Market price, falling back to the security's last close."""
        if math.isnan(self.market_price):
            return self.security.close
        return self.market_price

    @property
    def notional(self) -> float:
        return self.qty * self.price * self.security.multiplier

    @property
    def unrealized_pnl(self) -> float:
        return self.qty * (self.price - self.avg_px) * self.security.multiplier


@dataclass
class WindowDef:
    """Descriptive only - the engine does not schedule on it."""
    seconds: int = 0
    type: str = ""


@dataclass
class NamedExpression:
    name: str
    expression: "Expression"


@dataclass(frozen=True)
class HistorySample:
    timestamp: float
    value: float

    def to_list(self) -> List[float]:
        return [self.timestamp, self.value]


@dataclass
class Breach:
    """direction is -1 (below lower bound) or 1 (above upper bound)."""
    direction: int
    trade_stop: bool = False

    def to_list(self) -> List[Any]:
        if self.trade_stop:
            return [self.direction, True]
        return [self.direction]


@dataclass
class RankedEntry:
    """One row of a "top" result."""
    label: Any
    value: float
    breach: Optional[Breach] = None

    def to_list(self) -> List[Any]:
        if self.breach is not None:
            return [self.label, self.value, self.breach.to_list()]
        return [self.label, self.value]


# float, NAN_MARKER, ranked list, or whatever an external call returned
GroupValue = Union[float, str, List[RankedEntry], Any]


@dataclass
class GroupResult:
    group: str
    value: GroupValue
    breach: Optional[Breach] = None

    @property
    def is_ranked(self) -> bool:
        return isinstance(self.value, list) and all(
            isinstance(item, RankedEntry) for item in self.value
        )

    def to_list(self) -> List[Any]:
        value = self.value
        if self.is_ranked:
            value = [entry.to_list() for entry in self.value]
        row = [self.group, value]
        if self.breach is not None:
            row.append(self.breach.to_list())
        return row


RunResult = Optional[Union[List[GroupResult], Dict[str, List[GroupResult]]]]


def to_payload(result: RunResult) -> Any:
    """Convert a RiskDef.run() result into JSON-ready lists and dicts."""
    if result is None:
        return None
    if isinstance(result, dict):
        return {
            name: [row.to_list() for row in rows]
            for name, rows in result.items()
        }
    return [row.to_list() for row in result]


@dataclass
class RunDiagnostics:
    """
    Counters for one RiskDef.run() pass.

    Evaluation failures never abort a pass, so this is the only place
    they become visible.
    """
    positions: int = 0
    groups: int = 0
    degraded_evaluations: int = 0
    trade_stops: int = 0
    disable_failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        """Convert to dict for logging."""
        return {
            "positions": self.positions,
            "groups": self.groups,
            "degraded_evaluations": self.degraded_evaluations,
            "trade_stops": self.trade_stops,
            "disable_failures": self.disable_failures,
        }
