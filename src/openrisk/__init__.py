"""
OpenRisk - grouped portfolio risk with bounds and trade stops

Usage:
    from src.openrisk import load_risk_definitions, to_payload

    definitions = load_risk_definitions("config/risk.yaml", disabler=AdminClient())

    for risk in definitions:
        result = risk.run(positions, portfolio_name="main", user_id=7)
        print(risk.display_name, to_payload(result))
        print(risk.last_diagnostics.to_dict())

    # Chart data for graphed parameters
    risk.history()
"""

from .admin import AccountDisabler, AdminClient, AdminRequestError, LoggingDisabler
from .config import (
    ConfigSection,
    RiskDefinitionError,
    build_risk_def,
    load_risk_definitions,
)
from .engine import (
    AttributeSelector,
    GroupAttribute,
    PredicateSelector,
    RiskDef,
)
from .expression import AggregateKind, Expression, ExpressionError, parse_expression
from .loader import load_positions, positions_from_frame
from .params import RiskParamDef
from .schema import (
    NAN_MARKER,
    Breach,
    GroupResult,
    NamedExpression,
    Position,
    RankedEntry,
    RunDiagnostics,
    Security,
    WindowDef,
    to_payload,
)

__all__ = [
    "RiskDef",
    "RiskParamDef",
    "RiskDefinitionError",
    "ConfigSection",
    "build_risk_def",
    "load_risk_definitions",
    "AttributeSelector",
    "PredicateSelector",
    "GroupAttribute",
    "Expression",
    "ExpressionError",
    "AggregateKind",
    "parse_expression",
    "AccountDisabler",
    "AdminClient",
    "AdminRequestError",
    "LoggingDisabler",
    "Position",
    "Security",
    "NamedExpression",
    "WindowDef",
    "Breach",
    "RankedEntry",
    "GroupResult",
    "RunDiagnostics",
    "NAN_MARKER",
    "to_payload",
    "load_positions",
    "positions_from_frame",
]
