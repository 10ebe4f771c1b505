"""
Risk Definition Loader - config sections in, RiskDef objects out

FAIL CLOSED PRINCIPLE:
- Missing config file -> RiskDefinitionError (not an empty risk set)
- Parse errors -> RiskDefinitionError (not a partial load)
- A bad formula / filter / group / variable -> RiskDefinitionError
  for that definition, naming the section

The one soft failure: graph on a non-aggregate formula is logged and
graphing is switched off for that parameter.

YAML layout (one entry per risk definition under `risks`):

    risks:
      sector_gross:
        name: Sector gross exposure
        group: sector, acc, notional > 1e6
        group_name: sector, acc, big    # missing names back-fill from the token
        f: qty != 0                     # filter
        formula: sum(abs(notional))     # optional top-level parameter
        upper_bound: 5e6, 1e6           # per selector, last one repeats
        trade_stop: true
        graph: yes
        concentration:                  # nested section = extra parameter
          var:
            gross: sum(abs(notional))
            weight: abs(notional) / gross
          formula: top(weight, 3)
          upper_bound: 0.25
          window: 300,rolling
"""

import logging
import math
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .admin import AccountDisabler
from .engine import (
    PREDEFINED_GROUPS,
    AttributeSelector,
    GroupAttribute,
    GroupSelector,
    PredicateSelector,
    RiskDef,
)
from .expression import ExpressionError, parse_expression
from .params import RiskParamDef
from .schema import NamedExpression, WindowDef

logger = logging.getLogger(__name__)


VARIABLE_SECTION = "var"
MATCH_ALL = "*"
GRAPH_TRUE = ("true", "y", "yes", "1")
BOOL_TRUE = ("1", "t", "true")
BOOL_FALSE = ("0", "f", "false")


class RiskDefinitionError(Exception):
    """Raised when a risk definition cannot be built."""
    pass


@dataclass
class ConfigSection:
    """
    A named block of string values with ordered nested sections.

    get() always returns a string ("" when missing) so builders never
    branch on presence.
    """
    name: str
    values: Dict[str, str] = field(default_factory=dict)
    sections: List["ConfigSection"] = field(default_factory=list)

    def get(self, key: str) -> str:
        return self.values.get(key, "")

    def section(self, name: str) -> Optional["ConfigSection"]:
        for section in self.sections:
            if section.name == name:
                return section
        return None

    @classmethod
    def from_mapping(cls, name: str, data: Dict[str, Any]) -> "ConfigSection":
        """Build from a parsed YAML mapping; nested mappings become sections."""
        section = cls(name=name)
        for key, value in data.items():
            key = str(key)
            if isinstance(value, dict):
                section.sections.append(cls.from_mapping(key, value))
            elif isinstance(value, (list, tuple)):
                section.values[key] = ",".join(_scalar(v) for v in value)
            else:
                section.values[key] = _scalar(value)
        return section


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def split(text: str, separators: str = ",") -> List[str]:
    """Split on any separator character, trim, and drop empty fields."""
    fields = re.split(f"[{re.escape(separators)}]", text)
    return [f.strip(" \t\r") for f in fields if f.strip(" \t\r")]


def parse_bounds(text: str) -> List[float]:
    """Comma list of floats; anything non-numeric becomes NaN."""
    bounds = []
    for token in split(text):
        try:
            bounds.append(float(token))
        except ValueError:
            bounds.append(math.nan)
    return bounds


def parse_window(text: str) -> WindowDef:
    window = WindowDef()
    parts = split(text)
    if parts:
        try:
            window.seconds = int(parts[0])
        except ValueError:
            logger.debug(f"Ignoring non-integer window seconds '{parts[0]}'")
    if len(parts) > 1:
        window.type = parts[1]
    return window


def parse_bool(text: str, default: bool = False) -> bool:
    lowered = text.strip().lower()
    if lowered in BOOL_TRUE:
        return True
    if lowered in BOOL_FALSE:
        return False
    return default


def build_param(
    section: ConfigSection,
    parent: RiskDef,
    clock: Callable[[], float] = time.time,
) -> Optional[RiskParamDef]:
    """
    Build one parameter from a section.

    Returns None when the section has no formula (a definition section
    that only holds nested parameters).
    """
    variables: List[NamedExpression] = []
    names: List[str] = []

    var_section = section.section(VARIABLE_SECTION)
    if var_section is not None:
        for name, source in var_section.values.items():
            try:
                expression = parse_expression(source, "variable", names, path=parent.path)
            except ExpressionError as e:
                raise RiskDefinitionError(
                    f"[{parent.name}.{section.name}] variable '{name}': {e}"
                ) from e
            variables.append(NamedExpression(name, expression))
            names.append(name)

    source = section.get("formula")
    if not source:
        return None
    try:
        formula = parse_expression(source, "formula", names, path=parent.path)
    except ExpressionError as e:
        raise RiskDefinitionError(f"[{parent.name}.{section.name}] formula: {e}") from e

    return RiskParamDef(
        name=section.name,
        formula=formula,
        upper_bound=parse_bounds(section.get("upper_bound")),
        lower_bound=parse_bounds(section.get("lower_bound")),
        trade_stop=parse_bool(section.get("trade_stop")),
        window=parse_window(section.get("window")),
        variables=variables,
        graph=section.get("graph").strip().lower() in GRAPH_TRUE,
        clock=clock,
    )


def build_risk_def(
    section: ConfigSection,
    path: str = "",
    disabler: Optional[AccountDisabler] = None,
    clock: Callable[[], float] = time.time,
) -> RiskDef:
    """
    Build a RiskDef from its section.

    The section's own formula (if any) becomes the first parameter, named
    after the section; each nested section except `var` follows in order.

    Raises:
        RiskDefinitionError: On any expression that fails to parse.
    """
    selectors: List[GroupSelector] = []
    group_names = split(section.get("group_name"))

    for token in split(section.get("group")):
        if token in PREDEFINED_GROUPS:
            selectors.append(AttributeSelector(GroupAttribute(token)))
            continue
        source = "True" if token == MATCH_ALL else token
        try:
            expression = parse_expression(source, "group", boolean=True, path=path)
        except ExpressionError as e:
            raise RiskDefinitionError(f"[{section.name}] group '{token}': {e}") from e
        selectors.append(PredicateSelector(expression, source=token))

    filter_expr = None
    if section.get("f"):
        try:
            filter_expr = parse_expression(section.get("f"), "filter", boolean=True, path=path)
        except ExpressionError as e:
            raise RiskDefinitionError(f"[{section.name}] filter: {e}") from e

    risk = RiskDef(
        name=section.name,
        selectors=selectors,
        group_names=group_names,
        display_name=section.get("name"),
        filter_expr=filter_expr,
        path=path,
        disabler=disabler,
    )

    for sub in section.sections:
        if sub.name == VARIABLE_SECTION:
            continue
        param = build_param(sub, risk, clock)
        if param is not None:
            risk.add_param(param)

    own = build_param(section, risk, clock)
    if own is not None:
        risk.add_param(own, first=True)

    return risk


def load_risk_definitions(
    path: str = "risk.yaml",
    module_path: Optional[str] = None,
    disabler: Optional[AccountDisabler] = None,
    clock: Callable[[], float] = time.time,
) -> List[RiskDef]:
    """
    Load every risk definition from a YAML file.

    module_path is where call() formulas look for modules; it defaults to
    OPENRISK_MODULE_PATH, then the config file's directory.

    FAIL CLOSED: Raises RiskDefinitionError if:
    - File doesn't exist
    - File can't be parsed
    - 'risks' section missing or not a mapping
    - Any definition fails to build
    """
    config_path = Path(path)

    if not config_path.exists():
        raise RiskDefinitionError(f"Risk definition file not found: {path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RiskDefinitionError(f"Failed to parse risk definitions {path}: {e}")

    if data is None:
        raise RiskDefinitionError(f"Risk definition file is empty: {path}")

    risks = data.get("risks") if isinstance(data, dict) else None
    if not isinstance(risks, dict):
        raise RiskDefinitionError(f"No 'risks' mapping in risk definition file: {path}")

    if module_path is None:
        module_path = os.getenv("OPENRISK_MODULE_PATH") or str(config_path.parent)

    definitions = []
    for name, body in risks.items():
        if not isinstance(body, dict):
            raise RiskDefinitionError(f"Risk definition '{name}' must be a mapping")
        section = ConfigSection.from_mapping(str(name), body)
        definitions.append(build_risk_def(section, module_path, disabler, clock))

    logger.info(f"Loaded {len(definitions)} risk definitions from {path}")
    return definitions
