"""
Formula Expressions - the contract the risk engine evaluates against

The engine never looks inside a formula. It only needs:
- which reducer the formula asks for (AggregateKind)
- the signed count N for "top"
- the (module, function, args) triple for "call"
- evaluate(position, variables) -> value

PythonExpression is the reference implementation: a restricted subset of
Python expression syntax, compiled with the ast module and walked by hand.
Nothing is ever passed to eval().

Examples:
    sum(notional)                      # aggregate, one value per group
    top(unrealized_pnl, -5)            # five worst positions
    std(notional / gross)              # gross is a variable
    call("limits", "var95", 0.95)      # external function over positions
    security.sector == "Tech" and qty > 0     # boolean group / filter
"""

import ast
import math
import operator
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed or evaluated."""
    pass


class AggregateKind(Enum):
    """Reducer requested by the outermost call of a formula."""
    NONE = ""
    SUM = "sum"
    MEAN = "mean"
    STD = "std"
    LEN = "len"
    TOP = "top"
    CALL = "call"


DEFAULT_TOP_COUNT = 10

# Numeric and label fields reachable by bare name, position first
POSITION_FIELDS = (
    "qty",
    "avg_px",
    "market_price",
    "realized_pnl",
    "commission",
    "price",
    "notional",
    "unrealized_pnl",
    "acc",
    "acc_name",
)
SECURITY_FIELDS = (
    "symbol",
    "sector",
    "industry",
    "sub_industry",
    "market",
    "type",
    "currency",
    "multiplier",
    "close",
)
# Namespaces allowed on the left of an attribute access
NAMESPACES = ("security", "extra")

CONSTANTS = {
    "nan": math.nan,
    "inf": math.inf,
    "pi": math.pi,
}

FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "log": math.log,
    "exp": math.exp,
    "round": round,
    "float": float,
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}


class Expression(ABC):
    """
    A compiled formula.

    kind records what the expression was built for
    ("formula", "filter", "group" or "variable") and is only used in
    messages.
    """

    def __init__(
        self,
        source: str,
        kind: str = "formula",
        aggregate: AggregateKind = AggregateKind.NONE,
        count: int = 0,
        call_args: Optional[Tuple[str, str, Tuple[Any, ...]]] = None,
        path: str = "",
    ):
        self.source = source
        self.path = path
        self.kind = kind
        self.aggregate = aggregate
        self.count = count
        self.call_args = call_args

    @property
    def is_aggregate(self) -> bool:
        return self.aggregate is not AggregateKind.NONE

    @abstractmethod
    def evaluate(self, position: Any, variables: Optional[Dict[str, Any]] = None) -> Any:
        """Evaluate the per-position body against one position."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.kind}: {self.source!r})"


class PythonExpression(Expression):
    """Expression backed by a validated Python AST."""

    def __init__(self, source: str, body: ast.AST, **kwargs):
        super().__init__(source, **kwargs)
        self._body = body

    def evaluate(self, position: Any, variables: Optional[Dict[str, Any]] = None) -> Any:
        if self._body is None:
            raise ExpressionError(f"{self.kind} '{self.source}' has no per-position body")
        try:
            return self._eval(self._body, position, variables or {})
        except ExpressionError:
            raise
        except (ArithmeticError, TypeError, ValueError, KeyError, AttributeError) as e:
            raise ExpressionError(f"{self.kind} '{self.source}': {e}") from e

    def _eval(self, node: ast.AST, position: Any, variables: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return _resolve_name(node.id, position, variables)

        if isinstance(node, ast.Attribute):
            namespace = node.value.id
            if namespace == "security":
                return getattr(position.security, node.attr)
            return position.extra[node.attr]

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, position, variables)
            right = self._eval(node.right, position, variables)
            return _BIN_OPS[type(node.op)](left, right)

        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self._eval(node.operand, position, variables))

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self._eval(value, position, variables)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, position, variables)
                if result:
                    return result
            return result

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, position, variables)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, position, variables)
                if not _CMP_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, position, variables):
                return self._eval(node.body, position, variables)
            return self._eval(node.orelse, position, variables)

        if isinstance(node, (ast.Tuple, ast.List)):
            return tuple(self._eval(elt, position, variables) for elt in node.elts)

        if isinstance(node, ast.Call):
            args = [self._eval(arg, position, variables) for arg in node.args]
            return FUNCTIONS[node.func.id](*args)

        # _validate rejects everything else at parse time
        raise ExpressionError(f"Unsupported node {type(node).__name__}")


def _resolve_name(name: str, position: Any, variables: Dict[str, Any]) -> Any:
    # variables shadow fields of the same name
    if name in variables:
        return variables[name]
    if name in CONSTANTS:
        return CONSTANTS[name]
    if name in POSITION_FIELDS:
        return getattr(position, name)
    if name in SECURITY_FIELDS:
        return getattr(position.security, name)
    raise ExpressionError(f"Variable '{name}' is not resolved")


def _validate(node: ast.AST, source: str, names: Iterable[str]) -> None:
    """Reject anything outside the supported subset, and unknown names."""
    known = set(names)
    for child in ast.walk(node):
        if isinstance(child, ast.Name):
            if isinstance(child.ctx, ast.Load) and (
                child.id in known
                or child.id in CONSTANTS
                or child.id in POSITION_FIELDS
                or child.id in SECURITY_FIELDS
                or child.id in FUNCTIONS
                or child.id in NAMESPACES
            ):
                continue
            raise ExpressionError(f"Unknown name '{child.id}' in '{source}'")
        if isinstance(child, ast.Attribute):
            if not (isinstance(child.value, ast.Name) and child.value.id in NAMESPACES):
                raise ExpressionError(
                    f"Attribute access only allowed on {NAMESPACES} in '{source}'"
                )
            if child.value.id == "security" and child.attr not in SECURITY_FIELDS:
                raise ExpressionError(f"Unknown security field '{child.attr}' in '{source}'")
            continue
        if isinstance(child, ast.Call):
            if not (isinstance(child.func, ast.Name) and child.func.id in FUNCTIONS):
                raise ExpressionError(f"Unknown function in '{source}'")
            if child.keywords:
                raise ExpressionError(f"Keyword arguments not supported in '{source}'")
            continue
        if isinstance(child, ast.Constant):
            if not isinstance(child.value, (int, float, str, bool)):
                raise ExpressionError(f"Unsupported literal {child.value!r} in '{source}'")
            continue
        if isinstance(
            child,
            (
                ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
                ast.Tuple, ast.List, ast.Load, ast.operator, ast.unaryop,
                ast.boolop, ast.cmpop,
            ),
        ):
            if isinstance(child, (ast.operator, ast.unaryop, ast.cmpop)) and (
                type(child) not in _BIN_OPS
                and type(child) not in _UNARY_OPS
                and type(child) not in _CMP_OPS
            ):
                raise ExpressionError(f"Unsupported operator in '{source}'")
            continue
        raise ExpressionError(f"Unsupported syntax {type(child).__name__} in '{source}'")


def _literal(node: ast.AST, source: str) -> Any:
    try:
        return ast.literal_eval(node)
    except ValueError as e:
        raise ExpressionError(f"Expected a literal in '{source}'") from e


def _is_boolean(node: ast.AST) -> bool:
    if isinstance(node, (ast.Compare, ast.BoolOp)):
        return True
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
        return True
    return isinstance(node, ast.Constant) and isinstance(node.value, bool)


def parse_expression(
    source: str,
    kind: str = "formula",
    variables: Optional[Iterable[str]] = None,
    boolean: bool = False,
    path: str = "",
) -> PythonExpression:
    """
    Compile an expression.

    Args:
        source: Expression text.
        kind: "formula", "filter", "group" or "variable" (for messages).
        variables: Variable names the expression may reference.
        boolean: Require a boolean expression (groups and filters).
        path: Module path for call(); only recorded, resolved at run time.

    Raises:
        ExpressionError: On syntax errors, unknown names or unsupported
            constructs.
    """
    text = source.strip()
    if not text:
        raise ExpressionError(f"Empty {kind} expression")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid {kind} expression '{text}': {e.msg}") from e

    body = tree.body
    names = list(variables or ())
    aggregate = AggregateKind.NONE
    count = 0
    call_args = None

    if (
        isinstance(body, ast.Call)
        and isinstance(body.func, ast.Name)
        and body.func.id in {k.value for k in AggregateKind if k is not AggregateKind.NONE}
    ):
        aggregate = AggregateKind(body.func.id)
        args = body.args
        if body.keywords:
            raise ExpressionError(f"Keyword arguments not supported in '{text}'")

        if aggregate is AggregateKind.CALL:
            if len(args) < 2:
                raise ExpressionError(f"call() needs a module and a function in '{text}'")
            literals = [_literal(arg, text) for arg in args]
            module, function = literals[0], literals[1]
            if not isinstance(module, str) or not isinstance(function, str):
                raise ExpressionError(f"call() module and function must be strings in '{text}'")
            call_args = (module, function, tuple(literals[2:]))
            body = None
        elif aggregate is AggregateKind.TOP:
            if len(args) not in (1, 2):
                raise ExpressionError(f"top() takes an expression and an optional count in '{text}'")
            count = DEFAULT_TOP_COUNT
            if len(args) == 2:
                count = _literal(args[1], text)
                if not isinstance(count, int) or isinstance(count, bool):
                    raise ExpressionError(f"top() count must be an integer in '{text}'")
            body = args[0]
        else:
            if len(args) != 1:
                raise ExpressionError(f"{aggregate.value}() takes exactly one expression in '{text}'")
            body = args[0]

    if boolean and (aggregate is not AggregateKind.NONE or not _is_boolean(body)):
        raise ExpressionError(f"{kind} expression '{text}' must be boolean")

    if body is not None:
        _validate(body, text, names)

    expression = PythonExpression(
        text,
        body,
        kind=kind,
        aggregate=aggregate,
        count=count,
        call_args=call_args,
        path=path,
    )
    return expression
