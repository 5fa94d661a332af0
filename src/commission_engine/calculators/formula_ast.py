"""
Restricted AST for commission formulas.

Formula blocks are written in a small subset of Python. This module parses
nothing itself; it validates trees produced by ``ast.parse`` against a fixed
grammar and evaluates them with a tree-walking interpreter. Nothing is ever
handed to ``eval`` or ``exec``.

Allowed statements:
  - Assignment to names, tuple unpacking, subscripts
  - Augmented assignment (+=, -=, ...)
  - if / elif / else
  - for over lists, tuples, dict keys and range() (no else clause)
  - break, continue, pass
  - Expression statements

Allowed expressions:
  - Literals: numbers, strings, booleans, None, f-strings
  - Arithmetic, comparison, boolean logic, ternary
  - Dict, list and tuple displays
  - Subscripts and slices
  - Attribute access on dicts (key lookup, never underscored names)
  - Calls to allow-listed functions only

Rejected:
  - imports, function and class definitions, lambda, comprehensions,
    while loops, with, try, global, del, star-args, walrus
"""

from __future__ import annotations

import ast
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from commission_engine.errors import CommissionEngineError

DEFAULT_MAX_STEPS = 100_000

# Upper bound on strings, lists and ranges a formula can build
MAX_SEQUENCE_LENGTH = 100_000

# Upper bound on the size of integer results
MAX_INT_BITS = 4096

# Upper bound on widths and precisions in f-string format specs
MAX_FORMAT_WIDTH = 1000


class TemplatePolicyError(CommissionEngineError):
    """Raised when a formula uses syntax outside the allowed grammar."""


class FormulaRuntimeError(CommissionEngineError):
    """Raised when a formula fails while being evaluated."""


def clamp(value: Any, low: Any, high: Any) -> Any:
    """Bound ``value`` to ``[low, high]``."""
    return max(low, min(high, value))


def bounded_range(*args: Any) -> range:
    """``range`` limited to MAX_SEQUENCE_LENGTH items."""
    values = range(*args)
    try:
        size = len(values)
    except OverflowError:
        size = MAX_SEQUENCE_LENGTH + 1
    if size > MAX_SEQUENCE_LENGTH:
        raise FormulaRuntimeError(f"range() is limited to {MAX_SEQUENCE_LENGTH} items")
    return values


# Functions every formula may call, independent of the evaluation context
SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "clamp": clamp,
    "len": len,
    "float": float,
    "int": int,
    "str": str,
    "bool": bool,
    "range": bounded_range,
}

# Functions supplied by the evaluation context
CONTEXT_FUNCTIONS: frozenset[str] = frozenset({
    "sum", "sum_dr", "has", "has_dr", "rollupInfo", "emit_commission",
})

ALLOWED_FUNCTIONS: frozenset[str] = frozenset(SAFE_FUNCTIONS) | CONTEXT_FUNCTIONS

_CONSTANTS = {"True": True, "False": False, "None": None}

_FORMAT_NUMBER = re.compile(r"\d+")

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: lambda a, b: a + b,
    ast.Sub: lambda a, b: a - b,
    ast.Mult: lambda a, b: a * b,
    ast.Div: lambda a, b: a / b,
    ast.FloorDiv: lambda a, b: a // b,
    ast.Mod: lambda a, b: a % b,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: lambda a, b: a == b,
    ast.NotEq: lambda a, b: a != b,
    ast.Lt: lambda a, b: a < b,
    ast.LtE: lambda a, b: a <= b,
    ast.Gt: lambda a, b: a > b,
    ast.GtE: lambda a, b: a >= b,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: lambda a, b: a is b,
    ast.IsNot: lambda a, b: a is not b,
}

_ALLOWED_BIN_OPS = tuple(_BIN_OPS) + (ast.Pow,)
_ALLOWED_UNARY_OPS = (ast.Not, ast.USub, ast.UAdd)


@dataclass(frozen=True)
class FormulaIssue:
    """A validation error found in a formula block."""

    message: str
    node_type: str = ""
    lineno: int = 0

    def __str__(self) -> str:
        if self.lineno:
            return f"{self.message} (line {self.lineno})"
        return self.message


def validate_formula(nodes: Iterable[ast.AST]) -> list[FormulaIssue]:
    """Validate parsed statements or expressions against the grammar.

    Returns a list of issues. Empty list means the formula is allowed.
    """
    issues: list[FormulaIssue] = []
    for node in nodes:
        if isinstance(node, ast.stmt):
            _validate_stmt(node, issues)
        else:
            _validate_expr(node, issues)
    return issues


def _issue(issues: list[FormulaIssue], node: ast.AST, message: str) -> None:
    issues.append(
        FormulaIssue(
            message=message,
            node_type=type(node).__name__,
            lineno=getattr(node, "lineno", 0),
        )
    )


def _check_identifier(name: str, node: ast.AST, issues: list[FormulaIssue]) -> None:
    if name.startswith("__"):
        _issue(issues, node, f"Disallowed name: {name}")


def _validate_target(node: ast.AST, issues: list[FormulaIssue]) -> None:
    if isinstance(node, ast.Name):
        _check_identifier(node.id, node, issues)
        if node.id in ALLOWED_FUNCTIONS or node.id in _CONSTANTS:
            _issue(issues, node, f"Cannot assign to reserved name: {node.id}")
    elif isinstance(node, (ast.Tuple, ast.List)):
        for elt in node.elts:
            _validate_target(elt, issues)
    elif isinstance(node, ast.Subscript):
        _validate_expr(node.value, issues)
        _validate_expr(node.slice, issues)
    else:
        _issue(issues, node, f"Disallowed assignment target: {type(node).__name__}")


def _validate_stmt(node: ast.stmt, issues: list[FormulaIssue]) -> None:
    if isinstance(node, ast.Assign):
        for target in node.targets:
            _validate_target(target, issues)
        _validate_expr(node.value, issues)

    elif isinstance(node, ast.AugAssign):
        if not isinstance(node.op, _ALLOWED_BIN_OPS):
            _issue(issues, node, f"Disallowed operator: {type(node.op).__name__}")
        _validate_target(node.target, issues)
        _validate_expr(node.value, issues)

    elif isinstance(node, ast.If):
        _validate_expr(node.test, issues)
        for stmt in node.body + node.orelse:
            _validate_stmt(stmt, issues)

    elif isinstance(node, ast.For):
        if node.orelse:
            _issue(issues, node, "for/else is not allowed")
        _validate_target(node.target, issues)
        _validate_expr(node.iter, issues)
        for stmt in node.body:
            _validate_stmt(stmt, issues)

    elif isinstance(node, ast.Expr):
        _validate_expr(node.value, issues)

    elif isinstance(node, (ast.Pass, ast.Break, ast.Continue)):
        pass

    else:
        _issue(issues, node, f"Disallowed statement: {type(node).__name__}")


def _validate_expr(node: ast.AST, issues: list[FormulaIssue]) -> None:
    if isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool, type(None))):
            _issue(issues, node, f"Disallowed constant type: {type(node.value).__name__}")

    elif isinstance(node, ast.Name):
        _check_identifier(node.id, node, issues)

    elif isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_expr(value, issues)

    elif isinstance(node, ast.BinOp):
        if not isinstance(node.op, _ALLOWED_BIN_OPS):
            _issue(issues, node, f"Disallowed binary operator: {type(node.op).__name__}")
        _validate_expr(node.left, issues)
        _validate_expr(node.right, issues)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, _ALLOWED_UNARY_OPS):
            _issue(issues, node, f"Disallowed unary operator: {type(node.op).__name__}")
        _validate_expr(node.operand, issues)

    elif isinstance(node, ast.Compare):
        _validate_expr(node.left, issues)
        for comparator in node.comparators:
            _validate_expr(comparator, issues)
        for op in node.ops:
            if type(op) not in _COMPARE_OPS:
                _issue(issues, node, f"Disallowed comparison: {type(op).__name__}")

    elif isinstance(node, ast.IfExp):
        _validate_expr(node.test, issues)
        _validate_expr(node.body, issues)
        _validate_expr(node.orelse, issues)

    elif isinstance(node, ast.Dict):
        for key in node.keys:
            if key is None:
                _issue(issues, node, "Dict unpacking is not allowed")
            else:
                _validate_expr(key, issues)
        for value in node.values:
            _validate_expr(value, issues)

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            _validate_expr(elt, issues)

    elif isinstance(node, ast.Subscript):
        _validate_expr(node.value, issues)
        _validate_expr(node.slice, issues)

    elif isinstance(node, ast.Slice):
        for part in (node.lower, node.upper, node.step):
            if part is not None:
                _validate_expr(part, issues)

    elif isinstance(node, ast.Attribute):
        if node.attr.startswith("_"):
            _issue(issues, node, f"Disallowed attribute: {node.attr}")
        _validate_expr(node.value, issues)

    elif isinstance(node, ast.Call):
        if isinstance(node.func, ast.Name) and node.func.id in ALLOWED_FUNCTIONS:
            for arg in node.args:
                if isinstance(arg, ast.Starred):
                    _issue(issues, arg, "Star arguments are not allowed")
                else:
                    _validate_expr(arg, issues)
            for kw in node.keywords:
                if kw.arg is None:
                    _issue(issues, node, "Keyword unpacking is not allowed")
                else:
                    _validate_expr(kw.value, issues)
        else:
            _issue(issues, node, f"Disallowed function call: {_describe(node.func)}")

    elif isinstance(node, ast.JoinedStr):
        for value in node.values:
            _validate_expr(value, issues)

    elif isinstance(node, ast.FormattedValue):
        if node.conversion != -1:
            _issue(issues, node, "Conversions in f-strings are not allowed")
        _validate_expr(node.value, issues)
        if node.format_spec is not None:
            _validate_expr(node.format_spec, issues)

    else:
        _issue(issues, node, f"Disallowed expression: {type(node).__name__}")


def _describe(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_describe(node.value)}.{node.attr}"
    return type(node).__name__


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


class FormulaInterpreter:
    """Evaluates validated formula trees against a read-only context.

    Statement blocks share one local namespace for the lifetime of the
    interpreter, so a value assigned in one ``<% %>`` block is visible to
    later blocks. Every visited node costs one step, and containers handed
    to a function cost one step per element; exceeding ``max_steps`` aborts
    the evaluation.
    """

    def __init__(self, context: Mapping[str, Any], max_steps: int = DEFAULT_MAX_STEPS):
        self.context = context
        self.max_steps = max_steps
        self.steps = 0
        self.local_vars: dict[str, Any] = {}

    def execute(self, statements: Iterable[ast.stmt]) -> None:
        """Run a block of statements."""
        try:
            for stmt in statements:
                self._exec(stmt)
        except (_Break, _Continue):
            raise FormulaRuntimeError("break/continue outside loop")
        except FormulaRuntimeError:
            raise
        except Exception as e:
            raise FormulaRuntimeError(f"{type(e).__name__}: {e}") from e

    def evaluate(self, expr: ast.expr) -> Any:
        """Evaluate a single expression."""
        try:
            return self._eval(expr)
        except FormulaRuntimeError:
            raise
        except Exception as e:
            raise FormulaRuntimeError(f"{type(e).__name__}: {e}") from e

    def _tick(self, cost: int = 1) -> None:
        self.steps += cost
        if self.steps > self.max_steps:
            raise FormulaRuntimeError(f"Formula exceeded step budget ({self.max_steps})")

    def charge(self, value: Any) -> None:
        """Charge one step per element reachable from ``value``.

        A container referenced twice is charged twice, matching the work of
        printing or serialising it. The walk stops as soon as the budget
        runs out.
        """
        pending = [value]
        while pending:
            item = pending.pop()
            if isinstance(item, range):
                self._tick(len(item))
            elif isinstance(item, (dict, list, tuple)):
                self._tick(len(item))
                pending.extend(item.values() if isinstance(item, dict) else item)

    # statements

    def _exec(self, node: ast.stmt) -> None:
        self._tick()
        if isinstance(node, ast.Assign):
            value = self._eval(node.value)
            for target in node.targets:
                self._assign(target, value)

        elif isinstance(node, ast.AugAssign):
            current = self._load_target(node.target)
            self._assign(node.target, self._binop(node.op, current, self._eval(node.value)))

        elif isinstance(node, ast.If):
            branch = node.body if self._eval(node.test) else node.orelse
            for stmt in branch:
                self._exec(stmt)

        elif isinstance(node, ast.For):
            iterable = self._eval(node.iter)
            if isinstance(iterable, dict):
                iterable = list(iterable)
            if not isinstance(iterable, (list, tuple, range, str)):
                raise FormulaRuntimeError(
                    f"Cannot iterate over {type(iterable).__name__}"
                )
            for item in iterable:
                self._tick()
                self._assign(node.target, item)
                try:
                    for stmt in node.body:
                        self._exec(stmt)
                except _Continue:
                    continue
                except _Break:
                    break

        elif isinstance(node, ast.Expr):
            self._eval(node.value)

        elif isinstance(node, ast.Pass):
            pass

        elif isinstance(node, ast.Break):
            raise _Break()

        elif isinstance(node, ast.Continue):
            raise _Continue()

        else:
            raise FormulaRuntimeError(f"Unsupported statement: {type(node).__name__}")

    def _assign(self, target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            self.local_vars[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise FormulaRuntimeError(
                    f"Cannot unpack {len(values)} values into {len(target.elts)} names"
                )
            for elt, item in zip(target.elts, values):
                self._assign(elt, item)
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value)
            if not isinstance(container, (dict, list)):
                raise FormulaRuntimeError(
                    f"Cannot assign into {type(container).__name__}"
                )
            container[self._eval(target.slice)] = value
        else:
            raise FormulaRuntimeError(f"Unsupported target: {type(target).__name__}")

    def _load_target(self, target: ast.AST) -> Any:
        if isinstance(target, ast.Name):
            return self._lookup(target.id)
        if isinstance(target, ast.Subscript):
            return self._eval(target.value)[self._eval(target.slice)]
        raise FormulaRuntimeError(f"Unsupported target: {type(target).__name__}")

    # expressions

    def _lookup(self, name: str) -> Any:
        if name in self.local_vars:
            return self.local_vars[name]
        if name in self.context:
            return self.context[name]
        if name in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[name]
        if name in _CONSTANTS:
            return _CONSTANTS[name]
        raise FormulaRuntimeError(f"name '{name}' is not defined")

    def _eval(self, node: ast.AST) -> Any:
        self._tick()

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self._lookup(node.id)

        if isinstance(node, ast.BoolOp):
            is_and = isinstance(node.op, ast.And)
            result: Any = None
            for value in node.values:
                result = self._eval(value)
                if is_and and not result:
                    return result
                if not is_and and result:
                    return result
            return result

        if isinstance(node, ast.BinOp):
            return self._binop(node.op, self._eval(node.left), self._eval(node.right))

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand

        if isinstance(node, ast.Compare):
            left = self._eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator)
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            return self._eval(node.body) if self._eval(node.test) else self._eval(node.orelse)

        if isinstance(node, ast.Dict):
            return {self._eval(k): self._eval(v) for k, v in zip(node.keys, node.values)}

        if isinstance(node, ast.List):
            return [self._eval(elt) for elt in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self._eval(elt) for elt in node.elts)

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value)
            if not isinstance(container, (dict, list, tuple, str)):
                raise FormulaRuntimeError(
                    f"'{type(container).__name__}' object is not subscriptable"
                )
            return container[self._eval(node.slice)]

        if isinstance(node, ast.Slice):
            return slice(
                self._eval(node.lower) if node.lower is not None else None,
                self._eval(node.upper) if node.upper is not None else None,
                self._eval(node.step) if node.step is not None else None,
            )

        if isinstance(node, ast.Attribute):
            owner = self._eval(node.value)
            if not isinstance(owner, dict):
                raise FormulaRuntimeError(
                    f"Attribute access is only allowed on objects, not {type(owner).__name__}"
                )
            if node.attr not in owner:
                raise FormulaRuntimeError(f"No field '{node.attr}'")
            return owner[node.attr]

        if isinstance(node, ast.Call):
            return self._call(node)

        if isinstance(node, ast.JoinedStr):
            return "".join(str(self._eval(value)) for value in node.values)

        if isinstance(node, ast.FormattedValue):
            spec = self._eval(node.format_spec) if node.format_spec is not None else ""
            for number in _FORMAT_NUMBER.findall(str(spec)):
                if len(number) > 4 or int(number) > MAX_FORMAT_WIDTH:
                    raise FormulaRuntimeError(
                        f"Format width is limited to {MAX_FORMAT_WIDTH}"
                    )
            value = self._eval(node.value)
            self.charge(value)
            return format(value, spec)

        raise FormulaRuntimeError(f"Unsupported expression: {type(node).__name__}")

    def _call(self, node: ast.Call) -> Any:
        name = node.func.id if isinstance(node.func, ast.Name) else None
        if name not in ALLOWED_FUNCTIONS:
            raise FormulaRuntimeError(f"Function not allowed: {_describe(node.func)}")
        func = self.context.get(name) if name in CONTEXT_FUNCTIONS else SAFE_FUNCTIONS[name]
        if func is None:
            raise FormulaRuntimeError(f"Function not available: {name}")

        args = [self._eval(arg) for arg in node.args]
        kwargs = {kw.arg: self._eval(kw.value) for kw in node.keywords}
        self.charge(args)
        self.charge(list(kwargs.values()))
        return func(*args, **kwargs)

    def _binop(self, op: ast.operator, left: Any, right: Any) -> Any:
        if isinstance(op, ast.Pow):
            try:
                result = math.pow(float(left), float(right))
            except OverflowError:
                raise FormulaRuntimeError("Numeric overflow in exponent")
            if isinstance(left, int) and isinstance(right, int) and right >= 0:
                return int(result)
            return result

        if isinstance(op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if len(seq) * count > MAX_SEQUENCE_LENGTH:
                        raise FormulaRuntimeError("Sequence repetition too large")

        handler = _BIN_OPS.get(type(op))
        if handler is None:
            raise FormulaRuntimeError(f"Unsupported operator: {type(op).__name__}")
        result = handler(left, right)
        if isinstance(result, int) and result.bit_length() > MAX_INT_BITS:
            raise FormulaRuntimeError("Integer result too large")
        if isinstance(result, (str, list, tuple)) and len(result) > MAX_SEQUENCE_LENGTH:
            raise FormulaRuntimeError("Sequence too large")
        return result
