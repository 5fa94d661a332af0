"""Formula templates: screening, compilation, evaluation and output parsing.

A template is literal text with embedded blocks:

- ``<% ... %>`` runs statements (assignments, if, for)
- ``<%= ... %>`` writes the value of an expression
- ``<%- ... %>`` writes the HTML-escaped value of an expression

Blocks use the restricted Python subset from ``formula_ast``. The rendered
text is expected to be JSON produced by ``emit_commission`` or a bare number.

Example:

    <% rate = 0.12 if sum('REVENUE') > 100000 else 0.08 %>
    <%= emit_commission(label='Commission', amount=sum('REVENUE') * rate) %>
"""

from __future__ import annotations

import ast
import copy
import html
import json
import logging
import re
import textwrap
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from commission_engine.calculators.formula_ast import (
    DEFAULT_MAX_STEPS,
    FormulaInterpreter,
    TemplatePolicyError,
    validate_formula,
)
from commission_engine.calculators.metric_aggregator import normalize_label
from commission_engine.calculators.types import FormulaResult, PayoutWindow
from commission_engine.errors import CommissionEngineError
from commission_engine.schemas import EmittedCommission

logger = logging.getLogger(__name__)


class TemplateSyntaxError(CommissionEngineError):
    """Raised when a template cannot be parsed."""


# Identifiers that never belong in a formula. Matching is a cheap first
# screen; the grammar check in formula_ast is what actually constrains code.
DENYLIST_KEYWORDS: tuple[str, ...] = (
    # Python escape hatches
    "__import__", "__builtins__", "__class__", "__subclasses__", "__dict__",
    "__globals__", "__mro__", "__bases__", "__code__", "__getattribute__",
    "__reduce__", "import", "importlib", "builtins", "eval", "exec", "compile",
    "open", "globals", "locals", "vars", "getattr", "setattr", "delattr",
    "lambda", "breakpoint", "input", "exit", "quit",
    "os", "sys", "subprocess", "shutil", "socket", "pickle", "marshal",
    "ctypes", "threading", "multiprocessing", "asyncio",
    # Legacy JavaScript template globals
    "globalThis", "global", "process", "require", "module", "exports",
    "Function", "constructor", "__proto__", "child_process", "fs", "Buffer",
    "setImmediate", "setInterval", "setTimeout", "clearImmediate",
    "clearInterval", "clearTimeout", "console", "Reflect", "Proxy",
    "GeneratorFunction", "Object", "Intl", "Atomics", "SharedArrayBuffer",
    "Worker", "MessageChannel", "performance",
)

DENYLIST = re.compile(
    r"\b("
    + "|".join(re.escape(k) for k in sorted(DENYLIST_KEYWORDS, key=len, reverse=True))
    + r")\b"
)

_BLOCK = re.compile(r"<%([=-]?)(.*?)%>", re.DOTALL)


def screen_template(source: str | None) -> str | None:
    """Return the first denylisted keyword in ``source``, or None."""
    match = DENYLIST.search(source or "")
    return match.group(1) if match else None


# ============================================================================
# Compilation
# ============================================================================


@dataclass(frozen=True)
class _Text:
    text: str


@dataclass(frozen=True)
class _Statements:
    body: list[ast.stmt]


@dataclass(frozen=True)
class _Output:
    expr: ast.expr
    escape: bool


@dataclass
class CompiledTemplate:
    """A parsed and validated template, ready to render."""

    source: str
    parts: list[_Text | _Statements | _Output] = field(default_factory=list)

    def render(self, context: Mapping[str, Any], max_steps: int = DEFAULT_MAX_STEPS) -> str:
        """Render against ``context``.

        Raises FormulaRuntimeError if evaluation fails or runs out of steps.
        """
        interpreter = FormulaInterpreter(context, max_steps=max_steps)
        out: list[str] = []
        for part in self.parts:
            if isinstance(part, _Text):
                out.append(part.text)
            elif isinstance(part, _Statements):
                interpreter.execute(part.body)
            else:
                value = interpreter.evaluate(part.expr)
                interpreter.charge(value)
                text = render_value(value)
                out.append(html.escape(text) if part.escape else text)
        return "".join(out)


def render_value(value: Any) -> str:
    """Text written by an output block."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return repr(value)
    return json.dumps(value, default=str)


def _parse_block(code: str, kind: str, lineno: int) -> ast.AST:
    try:
        if kind:
            return ast.parse(f"(\n{code.strip()}\n)", mode="eval").body
        return ast.parse(textwrap.dedent(code).strip(), mode="exec")
    except SyntaxError as e:
        raise TemplateSyntaxError(
            f"Syntax error in template block at line {lineno}: {e.msg}"
        ) from e


def compile_template(source: str | None) -> CompiledTemplate:
    """Split, parse and validate a template.

    Raises:
        TemplateSyntaxError: A block is not valid Python or a tag is unclosed.
        TemplatePolicyError: A block uses syntax outside the formula grammar.
    """
    source = source or ""
    compiled = CompiledTemplate(source=source)
    pos = 0

    for match in _BLOCK.finditer(source):
        if match.start() > pos:
            compiled.parts.append(_Text(source[pos:match.start()]))
        pos = match.end()

        kind, code = match.group(1), match.group(2)
        lineno = source.count("\n", 0, match.start()) + 1
        node = _parse_block(code, kind, lineno)

        nodes = [node] if kind else node.body
        issues = validate_formula(nodes)
        if issues:
            raise TemplatePolicyError(
                f"Template block at line {lineno} is not allowed: {issues[0]}"
            )

        if kind:
            compiled.parts.append(_Output(expr=node, escape=(kind == "-")))
        elif node.body:
            compiled.parts.append(_Statements(body=node.body))

    tail = source[pos:]
    if "<%" in tail:
        lineno = source.count("\n", 0, pos + tail.index("<%")) + 1
        raise TemplateSyntaxError(f"Unclosed template tag at line {lineno}")
    if tail:
        compiled.parts.append(_Text(tail))

    return compiled


# ============================================================================
# Evaluation context
# ============================================================================


def emit_commission(*args: Any, **kwargs: Any) -> str:
    """Serialise a commission result to JSON.

    Accepts a single value (object, list or number) or keyword fields:
    ``emit_commission(label='Bonus', amount=100, payload={...})``.
    """
    if args and kwargs:
        raise TypeError("emit_commission takes one value or keyword fields, not both")
    if len(args) > 1:
        raise TypeError("emit_commission takes at most one positional value")
    value = args[0] if args else kwargs
    return json.dumps(value, default=str)


def build_context(
    *,
    self_totals: Mapping[str, Any],
    descendant_totals: Mapping[str, Any],
    window: PayoutWindow,
    participant_id: int,
    plan_id: int,
    rollup: Mapping[str, Any],
) -> dict[str, Any]:
    """The names a formula can see for one evaluation unit.

    Metric totals are exposed as floats. Label lookups are trimmed and
    upper-cased, so ``sum('revenue')`` reads the ``REVENUE`` total.
    """
    totals = {label: float(value) for label, value in self_totals.items()}
    totals_dr = {label: float(value) for label, value in descendant_totals.items()}

    def _sum(label: Any) -> float:
        return totals.get(normalize_label(label), 0.0)

    def _sum_dr(label: Any) -> float:
        return totals_dr.get(normalize_label(label), 0.0)

    def _has(label: Any) -> bool:
        return normalize_label(label) in totals

    def _has_dr(label: Any) -> bool:
        return normalize_label(label) in totals_dr

    def _rollup_info() -> dict[str, Any]:
        return copy.deepcopy(dict(rollup))

    functions: dict[str, Callable[..., Any]] = {
        "sum": _sum,
        "sum_dr": _sum_dr,
        "has": _has,
        "has_dr": _has_dr,
        "rollupInfo": _rollup_info,
        "emit_commission": emit_commission,
    }
    return {
        "totals": dict(totals),
        "totals_dr": dict(totals_dr),
        "period": window.as_context(),
        "participantId": participant_id,
        "planId": plan_id,
        "directReports": copy.deepcopy(list(rollup.get("directReports", []))),
        "descendants": copy.deepcopy(list(rollup.get("descendants", []))),
        **functions,
    }


# ============================================================================
# Output normalisation
# ============================================================================


@dataclass
class NormalizedOutput:
    """Results parsed from rendered text, plus anything that was dropped."""

    results: list[FormulaResult] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)


def parse_output(raw: Any) -> Any:
    """Parse rendered text as JSON or a number.

    JSON is only attempted when the text starts with ``{`` or ``[``, retrying
    once after HTML-unescaping. Returns None when nothing parses.
    """
    if raw is None:
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return raw

    text = str(raw).strip()
    if not text:
        return None
    if text[0] in "{[":
        for candidate in (text, html.unescape(text)):
            try:
                return json.loads(candidate)
            except ValueError:
                continue
        return None
    try:
        return float(text)
    except ValueError:
        return None


def normalize_output(name: str, rendered: Any) -> NormalizedOutput:
    """Turn rendered template text into commission results.

    - an object yields one result
    - an array yields one result per element
    - a number yields one result labelled ``name``

    Candidates without a label or with a non-finite amount are dropped, as
    is any candidate repeating an earlier label.
    """
    output = NormalizedOutput()
    parsed = parse_output(rendered)

    if isinstance(parsed, list):
        candidates = parsed
    elif isinstance(parsed, dict):
        candidates = [parsed]
    elif isinstance(parsed, (int, float)) and not isinstance(parsed, bool):
        candidates = [{"label": name, "amount": parsed}]
    else:
        if rendered is not None and str(rendered).strip():
            output.dropped.append("Output is neither JSON nor a number")
        return output

    seen: set[str] = set()
    for index, candidate in enumerate(candidates):
        try:
            emitted = EmittedCommission.from_candidate(candidate, name)
        except ValidationError as e:
            reason = "; ".join(err["msg"] for err in e.errors())
            output.dropped.append(f"Output item {index} dropped: {reason}")
            continue
        if emitted.label in seen:
            output.dropped.append(
                f"Output item {index} dropped: duplicate label '{emitted.label}'"
            )
            continue
        seen.add(emitted.label)
        output.results.append(
            FormulaResult(label=emitted.label, amount=emitted.amount, payload=emitted.payload)
        )
    return output


# ============================================================================
# Sandbox
# ============================================================================


class FormulaSandbox:
    """Compiles and evaluates computation templates for one run.

    Compiled templates are cached by computation id for the lifetime of the
    sandbox, which is one run.
    """

    def __init__(self, max_steps: int = DEFAULT_MAX_STEPS):
        self.max_steps = max_steps
        self._cache: dict[int, CompiledTemplate] = {}

    def compile(self, computation_id: int, source: str | None) -> CompiledTemplate:
        cached = self._cache.get(computation_id)
        if cached is None:
            cached = compile_template(source)
            self._cache[computation_id] = cached
        return cached

    def is_compiled(self, computation_id: int) -> bool:
        return computation_id in self._cache

    def evaluate(
        self,
        computation_id: int,
        name: str,
        context: Mapping[str, Any],
    ) -> NormalizedOutput:
        """Render a previously compiled template and normalise its output."""
        rendered = self._cache[computation_id].render(context, max_steps=self.max_steps)
        output = normalize_output(name, rendered)
        if output.dropped:
            logger.debug(
                "Computation %s dropped %d output item(s)", name, len(output.dropped)
            )
        return output
