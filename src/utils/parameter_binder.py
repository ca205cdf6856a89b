"""
Parameter binding for transformation units.

Fresh runs pass every bound parameter to the entry function as a keyword
argument. Playbook runs additionally substitute literals for parameters the
entry function does not accept, which is how older playbooks reference their
configurable values (bare placeholder names in the code body).
"""

import ast
import builtins
import io
import keyword
import math
import tokenize
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional, Set, Tuple

import pandas as pd

from src.utils.models import CONTRACT_VIOLATION, ENTRY_FUNCTION, PipelineError, ParameterSpec, TransformationUnit

_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off"}
# Names the sandbox prelude provides; a placeholder may never shadow them.
_RESERVED_NAMES = {"pd", "np", "df", "datetime", "timedelta", "parameters", ENTRY_FUNCTION}


@dataclass(frozen=True)
class BoundUnit:
    unit: TransformationUnit
    source: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    substituted: Tuple[str, ...] = ()


def _coerce_number(name: str, value: Any) -> Any:
    if isinstance(value, bool):
        raise PipelineError(CONTRACT_VIOLATION, f"Parameter '{name}' expects a number, got a boolean")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            pass
    raise PipelineError(CONTRACT_VIOLATION, f"Parameter '{name}' expects a number, got {value!r}")


def _coerce_boolean(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise PipelineError(CONTRACT_VIOLATION, f"Parameter '{name}' expects a boolean, got {value!r}")


def _coerce_date(name: str, value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        try:
            pd.Timestamp(value.strip())
        except (ValueError, TypeError):
            raise PipelineError(CONTRACT_VIOLATION, f"Parameter '{name}' expects a date, got {value!r}")
        return value.strip()
    raise PipelineError(CONTRACT_VIOLATION, f"Parameter '{name}' expects a date, got {value!r}")


def coerce_value(spec: ParameterSpec, value: Any) -> Any:
    if value is None:
        return None
    if spec.type == "number":
        return _coerce_number(spec.name, value)
    if spec.type == "boolean":
        return _coerce_boolean(spec.name, value)
    if spec.type == "date":
        return _coerce_date(spec.name, value)
    if isinstance(value, (dict, list)):
        return value
    return str(value)


def bind(unit: TransformationUnit, supplied_values: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Resolves every declared parameter: the supplied value when present,
    otherwise the declared default. Supplied names that are not declared are
    ignored. The result always has one entry per declared parameter.
    """
    supplied = supplied_values or {}
    bound: Dict[str, Any] = {}
    for spec in unit.declared_parameters:
        raw = supplied[spec.name] if spec.name in supplied else spec.default_value
        bound[spec.name] = coerce_value(spec, raw)
    return bound


def entry_arguments(source: str) -> Tuple[Set[str], bool]:
    """(argument names of the entry function, whether it takes **kwargs)."""
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return set(), False
    for node in tree.body:
        if isinstance(node, ast.FunctionDef) and node.name == ENTRY_FUNCTION:
            args = node.args
            names = {a.arg for a in args.posonlyargs + args.args + args.kwonlyargs}
            return names, args.kwarg is not None
    return set(), False


def _non_placeholder_uses(tree: ast.AST, name: str) -> Iterable[str]:
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id == name and not isinstance(node.ctx, ast.Load):
            yield "assigned"
        elif isinstance(node, ast.arg) and node.arg == name:
            yield "a function argument"
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)) and node.name == name:
            yield "a definition name"
        elif isinstance(node, ast.Attribute) and node.attr == name:
            yield "an attribute"
        elif isinstance(node, ast.keyword) and node.arg == name:
            yield "a keyword argument"
        elif isinstance(node, ast.alias) and (node.asname or node.name.split(".")[0]) == name:
            yield "an import"
        elif isinstance(node, (ast.Global, ast.Nonlocal)) and name in node.names:
            yield "a global/nonlocal declaration"


def check_placeholders(source: str, names: Iterable[str]) -> None:
    """
    Verifies each name is a free placeholder in source: a plain identifier
    that is only ever read. Raises PipelineError(contract_violation) otherwise.
    """
    try:
        tree = ast.parse(source)
    except SyntaxError as e:
        raise PipelineError(CONTRACT_VIOLATION, f"Playbook code is not valid Python: {e}")
    for name in names:
        if not name.isidentifier() or keyword.iskeyword(name):
            raise PipelineError(CONTRACT_VIOLATION, f"Parameter name '{name}' is not a valid placeholder")
        if name in _RESERVED_NAMES or hasattr(builtins, name):
            raise PipelineError(CONTRACT_VIOLATION, f"Parameter name '{name}' collides with a reserved identifier")
        uses = sorted(set(_non_placeholder_uses(tree, name)))
        if uses:
            raise PipelineError(
                CONTRACT_VIOLATION,
                f"Parameter name '{name}' collides with a non-placeholder identifier ({', '.join(uses)})",
            )


def _literal(name: str, value: Any) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        raise PipelineError(CONTRACT_VIOLATION, f"Parameter '{name}' has a non-finite value")
    text = repr(value)
    try:
        ast.literal_eval(text)
    except (ValueError, SyntaxError):
        raise PipelineError(CONTRACT_VIOLATION, f"Parameter '{name}' has no literal representation")
    return text


def substitute_parameters(source: str, values: Dict[str, Any]) -> Tuple[str, Tuple[str, ...]]:
    """
    Replaces bare name tokens with the literal of their bound value. Strings and
    comments are never touched because only NAME tokens are considered.
    Returns (new_source, names_actually_substituted).
    """
    if not values:
        return source, ()
    check_placeholders(source, values.keys())
    literals = {name: _literal(name, value) for name, value in values.items()}

    hits = []
    try:
        for tok in tokenize.generate_tokens(io.StringIO(source).readline):
            if tok.type == tokenize.NAME and tok.string in literals:
                hits.append((tok.start, tok.end, tok.string))
    except (tokenize.TokenError, IndentationError) as e:
        raise PipelineError(CONTRACT_VIOLATION, f"Playbook code could not be tokenized: {e}")

    lines = source.splitlines(keepends=True)
    for (row, col_start), (_, col_end), name in sorted(hits, reverse=True):
        line = lines[row - 1]
        lines[row - 1] = line[:col_start] + literals[name] + line[col_end:]
    used = tuple(sorted({name for _, _, name in hits}))
    return "".join(lines), used


def bind_for_execution(
    unit: TransformationUnit,
    supplied_values: Optional[Dict[str, Any]] = None,
    substitute: bool = False,
) -> BoundUnit:
    """
    Produces the final code and argument map for one execution. With
    substitute=True (playbook runs), parameters the entry function does not
    accept as arguments are inlined into the source as literals.
    """
    parameters = bind(unit, supplied_values)
    if not substitute:
        return BoundUnit(unit=unit, source=unit.source, parameters=parameters)
    accepted, takes_kwargs = entry_arguments(unit.source)
    inline = {k: v for k, v in parameters.items() if not takes_kwargs and k not in accepted}
    source, used = substitute_parameters(unit.source, inline)
    return BoundUnit(unit=unit, source=source, parameters=parameters, substituted=used)
