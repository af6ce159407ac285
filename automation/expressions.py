"""Expression evaluation for edge conditions and node configuration.

Supported forms:
- Bare conditions: ``amount > 1000``, ``status == "approved" and amount < 10``
- Brace references: ``{amount} > 1000``, ``Order {order.id} approved``
- Double-brace templates: ``{{ get_order.total * 2 }}``
- The triggering record: ``$record.status``, ``{$record.owner}``
- JS-style operators used by designers: ``&&``, ``||``, ``===``, ``!==``, ``!``
"""

import re
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)

_BRACE_REF = re.compile(r"(?<!\{)\{\s*(\$?[A-Za-z_][\w\-]*(?:\.[\w\-]+)*)\s*\}(?!\})")
_DOUBLE_BRACE = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_DOLLAR_NAME = re.compile(r"\$([A-Za-z_]\w*)")
_JS_NOT = re.compile(r"!(?!=)")

_SAFE_BUILTINS = {
    "True": True, "False": False, "None": None,
    "true": True, "false": False, "null": None,
    "len": len, "int": int, "float": float, "str": str,
    "bool": bool, "list": list, "abs": abs, "round": round,
    "min": min, "max": max, "sum": sum, "any": any, "all": all,
}


class _DotDict(dict):
    """Dict that supports attribute-style access for eval expressions.
    Handles id mismatches: get-order vs get_order."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            alt = name.replace("_", "-")
            if alt in self:
                return self[alt]
            raise AttributeError(f"No key '{name}' or '{alt}'")

    def __setattr__(self, name, value):
        self[name] = value


def _make_dot_dict(obj, _depth=0, _max_depth=50):
    """Recursively convert dicts to _DotDict for eval-friendly access."""
    if _depth >= _max_depth:
        return obj
    if isinstance(obj, dict) and not isinstance(obj, _DotDict):
        return _DotDict({k: _make_dot_dict(v, _depth + 1, _max_depth) for k, v in obj.items()})
    elif isinstance(obj, list):
        return [_make_dot_dict(item, _depth + 1, _max_depth) for item in obj]
    return obj


class ExpressionError(Exception):
    """An expression could not be evaluated."""


class ExpressionEvaluator:
    """Evaluates conditions and templates against a flow's working memory."""

    @staticmethod
    def _namespace(variables: dict) -> _DotDict:
        namespace = _DotDict()
        for key, value in variables.items():
            converted = _make_dot_dict(value)
            namespace[key] = converted
            # $record is addressable as `record` once the `$` is rewritten
            if key.startswith("$"):
                namespace[key[1:]] = converted
            if "-" in key:
                namespace[key.replace("-", "_")] = converted
        return namespace

    @staticmethod
    def _normalize(expression: str) -> str:
        expr = expression.strip()
        if expr.startswith("{{") and expr.endswith("}}"):
            expr = expr[2:-2].strip()
        expr = _BRACE_REF.sub(lambda m: m.group(1), expr)
        expr = expr.replace("===", "==").replace("!==", "!=")
        expr = expr.replace("&&", " and ").replace("||", " or ")
        expr = _JS_NOT.sub(" not ", expr)
        expr = _DOLLAR_NAME.sub(lambda m: m.group(1), expr)
        # Dashed node ids are exposed with underscores
        return re.sub(r"(?<=[A-Za-z0-9])-(?=[A-Za-z_])", "_", expr)

    @staticmethod
    def resolve_path(path: str, variables: dict) -> Any:
        """Resolve a dot-notation path like 'get_order.total' or '$record.status'."""
        parts = path.split(".")
        current: Any = variables
        for part in parts:
            if isinstance(current, dict):
                if part in current:
                    current = current[part]
                    continue
                alt = part.replace("_", "-") if "_" in part else part.replace("-", "_")
                if alt in current:
                    current = current[alt]
                    continue
                raise KeyError(f"Cannot resolve '{part}' in path '{path}'")
            elif isinstance(current, list):
                current = current[int(part)]
            elif hasattr(current, part):
                current = getattr(current, part)
            else:
                raise KeyError(f"Cannot resolve '{part}' in path '{path}'")
        return current

    @staticmethod
    def evaluate(expression: str, variables: dict) -> Any:
        """
        Evaluate an expression and return its value.

        Raises:
            ExpressionError: If the expression is malformed or references something undefined
        """
        expr = ExpressionEvaluator._normalize(expression)
        if not expr:
            raise ExpressionError("Empty expression")
        try:
            return ExpressionEvaluator.resolve_path(expr, variables)
        except (KeyError, IndexError, ValueError, TypeError):
            pass

        try:
            # Strip non-ASCII characters that break compile
            clean_expr = "".join(c if ord(c) < 128 else " " for c in expr)
            return eval(  # noqa: S307
                clean_expr,
                {"__builtins__": _SAFE_BUILTINS},
                ExpressionEvaluator._namespace(variables),
            )
        except Exception as exc:
            raise ExpressionError(f"Cannot evaluate {expression!r}: {exc}") from exc

    @staticmethod
    def evaluate_condition(expression: Optional[str], variables: dict) -> bool:
        """Evaluate an edge condition. Missing conditions are true, broken ones false."""
        if expression is None or not str(expression).strip():
            return True
        try:
            return bool(ExpressionEvaluator.evaluate(expression, variables))
        except ExpressionError as exc:
            logger.warning("condition_evaluation_failed", expression=expression, error=str(exc))
            return False

    @staticmethod
    def render(value: Any, variables: dict) -> Any:
        """Render a template string.

        A string that is a single ``{{ ... }}`` or ``{path}`` keeps the referenced
        value's type; mixed text gets each reference interpolated as a string.
        Unresolvable references are left untouched.
        """
        if not isinstance(value, str):
            return value

        stripped = value.strip()
        whole = _DOUBLE_BRACE.fullmatch(stripped) or _BRACE_REF.fullmatch(stripped)
        if whole:
            try:
                return ExpressionEvaluator.evaluate(whole.group(1), variables)
            except ExpressionError:
                return value

        def _interpolate(match: re.Match) -> str:
            try:
                resolved = ExpressionEvaluator.evaluate(match.group(1), variables)
            except ExpressionError:
                return match.group(0)
            return "" if resolved is None else str(resolved)

        rendered = _DOUBLE_BRACE.sub(_interpolate, value)
        return _BRACE_REF.sub(_interpolate, rendered)

    @staticmethod
    def resolve_config(config: Any, variables: dict) -> Any:
        """Recursively render all template strings in a node config."""
        if isinstance(config, dict):
            return {k: ExpressionEvaluator.resolve_config(v, variables) for k, v in config.items()}
        if isinstance(config, list):
            return [ExpressionEvaluator.resolve_config(v, variables) for v in config]
        return ExpressionEvaluator.render(config, variables)
