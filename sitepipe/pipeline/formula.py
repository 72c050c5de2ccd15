"""Restricted arithmetic for the ``calculate`` transform.

Formulas reference record fields as ``{field}`` or ``{nested.field}`` and may
use numeric literals, parentheses, unary signs and ``+ - * / // % **``.
Anything else (names, calls, attributes, subscripts, comparisons) is rejected
when the formula is compiled; nothing is ever evaluated as Python code.
"""

from __future__ import annotations

import ast
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .records import get_nested_value, normalize_number, to_number

_FIELD_REF = re.compile(r"\{([A-Za-z0-9_.]+)\}")
_MAX_EXPONENT = 100

_BINARY_OPS: dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


class FormulaError(ValueError):
    """The formula uses syntax outside the arithmetic grammar."""


class FormulaEvaluationError(ArithmeticError):
    """The formula is valid but cannot be computed for this record."""


@dataclass(frozen=True)
class Formula:
    source: str
    tree: ast.Expression
    fields: Mapping[str, str]  # placeholder name -> field path

    def evaluate(self, record: Mapping[str, Any]) -> int | float:
        return normalize_number(self._eval(self.tree.body, record))

    def _eval(self, node: ast.AST, record: Mapping[str, Any]) -> float:
        if isinstance(node, ast.Constant):
            return float(node.value)
        if isinstance(node, ast.Name):
            path = self.fields[node.id]
            number = to_number(get_nested_value(record, path))
            if number is None:
                raise FormulaEvaluationError(f"Field '{path}' is missing or not numeric")
            return number
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self._eval(node.operand, record))
        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, record)
            right = self._eval(node.right, record)
            if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
                raise FormulaEvaluationError(f"Exponent {right} exceeds {_MAX_EXPONENT}")
            try:
                return _BINARY_OPS[type(node.op)](left, right)
            except (ZeroDivisionError, OverflowError) as exc:
                raise FormulaEvaluationError(str(exc)) from exc
        raise FormulaError(f"Unsupported expression: {ast.dump(node)}")


def _check(node: ast.AST, fields: Mapping[str, str]) -> None:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaError(f"Only numeric literals are allowed, got {node.value!r}")
    elif isinstance(node, ast.Name):
        if node.id not in fields:
            raise FormulaError(f"Bare name '{node.id}' is not allowed; use {{field}} references")
    elif isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY_OPS:
            raise FormulaError(f"Operator {type(node.op).__name__} is not allowed")
        _check(node.operand, fields)
    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BINARY_OPS:
            raise FormulaError(f"Operator {type(node.op).__name__} is not allowed")
        _check(node.left, fields)
        _check(node.right, fields)
    else:
        raise FormulaError(f"{type(node).__name__} is not allowed in formulas")


def compile_formula(formula: str) -> Formula:
    """Parse and validate a formula.

    Raises:
        FormulaError: If the formula is empty, malformed, or uses syntax
            outside the arithmetic grammar.
    """
    if not formula or not formula.strip():
        raise FormulaError("Formula is empty")

    fields: dict[str, str] = {}

    def _placeholder(match: re.Match[str]) -> str:
        name = f"__field_{len(fields)}"
        fields[name] = match.group(1)
        return name

    expression = _FIELD_REF.sub(_placeholder, formula)
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"Invalid formula '{formula}': {exc.msg}") from exc

    _check(tree.body, fields)
    return Formula(source=formula, tree=tree, fields=fields)
