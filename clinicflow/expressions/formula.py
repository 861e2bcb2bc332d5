"""Calculator formula evaluation.

Formulas reference previously collected values by their nomenclature, e.g.
``peso / (altura/100)²``. Evaluation goes through a restricted AST walker so
only arithmetic is ever executed.
"""

from __future__ import annotations

import ast
import logging
import math
import operator
import re
from typing import Callable, Mapping

logger = logging.getLogger(__name__)

MAX_EXPONENT = 100

_SUPERSCRIPTS = {"²": "**2", "³": "**3"}

_BINARY_OPERATORS: dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS: dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


class FormulaError(ValueError):
    """Raised internally when a formula cannot be evaluated."""


def substitute(formula: str, values: Mapping[str, float]) -> str:
    """Replace whole-word nomenclature references with their numeric values."""

    expression = formula
    # Longest names first so "peso_ideal" is replaced before "peso".
    for name in sorted(values, key=len, reverse=True):
        pattern = re.compile(rf"\b{re.escape(name)}\b")
        expression = pattern.sub(lambda _m, v=values[name]: f"({float(v)!r})", expression)
    for glyph, replacement in _SUPERSCRIPTS.items():
        expression = expression.replace(glyph, replacement)
    return expression


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaError(f"Unsupported literal {node.value!r}")
        return float(node.value)
    if isinstance(node, ast.BinOp):
        op = _BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise FormulaError(f"Unsupported operator {type(node.op).__name__}")
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise FormulaError(f"Exponent {right} too large")
        return op(left, right)
    if isinstance(node, ast.UnaryOp):
        op = _UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise FormulaError(f"Unsupported operator {type(node.op).__name__}")
        return op(_eval_node(node.operand))
    if isinstance(node, ast.Name):
        raise FormulaError(f"Unknown field '{node.id}'")
    raise FormulaError(f"Unsupported expression {type(node).__name__}")


def evaluate_formula(formula: str, values: Mapping[str, float]) -> float:
    """Evaluate ``formula`` with ``values`` substituted.

    Returns ``0.0`` when the formula is empty, invalid, references unknown
    fields, divides by zero or produces a non-finite or complex result.
    Errors are logged and never raised, so a broken formula cannot block a
    patient's flow.
    """

    if not formula or not formula.strip():
        return 0.0

    expression = substitute(formula, values)
    try:
        tree = ast.parse(expression.strip(), mode="eval")
        result = _eval_node(tree)
    except (SyntaxError, FormulaError, ZeroDivisionError, OverflowError, TypeError) as e:
        logger.warning(f"Failed to evaluate formula {formula!r} ({expression!r}): {e}")
        return 0.0

    if isinstance(result, complex) or not math.isfinite(result):
        logger.warning(f"Formula {formula!r} produced a non-numeric result: {result!r}")
        return 0.0
    return float(result)
