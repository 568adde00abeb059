# Copyright (c) Microsoft. All rights reserved.

"""Evaluation of edge conditions against flow context variables.

A condition is either absent or ``else`` (always true), a single binary comparison (``route == 'agent'``,
``iteration < 3``), or an arithmetic expression that is true when it evaluates to a nonzero number. Anything
that cannot be evaluated is false.
"""

import ast
import math
import operator as op
from collections.abc import Callable, Mapping
from typing import Any

from .._logging import get_logger

__all__ = ["condition_matches", "evaluate_expression"]

logger = get_logger("agent_orchestrator.flows")

ITERATION_VARIABLE = "iteration"

# Two-character operators come first so "<=" is never split as "<".
_COMPARISONS: tuple[tuple[str, Callable[[Any, Any], bool]], ...] = (
    ("<=", op.le),
    (">=", op.ge),
    ("==", op.eq),
    ("!=", op.ne),
    ("<", op.lt),
    (">", op.gt),
)

_BINARY_OPERATORS: dict[type[ast.operator], Callable[[float, float], float]] = {
    ast.Add: op.add,
    ast.Sub: op.sub,
    ast.Mult: op.mul,
    ast.Div: op.truediv,
    ast.Mod: op.mod,
    ast.Pow: op.pow,
}

_UNARY_OPERATORS: dict[type[ast.unaryop], Callable[[float], float]] = {
    ast.UAdd: op.pos,
    ast.USub: op.neg,
}

_FUNCTIONS: dict[str, Callable[..., float]] = {
    "abs": abs,
    "sqrt": math.sqrt,
    "exp": math.exp,
    "ln": math.log,
    "log": math.log10,
    "floor": math.floor,
    "ceil": math.ceil,
    "round": round,
    "min": min,
    "max": max,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
}

_CONSTANTS: dict[str, float] = {"pi": math.pi, "e": math.e}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _number_value(token: str, variables: Mapping[str, Any], iteration: int | None) -> float | None:
    try:
        return float(token)
    except ValueError:
        pass
    if iteration is not None and token == ITERATION_VARIABLE:
        return float(iteration)
    value = variables.get(token)
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _string_value(token: str, variables: Mapping[str, Any], iteration: int | None) -> str:
    stripped = token.strip("'\"")
    if stripped != token:
        return stripped
    if iteration is not None and token == ITERATION_VARIABLE:
        return str(iteration)
    value = variables.get(token)
    if isinstance(value, str):
        return value
    if _is_number(value):
        return _format_number(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return token


def _compare(text: str, variables: Mapping[str, Any], iteration: int | None) -> bool | None:
    for symbol, compare in _COMPARISONS:
        left, found, right = text.partition(symbol)
        if not found:
            continue
        left, right = left.strip(), right.strip()
        if symbol in ("==", "!="):
            return compare(_string_value(left, variables, iteration), _string_value(right, variables, iteration))
        left_number = _number_value(left, variables, iteration)
        right_number = _number_value(right, variables, iteration)
        if left_number is None or right_number is None:
            return None
        return compare(left_number, right_number)
    return None


def evaluate_expression(expression: str, variables: Mapping[str, float]) -> float:
    """Evaluate an arithmetic expression over numeric ``variables``.

    Supports ``+ - * / % **``, unary signs, parentheses, ``pi``, ``e`` and a few math functions.

    Raises:
        ValueError: The expression uses anything else, references an unknown name, or is nested too deeply.
    """

    def _eval(node: ast.AST) -> float:
        if isinstance(node, ast.Constant) and _is_number(node.value):
            return float(node.value)
        if isinstance(node, ast.Name):
            if node.id in variables:
                return float(variables[node.id])
            if node.id in _CONSTANTS:
                return _CONSTANTS[node.id]
            raise ValueError(f"unknown variable '{node.id}'")
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
            return _UNARY_OPERATORS[type(node.op)](_eval(node.operand))
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            return _BINARY_OPERATORS[type(node.op)](_eval(node.left), _eval(node.right))
        if (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id in _FUNCTIONS
            and not node.keywords
        ):
            return float(_FUNCTIONS[node.func.id](*(_eval(arg) for arg in node.args)))
        raise ValueError("disallowed expression")

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as ex:
        raise ValueError(f"invalid expression: {ex.msg}") from ex
    except (RecursionError, MemoryError) as ex:
        raise ValueError("expression is nested too deeply") from ex
    try:
        return _eval(tree.body)
    except RecursionError as ex:
        raise ValueError("expression is nested too deeply") from ex


def condition_matches(condition: str | None, variables: Mapping[str, Any], iteration: int | None = None) -> bool:
    """Return whether an edge with ``condition`` can be taken."""
    if condition is None or condition.strip().lower() == "else":
        return True

    compared = _compare(condition, variables, iteration)
    if compared is not None:
        return compared

    numeric: dict[str, float] = {key: float(value) for key, value in variables.items() if _is_number(value)}
    if iteration is not None:
        numeric[ITERATION_VARIABLE] = float(iteration)
    try:
        return evaluate_expression(condition, numeric) != 0.0
    except (ValueError, ArithmeticError, TypeError, RecursionError, MemoryError) as ex:
        logger.debug("Condition '%s' could not be evaluated: %s", condition, ex)
        return False
