"""Arithmetic tool."""

import ast
import operator
from typing import Any

from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)

ALLOWED_CHARACTERS = set("0123456789+-*/(). ")

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        return _BINARY_OPS[type(node.op)](_evaluate(node.left), _evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise ValueError("Unsupported expression")


def evaluate_expression(expression: str) -> float:
    """Evaluate a plain arithmetic expression (``+ - * /`` and parentheses)."""
    tree = ast.parse(expression.strip(), mode="eval")
    return float(_evaluate(tree))


class CalculateTool(Tool):
    """Evaluate arithmetic expressions."""

    name = "calculate"
    description = "Perform mathematical calculations. Supports +, -, *, /, parentheses."
    parameters = {
        "type": "object",
        "properties": {
            "expression": {
                "type": "string",
                "description": "Mathematical expression to evaluate, e.g., '(15 + 25) * 2'",
            },
        },
        "required": ["expression"],
    }

    async def execute(self, expression: str = "", **kwargs: Any) -> ToolResult:
        expression = str(expression or "")
        if not set(expression) <= ALLOWED_CHARACTERS:
            return ToolResult.fail("Expression contains invalid characters")
        try:
            result = evaluate_expression(expression)
        except (SyntaxError, ValueError, ZeroDivisionError) as e:
            log.debug("Calculation failed", expression=expression, error=str(e))
            return ToolResult.fail(f"Calculation error: {e}")
        return ToolResult(data={"expression": expression, "result": result})
