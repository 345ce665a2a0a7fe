"""
Calculator tool — evaluates arithmetic expressions for the agent.

Walks the parsed AST and only allows numeric constants and arithmetic
operators, so nothing the model sends can reach eval().
"""

import ast
import logging
import operator

logger = logging.getLogger(__name__)

_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def _evaluate(node):
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _OPS:
        return _OPS[type(node.op)](_evaluate(node.left), _evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _OPS:
        return _OPS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


class CalculatorTool:
    name = "calculator"
    description = "Evaluate an arithmetic expression (+ - * / // % ** and parentheses)."
    parameters = {
        "type": "object",
        "properties": {
            "expression": {"type": "string", "description": "e.g. (3 + 4) * 2"},
        },
        "required": ["expression"],
    }
    unsafe = False

    def run(self, arguments: dict) -> str:
        expression = str(arguments.get("expression", "")).strip()
        if not expression:
            raise ValueError("missing 'expression'")
        cleaned = expression.replace("^", "**").replace("×", "*").replace("÷", "/")

        result = _evaluate(ast.parse(cleaned, mode="eval"))
        if isinstance(result, float) and result.is_integer():
            result = int(result)
        logger.debug("calculator: %s = %s", cleaned, result)
        return f"{cleaned} = {result}"
