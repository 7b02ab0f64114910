from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Dict, List

from instructions import ADD, BINARY_OPS, NOT_EQUAL, SUBTRACT, VMError


class TreeFormatError(VMError):
    """Raised when a JSON document does not describe an expression tree."""


class Expression:
    pass


@dataclass(frozen=True)
class Literal(Expression):
    value: int


@dataclass(frozen=True)
class Variable(Expression):
    slot: int


@dataclass(frozen=True)
class Assign(Expression):
    slot: int
    expression: Expression


@dataclass(frozen=True)
class BinaryOp(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class Sequence(Expression):
    first: Expression
    rest: Expression


@dataclass(frozen=True)
class While(Expression):
    condition: Expression
    body: Expression


def sequence(*expressions: Expression) -> Expression:
    """Fold expressions into a right-nested Sequence chain."""
    if not expressions:
        raise ValueError("sequence() needs at least one expression")
    result = expressions[-1]
    for expr in reversed(expressions[:-1]):
        result = Sequence(expr, result)
    return result


def tree_to_dict(expr: Expression) -> Dict[str, Any]:
    if isinstance(expr, Literal):
        return {"type": "Literal", "value": expr.value}
    if isinstance(expr, Variable):
        return {"type": "Variable", "slot": expr.slot}
    if isinstance(expr, Assign):
        return {"type": "Assign", "slot": expr.slot, "expression": tree_to_dict(expr.expression)}
    if isinstance(expr, BinaryOp):
        return {"type": "BinaryOp", "op": expr.op, "left": tree_to_dict(expr.left), "right": tree_to_dict(expr.right)}
    if isinstance(expr, Sequence):
        return {"type": "Sequence", "first": tree_to_dict(expr.first), "rest": tree_to_dict(expr.rest)}
    if isinstance(expr, While):
        return {"type": "While", "condition": tree_to_dict(expr.condition), "body": tree_to_dict(expr.body)}
    raise TypeError(f"Not an expression node: {expr!r}")


class _TreeReader:
    def __init__(self, filename: str) -> None:
        self.filename = filename

    def _fail(self, path: str, message: str) -> TreeFormatError:
        return TreeFormatError(f"{message} at {self.filename}:{path}")

    def _field(self, node: Dict[str, Any], name: str, path: str) -> Any:
        if name not in node:
            raise self._fail(path, f"Missing field '{name}'")
        return node[name]

    def _int(self, node: Dict[str, Any], name: str, path: str, *, non_negative: bool = False) -> int:
        value = self._field(node, name, path)
        # bool is an int subclass but never a valid literal here
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._fail(f"{path}.{name}", f"Field '{name}' must be an integer")
        if non_negative and value < 0:
            raise self._fail(f"{path}.{name}", f"Field '{name}' must be non-negative")
        return value

    def read(self, node: Any, path: str = "$") -> Expression:
        if not isinstance(node, dict):
            raise self._fail(path, "Expected an object")
        kind = node.get("type")
        if kind == "Literal":
            return Literal(self._int(node, "value", path))
        if kind == "Variable":
            return Variable(self._int(node, "slot", path, non_negative=True))
        if kind == "Assign":
            slot = self._int(node, "slot", path, non_negative=True)
            return Assign(slot, self.read(self._field(node, "expression", path), f"{path}.expression"))
        if kind == "BinaryOp":
            op = self._field(node, "op", path)
            if op not in BINARY_OPS:
                raise self._fail(f"{path}.op", f"Unknown binary operator {op!r}")
            left = self.read(self._field(node, "left", path), f"{path}.left")
            right = self.read(self._field(node, "right", path), f"{path}.right")
            return BinaryOp(op, left, right)
        if kind == "Sequence":
            if "body" in node:
                body = node["body"]
                if not isinstance(body, list) or not body:
                    raise self._fail(f"{path}.body", "Field 'body' must be a non-empty list")
                items: List[Expression] = [self.read(item, f"{path}.body[{i}]") for i, item in enumerate(body)]
                return sequence(*items)
            first = self.read(self._field(node, "first", path), f"{path}.first")
            rest = self.read(self._field(node, "rest", path), f"{path}.rest")
            return Sequence(first, rest)
        if kind == "While":
            condition = self.read(self._field(node, "condition", path), f"{path}.condition")
            body = self.read(self._field(node, "body", path), f"{path}.body")
            return While(condition, body)
        raise self._fail(path, f"Unknown node type {kind!r}")


def tree_from_dict(data: Any, filename: str = "<tree>") -> Expression:
    return _TreeReader(filename).read(data)


def load_tree(text: str, filename: str = "<string>") -> Expression:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise TreeFormatError(f"Invalid JSON at {filename}:{exc.lineno}:{exc.colno}: {exc.msg}") from exc
    return tree_from_dict(data, filename)
