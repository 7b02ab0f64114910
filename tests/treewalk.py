"""Reference tree-walking evaluator and random program generator for the property tests."""

from typing import Dict, List, Optional

import numpy as np

from tree import (
    ADD,
    NOT_EQUAL,
    SUBTRACT,
    Assign,
    BinaryOp,
    Expression,
    Literal,
    Sequence,
    Variable,
    While,
    sequence,
)


def evaluate(expr: Expression, env: Dict[int, int]) -> Optional[int]:
    """Evaluate ``expr`` directly, keeping variables in ``env``.

    Statements (Assign, While) produce no value; a Sequence yields the value
    of its last part that produced one.
    """
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Variable):
        return env[expr.slot]
    if isinstance(expr, Assign):
        env[expr.slot] = evaluate(expr.expression, env)
        return None
    if isinstance(expr, BinaryOp):
        a = evaluate(expr.left, env)
        b = evaluate(expr.right, env)
        if expr.op == ADD:
            return a + b
        if expr.op == SUBTRACT:
            return a - b
        if expr.op == NOT_EQUAL:
            return 1 if a != b else 0
        raise ValueError(expr.op)
    if isinstance(expr, Sequence):
        first = evaluate(expr.first, env)
        rest = evaluate(expr.rest, env)
        return first if rest is None else rest
    if isinstance(expr, While):
        while evaluate(expr.condition, env) != 0:
            evaluate(expr.body, env)
        return None
    raise TypeError(expr)


class ProgramGenerator:
    """Builds random terminating programs over a fixed number of preloaded slots.

    Every statement leaves the stack depth unchanged, so the variable region
    at the bottom of the machine stack never gets shifted by leftover
    operands. Loops count a dedicated slot down to zero.
    """

    def __init__(self, seed: int, n_slots: int = 4, max_depth: int = 3) -> None:
        self.rng = np.random.default_rng(seed)
        self.n_slots = n_slots
        self.max_depth = max_depth

    def _int(self, low: int, high: int) -> int:
        return int(self.rng.integers(low, high))

    def initial_slots(self) -> List[int]:
        return [self._int(-20, 21) for _ in range(self.n_slots)]

    def expression(self, depth: int = 0) -> Expression:
        if depth >= self.max_depth or self.rng.random() < 0.3:
            if self.rng.random() < 0.5:
                return Literal(self._int(-9, 10))
            return Variable(self._int(0, self.n_slots))
        op = (ADD, SUBTRACT, NOT_EQUAL)[self._int(0, 3)]
        return BinaryOp(op, self.expression(depth + 1), self.expression(depth + 1))

    def statement(self, protected: List[int], loop_depth: int) -> Expression:
        free = [slot for slot in range(self.n_slots) if slot not in protected]
        if loop_depth < 2 and len(free) > 1 and self.rng.random() < 0.25:
            return self.loop(protected, free, loop_depth)
        slot = free[self._int(0, len(free))]
        return Assign(slot, self.expression())

    def loop(self, protected: List[int], free: List[int], loop_depth: int) -> Expression:
        counter = free[self._int(0, len(free))]
        inner = protected + [counter]
        body = [self.statement(inner, loop_depth + 1) for _ in range(self._int(0, 3))]
        body.append(Assign(counter, BinaryOp(SUBTRACT, Variable(counter), Literal(1))))
        loop = While(BinaryOp(NOT_EQUAL, Variable(counter), Literal(0)), sequence(*body))
        return sequence(Assign(counter, Literal(self._int(0, 5))), loop)

    def program(self) -> Expression:
        statements = [self.statement([], 0) for _ in range(self._int(0, 6))]
        statements.append(self.expression())
        return sequence(*statements)
