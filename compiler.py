from __future__ import annotations
from typing import Dict, List, Tuple, Union

from instructions import (
    Bin,
    End,
    Get,
    Instruction,
    Jump,
    JumpIfZero,
    Program,
    Push,
    Set,
    format_listing,
)
from tree import Assign, BinaryOp, Expression, Literal, Sequence, Variable, While


# A work-list item is either a node still to be expanded or an instruction
# whose operands have already been emitted.
_Work = Union[Expression, Instruction]


class Compiler:
    """Translates an expression tree into a flat instruction sequence.

    Both passes walk the tree with an explicit work-list, so tree depth is
    not limited by the Python call stack. The first pass measures how many
    instructions every node compiles to; the second emits instructions in
    order, and a node's absolute offset is simply the number of instructions
    emitted before it. Loop exits are computed from the measured lengths, so
    nothing is patched after emission. The compiler keeps no state between
    calls.
    """

    def compile(self, expr: Expression) -> Program:
        sizes = self._measure(expr)
        code: List[Instruction] = []
        work: List[_Work] = [expr]
        while work:
            item = work.pop()
            if isinstance(item, Instruction):
                code.append(item)
            elif isinstance(item, Literal):
                code.append(Push(item.value))
            elif isinstance(item, Variable):
                code.append(Get(item.slot))
            elif isinstance(item, Assign):
                work.append(Set(item.slot))
                work.append(item.expression)
            elif isinstance(item, BinaryOp):
                # left operand is pushed first; the machine pops right then left
                work.append(Bin(item.op))
                work.append(item.right)
                work.append(item.left)
            elif isinstance(item, Sequence):
                work.append(item.rest)
                work.append(item.first)
            elif isinstance(item, While):
                start = len(code)
                after = start + sizes[id(item.condition)] + 1 + sizes[id(item.body)] + 1
                work.append(Jump(start))
                work.append(item.body)
                work.append(JumpIfZero(after))
                work.append(item.condition)
            else:
                raise TypeError(f"Cannot compile {item!r}: not an expression node")
        code.append(End())
        return tuple(code)

    def _measure(self, expr: Expression) -> Dict[int, int]:
        """Instruction count of every node, keyed by node identity."""
        sizes: Dict[int, int] = {}
        work: List[Tuple[Expression, bool]] = [(expr, False)]
        while work:
            node, children_done = work.pop()
            if id(node) in sizes:
                continue
            if isinstance(node, (Literal, Variable)):
                sizes[id(node)] = 1
                continue
            children = _children(node)
            if not children_done:
                work.append((node, True))
                work.extend((child, False) for child in children)
                continue
            # Assign, BinaryOp and While add control instructions around their parts
            extra = {Assign: 1, BinaryOp: 1, Sequence: 0, While: 2}[type(node)]
            sizes[id(node)] = extra + sum(sizes[id(child)] for child in children)
        return sizes


def _children(node: Expression) -> Tuple[Expression, ...]:
    if isinstance(node, Assign):
        return (node.expression,)
    if isinstance(node, BinaryOp):
        return (node.left, node.right)
    if isinstance(node, Sequence):
        return (node.first, node.rest)
    if isinstance(node, While):
        return (node.condition, node.body)
    raise TypeError(f"Cannot compile {node!r}: not an expression node")


def compile_expression(expr: Expression) -> Program:
    return Compiler().compile(expr)


def compile_listing(expr: Expression) -> str:
    return format_listing(compile_expression(expr), numbered=True)
