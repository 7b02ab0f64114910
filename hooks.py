"""Callbacks a caller can attach to a running machine.

Events and the arguments their callbacks receive:

    program_start       (machine)
    before_instruction  (machine, ip, instruction)
    after_instruction   (machine, ip, instruction)
    program_end         (machine, result)
    on_error            (machine, error)

Step rules run after every N-th executed instruction (End excluded) and
receive ``(machine, StepContext)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List

from instructions import Instruction, VMError


EVENTS = (
    "program_start",
    "before_instruction",
    "after_instruction",
    "program_end",
    "on_error",
)


class HookRegistrationError(VMError):
    pass


@dataclass(frozen=True)
class StepContext:
    step_index: int
    ip: int
    instruction: Instruction
    depth: int


StepHandler = Callable[[Any, StepContext], None]


@dataclass(frozen=True)
class StepRule:
    name: str
    every_n: int
    handler: StepHandler


class HookRegistry:
    def __init__(self) -> None:
        # event -> [(priority, callback)], highest priority first
        self._callbacks: Dict[str, List[tuple]] = {event: [] for event in EVENTS}
        self.step_rules: List[StepRule] = []

    def register(self, event: str, callback: Callable[..., None], *, priority: int = 0) -> None:
        if event not in self._callbacks:
            raise HookRegistrationError(f"Unknown event '{event}'")
        entries = self._callbacks[event]
        entries.append((priority, callback))
        # stable sort keeps registration order among equal priorities
        entries.sort(key=lambda entry: -entry[0])

    def on(self, event: str, *, priority: int = 0) -> Callable[[Callable[..., None]], Callable[..., None]]:
        def deco(fn: Callable[..., None]) -> Callable[..., None]:
            self.register(event, fn, priority=priority)
            return fn
        return deco

    def callbacks(self, event: str) -> List[Callable[..., None]]:
        return [callback for _priority, callback in self._callbacks[event]]

    def add_step_rule(self, rule: StepRule) -> None:
        if rule.every_n <= 0:
            raise HookRegistrationError(f"Step rule '{rule.name}' needs every_n >= 1")
        self.step_rules.append(rule)

    def every(self, every_n: int, *, name: str = "") -> Callable[[StepHandler], StepHandler]:
        def deco(fn: StepHandler) -> StepHandler:
            self.add_step_rule(StepRule(name=name or fn.__name__, every_n=every_n, handler=fn))
            return fn
        return deco

    def due_rules(self, step_index: int) -> Iterator[StepRule]:
        for rule in self.step_rules:
            if step_index % rule.every_n == 0:
                yield rule
