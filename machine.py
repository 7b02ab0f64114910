from __future__ import annotations
import json
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

import numpy as np
from numpy.typing import NDArray

from hooks import HookRegistry, StepContext, StepRule
from instructions import (
    ADD,
    NOT_EQUAL,
    SUBTRACT,
    Bin,
    End,
    Get,
    Instruction,
    Jump,
    JumpIfZero,
    Program,
    Push,
    Set,
    VMError,
)


def _as_bool(value: bool) -> int:
    return 1 if value else 0


BINARY_FUNCS: Dict[str, Callable[[int, int], int]] = {
    ADD: lambda a, b: a + b,
    SUBTRACT: lambda a, b: a - b,
    NOT_EQUAL: lambda a, b: _as_bool(a != b),
}


class MachineError(VMError):
    """Raised when execution halts on a fault.

    ``ip`` is the instruction pointer of the offending instruction and
    ``rule`` names the failure kind. ``step_index`` is filled in from the
    state log once the error leaves the run loop.
    """

    def __init__(self, message: str, *, ip: Optional[int] = None, rule: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.ip = ip
        self.rule = rule or self.__class__.__name__
        self.step_index: Optional[int] = None

    @property
    def kind(self) -> str:
        return self.rule


class SlotOutOfRange(MachineError):
    pass


class StackUnderflow(MachineError):
    pass


class InvalidJumpTarget(MachineError):
    pass


class InvalidInstruction(MachineError):
    pass


class StepLimitReached(MachineError):
    pass


class HookError(MachineError):
    pass


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    ip: int
    instruction: str
    depth: int
    stack_snapshot: Optional[List[int]]


# Steps kept for tracebacks unless a caller asks for the whole run.
DEFAULT_HISTORY = 64


class StateLogger:
    """Records executed steps.

    Only the last ``history`` entries are kept (all of them when ``history``
    is None); execution counts per address are tallied for the whole run.
    """

    def __init__(self, verbose: bool, program_length: int, history: Optional[int] = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.counts: NDArray[np.int64] = np.zeros(program_length, dtype=np.int64)

    def record(self, *, ip: int, instruction: Instruction, stack: List[int]) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            ip=ip,
            instruction=str(instruction),
            depth=len(stack),
            stack_snapshot=list(stack) if self.verbose else None,
        )
        self.entries.append(entry)
        self.counts[ip] += 1
        self.next_state_index += 1
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None

    def recent(self, limit: int) -> List[StateEntry]:
        if limit <= 0:
            return []
        return list(self.entries)[-limit:]

    def instruction_counts(self, length: int) -> NDArray[np.int64]:
        """Number of times each program address was executed."""
        counts = self.counts[:length]
        if len(counts) < length:
            counts = np.pad(counts, (0, length - len(counts)))
        return counts.copy()


class Machine:
    def __init__(
        self,
        program: Iterable[Instruction],
        *,
        slots: Iterable[int] = (),
        verbose: bool = False,
        hooks: Optional[HookRegistry] = None,
        history: Optional[int] = DEFAULT_HISTORY,
    ) -> None:
        self.program: Program = tuple(program)
        self.stack: List[int] = list(slots)
        self.ip = 0
        self.verbose = verbose
        self.hooks = hooks or HookRegistry()
        self.logger = StateLogger(verbose=verbose, program_length=len(self.program), history=history)

    @property
    def slots(self) -> List[int]:
        return list(self.stack)

    def run(self) -> int:
        self._notify("program_start", self)
        try:
            result = self._loop()
        except MachineError as error:
            last = self.logger.last_entry
            if last is not None:
                error.step_index = last.step_index
            self._notify("on_error", self, error, ip=error.ip)
            raise
        except Exception as exc:
            # Python-level faults are reported through the same channel as
            # machine faults so callers only need to handle MachineError.
            wrapped = MachineError(f"Internal machine error: {exc}", ip=self.ip, rule="internal")
            last = self.logger.last_entry
            if last is not None:
                wrapped.step_index = last.step_index
            self._notify("on_error", self, wrapped, ip=wrapped.ip)
            raise wrapped from exc
        self._notify("program_end", self, result)
        return result

    def _loop(self) -> int:
        program = self.program
        length = len(program)
        stack = self.stack
        record = self.logger.record
        before = self.hooks.callbacks("before_instruction")
        after = self.hooks.callbacks("after_instruction")
        notify = self._notify
        run_step_rules = self._run_step_rules if self.hooks.step_rules else None
        pop = self._pop

        while True:
            ip = self.ip
            if not 0 <= ip < length:
                raise InvalidJumpTarget(f"Instruction pointer {ip} ran outside program of length {length}", ip=ip)
            instruction = program[ip]
            entry = record(ip=ip, instruction=instruction, stack=stack)
            if before:
                notify("before_instruction", self, ip, instruction, ip=ip)

            if isinstance(instruction, Push):
                stack.append(instruction.value)
                self.ip = ip + 1
            elif isinstance(instruction, Get):
                slot = instruction.slot
                if not 0 <= slot < len(stack):
                    raise SlotOutOfRange(f"{instruction}: slot {slot} outside stack of depth {len(stack)}", ip=ip)
                stack.append(stack[slot])
                self.ip = ip + 1
            elif isinstance(instruction, Set):
                if not stack:
                    raise StackUnderflow(f"{instruction} needs 1 value(s) but the stack holds 0", ip=ip)
                slot = instruction.slot
                # depth once the value is popped; that depth itself is the
                # next free slot, which the first reference allocates
                depth = len(stack) - 1
                if not 0 <= slot <= depth:
                    raise SlotOutOfRange(f"{instruction}: slot {slot} outside stack of depth {depth}", ip=ip)
                value = stack.pop()
                if slot < depth:
                    stack[slot] = value
                else:
                    stack.append(value)
                self.ip = ip + 1
            elif isinstance(instruction, Bin):
                func = BINARY_FUNCS.get(instruction.op)
                if func is None:
                    raise InvalidInstruction(f"Unknown binary operator '{instruction.op}'", ip=ip)
                left, right = pop(instruction, ip, 2)
                stack.append(func(left, right))
                self.ip = ip + 1
            elif isinstance(instruction, Jump):
                self._check_target(instruction, ip, length)
                self.ip = instruction.target
            elif isinstance(instruction, JumpIfZero):
                self._check_target(instruction, ip, length)
                value = pop(instruction, ip, 1)[0]
                self.ip = instruction.target if value == 0 else ip + 1
            elif isinstance(instruction, End):
                result = pop(instruction, ip, 1)[0]
                if after:
                    notify("after_instruction", self, ip, instruction, ip=ip)
                return result
            else:
                raise InvalidInstruction(f"Not an instruction: {instruction!r}", ip=ip)

            if after:
                notify("after_instruction", self, ip, instruction, ip=ip)
            if run_step_rules is not None:
                run_step_rules(entry.step_index, ip, instruction)

    def _pop(self, instruction: Instruction, ip: int, count: int) -> List[int]:
        """Remove the top ``count`` values, returned bottom-most first."""
        stack = self.stack
        if len(stack) < count:
            raise StackUnderflow(
                f"{instruction} needs {count} value(s) but the stack holds {len(stack)}",
                ip=ip,
            )
        values = stack[len(stack) - count:]
        del stack[len(stack) - count:]
        return values

    def _check_target(self, instruction: Any, ip: int, length: int) -> None:
        target = instruction.target
        if not 0 <= target < length:
            raise InvalidJumpTarget(f"{instruction}: target outside program of length {length}", ip=ip)

    def _run_step_rules(self, step_index: int, ip: int, instruction: Instruction) -> None:
        ctx = StepContext(step_index=step_index, ip=ip, instruction=instruction, depth=len(self.stack))
        for rule in self.hooks.due_rules(step_index):
            try:
                rule.handler(self, ctx)
            except MachineError:
                raise
            except Exception as exc:
                raise HookError(f"Step rule '{rule.name}' failed: {exc}", ip=ip) from exc

    def _notify(self, event: str, *args: Any, ip: Optional[int] = None) -> None:
        where = self.ip if ip is None else ip
        for callback in self.hooks.callbacks(event):
            try:
                callback(*args)
            except MachineError:
                raise
            except Exception as exc:
                raise HookError(f"Hook '{event}' failed: {exc}", ip=where) from exc


def execute(
    program: Iterable[Instruction],
    slots: Iterable[int] = (),
    hooks: Optional[HookRegistry] = None,
) -> int:
    return Machine(program, slots=slots, hooks=hooks).run()


def install_step_limit(hooks: HookRegistry, max_steps: int) -> None:
    """Halt any machine using ``hooks`` once it has executed ``max_steps`` instructions.

    The machine itself never treats a long-running loop as a fault; this
    rule lets a caller put a ceiling on it.
    """
    if max_steps <= 0:
        raise ValueError("max_steps must be >= 1")

    def step_limit(machine: Machine, ctx: StepContext) -> None:
        if ctx.step_index + 1 >= max_steps:
            raise StepLimitReached(f"Step limit of {max_steps} reached", ip=ctx.ip)

    hooks.add_step_rule(StepRule(name="step_limit", every_n=1, handler=step_limit))


class TracebackFormatter:
    def __init__(self, machine: Machine, limit: int = 8) -> None:
        self.machine = machine
        self.limit = limit

    def format_text(self, error: MachineError, verbose: bool) -> str:
        lines = ["Traceback (most recent step last):"]
        for entry in self.machine.logger.recent(self.limit):
            lines.append(f"  Step {entry.step_index} ({entry.state_id}), ip {entry.ip}: {entry.instruction}")
            if verbose and entry.stack_snapshot is not None:
                lines.append(f"    Stack: {entry.stack_snapshot}")
        ip = "?" if error.ip is None else error.ip
        lines.append(f"{error.__class__.__name__}: {error.message} (ip {ip}, rule: {error.rule})")
        return "\n".join(lines)

    def to_json(self, error: MachineError) -> str:
        trace: List[Dict[str, Any]] = []
        for entry in self.machine.logger.recent(self.limit):
            item: Dict[str, Any] = {
                "step_index": entry.step_index,
                "state_id": entry.state_id,
                "ip": entry.ip,
                "instruction": entry.instruction,
                "depth": entry.depth,
            }
            if entry.stack_snapshot is not None:
                item["stack"] = entry.stack_snapshot
            trace.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "ip": error.ip,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "trace": trace,
        }
        return json.dumps(data, indent=2)
