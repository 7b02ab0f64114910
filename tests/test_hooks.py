import pytest

from compiler import compile_expression
from hooks import HookRegistrationError, HookRegistry, StepRule
from instructions import ADD, Bin, End, Push
from machine import HookError, Machine, StackUnderflow, StepLimitReached, install_step_limit
from tree import Assign, Literal, Variable, While


ENDLESS = While(Literal(1), Assign(0, Variable(0)))


def test_events_fire_in_order():
    hooks = HookRegistry()
    seen = []
    hooks.register("program_start", lambda machine: seen.append("start"))
    hooks.register("before_instruction", lambda machine, ip, ins: seen.append(f"before {ip} {ins}"))
    hooks.register("after_instruction", lambda machine, ip, ins: seen.append(f"after {ip}"))
    hooks.register("program_end", lambda machine, result: seen.append(f"end {result}"))

    assert Machine((Push(2), End()), hooks=hooks).run() == 2
    assert seen == ["start", "before 0 Push 2", "after 0", "before 1 End", "after 1", "end 2"]


def test_callbacks_run_by_priority():
    hooks = HookRegistry()
    seen = []

    @hooks.on("program_start", priority=1)
    def low(machine):
        seen.append("low")

    @hooks.on("program_start", priority=10)
    def high(machine):
        seen.append("high")

    @hooks.on("program_start", priority=1)
    def low_again(machine):
        seen.append("low again")

    Machine((Push(0), End()), hooks=hooks).run()
    assert seen == ["high", "low", "low again"]


def test_on_error_receives_error():
    hooks = HookRegistry()
    errors = []
    hooks.register("on_error", lambda machine, error: errors.append(error))
    with pytest.raises(StackUnderflow) as excinfo:
        Machine((Bin(ADD), End()), hooks=hooks).run()
    assert errors == [excinfo.value]


def test_failing_callback_is_reported_as_machine_error():
    hooks = HookRegistry()

    @hooks.on("before_instruction")
    def broken(machine, ip, instruction):
        raise RuntimeError("boom")

    with pytest.raises(HookError) as excinfo:
        Machine((Push(1), End()), hooks=hooks).run()
    assert "boom" in excinfo.value.message
    assert excinfo.value.rule == "HookError"


def test_failing_after_instruction_reports_that_instruction():
    hooks = HookRegistry()

    @hooks.on("after_instruction")
    def broken(machine, ip, instruction):
        if ip == 1:
            raise RuntimeError("boom")

    with pytest.raises(HookError) as excinfo:
        Machine((Push(1), Push(2), Bin(ADD), End()), hooks=hooks).run()
    assert excinfo.value.ip == 1


def test_step_rule_every_n_steps():
    hooks = HookRegistry()
    seen = []

    @hooks.every(2)
    def sample(machine, ctx):
        seen.append((ctx.step_index, ctx.ip, str(ctx.instruction), ctx.depth))

    Machine((Push(1), Push(2), Bin(ADD), Push(3), Bin(ADD), End()), hooks=hooks).run()
    assert seen == [(0, 0, "Push 1", 1), (2, 2, "Bin Add", 1), (4, 4, "Bin Add", 1)]


def test_failing_step_rule_names_the_rule():
    hooks = HookRegistry()

    @hooks.every(1, name="flaky")
    def flaky(machine, ctx):
        raise KeyError(ctx.ip)

    with pytest.raises(HookError, match="Step rule 'flaky' failed") as excinfo:
        Machine((Push(1), End()), hooks=hooks).run()
    assert excinfo.value.ip == 0


def test_step_limit_stops_endless_loop():
    hooks = HookRegistry()
    install_step_limit(hooks, 50)
    with pytest.raises(StepLimitReached) as excinfo:
        Machine(compile_expression(ENDLESS), slots=[0], hooks=hooks).run()
    assert excinfo.value.step_index == 49
    # step 49 is the loop's Jump back to the condition, not the instruction after it
    assert excinfo.value.ip == 4


def test_step_limit_allows_program_that_fits():
    hooks = HookRegistry()
    install_step_limit(hooks, 2)
    assert Machine((Push(5), End()), hooks=hooks).run() == 5


def test_step_limit_must_be_positive():
    with pytest.raises(ValueError):
        install_step_limit(HookRegistry(), 0)


def test_unknown_event_is_rejected():
    with pytest.raises(HookRegistrationError):
        HookRegistry().register("on_tuesday", lambda: None)


def test_step_rule_interval_must_be_positive():
    with pytest.raises(HookRegistrationError):
        HookRegistry().add_step_rule(StepRule(name="never", every_n=0, handler=lambda machine, ctx: None))
