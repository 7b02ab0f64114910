"""stackvm entry point: compile an expression tree and run it on the stack machine."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from compiler import compile_expression
from hooks import HookRegistry
from instructions import ListingParseError, Program, format_listing, parse_listing
from machine import DEFAULT_HISTORY, Machine, MachineError, TracebackFormatter, install_step_limit
from tree import TreeFormatError, load_tree


def _parse_slots(text: Optional[str]) -> List[int]:
    if not text:
        return []
    try:
        return [int(part) for part in text.split(",")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"--slots expects comma-separated integers, got {text!r}")


def _load_program(source_text: str, filename: str, assembly: bool) -> Program:
    if assembly:
        return parse_listing(source_text, filename)
    return compile_expression(load_tree(source_text, filename))


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Expression-tree compiler and stack machine")
    parser.add_argument("program", help="JSON expression tree file, or a listing file with -asm")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal text")
    parser.add_argument("-asm", "--asm", dest="assembly", action="store_true", help="Program is an instruction listing rather than a JSON tree")
    parser.add_argument("--slots", default="", help="Initial variable slot values, e.g. 0,1000")
    parser.add_argument("--listing", action="store_true", help="Print the numbered instruction listing and exit")
    parser.add_argument("--trace", action="store_true", help="Print the executed steps after the run")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record stack snapshots in the trace and traceback")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-steps", type=int, default=None, help="Stop with an error after this many executed instructions")
    parser.add_argument("--counts", action="store_true", help="Print how often each address was executed")
    args = parser.parse_args(argv)

    try:
        slots = _parse_slots(args.slots)
    except argparse.ArgumentTypeError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        program = _load_program(source_text, filename, args.assembly)
    except (TreeFormatError, ListingParseError) as error:
        print(f"{error.__class__.__name__}: {error}", file=sys.stderr)
        return 1

    if args.listing:
        print(format_listing(program, numbered=True))
        return 0

    hooks = HookRegistry()
    if args.max_steps is not None:
        if args.max_steps <= 0:
            print("--max-steps must be >= 1", file=sys.stderr)
            return 1
        install_step_limit(hooks, args.max_steps)

    # the full step log is only kept when it will be printed
    history = None if args.trace else DEFAULT_HISTORY
    machine = Machine(program, slots=slots, verbose=args.verbose, hooks=hooks, history=history)
    try:
        result = machine.run()
    except MachineError as error:
        formatter = TracebackFormatter(machine)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1

    if args.trace:
        for entry in machine.logger.entries:
            line = f"{entry.state_id}  {entry.ip:4d}: {entry.instruction}"
            if entry.stack_snapshot is not None:
                line += f"  {entry.stack_snapshot}"
            print(line)
    if args.counts:
        counts = machine.logger.instruction_counts(len(program))
        for address, (instruction, count) in enumerate(zip(program, counts)):
            print(f"{address:4d}: {int(count):8d}  {instruction}")
    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
