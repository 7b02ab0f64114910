from __future__ import annotations
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Optional, Tuple, Type


class VMError(Exception):
    """Base class for compiler and machine errors."""


class ListingParseError(VMError):
    """Raised when an instruction listing cannot be read."""


ADD = "Add"
SUBTRACT = "Subtract"
NOT_EQUAL = "NotEqual"

BINARY_OPS = (ADD, SUBTRACT, NOT_EQUAL)


class Instruction:
    stack_effect: ClassVar[int] = 0

    @property
    def mnemonic(self) -> str:
        return self.__class__.__name__

    def operand(self) -> Optional[object]:
        return None

    def __str__(self) -> str:
        arg = self.operand()
        if arg is None:
            return self.mnemonic
        return f"{self.mnemonic} {arg}"


@dataclass(frozen=True)
class Push(Instruction):
    value: int
    stack_effect: ClassVar[int] = 1

    def operand(self) -> Optional[object]:
        return self.value


@dataclass(frozen=True)
class Get(Instruction):
    slot: int
    stack_effect: ClassVar[int] = 1

    def operand(self) -> Optional[object]:
        return self.slot


@dataclass(frozen=True)
class Set(Instruction):
    slot: int
    stack_effect: ClassVar[int] = -1

    def operand(self) -> Optional[object]:
        return self.slot


@dataclass(frozen=True)
class Bin(Instruction):
    op: str
    stack_effect: ClassVar[int] = -1

    def operand(self) -> Optional[object]:
        return self.op


@dataclass(frozen=True)
class Jump(Instruction):
    target: int
    stack_effect: ClassVar[int] = 0

    def operand(self) -> Optional[object]:
        return self.target


@dataclass(frozen=True)
class JumpIfZero(Instruction):
    target: int
    stack_effect: ClassVar[int] = -1

    def operand(self) -> Optional[object]:
        return self.target


@dataclass(frozen=True)
class End(Instruction):
    stack_effect: ClassVar[int] = 0


Program = Tuple[Instruction, ...]

# mnemonic -> (class, takes an integer operand)
INSTRUCTIONS: Dict[str, Tuple[Type[Instruction], bool]] = {
    "Push": (Push, True),
    "Get": (Get, True),
    "Set": (Set, True),
    "Bin": (Bin, False),
    "Jump": (Jump, True),
    "JumpIfZero": (JumpIfZero, True),
    "End": (End, False),
}


def straight_line_depth(program: Program) -> int:
    """Net stack depth change of a program executed top to bottom, ignoring branches."""
    return sum(instruction.stack_effect for instruction in program)


def jump_targets(program: Program) -> List[int]:
    return [ins.target for ins in program if isinstance(ins, (Jump, JumpIfZero))]


def format_listing(program: Program, numbered: bool = False) -> str:
    if numbered:
        return "\n".join(f"{index:4d}: {instruction}" for index, instruction in enumerate(program))
    return "\n".join(str(instruction) for instruction in program)


class ListingReader:
    """Reads the textual rendering produced by format_listing back into a Program."""

    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename

    def read(self) -> Program:
        program: List[Instruction] = []
        for line_no, raw in enumerate(self.text.splitlines(), start=1):
            line = raw.split("#", 1)[0]
            if not line.strip():
                continue
            program.append(self._read_line(line, line_no, len(program)))
        return tuple(program)

    def _where(self, line_no: int, column: int) -> str:
        return f"{self.filename}:{line_no}:{column}"

    def _words(self, line: str) -> List[Tuple[str, int]]:
        words: List[Tuple[str, int]] = []
        i = 0
        n = len(line)
        while i < n:
            if line[i] in " \t\r":
                i += 1
                continue
            start = i
            while i < n and line[i] not in " \t\r":
                i += 1
            words.append((line[start:i], start + 1))
        return words

    def _read_line(self, line: str, line_no: int, index: int) -> Instruction:
        words = self._words(line)
        word, column = words[0]
        if word.endswith(":"):
            label = word[:-1]
            if not _is_int(label) or int(label) != index:
                raise ListingParseError(
                    f"Address prefix '{word}' does not match instruction index {index} at {self._where(line_no, column)}"
                )
            words = words[1:]
            if not words:
                raise ListingParseError(f"Missing instruction after address at {self._where(line_no, column)}")
            word, column = words[0]

        entry = INSTRUCTIONS.get(word)
        if entry is None:
            raise ListingParseError(f"Unknown instruction '{word}' at {self._where(line_no, column)}")
        cls, int_operand = entry
        args = words[1:]

        if cls is End:
            if args:
                raise ListingParseError(f"End takes no operand at {self._where(line_no, args[0][1])}")
            return End()
        if len(args) != 1:
            where = self._where(line_no, args[1][1] if len(args) > 1 else column)
            raise ListingParseError(f"{word} takes exactly one operand at {where}")

        arg, arg_column = args[0]
        if not int_operand:
            if arg not in BINARY_OPS:
                raise ListingParseError(f"Unknown binary operator '{arg}' at {self._where(line_no, arg_column)}")
            return Bin(arg)
        if not _is_int(arg):
            raise ListingParseError(f"{word} expects an integer operand at {self._where(line_no, arg_column)}")
        return cls(int(arg))  # type: ignore[call-arg]


def _is_int(text: str) -> bool:
    digits = text[1:] if text[:1] == "-" else text
    return digits.isdecimal()


def parse_listing(text: str, filename: str = "<string>") -> Program:
    return ListingReader(text, filename).read()
