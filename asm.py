"""
E20 Assembler
==============
Translates E20 assembly text into 16-bit machine words and renders them
in the line-oriented program image format read by system.py.

Supports:
  - Labels (terminated with ':'), alone or in front of an instruction
  - All 13 machine instructions
  - Pseudo-ops: movi, nop, halt
  - .fill directive
  - Immediate literals (decimal, hex with 0x prefix) or label names
  - Comments ('#' to end of line)

Usage:
  from asm import assemble, to_machine_code
  words = assemble(source_text)
  image = to_machine_code(words)
"""

from __future__ import annotations
import re

from e20 import Instruction, ALU_OPS, MEM_SIZE, u16

_MEM_OPERAND_RE = re.compile(r"^(.*)\(\s*(\$\w+)\s*\)$")
_LABEL_RE = re.compile(r"^[A-Za-z_.][\w.]*$")
_OPERAND_SEP_RE = re.compile(r"[\s,]+")
_PAREN_SPACE_RE = re.compile(r"\s*([()])\s*")


class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _parse_reg(lineno: int, tok: str) -> int:
    """Parse '$0'-'$7'. Returns register index."""
    tok = tok.strip()
    if tok.startswith("$") and tok[1:].isdigit():
        n = int(tok[1:])
        if 0 <= n <= 7:
            return n
    raise AsmError(lineno, f"Invalid register: {tok!r}")

def _parse_value(lineno: int, tok: str, labels: dict[str, int]) -> int:
    """Parse an integer literal or a label reference."""
    tok = tok.strip()
    key = tok.lower()
    if key in labels:
        return labels[key]
    try:
        if tok.lower().startswith(("0x", "-0x")):
            return int(tok, 16)
        return int(tok, 10)
    except ValueError:
        raise AsmError(lineno, f"Undefined label or bad number: {tok!r}") from None

def _check_range(lineno: int, val: int, lo: int, hi: int, what: str) -> int:
    if not lo <= val <= hi:
        raise AsmError(lineno, f"{what} {val} out of range [{lo}, {hi}]")
    return val

def _split_ops(rest: str) -> list[str]:
    """Split operand string on commas and/or whitespace.

    Spaces around the parentheses of an imm($reg) operand are squeezed out
    first, so "3 ( $1 )" stays one operand.
    """
    rest = _PAREN_SPACE_RE.sub(r"\1", rest)
    return [s for s in _OPERAND_SEP_RE.split(rest.strip()) if s]

def _expect(lineno: int, mnem: str, ops: list[str], n: int):
    if len(ops) != n:
        raise AsmError(lineno, f"{mnem} takes {n} operand(s), got {len(ops)}")

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble(source: str) -> list[int]:
    """
    Two-pass assembler.
    Pass 1: strip comments, collect labels (one word per instruction).
    Pass 2: emit words with labels resolved.
    """
    # ---- Pass 1: label collection ----
    labels: dict[str, int] = {}
    program: list[tuple[int, str]] = []  # (line_no, text)

    for lineno, raw in enumerate(source.split("\n"), 1):
        text = raw.split("#", 1)[0].strip()
        while text:
            head, sep, rest = text.partition(":")
            if not sep or not _LABEL_RE.match(head.strip()):
                break
            lbl = head.strip().lower()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = len(program)
            text = rest.strip()
        if text:
            program.append((lineno, text))

    if len(program) > MEM_SIZE:
        raise AsmError(program[-1][0], "Program too big for memory")

    # ---- Pass 2: emit ----
    return [_emit_instruction(lineno, text, pc, labels)
            for pc, (lineno, text) in enumerate(program)]


def _emit_instruction(lineno: int, text: str, pc: int,
                      labels: dict[str, int]) -> int:
    parts = text.split(None, 1)
    mnem = parts[0].lower()
    ops = _split_ops(parts[1]) if len(parts) > 1 else []

    def reg(tok):
        return _parse_reg(lineno, tok)

    def imm7(tok):
        return _check_range(lineno, _parse_value(lineno, tok, labels),
                            -64, 63, "Immediate")

    def addr13(tok):
        return _check_range(lineno, _parse_value(lineno, tok, labels),
                            0, MEM_SIZE - 1, "Address")

    if mnem in ALU_OPS:
        _expect(lineno, mnem, ops, 3)
        return Instruction(mnem, dst=reg(ops[0]), src_a=reg(ops[1]),
                           src_b=reg(ops[2])).encode()

    if mnem == "jr":
        _expect(lineno, mnem, ops, 1)
        return Instruction("jr", src_a=reg(ops[0])).encode()

    if mnem in ("slti", "addi"):
        _expect(lineno, mnem, ops, 3)
        return Instruction(mnem, dst=reg(ops[0]), src_a=reg(ops[1]),
                           imm=imm7(ops[2])).encode()

    if mnem in ("lw", "sw"):
        _expect(lineno, mnem, ops, 2)
        m = _MEM_OPERAND_RE.match(ops[1])
        if not m:
            raise AsmError(lineno, f"Expected imm($reg), got: {ops[1]}")
        offset = m.group(1).strip() or "0"
        return Instruction(mnem, dst=reg(ops[0]), src_a=reg(m.group(2)),
                           imm=imm7(offset)).encode()

    if mnem == "jeq":
        _expect(lineno, mnem, ops, 3)
        target = addr13(ops[2])
        rel = _check_range(lineno, target - pc - 1, -64, 63, "Branch offset")
        return Instruction("jeq", src_a=reg(ops[0]), src_b=reg(ops[1]),
                           imm=rel).encode()

    if mnem in ("j", "jal"):
        _expect(lineno, mnem, ops, 1)
        return Instruction(mnem, imm=addr13(ops[0])).encode()

    # Pseudo-ops
    if mnem == "movi":
        _expect(lineno, mnem, ops, 2)
        return Instruction("addi", dst=reg(ops[0]), src_a=0,
                           imm=imm7(ops[1])).encode()
    if mnem == "nop":
        _expect(lineno, mnem, ops, 0)
        return Instruction("add").encode()
    if mnem == "halt":
        _expect(lineno, mnem, ops, 0)
        return Instruction("j", imm=pc).encode()

    if mnem == ".fill":
        _expect(lineno, mnem, ops, 1)
        val = _check_range(lineno, _parse_value(lineno, ops[0], labels),
                           -(1 << 15), (1 << 16) - 1, ".fill value")
        return u16(val)

    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")


def to_machine_code(words: list[int]) -> str:
    """Render words in the program image format, one line per word."""
    return "".join(f"ram[{addr}] = 16'b{w:016b};\n"
                   for addr, w in enumerate(words))
