"""
E20 Instruction-Level Emulator
===============================
Fetch/decode/execute model of the 16-bit E20 machine: a program counter,
eight 16-bit registers and a flat memory of 8192 words that holds both
program text and data.

Every instruction is decoded from the raw word in memory.  Loads and stores
are optionally routed through a cache hierarchy (cache.py), which only
observes the access; architectural results are identical with or without it.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from cache import CacheHierarchy

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

NUM_REGS = 8
MEM_SIZE = 1 << 13
REG_SIZE = 1 << 16

MASK16 = REG_SIZE - 1
MASK13 = MEM_SIZE - 1
MASK7  = 0x7F

# Opcodes (bits 15..13)
OP_RTYPE = 0b000
OP_ADDI  = 0b001
OP_J     = 0b010
OP_JAL   = 0b011
OP_LW    = 0b100
OP_SW    = 0b101
OP_JEQ   = 0b110
OP_SLTI  = 0b111

# R-type function codes (bits 3..0)
FUNC_ADD = 0x0
FUNC_SUB = 0x1
FUNC_OR  = 0x2
FUNC_AND = 0x3
FUNC_SLT = 0x4
FUNC_JR  = 0x8

RTYPE_NAMES = {
    FUNC_ADD: "add", FUNC_SUB: "sub", FUNC_OR: "or",
    FUNC_AND: "and", FUNC_SLT: "slt", FUNC_JR: "jr",
}

ITYPE_NAMES = {
    OP_ADDI: "addi", OP_LW: "lw", OP_SW: "sw",
    OP_JEQ: "jeq", OP_SLTI: "slti",
}

JTYPE_NAMES = {OP_J: "j", OP_JAL: "jal"}

OPCODES = {name: op for op, name in ITYPE_NAMES.items()}
OPCODES.update({name: op for op, name in JTYPE_NAMES.items()})
FUNCS = {name: func for func, name in RTYPE_NAMES.items()}

ALU_OPS = ("add", "sub", "or", "and", "slt")

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & MASK16

def sign_extend(val: int, bits: int = 7) -> int:
    """Interpret the low *bits* of val as two's complement."""
    mask = (1 << bits) - 1
    val &= mask
    if val & (1 << (bits - 1)):
        val -= (1 << bits)
    return val

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class E20Error(Exception):
    """Base for emulator errors."""
    pass

class HaltError(E20Error):
    pass

class IllegalInstruction(E20Error):
    def __init__(self, word: int):
        self.word = word
        super().__init__(f"invalid instruction word {word:#06x}")

# ---------------------------------------------------------------------------
#  Codec
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    """One decoded E20 word.

    ``op`` names the operation and selects which fields are meaningful:

      R-type  add/sub/or/and/slt  src_a, src_b, dst
              jr                  src_a
      I-type  slti/addi/lw/sw     src_a, dst, imm (signed)
              jeq                 src_a, src_b, imm (signed, pc-relative)
      J-type  j/jal               imm (unsigned 13-bit absolute address)
    """
    op: str
    src_a: int = 0
    src_b: int = 0
    dst: int = 0
    imm: int = 0

    def encode(self) -> int:
        return encode(self)

    def __str__(self) -> str:
        if self.op in ALU_OPS:
            return f"{self.op} ${self.dst},${self.src_a},${self.src_b}"
        if self.op == "jr":
            return f"jr ${self.src_a}"
        if self.op in ("slti", "addi"):
            return f"{self.op} ${self.dst},${self.src_a},{self.imm}"
        if self.op in ("lw", "sw"):
            return f"{self.op} ${self.dst},{self.imm}(${self.src_a})"
        if self.op == "jeq":
            return f"jeq ${self.src_a},${self.src_b},{self.imm:+d}"
        return f"{self.op} {self.imm}"


def decode(word: int) -> Instruction:
    """Decode a 16-bit word.  Raises IllegalInstruction for unknown encodings."""
    word = u16(word)
    opcode = word >> 13
    reg_a = (word >> 10) & 7
    reg_b = (word >> 7) & 7

    if opcode == OP_RTYPE:
        name = RTYPE_NAMES.get(word & 0xF)
        if name is None:
            raise IllegalInstruction(word)
        if name == "jr":
            return Instruction("jr", src_a=reg_a)
        return Instruction(name, src_a=reg_a, src_b=reg_b, dst=(word >> 4) & 7)

    if opcode in JTYPE_NAMES:
        return Instruction(JTYPE_NAMES[opcode], imm=word & MASK13)

    imm = sign_extend(word & MASK7, 7)
    if opcode == OP_JEQ:
        return Instruction("jeq", src_a=reg_a, src_b=reg_b, imm=imm)
    return Instruction(ITYPE_NAMES[opcode], src_a=reg_a, dst=reg_b, imm=imm)


def encode(ins: Instruction) -> int:
    """Inverse of decode()."""
    op = ins.op
    if op in FUNCS:
        return ((OP_RTYPE << 13) | (ins.src_a << 10) | (ins.src_b << 7)
                | (ins.dst << 4) | FUNCS[op])
    if op not in OPCODES:
        raise ValueError(f"Unknown operation: {op!r}")
    opcode = OPCODES[op]
    if op in ("j", "jal"):
        return (opcode << 13) | (ins.imm & MASK13)
    second = ins.src_b if op == "jeq" else ins.dst
    return (opcode << 13) | (ins.src_a << 10) | (second << 7) | (ins.imm & MASK7)

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class E20:
    """E20 architectural state plus the fetch/decode/execute loop."""

    def __init__(self, hierarchy: Optional[CacheHierarchy] = None):
        self.mem: list[int] = [0] * MEM_SIZE
        self.regs: list[int] = [0] * NUM_REGS
        self._pc: int = 0
        self.halted: bool = False

        # Data cache model; None means loads/stores go straight to memory
        self.hierarchy = hierarchy

        # Callbacks
        self.on_diagnostic: Optional[callable] = None  # called with (message)
        self.on_halt: Optional[callable] = None

    # -- Program counter --

    @property
    def pc(self) -> int:
        return self._pc

    @pc.setter
    def pc(self, value: int):
        self._pc = value % MEM_SIZE

    def increment_pc(self, inc: int = 1):
        self.pc = self._pc + inc

    def set_pc(self, value: int):
        self.pc = value

    # -- Registers --

    def write_reg(self, r: int, val: int):
        """Write a GPR; writes to $0 are discarded."""
        if r != 0:
            self.regs[r] = u16(val)

    # -- Diagnostics --

    def _diagnostic(self, msg: str):
        if self.on_diagnostic:
            self.on_diagnostic(msg)
        else:
            print(msg)

    # =====================================================================
    #  STEP
    # =====================================================================

    def step(self) -> Optional[Instruction]:
        """Execute one instruction.  Returns it, or None if it was invalid."""
        if self.halted:
            raise HaltError("E20 is halted")

        pc = self._pc
        try:
            ins = decode(self.mem[pc])
        except IllegalInstruction:
            # pc is left where it is, so the same word is reported again
            # on the next step.
            self._diagnostic(f"invalid instruction at pc: {pc}")
            return None

        op = ins.op
        if   op in ALU_OPS:   self._exec_alu(ins)
        elif op == "jr":      self.set_pc(self.regs[ins.src_a])
        elif op == "slti":    self._exec_slti(ins)
        elif op == "addi":    self._exec_addi(ins)
        elif op == "lw":      self._exec_lw(ins)
        elif op == "sw":      self._exec_sw(ins)
        elif op == "jeq":     self._exec_jeq(ins)
        elif op == "j":       self._exec_j(ins)
        elif op == "jal":     self._exec_jal(ins)

        return ins

    # =====================================================================
    #  Executors
    # =====================================================================

    def _exec_alu(self, ins: Instruction):
        a = self.regs[ins.src_a]
        b = self.regs[ins.src_b]
        op = ins.op
        if   op == "add": result = a + b
        elif op == "sub": result = a - b
        elif op == "or":  result = a | b
        elif op == "and": result = a & b
        else:             result = 1 if a < b else 0
        self.write_reg(ins.dst, result)
        self.increment_pc()

    def _exec_slti(self, ins: Instruction):
        # Unsigned compare against the immediate widened to 16 bits
        self.write_reg(ins.dst, 1 if self.regs[ins.src_a] < u16(ins.imm) else 0)
        self.increment_pc()

    def _exec_addi(self, ins: Instruction):
        self.write_reg(ins.dst, self.regs[ins.src_a] + ins.imm)
        self.increment_pc()

    def effective_address(self, ins: Instruction) -> int:
        return (self.regs[ins.src_a] + ins.imm) & MASK13

    def _exec_lw(self, ins: Instruction):
        addr = self.effective_address(ins)
        if self.hierarchy is not None:
            val = self.hierarchy.load(self.mem, addr, self._pc)
        else:
            val = self.mem[addr]
        self.write_reg(ins.dst, val)
        self.increment_pc()

    def _exec_sw(self, ins: Instruction):
        addr = self.effective_address(ins)
        self.mem[addr] = self.regs[ins.dst]
        if self.hierarchy is not None:
            self.hierarchy.store(self.mem, addr, self._pc)
        self.increment_pc()

    def _exec_jeq(self, ins: Instruction):
        if self.regs[ins.src_a] == self.regs[ins.src_b]:
            self.increment_pc(1 + ins.imm)
        else:
            self.increment_pc()

    def _exec_j(self, ins: Instruction):
        if ins.imm == self._pc:
            # Self-referential jump is the encoded halt
            self.halted = True
            if self.on_halt:
                self.on_halt()
            return
        self.set_pc(ins.imm)

    def _exec_jal(self, ins: Instruction):
        self.regs[7] = u16(self._pc + 1)
        self.set_pc(ins.imm)

    # -- Run loop --

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until halt (or max_steps, when given).  Returns steps taken."""
        taken = 0
        while not self.halted:
            if max_steps is not None and taken >= max_steps:
                break
            self.step()
            taken += 1
        return taken

    # -- Program loading --

    def load_words(self, words, addr: int = 0):
        """Write 16-bit words into memory starting at addr."""
        for i, w in enumerate(words):
            self.mem[(addr + i) % MEM_SIZE] = u16(w)

    # -- Debug / introspection --

    def dump_state(self, memquantity: int = 128) -> str:
        """Final-state dump: pc, all registers, then a hex dump of memory."""
        lines = ["Final state:", f"\tpc={self._pc:5d}"]
        for r in range(NUM_REGS):
            lines.append(f"\t${r}={self.regs[r]:5d}")
        row = ""
        for count in range(memquantity):
            row += f"{self.mem[count]:04x} "
            if count % 8 == 7:
                lines.append(row)
                row = ""
        if row:
            lines.append(row)
        return "\n".join(lines) + "\n"
