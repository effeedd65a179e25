"""
E20 Emulator Test Suite
========================
Covers the instruction codec, every instruction's execution semantics,
program-counter wraparound, halt detection and invalid encodings.
"""

import io
import random
import unittest
from contextlib import redirect_stdout

from e20 import (E20, Instruction, HaltError, IllegalInstruction, MEM_SIZE,
                 decode, encode, sign_extend, u16)
from asm import assemble


def run_asm(source: str, max_steps: int = 10_000) -> E20:
    """Assemble, load at 0, run until halt, return the cpu."""
    cpu = E20()
    cpu.load_words(assemble(source))
    cpu.run(max_steps=max_steps)
    return cpu


# ---------------------------------------------------------------------------
#  Codec
# ---------------------------------------------------------------------------

class TestDecode(unittest.TestCase):
    def test_nop_is_add_zero(self):
        self.assertEqual(decode(0), Instruction("add"))

    def test_rtype_fields(self):
        # add $3,$1,$2
        self.assertEqual(decode(0b000_001_010_011_0000),
                         Instruction("add", src_a=1, src_b=2, dst=3))

    def test_rtype_function_codes(self):
        names = {0: "add", 1: "sub", 2: "or", 3: "and", 4: "slt"}
        for func, name in names.items():
            self.assertEqual(decode(func).op, name)

    def test_jr_ignores_other_fields(self):
        self.assertEqual(decode(0b000_111_101_011_1000), Instruction("jr", src_a=7))

    def test_invalid_function_codes(self):
        for func in (5, 6, 7, 9, 10, 11, 12, 13, 14, 15):
            with self.assertRaises(IllegalInstruction):
                decode(func)

    def test_illegal_instruction_carries_word(self):
        with self.assertRaises(IllegalInstruction) as cm:
            decode(0b000_001_010_011_0101)
        self.assertEqual(cm.exception.word, 0x0535)
        self.assertEqual(str(cm.exception), "invalid instruction word 0x0535")

    def test_addi_positive(self):
        # addi $1,$0,5
        self.assertEqual(decode(8325), Instruction("addi", src_a=0, dst=1, imm=5))

    def test_itype_negative_immediate(self):
        # lw $2,-1($3)
        self.assertEqual(decode(36223), Instruction("lw", src_a=3, dst=2, imm=-1))

    def test_jeq_uses_src_b(self):
        ins = decode(0b110_001_010_1111101)
        self.assertEqual(ins, Instruction("jeq", src_a=1, src_b=2, imm=-3))

    def test_jtype_is_unsigned_13_bit(self):
        self.assertEqual(decode(0b010_1111111111111), Instruction("j", imm=8191))
        self.assertEqual(decode((0b011 << 13) | 100), Instruction("jal", imm=100))

    def test_opcode_table(self):
        ops = {1: "addi", 2: "j", 3: "jal", 4: "lw", 5: "sw", 6: "jeq", 7: "slti"}
        for opcode, name in ops.items():
            self.assertEqual(decode(opcode << 13).op, name)


class TestEncode(unittest.TestCase):
    def test_encode_matches_decode(self):
        for word in (0, 1328, 7176, 8325, 36223, 50557, 24575, 24676, 0xFFFF):
            self.assertEqual(encode(decode(word)), word)

    def test_encode_masks_immediate(self):
        self.assertEqual(Instruction("addi", dst=1, imm=-1).encode() & 0x7F, 0x7F)

    def test_unknown_op(self):
        with self.assertRaises(ValueError):
            encode(Instruction("mul"))

    def test_str(self):
        self.assertEqual(str(decode(36223)), "lw $2,-1($3)")
        self.assertEqual(str(decode(1328)), "add $3,$1,$2")
        self.assertEqual(str(Instruction("j", imm=12)), "j 12")


class TestHelpers(unittest.TestCase):
    def test_sign_extend(self):
        self.assertEqual(sign_extend(63), 63)
        self.assertEqual(sign_extend(64), -64)
        self.assertEqual(sign_extend(0x7F), -1)
        self.assertEqual(sign_extend(0x1FF), -1)   # only low 7 bits count

    def test_u16(self):
        self.assertEqual(u16(-1), 0xFFFF)
        self.assertEqual(u16(0x10001), 1)


# ---------------------------------------------------------------------------
#  Execution
# ---------------------------------------------------------------------------

class TestALU(unittest.TestCase):
    def test_addi_then_halt(self):
        cpu = run_asm("addi $1,$0,5\nhalt")
        self.assertTrue(cpu.halted)
        self.assertEqual(cpu.regs[1], 5)
        self.assertEqual(cpu.pc, 1)

    def test_logic_ops(self):
        cpu = run_asm("""
            movi $1,12
            movi $2,10
            or  $3,$1,$2
            and $4,$1,$2
            slt $5,$2,$1
            slt $6,$1,$2
            halt
        """)
        self.assertEqual(cpu.regs[3], 14)
        self.assertEqual(cpu.regs[4], 8)
        self.assertEqual(cpu.regs[5], 1)
        self.assertEqual(cpu.regs[6], 0)

    def test_sub_wraps(self):
        cpu = run_asm("movi $2,1\nsub $3,$1,$2\nhalt")
        self.assertEqual(cpu.regs[3], 0xFFFF)

    def test_add_masks_to_16_bits(self):
        cpu = run_asm("""
            lw $1,big($0)
            addi $2,$1,1
            add $3,$1,$1
            halt
        big: .fill 65535
        """)
        self.assertEqual(cpu.regs[1], 0xFFFF)
        self.assertEqual(cpu.regs[2], 0)
        self.assertEqual(cpu.regs[3], 0xFFFE)

    def test_slt_is_unsigned(self):
        cpu = run_asm("movi $1,-1\nslt $2,$1,$0\nslt $3,$0,$1\nhalt")
        self.assertEqual(cpu.regs[1], 0xFFFF)
        self.assertEqual(cpu.regs[2], 0)
        self.assertEqual(cpu.regs[3], 1)

    def test_slti(self):
        cpu = run_asm("""
            movi $1,5
            slti $2,$1,6
            slti $3,$1,-1     # compared against 0xFFFF
            slti $4,$1,5
            halt
        """)
        self.assertEqual((cpu.regs[2], cpu.regs[3], cpu.regs[4]), (1, 1, 0))

    def test_register_zero_discards_writes(self):
        cpu = run_asm("""
            addi $0,$0,5
            movi $1,3
            add $0,$1,$1
            slti $0,$0,1
            lw $0,0($0)
            halt
        """)
        self.assertEqual(cpu.regs[0], 0)

    def test_register_zero_after_every_step(self):
        cpu = E20()
        cpu.load_words(assemble("""
            movi $1,9
        loop:
            addi $0,$1,1
            sub $0,$0,$1
            addi $1,$1,-1
            jeq $1,$0,done
            j loop
        done:
            halt
        """))
        while not cpu.halted:
            cpu.step()
            self.assertEqual(cpu.regs[0], 0)


class TestControlFlow(unittest.TestCase):
    def test_countdown_loop(self):
        cpu = run_asm("""
            movi $1,3
        loop:
            jeq $1,$0,done
            addi $1,$1,-1
            j loop
        done:
            halt
        """)
        self.assertEqual(cpu.regs[1], 0)
        self.assertEqual(cpu.pc, 4)

    def test_jal_jr(self):
        cpu = run_asm("""
            jal func
            halt
        func:
            movi $2,9
            jr $7
        """)
        self.assertEqual(cpu.regs[7], 1)
        self.assertEqual(cpu.regs[2], 9)
        self.assertEqual(cpu.pc, 1)

    def test_jump_skips(self):
        cpu = run_asm("j 2\nmovi $1,1\nhalt")
        self.assertEqual(cpu.regs[1], 0)
        self.assertEqual(cpu.pc, 2)

    def test_jeq_not_taken(self):
        cpu = run_asm("movi $1,1\njeq $1,$0,3\nhalt\nhalt")
        self.assertEqual(cpu.pc, 2)

    def test_jeq_backward_wraps(self):
        cpu = E20()
        cpu.mem[0] = Instruction("jeq", imm=-2).encode()
        cpu.step()
        self.assertEqual(cpu.pc, MEM_SIZE - 1)

    def test_jr_wraps_register_value(self):
        cpu = E20()
        cpu.regs[1] = 8200
        cpu.mem[0] = Instruction("jr", src_a=1).encode()
        cpu.step()
        self.assertEqual(cpu.pc, 8)

    def test_halt_is_self_jump(self):
        cpu = E20()
        cpu.pc = 40
        cpu.mem[40] = Instruction("j", imm=40).encode()
        halts = []
        cpu.on_halt = lambda: halts.append(cpu.pc)
        cpu.step()
        self.assertTrue(cpu.halted)
        self.assertEqual(cpu.pc, 40)
        self.assertEqual(halts, [40])

    def test_step_after_halt(self):
        cpu = run_asm("halt")
        with self.assertRaises(HaltError):
            cpu.step()


class TestProgramCounter(unittest.TestCase):
    def test_increment_wraps_both_ways(self):
        cpu = E20()
        cpu.pc = MEM_SIZE - 1
        cpu.increment_pc()
        self.assertEqual(cpu.pc, 0)
        cpu.increment_pc(-1)
        self.assertEqual(cpu.pc, MEM_SIZE - 1)

    def test_increment_sequence(self):
        rng = random.Random(2214)
        cpu = E20()
        for _ in range(500):
            n = rng.randint(-3 * MEM_SIZE, 3 * MEM_SIZE)
            before = cpu.pc
            cpu.increment_pc(n)
            self.assertEqual(cpu.pc, (before + n) % MEM_SIZE)
            self.assertTrue(0 <= cpu.pc < MEM_SIZE)

    def test_set_pc_wraps(self):
        cpu = E20()
        cpu.set_pc(9000)
        self.assertEqual(cpu.pc, 808)


class TestMemory(unittest.TestCase):
    def test_store_then_load_without_cache(self):
        cpu = run_asm("movi $1,7\nsw $1,10($0)\nlw $2,10($0)\nhalt")
        self.assertEqual(cpu.mem[10], 7)
        self.assertEqual(cpu.regs[2], 7)

    def test_effective_address_wraps_to_13_bits(self):
        cpu = run_asm("movi $1,-1\nlw $2,2($1)\nhalt")
        # 0xFFFF + 2 wraps to address 1, the lw itself
        self.assertEqual(cpu.regs[2], cpu.mem[1])


class TestInvalidInstruction(unittest.TestCase):
    def test_reported_and_pc_not_advanced(self):
        cpu = E20()
        cpu.mem[0] = 0b000_000_000_000_0101
        msgs = []
        cpu.on_diagnostic = msgs.append
        self.assertEqual(cpu.run(max_steps=3), 3)
        self.assertEqual(msgs, ["invalid instruction at pc: 0"] * 3)
        self.assertEqual(cpu.pc, 0)
        self.assertFalse(cpu.halted)

    def test_default_diagnostic_prints(self):
        cpu = E20()
        cpu.pc = 6
        cpu.mem[6] = 0xF
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.assertIsNone(cpu.step())
        self.assertEqual(buf.getvalue(), "invalid instruction at pc: 6\n")


class TestDumpState(unittest.TestCase):
    def test_format(self):
        cpu = run_asm("addi $1,$0,5\nhalt")
        expected = (
            "Final state:\n"
            "\tpc=    1\n"
            "\t$0=    0\n"
            "\t$1=    5\n"
            + "".join(f"\t${r}=    0\n" for r in range(2, 8))
            + "2085 4001 0000 0000 0000 0000 0000 0000 \n"
        )
        self.assertEqual(cpu.dump_state(8), expected)

    def test_partial_row(self):
        cpu = run_asm("addi $1,$0,5\nhalt")
        self.assertTrue(cpu.dump_state(3).endswith("\n2085 4001 0000 \n"))

    def test_default_quantity(self):
        cpu = E20()
        lines = cpu.dump_state().splitlines()
        self.assertEqual(len(lines), 1 + 1 + 8 + 16)


if __name__ == "__main__":
    unittest.main()
