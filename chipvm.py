# Chipvm, a Chip-8 virtual machine core.
# The Chipvm developers

# To the extent possible under law, the person who associated CC0 with
# Chipvm has waived all copyright and related or neighboring rights
# to Chipvm.

# You should have received a copy of the CC0 legalcode along with this
# work.  If not, see <http://creativecommons.org/publicdomain/zero/1.0/>.

"""The Chip-8 interpreter core.

A :class:`Machine` holds the whole machine state (memory, registers,
stack, timers, keypad and video memory) and executes exactly one
instruction per call to :meth:`Machine.cycle`. It knows nothing about
windows, clocks, keyboards or speakers; a host embedding feeds it a
program image and key events and reads back the framebuffer.
"""

import logging
import random
from collections import namedtuple

logger = logging.getLogger(__name__)

## CONSTANTS ##

TOTAL_RAM = 4096
LOAD_POS = 0x200
MAX_PROGRAM = TOTAL_RAM - LOAD_POS

# Chip-8 video display
VIDEO_X = 64
VIDEO_Y = 32
SPRITE_WIDTH = 8

STACK_DEPTH = 16
REGISTERS = 16

# Register VF doubles as the carry/borrow/collision output
FLAG = 0xF

# Fx1E sets VF when I goes past this address
INDEX_OVERFLOW = 0x0F00

# Chip-8 ROM Font map
FONT_LOAD = 0x000
FONT_HEIGHT = 5
FONT_MAP = [
    0xF0, 0x90, 0x90, 0x90, 0xF0, # 0
    0x20, 0x60, 0x20, 0x20, 0x70, # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0, # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0, # 3
    0x90, 0x90, 0xF0, 0x10, 0x10, # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0, # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0, # 6
    0xF0, 0x10, 0x20, 0x40, 0x40, # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0, # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0, # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90, # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0, # B
    0xF0, 0x80, 0x80, 0x80, 0xF0, # C
    0xE0, 0x90, 0x90, 0x90, 0xE0, # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0, # E
    0xF0, 0x80, 0xF0, 0x80, 0x80  # F
]

# Keypad symbols, indexed by the key's hex value.
# The physical layout is the usual 4x4 block starting at key 1:

# +-----+-----+-----+-----+
# | 1/1 | 2/2 | 3/3 | C/4 |
# +-----+-----+-----+-----+
# | 4/Q | 5/W | 6/E | D/R |
# +-----+-----+-----+-----+
# | 7/A | 8/S | 9/D | E/F |
# +-----+-----+-----+-----+
# | A/Z | 0/X | B/C | F/V |
# +-----+-----+-----+-----+

KEY_MAP = [
    'X', '1', '2', '3',
    'Q', 'W', 'E', 'A',
    'S', 'D', 'Z', 'C',
    '4', 'R', 'F', 'V'
]
KEY_INDEX = {symbol: index for index, symbol in enumerate(KEY_MAP)}


## ERRORS ##

class Chip8Error(Exception):
    """Base class for everything the interpreter raises."""


class ProgramTooLarge(Chip8Error, ValueError):
    """The program image does not fit between LOAD_POS and the end of RAM."""


class Fault(Chip8Error):
    """An instruction could not be executed.

    The machine is left as it was before the instruction, so the host can
    halt, reset, or skip past it and carry on.
    """

    def __init__(self, address, opcode, message):
        self.address = address
        self.opcode = opcode
        if address is not None:
            message = f"{message} at 0x{address:04x}"
        super().__init__(message)


class IllegalInstruction(Fault):
    """The fetched word does not decode to a Chip-8 instruction."""

    def __init__(self, address, opcode):
        super().__init__(address, opcode, f"Illegal instruction 0x{opcode:04x}")


class StackOverflow(Fault):
    """CALL with every stack slot in use."""


class StackUnderflow(Fault):
    """RET with nothing on the stack."""


class AddressError(Fault):
    """A memory access outside 0x000-0xFFF."""


## DECODING ##

Op = namedtuple('Op', ['name', 'opcode', 'x', 'y', 'n', 'kk', 'nnn'])

MNEMONICS = {
    'CLS': "CLS",
    'RET': "RET",
    'JP': "JP 0x{nnn:03x}",
    'CALL': "CALL 0x{nnn:03x}",
    'SE_BYTE': "SE V{x:X}, 0x{kk:02x}",
    'SNE_BYTE': "SNE V{x:X}, 0x{kk:02x}",
    'SE_REG': "SE V{x:X}, V{y:X}",
    'LD_BYTE': "LD V{x:X}, 0x{kk:02x}",
    'ADD_BYTE': "ADD V{x:X}, 0x{kk:02x}",
    'LD_REG': "LD V{x:X}, V{y:X}",
    'OR': "OR V{x:X}, V{y:X}",
    'AND': "AND V{x:X}, V{y:X}",
    'XOR': "XOR V{x:X}, V{y:X}",
    'ADD_REG': "ADD V{x:X}, V{y:X}",
    'SUB': "SUB V{x:X}, V{y:X}",
    'SHR': "SHR V{x:X}",
    'SUBN': "SUBN V{x:X}, V{y:X}",
    'SHL': "SHL V{x:X}",
    'SNE_REG': "SNE V{x:X}, V{y:X}",
    'LD_I': "LD I, 0x{nnn:03x}",
    'JP_V0': "JP V0, 0x{nnn:03x}",
    'RND': "RND V{x:X}, 0x{kk:02x}",
    'DRW': "DRW V{x:X}, V{y:X}, {n}",
    'SKP': "SKP V{x:X}",
    'SKNP': "SKNP V{x:X}",
    'LD_VX_DT': "LD V{x:X}, DT",
    'LD_VX_K': "LD V{x:X}, K",
    'LD_DT': "LD DT, V{x:X}",
    'LD_ST': "LD ST, V{x:X}",
    'ADD_I': "ADD I, V{x:X}",
    'LD_F': "LD F, V{x:X}",
    'LD_B': "LD B, V{x:X}",
    'LD_STORE': "LD [I], V{x:X}",
    'LD_LOAD': "LD V{x:X}, [I]",
}

# 0x8xyN sub-operations
ALU_OPS = {
    0x0: 'LD_REG',
    0x1: 'OR',
    0x2: 'AND',
    0x3: 'XOR',
    0x4: 'ADD_REG',
    0x5: 'SUB',
    0x6: 'SHR',
    0x7: 'SUBN',
    0xE: 'SHL',
}

# 0xExkk and 0xFxkk operations
KEY_OPS = {
    0x9E: 'SKP',
    0xA1: 'SKNP',
}
IO_OPS = {
    0x07: 'LD_VX_DT',
    0x0A: 'LD_VX_K',
    0x15: 'LD_DT',
    0x18: 'LD_ST',
    0x1E: 'ADD_I',
    0x29: 'LD_F',
    0x33: 'LD_B',
    0x55: 'LD_STORE',
    0x65: 'LD_LOAD',
}


def decode(opcode, address=None):
    """Split a 16 bit instruction word into an Op.

    Raises IllegalInstruction if the word is not a Chip-8 instruction.
    """
    family = opcode >> 12
    x = opcode >> 8 & 0x0F
    y = opcode >> 4 & 0x0F
    n = opcode & 0x000F
    kk = opcode & 0x00FF
    nnn = opcode & 0x0FFF

    name = None
    if opcode == 0x00E0:
        name = 'CLS'
    elif opcode == 0x00EE:
        name = 'RET'
    elif family == 0x1:
        name = 'JP'
    elif family == 0x2:
        name = 'CALL'
    elif family == 0x3:
        name = 'SE_BYTE'
    elif family == 0x4:
        name = 'SNE_BYTE'
    elif family == 0x5 and n == 0:
        name = 'SE_REG'
    elif family == 0x6:
        name = 'LD_BYTE'
    elif family == 0x7:
        name = 'ADD_BYTE'
    elif family == 0x8:
        name = ALU_OPS.get(n)
    elif family == 0x9 and n == 0:
        name = 'SNE_REG'
    elif family == 0xA:
        name = 'LD_I'
    elif family == 0xB:
        name = 'JP_V0'
    elif family == 0xC:
        name = 'RND'
    elif family == 0xD:
        name = 'DRW'
    elif family == 0xE:
        name = KEY_OPS.get(kk)
    elif family == 0xF:
        name = IO_OPS.get(kk)

    if name is None:
        raise IllegalInstruction(address, opcode)
    return Op(name, opcode, x, y, n, kk, nnn)


def disassemble(opcode):
    """Return the assembler mnemonic for an instruction word"""
    op = decode(opcode)
    return MNEMONICS[op.name].format(**op._asdict())


## ALU ##
# Each operation returns (result, flag). flag is None when the
# operation leaves VF alone.

def alu(name, a, b):
    """Compute an 0x8xyN operation on Vx=a, Vy=b"""
    if name == 'LD_REG':
        return b, None
    elif name == 'OR':
        return a | b, None
    elif name == 'AND':
        return a & b, None
    elif name == 'XOR':
        return a ^ b, None
    elif name == 'ADD_REG':
        result = a + b
        return result & 0xFF, int(result > 0xFF)
    elif name == 'SUB':
        return (a - b) & 0xFF, int(a > b)
    elif name == 'SHR':
        return a >> 1, a & 0x1
    elif name == 'SUBN':
        return (b - a) & 0xFF, int(b > a)
    elif name == 'SHL':
        return (a << 1) & 0xFF, a >> 7 & 0x1
    raise ValueError(f"Not an ALU operation: {name}")


def add_index(i, value):
    """I + Vx, flagged when the result runs past INDEX_OVERFLOW"""
    result = (i + value) & 0xFFFF
    return result, int(result > INDEX_OVERFLOW)


def bcd(value):
    """Split a byte into hundreds, tens and units"""
    return value // 100, value // 10 % 10, value % 10


def c_alloc(n):
    """Allocate n byte array as memory"""
    return [0 for i in range(n)]


## MACHINE ##

class Machine:
    """Machine state plus the instruction executor.

    Fields are plain attributes so the host can read them freely; only
    load(), reset(), skip() and update_key() should be used to change
    anything between cycles.
    """

    HANDLERS = {
        'CLS': 'ins_cls',
        'RET': 'ins_ret',
        'JP': 'ins_jmp',
        'CALL': 'ins_call',
        'SE_BYTE': 'ins_skipim',
        'SNE_BYTE': 'ins_skipim',
        'SE_REG': 'ins_skipreg',
        'SNE_REG': 'ins_skipreg',
        'LD_BYTE': 'ins_load',
        'ADD_BYTE': 'ins_add',
        'LD_I': 'ins_loadi',
        'JP_V0': 'ins_jmp_v0',
        'RND': 'ins_rnd',
        'DRW': 'ins_draw',
        'SKP': 'ins_skipkey',
        'SKNP': 'ins_skipkey',
        'LD_VX_DT': 'ins_read_delay',
        'LD_VX_K': 'ins_wait_key',
        'LD_DT': 'ins_set_delay',
        'LD_ST': 'ins_set_sound',
        'ADD_I': 'ins_addi',
        'LD_F': 'ins_font',
        'LD_B': 'ins_bcd',
        'LD_STORE': 'ins_store',
        'LD_LOAD': 'ins_restore',
        'LD_REG': 'ins_alu',
        'OR': 'ins_alu',
        'AND': 'ins_alu',
        'XOR': 'ins_alu',
        'ADD_REG': 'ins_alu',
        'SUB': 'ins_alu',
        'SHR': 'ins_alu',
        'SUBN': 'ins_alu',
        'SHL': 'ins_alu',
    }

    def __init__(self, rng=None):
        self.rng = rng if rng is not None else random
        self.program = b''
        self.main_mem = c_alloc(TOTAL_RAM)
        self.main_mem[FONT_LOAD:FONT_LOAD + len(FONT_MAP)] = FONT_MAP
        logger.debug(f"Fonts loaded to {FONT_LOAD:04x}")
        self._clear_state()
        self.changed = False

    def _clear_state(self):
        """Zero everything except the font table"""
        font_end = FONT_LOAD + len(FONT_MAP)
        self.main_mem[font_end:] = c_alloc(TOTAL_RAM - font_end)
        self.reg_V = c_alloc(REGISTERS)
        self.reg_I = 0
        self.reg_PC = LOAD_POS
        self.stack = c_alloc(STACK_DEPTH)
        self.reg_SP = 0
        self.d_timer = 0
        self.s_timer = 0
        self.keys = [False] * len(KEY_MAP)
        self.v_mem = self._blank_screen()
        self.awaiting_input = None

    @staticmethod
    def _blank_screen():
        return [[0 for x in range(VIDEO_X)] for y in range(VIDEO_Y)]

    ## Host interface ##

    def load(self, program):
        """Reset the machine and install program at LOAD_POS"""
        if isinstance(program, int):
            # bytes(n) would quietly make n zero bytes
            raise TypeError(f"Program must be a byte sequence, not {program!r}")
        program = bytes(program)
        if len(program) > MAX_PROGRAM:
            raise ProgramTooLarge(
                f"Program is too large: {len(program)} bytes, "
                f"at most {MAX_PROGRAM} fit")
        self._clear_state()
        self.main_mem[LOAD_POS:LOAD_POS + len(program)] = program
        self.program = program
        # The blank screen needs painting
        self.changed = True
        logger.info(f"Loaded {len(program)} byte program at 0x{LOAD_POS:04x}")

    def reset(self):
        """Reload the last program from scratch"""
        self.load(self.program)

    def skip(self):
        """Step over the current instruction without executing it"""
        logger.info(f"Skipping instruction at 0x{self.reg_PC:04x}")
        self.reg_PC += 2
        self.awaiting_input = None

    def update_key(self, symbol, pressed):
        """Set the state of the keypad key mapped to symbol"""
        index = KEY_INDEX.get(symbol.upper()) if isinstance(symbol, str) else None
        if index is None:
            logger.debug(f"Ignoring unmapped key {symbol!r}")
            return
        self.keys[index] = bool(pressed)

    @property
    def framebuffer(self):
        """The screen as a flat, row-major list of VIDEO_X * VIDEO_Y pixels"""
        return [px for row in self.v_mem for px in row]

    def pixel(self, x, y):
        return self.v_mem[y % VIDEO_Y][x % VIDEO_X]

    ## Execution ##

    def cycle(self):
        """Fetch, decode and execute one instruction, then tick the timers.

        Raises a Fault subclass if the instruction can't be executed. In
        that case nothing but the changed flag has been touched.
        """
        self.changed = False
        pc = self.reg_PC
        if pc < 0 or pc + 1 >= TOTAL_RAM:
            raise AddressError(pc, None, "Instruction fetch outside memory")
        instruction = self.main_mem[pc] << 8 | self.main_mem[pc + 1]
        op = decode(instruction, pc)
        if logger.isEnabledFor(logging.DEBUG):
            mnemonic = MNEMONICS[op.name].format(**op._asdict())
            logger.debug(f"{pc:04x} | OP 0x{instruction:04x} - {mnemonic}")

        handler = getattr(self, self.HANDLERS[op.name])
        jumped = handler(op)
        if not jumped:
            self.reg_PC += 2

        if self.d_timer > 0:
            self.d_timer -= 1
        if self.s_timer > 0:
            self.s_timer -= 1

    def _check_range(self, start, length, opcode, what):
        if start < 0 or start + length > TOTAL_RAM:
            raise AddressError(
                self.reg_PC, opcode,
                f"{what} 0x{start:04x}-0x{start + length - 1:04x} outside memory")

    def ins_cls(self, op):
        """Handle instruction 0x00e0 CLS - Clear the screen"""
        self.v_mem = self._blank_screen()
        self.changed = True

    def ins_ret(self, op):
        """Handle RET instruction"""
        if self.reg_SP == 0:
            raise StackUnderflow(self.reg_PC, op.opcode, "Stack underflow")
        self.reg_SP -= 1
        self.reg_PC = self.stack[self.reg_SP]
        return True

    def ins_jmp(self, op):
        """Handle JP instruction"""
        self.reg_PC = op.nnn
        return True

    def ins_call(self, op):
        """Handle CALL instruction"""
        if self.reg_SP >= STACK_DEPTH:
            raise StackOverflow(self.reg_PC, op.opcode, "Stack overflow")
        self.stack[self.reg_SP] = self.reg_PC + 2
        self.reg_SP += 1
        self.reg_PC = op.nnn
        return True

    def ins_skipim(self, op):
        eq = op.name == 'SE_BYTE'
        if (self.reg_V[op.x] == op.kk) == eq:
            self.reg_PC += 2

    def ins_skipreg(self, op):
        eq = op.name == 'SE_REG'
        if (self.reg_V[op.x] == self.reg_V[op.y]) == eq:
            self.reg_PC += 2

    def ins_load(self, op):
        self.reg_V[op.x] = op.kk

    def ins_add(self, op):
        self.reg_V[op.x] = (self.reg_V[op.x] + op.kk) & 0xFF

    def ins_alu(self, op):
        result, flag = alu(op.name, self.reg_V[op.x], self.reg_V[op.y])
        self.reg_V[op.x] = result
        if flag is not None:
            self.reg_V[FLAG] = flag

    def ins_loadi(self, op):
        self.reg_I = op.nnn

    def ins_jmp_v0(self, op):
        self.reg_PC = op.nnn + self.reg_V[0]
        return True

    def ins_rnd(self, op):
        self.reg_V[op.x] = self.rng.randint(0, 255) & op.kk

    def ins_draw(self, op):
        """Draw n-row sprite at location (Vx, Vy) into v_mem using reg_I as pointer"""
        self._check_range(self.reg_I, op.n, op.opcode, "Sprite")
        sprite = self.main_mem[self.reg_I:self.reg_I + op.n]
        self.reg_V[FLAG] = self.draw_sprite(
            self.reg_V[op.x], self.reg_V[op.y], sprite)
        self.changed = True

    def draw_sprite(self, x, y, sprite):
        """XOR sprite rows onto v_mem at (x, y), wrapping at the edges.

        Returns 1 if any lit pixel was erased, else 0.
        """
        collision = 0
        for row, bits in enumerate(sprite):
            y_off = (y + row) % VIDEO_Y
            for col in range(SPRITE_WIDTH):
                if not bits >> (7 - col) & 0x1:
                    continue
                x_off = (x + col) % VIDEO_X
                if self.v_mem[y_off][x_off]:
                    collision = 1
                self.v_mem[y_off][x_off] ^= 1
        return collision

    def ins_skipkey(self, op):
        pressed = self.keys[self.reg_V[op.x] & 0x0F]
        if pressed == (op.name == 'SKP'):
            self.reg_PC += 2

    def ins_read_delay(self, op):
        self.reg_V[op.x] = self.d_timer

    def ins_wait_key(self, op):
        """Block until a key is down, then store the lowest one in Vx"""
        for index, pressed in enumerate(self.keys):
            if pressed:
                self.reg_V[op.x] = index
                self.awaiting_input = None
                return False
        if self.awaiting_input is None:
            logger.debug(f"Waiting for key press into V{op.x:X}")
        self.awaiting_input = op.x
        return True

    def ins_set_delay(self, op):
        self.d_timer = self.reg_V[op.x]

    def ins_set_sound(self, op):
        self.s_timer = self.reg_V[op.x]

    def ins_addi(self, op):
        self.reg_I, self.reg_V[FLAG] = add_index(self.reg_I, self.reg_V[op.x])

    def ins_font(self, op):
        self.reg_I = FONT_LOAD + self.reg_V[op.x] * FONT_HEIGHT

    def ins_bcd(self, op):
        self._check_range(self.reg_I, 3, op.opcode, "BCD store")
        self.main_mem[self.reg_I:self.reg_I + 3] = bcd(self.reg_V[op.x])

    def ins_store(self, op):
        self._check_range(self.reg_I, op.x + 1, op.opcode, "Register store")
        self.main_mem[self.reg_I:self.reg_I + op.x + 1] = self.reg_V[:op.x + 1]

    def ins_restore(self, op):
        self._check_range(self.reg_I, op.x + 1, op.opcode, "Register load")
        self.reg_V[:op.x + 1] = self.main_mem[self.reg_I:self.reg_I + op.x + 1]
