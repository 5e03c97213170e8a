import re
from typing import NamedTuple, Optional

# Параметры машины: 8 регистров, слово 16 бит = 4 полубайта (nibble),
# программа занимает ровно IMAGE_SIZE слов.
REGISTERS = 8
WORD_BITS = 16
IMAGE_SIZE = 256
IMM_MIN, IMM_MAX = -128, 127

# Формы операндов реальных команд:
# CALC  op rD, rA, rB
# IMM   op rD, imm
# MEM   op rD, (rA)
# ADDR  op rD, номер_строки (la)
CALC, IMM, MEM, ADDR = "calc", "imm", "mem", "addr"

ARITY = {CALC: 3, IMM: 2, MEM: 2, ADDR: 2}

MEM_OPCODE = 0b0101


class Command(NamedTuple):
    name: str
    kind: str
    opcode: int
    func: Optional[int] = None  # только у MEM: lb/sb

    @property
    def arity(self) -> int:
        return ARITY[self.kind]


# COMMANDS: мнемоника -> описание команды.
# opcode попадает в старший полубайт слова, func (если есть) в младший.
COMMANDS = {c.name: c for c in (
    Command("add",  CALC, 0b0000),
    Command("sub",  CALC, 0b0001),
    Command("xor",  CALC, 0b0100),
    Command("or",   CALC, 0b0110),
    Command("and",  CALC, 0b0111),
    Command("bge",  CALC, 0b1001),
    Command("beq",  CALC, 0b1011),
    Command("bgt",  CALC, 0b1101),
    Command("addi", IMM,  0b1000),
    Command("li",   IMM,  0b1010),
    Command("xori", IMM,  0b1100),
    Command("ori",  IMM,  0b1110),
    Command("andi", IMM,  0b1111),
    Command("lb",   MEM,  MEM_OPCODE, 0b0000),
    Command("sb",   MEM,  MEM_OPCODE, 0b0001),
    Command("la",   ADDR, 0b1010),
)}

# PSEUDO: мнемоника -> (число аргументов, перестановка токенов).
# t это вся строка токенов, t[0] сама псевдокоманда.
# Результат всегда сразу реальная команда, повторного раскрытия нет.
PSEUDO = {
    "nop":  (0, lambda t: ["add", "r0", "r0", "r0"]),
    "blt":  (3, lambda t: ["bgt", t[1], t[3], t[2]]),
    "ble":  (3, lambda t: ["bge", t[1], t[3], t[2]]),
    "j":    (1, lambda t: ["beq", t[1], "r0", "r0"]),
    "sll":  (2, lambda t: ["add", t[1], t[2], t[2]]),
    "blez": (2, lambda t: ["bge", t[1], "r0", t[2]]),
    "bltz": (2, lambda t: ["bgt", t[1], "r0", t[2]]),
    "bgez": (2, lambda t: ["bge", t[1], t[2], "r0"]),
    "bgtz": (2, lambda t: ["bgt", t[1], t[2], "r0"]),
    "neg":  (2, lambda t: ["sub", t[1], "r0", t[2]]),
}

DEC = re.compile(r"[+-]?[0-9]+")
HEX = re.compile(r"0x[0-9a-f]+")


def expand(tokens: list) -> Optional[list]:
    # Раскрываем псевдокоманду. None, если число аргументов не совпало.
    arity, rewrite = PSEUDO[tokens[0]]
    if len(tokens) - 1 != arity:
        return None
    return list(rewrite(tokens))


def num(t: str) -> int:
    # Понимает 123, -5, 0x7f (hex всегда без знака)
    if HEX.fullmatch(t):
        return int(t[2:], 16)
    if DEC.fullmatch(t):
        return int(t)
    raise ValueError(f"not a number: {t!r}")


def reg(t: str) -> int:
    # Регистр пишется строго как r0..r7
    if len(t) != 2 or t[0] != "r":
        raise ValueError("Invalid Register!")
    if t[1] not in "01234567":
        raise ValueError("Invalid Register Number!")
    return int(t[1])


def mem_reg(t: str) -> str:
    # "(r3)" -> "r3"; сам регистр проверяет reg()
    if len(t) != 4 or t[0] != "(" or t[3] != ")":
        raise ValueError('Invalid Memory Address Format! (should be for example "(r3)")')
    return t[1:3]


def fit_bits(x: int, bits: int) -> int:
    # Отрицательные значения упаковываем в доп.код (two's complement)
    if x < 0:
        x = (1 << bits) + x
    if not (0 <= x < (1 << bits)):
        raise ValueError(f"{x} does not fit in {bits} bits")
    return x


def to_signed(x: int, bits: int) -> int:
    # Обратно: из беззнакового поля в знаковое значение
    if x >= (1 << (bits - 1)):
        x -= (1 << bits)
    return x


def split_byte(x: int) -> tuple:
    # Байт (-128..255) -> (старший, младший) полубайт
    b = fit_bits(x, 8)
    return b >> 4, b & 0xF
