import re
from pathlib import Path
from typing import Callable, Optional

import click

from nib16_isa import (
    ADDR, CALC, COMMANDS, DEC, IMAGE_SIZE, IMM, IMM_MAX, IMM_MIN, MEM, PSEUDO,
    WORD_BITS, expand, mem_reg, num, reg, split_byte, to_signed,
)

DEFINE = "#define"
LABEL = "#label"
COMMENT = "//"


class Diagnostics:
    # Копим проблемы и продолжаем сборку: ошибка в одной строке
    # не останавливает остальные проходы.
    def __init__(self):
        self.messages = []

    @property
    def count(self) -> int:
        return len(self.messages)

    def add(self, message: str, line_num: Optional[int] = None) -> None:
        if line_num is not None:
            message = f"ERROR in Line {line_num}: {message}"
        self.messages.append(message)

    def merge(self, other: "Diagnostics") -> "Diagnostics":
        self.messages.extend(other.messages)
        return self


def new_line(text: str, n: int) -> dict:
    # Одна строка исходника. Живёт всю сборку и меняется на каждом проходе.
    # n      номер строки в файле (с 1)
    # pos    позиция в итоговом образе (только у valid строк)
    # parts  токены после очистки, подстановок и раскрытия псевдокоманд
    return {
        "n": n,
        "text": text,
        "valid": True,
        "parts": None,
        "cmd": None,
        "args": [],
        "pos": None,
        "nibbles": None,
        "word": 0,
    }


# Строки делим только по \n, \r и \r\n: номера строк нужны для меток и ошибок
NEWLINE = re.compile(r"\r\n|\r|\n")


def split_lines(text: str) -> list:
    lines = NEWLINE.split(text)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def load_lines(text: str) -> list:
    return [new_line(s, i) for i, s in enumerate(split_lines(text), 1)]


def valid(lines: list):
    return (ln for ln in lines if ln["valid"])


def clean(s: str) -> str:
    # Регистр не важен, запятая = пробел, "//" до конца строки комментарий
    s = s.lower().replace(",", " ")
    return s.split(COMMENT, 1)[0].strip()


def prepare(lines: list) -> None:
    for ln in lines:
        s = clean(ln["text"])
        if not s:
            ln["valid"] = False
            continue
        ln["parts"] = s.split()


def _collect(lines: list, directive: str, size: int, what: str, value: Callable):
    # Директива всегда съедает строку, даже если записана неверно.
    table, diag = {}, Diagnostics()
    for ln in valid(lines):
        if ln["parts"][0] != directive:
            continue
        if len(ln["parts"]) == size:
            table[ln["parts"][1]] = value(ln)
        else:
            diag.add(f"Could not resolve the {what}!", ln["n"])
        ln["valid"] = False
    return table, diag


def get_defines(lines: list):
    # #define NAME VALUE, действует на весь файл независимо от места
    return _collect(lines, DEFINE, 3, "define", lambda ln: ln["parts"][2])


def get_labels(lines: list):
    # #label NAME, значение = номер строки самой директивы в исходнике
    return _collect(lines, LABEL, 2, "label", lambda ln: str(ln["n"]))


def substitute(lines: list, table: dict) -> None:
    # Простая замена подстроки во всех токенах (не только целых токенов).
    for name, value in table.items():
        for ln in valid(lines):
            ln["parts"] = [p.replace(name, value) for p in ln["parts"]]


def setup_command(ln: dict, diag: Diagnostics) -> None:
    parts = ln["parts"]
    if parts[0] in PSEUDO:
        expanded = expand(parts)
        if expanded is None:
            diag.add(f"This Pseudo-Command expected {PSEUDO[parts[0]][0]} "
                     f"Arguments but found {len(parts) - 1}!", ln["n"])
            ln["valid"] = False
            return
        ln["parts"] = parts = expanded

    cmd = COMMANDS.get(parts[0])
    if cmd is None:
        diag.add("No Matching Command found!", ln["n"])
        ln["valid"] = False
        return
    ln["cmd"] = cmd
    ln["args"] = parts[1:]


def setup_commands(lines: list) -> Diagnostics:
    diag = Diagnostics()
    for ln in valid(lines):
        setup_command(ln, diag)
    return diag


def assign_positions(lines: list) -> None:
    # Только после того, как все директивы и битые строки выброшены
    for pos, ln in enumerate(valid(lines)):
        ln["pos"] = pos


def register(ln: dict, t: str, diag: Diagnostics) -> int:
    try:
        return reg(t)
    except ValueError as e:
        diag.add(str(e), ln["n"])
        return 0


def immediate(ln: dict, t: str, diag: Diagnostics) -> int:
    try:
        value = num(t)
    except ValueError:
        diag.add("Could not parse Immediate!", ln["n"])
        return 0
    if not IMM_MIN <= value <= IMM_MAX:
        diag.add(f"Immediate {value} is not in valid range!", ln["n"])
        return 0
    return value


def next_valid(lines: list, n: int) -> Optional[dict]:
    # Первая valid строка с номером >= n
    for ln in lines[n - 1:]:
        if ln["valid"]:
            return ln
    return None


def resolve_target(lines: list, ln: dict, t: str, diag: Diagnostics) -> int:
    # Номер строки исходника -> позиция в образе, упакованная в знаковый байт.
    if DEC.fullmatch(t):
        n = int(t)
    else:
        diag.add("Could not parse the Line Number!", ln["n"])
        n = 1
    if n <= 0:
        diag.add("A Line Number to jump to must be greater than 0!", ln["n"])
        n = 1

    target = next_valid(lines, n)
    if target is None:
        diag.add("No valid Line left after the given Line Number to jump to!", ln["n"])
        target = lines[0]
    pos = target["pos"] or 0

    if not 0 <= pos < IMAGE_SIZE:
        diag.add(f"Line Number {pos} is not in valid range! "
                 "(This is the final translated Line Number.)", ln["n"])
    # >127 уходит в отрицательные, >255 просто обрезается до байта
    return to_signed(pos & 0xFF, 8)


# Кодировщики по форме команды. parts уже содержит opcode (и func),
# каждый заполняет полубайты 1..3.
def _encode_calc(lines, ln, parts, diag):
    for i, t in enumerate(ln["args"], 1):
        parts[i] = register(ln, t, diag)


def _encode_imm(lines, ln, parts, diag):
    parts[1] = register(ln, ln["args"][0], diag)
    parts[2], parts[3] = split_byte(immediate(ln, ln["args"][1], diag))


def _encode_mem(lines, ln, parts, diag):
    parts[1] = register(ln, ln["args"][0], diag)
    try:
        t = mem_reg(ln["args"][1])
    except ValueError as e:
        diag.add(str(e), ln["n"])
        t = "r0"
    parts[2] = register(ln, t, diag)


def _encode_addr(lines, ln, parts, diag):
    parts[1] = register(ln, ln["args"][0], diag)
    value = resolve_target(lines, ln, ln["args"][1], diag)
    parts[2], parts[3] = split_byte(value)
    # для листинга показываем уже разрешённое значение
    ln["parts"][2] = str(value)


ENCODERS = {
    CALC: _encode_calc,
    IMM: _encode_imm,
    MEM: _encode_mem,
    ADDR: _encode_addr,
}


def encode_line(lines: list, ln: dict, diag: Diagnostics) -> Optional[list]:
    cmd = ln["cmd"]
    if len(ln["args"]) != cmd.arity:
        diag.add(f"Expected {cmd.arity} Arguments but found {len(ln['args'])}!", ln["n"])
        return None

    parts = [cmd.opcode, 0, 0, 0]
    if cmd.func is not None:
        parts[3] = cmd.func
    ENCODERS[cmd.kind](lines, ln, parts, diag)
    return parts


def pack(parts: Optional[list]) -> int:
    # 4 полубайта -> слово, старший первым. Нет частей -> нулевое слово.
    if parts is None:
        return 0
    word = 0
    for p in parts:
        word = (word << 4) | (p & 0xF)
    return word


def encode_all(lines: list) -> Diagnostics:
    diag = Diagnostics()
    for ln in valid(lines):
        ln["nibbles"] = encode_line(lines, ln, diag)
        ln["word"] = pack(ln["nibbles"])
    return diag


def build_image(lines: list):
    image, diag = [], Diagnostics()
    for ln in valid(lines):
        if len(image) == IMAGE_SIZE:
            diag.add(f"ERROR: Program is too long to fit in {IMAGE_SIZE} Instructions!")
            break
        image.append(ln["word"])
    image += [0] * (IMAGE_SIZE - len(image))
    return image, diag


def render(image: list) -> str:
    return "".join(f"{w:0{WORD_BITS}b}\n" for w in image)


def listing(lines: list) -> list:
    return [" ".join(ln["parts"]) for ln in valid(lines)]


def assemble(text: str, trace: Optional[Callable] = None):
    # Весь конвейер. Возвращает строки, образ из IMAGE_SIZE слов и проблемы.
    lines = load_lines(text)
    diag = Diagnostics()

    prepare(lines)
    if trace:
        trace("Cleaned Assembly:")
        for s in listing(lines):
            trace(s)
        trace("")

    defines, d = get_defines(lines)
    diag.merge(d)
    substitute(lines, defines)

    labels, d = get_labels(lines)
    diag.merge(d)
    substitute(lines, labels)

    diag.merge(setup_commands(lines))
    assign_positions(lines)
    diag.merge(encode_all(lines))
    if trace:
        trace("Fully Resolved Assembly:")
        for s in listing(lines):
            trace(s)
        trace("")

    image, d = build_image(lines)
    diag.merge(d)
    return lines, image, diag


def nibble_bits(word: int) -> str:
    bits = f"{word:0{WORD_BITS}b}"
    return " ".join(bits[i:i + 4] for i in range(0, WORD_BITS, 4))


def show(lines: list) -> None:
    # Печать по командам: позиция, разрешённый текст, слово по полубайтам
    for ln in valid(lines):
        if ln["pos"] >= IMAGE_SIZE:
            break
        click.echo(f"{ln['pos']:3d}  {' '.join(ln['parts']):<24} {nibble_bits(ln['word'])}")


def default_out(src: str) -> Path:
    return Path("out") / f"{Path(src).stem}_out.txt"


@click.command()
@click.argument("src", type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--out", type=click.Path(dir_okay=False),
              help="куда писать образ (по умолчанию out/<имя>_out.txt)")
@click.option("--test", is_flag=True, help="печатать слова по командам")
@click.option("-v", "--verbose", is_flag=True,
              help="печатать очищенный и разрешённый ассемблер")
@click.pass_context
def main(ctx, src, out, test, verbose):
    if not src.endswith(".txt"):
        raise click.BadParameter("Can only read .txt Files!", param_hint="SRC")
    name = Path(src).stem
    out = Path(out) if out else default_out(src)

    try:
        with open(src, "r", encoding="utf-8") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError):
        raise click.ClickException("An Error occurred while reading the File!")

    lines, image, diag = assemble(text, trace=click.echo if verbose else None)

    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8", newline="\n") as f:
            f.write(render(image))
    except OSError:
        raise click.ClickException("An Error occurred while writing the compiled Program!")

    if test:
        show(lines)

    if diag.count == 0:
        click.echo(f'{name} was successfully compiled and saved in "{out}".')
        return
    for m in diag.messages:
        click.echo(m, err=True)
    click.echo(f'{name} was compiled with {diag.count} Problems and saved in "{out}".')
    ctx.exit(1)


if __name__ == "__main__":
    main()
