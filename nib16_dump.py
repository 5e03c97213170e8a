import csv
import click

from nib16_asm import split_lines
from nib16_isa import CALC, COMMANDS, IMM, MEM_OPCODE, WORD_BITS, to_signed

# Обратные таблицы: opcode -> мнемоника. la кодируется так же, как li,
# поэтому 1010 всегда читается как li.
BY_OPCODE = {c.opcode: c for c in COMMANDS.values() if c.kind in (CALC, IMM)}
BY_FUNC = {c.func: c for c in COMMANDS.values() if c.opcode == MEM_OPCODE}


def load_image(text: str) -> list[int]:
    # Образ: по слову в строке, 16 символов 0/1. Пустые строки пропускаем.
    words = []
    for i, line in enumerate(split_lines(text), 1):
        line = line.strip()
        if not line:
            continue
        if len(line) != WORD_BITS or set(line) - {"0", "1"}:
            raise ValueError(f"line {i}: not a {WORD_BITS}-bit binary word: {line!r}")
        words.append(int(line, 2))
    return words


def decode(word: int) -> dict:
    # Слово -> 4 полубайта, старший первым, и имя команды по opcode.
    n = [(word >> shift) & 0xF for shift in (12, 8, 4, 0)]
    ins = {"word": word, "nibbles": n, "op": "?"}

    if n[0] == MEM_OPCODE:
        cmd = BY_FUNC.get(n[3])
        if cmd:
            ins.update(op=cmd.name, kind=cmd.kind, rd=n[1], ra=n[2])
        return ins

    cmd = BY_OPCODE.get(n[0])
    if cmd is None:
        return ins
    ins.update(op=cmd.name, kind=cmd.kind, rd=n[1])
    if cmd.kind == CALC:
        ins.update(ra=n[2], rb=n[3])
    else:
        ins["imm"] = to_signed((n[2] << 4) | n[3], 8)
    return ins


def format_ins(ins: dict) -> str:
    if ins["op"] == "?":
        return f".word 0b{ins['word']:0{WORD_BITS}b}"
    if ins["kind"] == CALC:
        return f"{ins['op']} r{ins['rd']}, r{ins['ra']}, r{ins['rb']}"
    if ins["kind"] == IMM:
        return f"{ins['op']} r{ins['rd']}, {ins['imm']}"
    return f"{ins['op']} r{ins['rd']}, (r{ins['ra']})"


def dump_image(words: list[int], start: int, end: int, path: str) -> None:
    # CSV дамп: position,word,instruction
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["position", "word", "instruction"])
        for a in range(start, end + 1):
            w.writerow([a, f"{words[a]:0{WORD_BITS}b}", format_ins(decode(words[a]))])


@click.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False))
@click.argument("dump_csv", type=click.Path(dir_okay=False))
@click.argument("mem_range")  # start:end
def main(image, dump_csv, mem_range):
    try:
        a, b = mem_range.split(":")
        start, end = int(a, 0), int(b, 0)
    except ValueError:
        raise click.BadParameter("expected START:END", param_hint="MEM_RANGE")

    try:
        with open(image, "r", encoding="utf-8") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError):
        raise click.ClickException("An Error occurred while reading the Image!")

    try:
        words = load_image(text)
    except ValueError as e:
        raise click.ClickException(str(e))

    if not (0 <= start <= end < len(words)):
        raise click.BadParameter(f"range must lie within 0:{len(words) - 1}",
                                 param_hint="MEM_RANGE")

    dump_image(words, start, end, dump_csv)
    click.echo(f"Dumped {end - start + 1} words to {dump_csv}")


if __name__ == "__main__":
    main()
