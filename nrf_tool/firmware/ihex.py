# firmware/ihex.py
"""Intel HEX: разбор в записи и обратная сериализация образа.

Поддерживаются только записи DATA (00) и EOF (01). Записи сегментной и
линейной адресации (02..05) не интерпретируются: декодер сразу падает
с UnsupportedAddressing, пропускать их нельзя.

При дампе каждый 64-байтный блок пишется двумя записями по 32 байта,
а записи, целиком состоящие из 0xFF (стёртая флеш), не выводятся.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
import string
from typing import Iterable, Iterator

DUMP_RECORD_LEN = 32
ERASED = 0xFF
HEX_DIGITS = frozenset(string.hexdigits)


class RecordType(IntEnum):
    DATA = 0x00
    EOF = 0x01
    EXT_SEGMENT = 0x02
    START_SEGMENT = 0x03
    EXT_LINEAR = 0x04
    START_LINEAR = 0x05


UNSUPPORTED = {
    RecordType.EXT_SEGMENT, RecordType.START_SEGMENT,
    RecordType.EXT_LINEAR, RecordType.START_LINEAR,
}


class HexError(ValueError):
    pass

class MalformedRecord(HexError):
    pass

class UnsupportedAddressing(HexError):
    pass


@dataclass(frozen=True)
class HexRecord:
    type: RecordType
    address: int
    data: bytes = b""
    checksum: int = 0

    @property
    def end(self) -> int:
        """Адрес сразу за последним байтом записи."""
        return self.address + len(self.data)


def checksum(raw: bytes) -> int:
    return (-sum(raw)) & 0xFF


def decode_line(line: str) -> HexRecord:
    s = line.strip()
    if not s.startswith(":"):
        raise MalformedRecord(f"record must start with ':': {s!r}")
    body = s[1:]
    if len(body) % 2 or any(c not in HEX_DIGITS for c in body):
        raise MalformedRecord(f"bad hex digits: {s!r}")
    raw = bytes.fromhex(body)
    if len(raw) < 5:
        raise MalformedRecord(f"record too short: {s!r}")

    count = raw[0]
    if len(raw) != count + 5:
        raise MalformedRecord(f"length field {count} does not match record: {s!r}")
    if sum(raw) & 0xFF:
        raise MalformedRecord(
            f"checksum mismatch: got 0x{raw[-1]:02X}, expected 0x{checksum(raw[:-1]):02X}")

    rtype = raw[3]
    if rtype in UNSUPPORTED:
        raise UnsupportedAddressing(
            f"record type {rtype:02X} (segment/linear addressing) is not supported")
    if rtype not in (RecordType.DATA, RecordType.EOF):
        raise MalformedRecord(f"unknown record type {rtype:02X}")

    return HexRecord(
        type=RecordType(rtype),
        address=int.from_bytes(raw[1:3], "big"),
        data=bytes(raw[4:-1]),
        checksum=raw[-1],
    )


def decode_stream(lines: Iterable[str]) -> Iterator[HexRecord]:
    """
    Ленивый разбор: отдаёт записи до EOF включительно.
    Всё, что после EOF, игнорируется; поток без EOF считается битым.
    """
    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            continue
        try:
            record = decode_line(line)
        except HexError as e:
            raise type(e)(f"line {lineno}: {e}") from None
        yield record
        if record.type == RecordType.EOF:
            return
    raise MalformedRecord("missing end-of-file record")


def encode_record(rtype: int, address: int, data: bytes = b"") -> str:
    if not 0 <= address <= 0xFFFF:
        raise ValueError(f"address 0x{address:X} does not fit in 16 bits")
    if len(data) > 0xFF:
        raise ValueError(f"record data too long: {len(data)} bytes")
    raw = bytes([len(data)]) + address.to_bytes(2, "big") + bytes([rtype]) + bytes(data)
    return ":" + (raw + bytes([checksum(raw)])).hex().upper()


def until_eof(records: Iterable[HexRecord]) -> Iterator[HexRecord]:
    """Записи до первой EOF (сама EOF и всё после неё отбрасываются)."""
    for rec in records:
        if rec.type == RecordType.EOF:
            return
        yield rec


def _ascii_lines(raw_lines: Iterable[bytes]) -> Iterator[str]:
    for lineno, raw in enumerate(raw_lines, 1):
        try:
            yield raw.decode("ascii")
        except UnicodeDecodeError as e:
            raise MalformedRecord(
                f"line {lineno}: non-ASCII byte 0x{raw[e.start]:02X} at column {e.start + 1}") from None


def read_hex(path: Path) -> list[HexRecord]:
    """Прочитать весь файл целиком (до любых обращений к устройству)."""
    with open(path, "rb") as f:
        return list(decode_stream(_ascii_lines(f)))


# ---- Дамп образа ----
def iter_dump_lines(image) -> Iterator[str]:
    size = len(image)
    for addr in range(0, size, DUMP_RECORD_LEN):
        chunk = image.read(addr, min(DUMP_RECORD_LEN, size - addr))
        if all(b == ERASED for b in chunk):
            continue
        yield encode_record(RecordType.DATA, addr, chunk)
    yield encode_record(RecordType.EOF, 0)


def write_hex(image, out_path: Path) -> int:
    """Записать образ в файл, вернуть количество записей DATA."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with open(out_path, "w", encoding="ascii", newline="\n") as f:
        for line in iter_dump_lines(image):
            f.write(line + "\n")
            n += 1
    return n - 1
