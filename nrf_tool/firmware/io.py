# firmware/io.py
from __future__ import annotations
from dataclasses import replace
from pathlib import Path

from .map import SessionConfig
from .ihex import HexRecord, read_hex, write_hex
from .image import FlashImage
from .planner import validate_record
from .programmer import FlashProgrammer


# ---- Высокоуровневые операции ----
def device_info(programmer: FlashProgrammer, config: SessionConfig) -> dict:
    g = config.geometry
    return {
        "device": g.name,
        "variant": config.variant.label,
        "version": programmer.version(),
        "flash_size": g.size,
        "pages": g.page_count,
        "page_size": g.page_size,
        "block_size": g.block_size,
        "writable_limit": f"0x{g.limit(config.protect_bootloader):04X}",
    }


def dump_firmware(programmer: FlashProgrammer, out_path: Path, binary: bool = False) -> dict:
    """
    Считать всю флеш и сохранить в Intel HEX
    (или сырым .bin, если binary=True - старый режим дампа).
    """
    out_path = Path(out_path)
    image = programmer.read_image()
    if binary:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(image.to_bytes())
        records = None
    else:
        records = write_hex(image, out_path)
    return {
        "bytes": len(image),
        "records": records,
        "crc32": f"0x{image.crc32():08X}",
        "out": str(out_path),
    }


def load_firmware(in_path: Path) -> list[HexRecord]:
    """
    Разобрать HEX целиком. Вызывается до открытия устройства:
    битый или недопустимый файл не должен привести ни к одной команде.
    """
    return read_hex(Path(in_path))


def flash_firmware(programmer: FlashProgrammer, records: list[HexRecord],
                   source: str = "") -> dict:
    result = programmer.program(records)
    result["source"] = source
    return result


def plan_firmware(programmer, records: list[HexRecord], source: str = "") -> dict:
    """Только посчитать, какие страницы будут перезаписаны (без записи)."""
    if not hasattr(programmer, "plan"):
        raise NotImplementedError("Пробный прогон доступен только для nRF24LU1+.")
    plan = programmer.plan(records)
    return {
        "pages": [int(p) for p in plan.pages()],
        "blocks": [int(b) for b in plan.blocks()],
        "source": source,
    }


def compare_firmware(programmer: FlashProgrammer, records: list[HexRecord],
                     config: SessionConfig, source: str = "") -> dict:
    """
    Сравнить флеш с HEX-файлом блок за блоком. Адреса, которых нет в файле,
    ожидаются стёртыми (0xFF), так что дамп read-fw сверяется целиком.
    Область загрузчика тоже сравнивается: записи проверяются только на
    границы флеш-памяти.
    """
    bounds = replace(config, protect_bootloader=False)
    for rec in records:
        validate_record(rec, bounds)
    expected = FlashImage.from_records(records, config.geometry)
    actual = programmer.read_image()
    differ = [b for b in range(config.geometry.block_count)
              if actual.block_bytes(b) != expected.block_bytes(b)]
    return {
        "match": not differ,
        "blocks": differ,
        "crc32": f"0x{actual.crc32():08X}",
        "expected_crc32": f"0x{expected.crc32():08X}",
        "source": source,
    }
