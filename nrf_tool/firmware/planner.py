# firmware/planner.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Iterator

from .map import (
    SessionConfig, DirtyBitmap, Block, Page,
    address_to_block, block_to_address,
)
from .image import FlashImage
from .ihex import HexRecord, RecordType, UnsupportedAddressing, until_eof


class PolicyError(ValueError):
    pass

class ProtectedRange(PolicyError):
    def __init__(self, address: int, protect_bootloader: bool = True):
        self.address = address
        where = "bootloader area" if protect_bootloader else "flash"
        super().__init__(f"address 0x{address:04X} is outside the writable range ({where})")


@dataclass
class WritePlan:
    """Что писать: битмап грязных блоков + итоговый образ."""

    bitmap: DirtyBitmap
    image: FlashImage

    def pages(self) -> Iterator[Page]:
        return self.bitmap.pages()

    def blocks(self) -> Iterator[Block]:
        return self.bitmap.blocks()

    def is_empty(self) -> bool:
        return self.bitmap.is_empty()


def _check(addr: int, config: SessionConfig):
    if not config.address_is_valid(addr):
        raise ProtectedRange(addr, config.protect_bootloader)


def _spanned_blocks(record: HexRecord) -> range:
    first, last = record.address, record.end - 1
    return range(address_to_block(first), address_to_block(last) + 1)


def validate_record(record: HexRecord, config: SessionConfig) -> None:
    """
    Проверка записи по политике защиты: первый и последний байт
    и начало каждого затронутого блока.
    """
    if not record.data:
        return
    _check(record.address, config)
    _check(record.end - 1, config)
    for block in _spanned_blocks(record):
        _check(block_to_address(block), config)


def compute_plan(current: FlashImage, records: Iterable[HexRecord],
                 config: SessionConfig) -> WritePlan:
    """
    Наложить записи HEX на копию текущего образа и отметить изменённые блоки.
    Записи, совпадающие с содержимым устройства, ничего не помечают.
    """
    work = current.copy()
    bitmap = DirtyBitmap(config.geometry)

    for rec in until_eof(records):
        if rec.type != RecordType.DATA:
            raise UnsupportedAddressing(f"record type {int(rec.type):02X} cannot be planned")

        validate_record(rec, config)
        if not rec.data or work.read(rec.address, len(rec.data)) == rec.data:
            continue

        work.write(rec.address, rec.data)
        for block in _spanned_blocks(rec):
            # запись может захватывать несколько блоков, проверяем каждый
            _check(block_to_address(block), config)
            bitmap.mark(block)

    return WritePlan(bitmap=bitmap, image=work)
