# firmware/image.py
from __future__ import annotations
import zlib
from typing import Iterable

from .map import (
    FlashGeometry, NRF24LU1_FLASH, ERASED,
    block_to_address, page_to_address,
)
from .ihex import HexRecord, until_eof

# Команды загрузчика nRF24LU1+, нужные для чтения
CMD_READ_BLOCK = 0x03
CMD_SET_MSB = 0x06
MSB_SPAN = 0x100  # блоков на одно значение старшего байта адреса


class FlashImage:
    """
    Полный образ флеш-памяти устройства.
    Доступ только через методы с проверкой границ.
    """
    def __init__(self, geometry: FlashGeometry = NRF24LU1_FLASH, fill: int = ERASED):
        self.geometry = geometry
        self._buf = bytearray([fill] * geometry.size)

    @classmethod
    def from_bytes(cls, raw: bytes, geometry: FlashGeometry = NRF24LU1_FLASH) -> "FlashImage":
        if len(raw) != geometry.size:
            raise ValueError(f"image is {len(raw)} bytes, flash is {geometry.size} bytes")
        img = cls(geometry)
        img._buf[:] = raw
        return img

    @classmethod
    def from_records(cls, records: Iterable[HexRecord],
                     geometry: FlashGeometry = NRF24LU1_FLASH) -> "FlashImage":
        """Образ по HEX-файлу: всё, чего нет в записях, считается стёртым (0xFF)."""
        img = cls(geometry)
        for rec in until_eof(records):
            if rec.data:
                img.write(rec.address, rec.data)
        return img

    def copy(self) -> "FlashImage":
        return FlashImage.from_bytes(bytes(self._buf), self.geometry)

    def __len__(self) -> int:
        return len(self._buf)

    def __eq__(self, other) -> bool:
        if not isinstance(other, FlashImage):
            return NotImplemented
        return self._buf == other._buf

    def _span(self, addr: int, size: int):
        if addr < 0 or size < 0 or addr + size > len(self._buf):
            raise IndexError(f"range 0x{addr:04X}+{size} is outside flash (0x{len(self._buf):04X})")

    def read(self, addr: int, size: int) -> bytes:
        self._span(addr, size)
        return bytes(self._buf[addr:addr + size])

    def write(self, addr: int, data: bytes) -> None:
        self._span(addr, len(data))
        self._buf[addr:addr + len(data)] = data

    def block_bytes(self, block: int) -> bytes:
        return self.read(block_to_address(block), self.geometry.block_size)

    def page_bytes(self, page: int) -> bytes:
        return self.read(page_to_address(page), self.geometry.page_size)

    def to_bytes(self) -> bytes:
        return bytes(self._buf)

    def crc32(self) -> int:
        return zlib.crc32(self._buf) & 0xFFFFFFFF


def read_block(channel, block: int) -> bytes:
    data = channel.execute(bytes([CMD_READ_BLOCK, block & 0xFF]), NRF24LU1_FLASH.block_size)
    return bytes(data)


def set_address_msb(channel, msb: int) -> None:
    channel.execute(bytes([CMD_SET_MSB, msb & 0xFF]), 1)


def read_full_image(channel, geometry: FlashGeometry = NRF24LU1_FLASH) -> FlashImage:
    """
    Считать всю флеш блок за блоком. Каждые 256 блоков меняется старший
    байт адреса, перед этим устройству отправляется SET_MSB.
    Любая ошибка транспорта прерывает чтение, частичный образ не возвращается.
    """
    img = FlashImage(geometry)
    for block in range(geometry.block_count):
        if block % MSB_SPAN == 0:
            set_address_msb(channel, block // MSB_SPAN)
        img.write(block_to_address(block), read_block(channel, block))
    return img
