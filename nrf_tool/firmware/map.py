# firmware/map.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, NewType

from ..config import PID_NRF24LU, PID_NRFGO, EP_IN, EP_OUT_NRF24LU, EP_OUT_NRFGO

Address = NewType("Address", int)
Block = NewType("Block", int)
Page = NewType("Page", int)

BLOCK_SIZE = 64
BLOCKS_PER_PAGE = 8
ERASED = 0xFF


@dataclass(frozen=True)
class FlashGeometry:
    name: str
    size: int
    block_size: int = BLOCK_SIZE
    blocks_per_page: int = BLOCKS_PER_PAGE
    bootloader_vector: int = 0x7800

    @property
    def block_count(self) -> int:
        return self.size // self.block_size

    @property
    def page_size(self) -> int:
        return self.block_size * self.blocks_per_page

    @property
    def page_count(self) -> int:
        return self.block_count // self.blocks_per_page

    def limit(self, protect_bootloader: bool) -> int:
        """Первый недопустимый адрес при данной политике защиты."""
        return self.bootloader_vector if protect_bootloader else self.size


# nRF24LU1+: 32 КБ, 64 страницы по 8 блоков по 64 байта; загрузчик с 0x7800
NRF24LU1_FLASH = FlashGeometry("nRF24LU1+", size=32 * 1024)


# ---- Пересчёт адресов ----
def block_to_address(block: int) -> Address:
    return Address(block * BLOCK_SIZE)

def address_to_block(addr: int) -> Block:
    return Block(addr // BLOCK_SIZE)

def page_to_block(page: int) -> Block:
    return Block(page * BLOCKS_PER_PAGE)

def block_to_page(block: int) -> Page:
    return Page(block // BLOCKS_PER_PAGE)

def page_to_address(page: int) -> Address:
    return block_to_address(page_to_block(page))

def address_to_page(addr: int) -> Page:
    return block_to_page(address_to_block(addr))


def address_is_valid(addr: int, protect_bootloader: bool,
                     geometry: FlashGeometry = NRF24LU1_FLASH) -> bool:
    """
    Можно ли писать по адресу при текущей политике.
    Проверяются только границы записей и адреса начала блоков, а не каждый
    байт: это принятое упрощение, поведение менять не нужно.
    """
    return 0 <= addr < geometry.limit(protect_bootloader)


class DirtyBitmap:
    """
    Один бит на блок. Байт битмапа = страница (8 блоков),
    страница "грязная", если выставлен хотя бы один её бит.
    """
    def __init__(self, geometry: FlashGeometry = NRF24LU1_FLASH):
        self.geometry = geometry
        self._bits = bytearray(geometry.page_count)

    def _check(self, block: int):
        if not 0 <= block < self.geometry.block_count:
            raise IndexError(f"block {block} out of range")

    def mark(self, block: int) -> None:
        self._check(block)
        self._bits[block_to_page(block)] |= 1 << (block % BLOCKS_PER_PAGE)

    def is_dirty(self, block: int) -> bool:
        self._check(block)
        return bool(self._bits[block_to_page(block)] & (1 << (block % BLOCKS_PER_PAGE)))

    def blocks(self) -> Iterator[Block]:
        for block in range(self.geometry.block_count):
            if self.is_dirty(block):
                yield Block(block)

    def pages(self) -> Iterator[Page]:
        for page, bits in enumerate(self._bits):
            if bits:
                yield Page(page)

    def is_empty(self) -> bool:
        return not any(self._bits)

    def __len__(self) -> int:
        return sum(bin(b).count("1") for b in self._bits)


class DeviceVariant(Enum):
    NRF24LU1 = ("nrf24lu1", PID_NRF24LU, EP_OUT_NRF24LU, EP_IN)
    NRFGO = ("nrfgo", PID_NRFGO, EP_OUT_NRFGO, EP_IN)

    def __init__(self, label: str, product_id: int, ep_out: int, ep_in: int):
        self.label = label
        self.product_id = product_id
        self.ep_out = ep_out
        self.ep_in = ep_in

    @classmethod
    def from_label(cls, label: str) -> "DeviceVariant":
        for v in cls:
            if v.label == label.lower():
                return v
        raise ValueError(f"unknown device variant: {label}")


@dataclass(frozen=True)
class SessionConfig:
    """Настройки одного запуска; передаются явно в каждую операцию."""

    protect_bootloader: bool = True
    variant: DeviceVariant = DeviceVariant.NRF24LU1
    geometry: FlashGeometry = field(default=NRF24LU1_FLASH)
    strict_ready: bool = False  # nRFgo: таймаут READY -> ошибка, а не предупреждение

    def address_is_valid(self, addr: int) -> bool:
        return address_is_valid(addr, self.protect_bootloader, self.geometry)
