# firmware/programmer.py
"""
Программаторы для двух типов устройств.

BlockProgrammer (загрузчик nRF24LU1+): читает весь образ, считает план,
перезаписывает только грязные страницы (устройство само стирает страницу
перед записью), затем сверяет записанные блоки.

RecordStreamProgrammer (плата nRFgo): режим программирования, полное
стирание и потоковая запись каждой записи HEX без сравнения и сверки.
Между шагами опрашивается готовность устройства.
"""

from __future__ import annotations
from typing import Iterable, Protocol

from ..config import READY_RETRIES
from ..usb_transport.channel import TransportError
from .map import SessionConfig, DeviceVariant, Page, page_to_block, block_to_address
from .image import FlashImage, read_full_image, read_block, set_address_msb, MSB_SPAN
from .ihex import HexRecord, RecordType, until_eof
from .planner import WritePlan, compute_plan, validate_record

UNKNOWN_VERSION = "?.?"


class ProgrammerError(RuntimeError):
    pass

class InvalidPage(ProgrammerError):
    pass

class DeviceRejectedPage(ProgrammerError):
    def __init__(self, page: int, code: int):
        self.page, self.code = page, code
        super().__init__(f"device rejected page {page} (code 0x{code:02X})")

class DeviceRejectedBlock(ProgrammerError):
    def __init__(self, page: int, block: int, code: int):
        self.page, self.block, self.code = page, block, code
        super().__init__(f"device rejected block {block} of page {page} (code 0x{code:02X})")

class VerifyFailed(ProgrammerError):
    def __init__(self, block: int):
        self.block = block
        super().__init__(f"verify failed at block {block} (0x{block_to_address(block):04X})")

class ReadyTimeout(ProgrammerError):
    pass


class FlashProgrammer(Protocol):
    def version(self) -> str: ...
    def read_image(self) -> FlashImage: ...
    def program(self, records: Iterable[HexRecord]) -> dict: ...


# ---- Вариант A: nRF24LU1+ ----
class BlockProgrammer:
    CMD_VERSION = 0x01
    CMD_PAGE_WRITE = 0x02

    def __init__(self, channel, config: SessionConfig):
        self.channel = channel
        self.config = config
        self.geometry = config.geometry

    def version(self) -> str:
        try:
            ver = self.channel.execute(bytes([self.CMD_VERSION]), 2)
        except TransportError:
            return UNKNOWN_VERSION
        return f"{ver[0]}.{ver[1]}"

    def read_image(self) -> FlashImage:
        return read_full_image(self.channel, self.geometry)

    def plan(self, records: Iterable[HexRecord]) -> WritePlan:
        return compute_plan(self.read_image(), records, self.config)

    def write_page(self, page: int, data: bytes) -> None:
        if not 0 <= page < self.geometry.page_count:
            raise InvalidPage(f"page {page} is out of range 0..{self.geometry.page_count - 1}")
        if len(data) != self.geometry.page_size:
            raise ValueError(f"page data must be {self.geometry.page_size} bytes, got {len(data)}")

        # устройство стирает страницу и ждёт 8 блоков
        code = self.channel.execute(bytes([self.CMD_PAGE_WRITE, page]), 1)[0]
        if code:
            raise DeviceRejectedPage(page, code)

        bs = self.geometry.block_size
        for i in range(self.geometry.blocks_per_page):
            code = self.channel.execute(data[i * bs:(i + 1) * bs], 1)[0]
            if code:
                # страница уже стёрта, откатить нечем
                raise DeviceRejectedBlock(page, page_to_block(page) + i, code)

    def verify(self, plan: WritePlan) -> int:
        msb = None
        checked = 0
        for block in plan.blocks():
            if block // MSB_SPAN != msb:
                msb = block // MSB_SPAN
                set_address_msb(self.channel, msb)
            if read_block(self.channel, block) != plan.image.block_bytes(block):
                raise VerifyFailed(block)
            checked += 1
        return checked

    def write_plan(self, plan: WritePlan) -> list[Page]:
        pages = list(plan.pages())
        for page in pages:
            self.write_page(page, plan.image.page_bytes(page))
        return pages

    def program(self, records: Iterable[HexRecord]) -> dict:
        plan = self.plan(records)
        pages = self.write_plan(plan)
        verified = self.verify(plan) if pages else 0
        return {
            "pages": [int(p) for p in pages],
            "blocks": len(plan.bitmap),
            "bytes": len(pages) * self.geometry.page_size,
            "verified": verified,
        }


# ---- Вариант B: nRFgo ----
class RecordStreamProgrammer:
    CMD_READY = 0x01
    CMD_PROG_ENTER = 0x02
    CMD_ERASE_ALL = 0x03
    CMD_WRITE_RECORD = 0x04
    CMD_PROG_EXIT = 0x05
    CMD_SET_LED = 0x06

    def __init__(self, channel, config: SessionConfig, retries: int = READY_RETRIES):
        self.channel = channel
        self.config = config
        self.retries = retries
        self.ready_timeouts = 0

    def version(self) -> str:
        # у nRFgo нет запроса версии
        return UNKNOWN_VERSION

    def read_image(self) -> FlashImage:
        raise NotImplementedError("nRFgo protocol has no flash read command.")

    def _send(self, cmd: bytes):
        self.channel.execute(cmd, 0)

    def wait_ready(self) -> bool:
        """
        Опрос READY без пауз, не более self.retries раз.
        Исчерпание попыток в штатном режиме считается успехом (так ведёт себя
        устройство), но учитывается в ready_timeouts; при strict_ready - ошибка.
        """
        for _ in range(self.retries):
            if self.channel.execute(bytes([self.CMD_READY]), 1)[0] == 0:
                return True
        if self.config.strict_ready:
            raise ReadyTimeout(f"device still busy after {self.retries} polls")
        self.ready_timeouts += 1
        return False

    def write_record(self, record: HexRecord) -> None:
        cmd = bytes([self.CMD_WRITE_RECORD, len(record.data)]) \
            + record.address.to_bytes(2, "big") + record.data
        self._send(cmd)

    def program(self, records: Iterable[HexRecord]) -> dict:
        data = [r for r in until_eof(records) if r.type == RecordType.DATA and r.data]
        for rec in data:
            validate_record(rec, self.config)

        self.ready_timeouts = 0
        self._send(bytes([self.CMD_PROG_ENTER]))
        self.wait_ready()
        self._send(bytes([self.CMD_ERASE_ALL]))
        self.wait_ready()
        for rec in data:
            self.write_record(rec)
            self.wait_ready()
        self._send(bytes([self.CMD_PROG_EXIT]))
        self.wait_ready()
        return {
            "records": len(data),
            "bytes": sum(len(r.data) for r in data),
            "ready_timeouts": self.ready_timeouts,
        }

    def set_led(self, number: int) -> int:
        number = max(0, min(9, number))
        self._send(bytes([self.CMD_SET_LED, number]))
        return number


def make_programmer(channel, config: SessionConfig) -> FlashProgrammer:
    if config.variant is DeviceVariant.NRFGO:
        return RecordStreamProgrammer(channel, config)
    return BlockProgrammer(channel, config)
