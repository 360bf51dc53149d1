# firmware/simulate.py
import zlib
from pathlib import Path

from .map import NRF24LU1_FLASH, ERASED, page_to_address, block_to_address


class _SimStore:
    """
    Хранилище флеш-памяти симулятора:
    - без файла живёт только в памяти
    - с файлом .bin создаёт его при первом запуске (0xFF + сигнатура)
      и сохраняет после каждой записи
    """
    def __init__(self, store: Path | None = None, geometry=NRF24LU1_FLASH):
        self.geometry = geometry
        self.store = Path(store) if store else None
        self.flash = bytearray([ERASED] * geometry.size)
        if self.store is None:
            return
        self.store.parent.mkdir(parents=True, exist_ok=True)
        if self.store.exists():
            self.flash[:] = self.store.read_bytes()
        else:
            sign = b"SIM-NRF\0"
            self.flash[0:len(sign)] = sign
            self.save()

    def save(self):
        if self.store is not None:
            self.store.write_bytes(bytes(self.flash))

    def crc32(self) -> int:
        return zlib.crc32(self.flash) & 0xFFFFFFFF

    def info(self) -> dict:
        return {
            "size": self.geometry.size,
            "crc32": f"0x{self.crc32():08X}",
            "store": str(self.store) if self.store else None,
        }


class SimNRF24LU1(_SimStore):
    """
    Симулятор загрузчика nRF24LU1+ с тем же контрактом, что и UsbChannel:
    execute(cmd, expected) -> bytes. Все команды пишутся в self.log.
    """
    def __init__(self, store: Path | None = None, version=(1, 0), geometry=NRF24LU1_FLASH):
        super().__init__(store, geometry)
        self.version = bytes(version)
        self.msb = 0
        self.page = None
        self.pending = 0          # сколько блоков страницы ещё ждём
        self.log: list[bytes] = []
        self.reject_pages: set[int] = set()
        self.reject_blocks: set[int] = set()
        self.drop_blocks: set[int] = set()  # "принять", но не записать

    def writes(self) -> list[bytes]:
        """Команды записи (выбор страницы и блоки данных)."""
        out, pending = [], 0
        for cmd in self.log:
            if pending:
                out.append(cmd)
                pending -= 1
            elif cmd[0] == 0x02:
                out.append(cmd)
                pending = self.geometry.blocks_per_page
        return out

    def execute(self, cmd: bytes, expected: int) -> bytes:
        cmd = bytes(cmd)
        self.log.append(cmd)
        if self.pending:
            return self._write_block(cmd)

        op = cmd[0]
        if op == 0x01:
            reply = self.version
        elif op == 0x02:
            reply = self._select_page(cmd[1])
        elif op == 0x03:
            addr = block_to_address((self.msb << 8) | cmd[1])
            reply = bytes(self.flash[addr:addr + self.geometry.block_size])
        elif op == 0x06:
            self.msb = cmd[1]
            reply = b"\x00"
        else:
            raise ValueError(f"simulator: unknown command 0x{op:02X}")
        return reply[:expected]

    def _select_page(self, page: int) -> bytes:
        if page >= self.geometry.page_count or page in self.reject_pages:
            return b"\x01"
        addr = page_to_address(page)
        self.flash[addr:addr + self.geometry.page_size] = bytes([ERASED] * self.geometry.page_size)
        self.page = page
        self.pending = self.geometry.blocks_per_page
        return b"\x00"

    def _write_block(self, data: bytes) -> bytes:
        index = self.geometry.blocks_per_page - self.pending
        block = self.page * self.geometry.blocks_per_page + index
        if block in self.reject_blocks:
            self.pending = 0
            return b"\x01"
        if block not in self.drop_blocks:
            addr = block_to_address(block)
            self.flash[addr:addr + len(data)] = data
        self.pending -= 1
        if not self.pending:
            self.save()
        return b"\x00"


class SimNRFgo(_SimStore):
    """
    Симулятор платы nRFgo: команды без ответа, готовность через READY.
    busy_polls - сколько опросов подряд устройство отвечает "занято"
    после каждой команды (-1 = всегда занято).
    """
    def __init__(self, store: Path | None = None, busy_polls: int = 0, geometry=NRF24LU1_FLASH):
        super().__init__(store, geometry)
        self.busy_polls = busy_polls
        self._busy = 0
        self.programming = False
        self.led = None
        self.log: list[bytes] = []

    def execute(self, cmd: bytes, expected: int) -> bytes:
        cmd = bytes(cmd)
        self.log.append(cmd)
        op = cmd[0]
        if op == 0x01:
            if self.busy_polls < 0:
                return b"\x01"
            if self._busy:
                self._busy -= 1
                return b"\x01"
            return b"\x00"

        if op == 0x02:
            self.programming = True
        elif op == 0x03 and self.programming:
            self.flash[:] = bytes([ERASED] * self.geometry.size)
        elif op == 0x04 and self.programming:
            n = cmd[1]
            addr = int.from_bytes(cmd[2:4], "big")
            self.flash[addr:addr + n] = cmd[4:4 + n]
        elif op == 0x05:
            self.programming = False
            self.save()
        elif op == 0x06:
            self.led = cmd[1]
        else:
            raise ValueError(f"simulator: unexpected command 0x{op:02X}")
        self._busy = max(self.busy_polls, 0)
        return b""
