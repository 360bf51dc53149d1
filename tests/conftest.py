from pathlib import Path

import pytest

from nrf_tool.firmware.ihex import RecordType, encode_record
from nrf_tool.firmware.map import SessionConfig, DeviceVariant
from nrf_tool.firmware.simulate import SimNRF24LU1, SimNRFgo


@pytest.fixture
def sim():
    return SimNRF24LU1()


@pytest.fixture
def gosim():
    return SimNRFgo()


@pytest.fixture
def config():
    return SessionConfig()


@pytest.fixture
def nrfgo_config():
    return SessionConfig(variant=DeviceVariant.NRFGO)


@pytest.fixture
def hex_file(tmp_path):
    """Пишет HEX-файл из списка (address, data) и возвращает путь."""
    def make(records, name="fw.hex") -> Path:
        lines = [encode_record(RecordType.DATA, addr, data) for addr, data in records]
        lines.append(encode_record(RecordType.EOF, 0))
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n")
        return path
    return make
