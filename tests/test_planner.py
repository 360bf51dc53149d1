import pytest

from nrf_tool.firmware.ihex import HexRecord, RecordType
from nrf_tool.firmware.image import FlashImage
from nrf_tool.firmware.map import SessionConfig
from nrf_tool.firmware.planner import ProtectedRange, compute_plan, validate_record

EOF_REC = HexRecord(RecordType.EOF, 0)


def data(addr, payload):
    return HexRecord(RecordType.DATA, addr, bytes(payload))


def test_single_record_marks_block_zero(config):
    payload = bytes(range(1, 33))
    plan = compute_plan(FlashImage(), [data(0, payload), EOF_REC], config)
    assert list(plan.blocks()) == [0]
    assert list(plan.pages()) == [0]
    assert plan.image.block_bytes(0) == payload + b"\xFF" * 32


def test_identical_target_gives_empty_plan(config):
    current = FlashImage()
    current.write(0x0100, b"firmware")
    plan = compute_plan(current, [data(0x0100, b"firmware"), EOF_REC], config)
    assert plan.is_empty()
    assert plan.image == current


def test_plan_does_not_touch_current_image(config):
    current = FlashImage()
    compute_plan(current, [data(0, b"\x00")], config)
    assert current.read(0, 1) == b"\xFF"


def test_record_spanning_blocks_marks_each(config):
    plan = compute_plan(FlashImage(), [data(0x01F0, b"\x11" * 0x60)], config)
    # 0x01F0..0x024F -> блоки 7, 8, 9
    assert list(plan.blocks()) == [7, 8, 9]
    assert list(plan.pages()) == [0, 1]


def test_partial_overlap_only_marks_changed_records(config):
    current = FlashImage()
    current.write(0x0000, b"\xAA" * 16)
    records = [data(0x0000, b"\xAA" * 16), data(0x0400, b"\x01"), EOF_REC]
    plan = compute_plan(current, records, config)
    assert list(plan.blocks()) == [16]


def test_records_after_eof_ignored(config):
    plan = compute_plan(FlashImage(), [EOF_REC, data(0, b"\x00")], config)
    assert plan.is_empty()


def test_protected_range_rejected(config):
    record = data(0x7750, b"\x00" * 0x101)      # 0x7750..0x7850
    with pytest.raises(ProtectedRange) as exc:
        compute_plan(FlashImage(), [record], config)
    assert exc.value.address >= 0x7800


def test_protection_checked_even_for_unchanged_bytes(config):
    # в области загрузчика уже 0xFF, но запись всё равно запрещена
    with pytest.raises(ProtectedRange):
        compute_plan(FlashImage(), [data(0x7800, b"\xFF")], config)


def test_unprotected_accepts_bootloader_area():
    config = SessionConfig(protect_bootloader=False)
    plan = compute_plan(FlashImage(), [data(0x7750, b"\x00" * 0x101)], config)
    assert list(plan.pages()) == [59, 60]


def test_unprotected_still_bounded_by_flash_size():
    config = SessionConfig(protect_bootloader=False)
    with pytest.raises(ProtectedRange) as exc:
        compute_plan(FlashImage(), [data(0x7FF0, b"\x00" * 0x20)], config)
    assert exc.value.address == 0x800F


def test_first_invalid_boundary_reported(config):
    with pytest.raises(ProtectedRange) as exc:
        validate_record(data(0x7900, b"\x00" * 4), config)
    assert exc.value.address == 0x7900


def test_empty_record_ignored(config):
    validate_record(data(0x7900, b""), config)
    assert compute_plan(FlashImage(), [data(0x7900, b"")], config).is_empty()
