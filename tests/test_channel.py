import pytest
import usb.core
import usb.util

from nrf_tool.usb_transport import channel as ch
from nrf_tool.usb_transport.channel import (
    ClaimFailed, DeviceNotFound, ReadFailed, TransportError, UsbChannel, WriteFailed,
)


class FakeDevice:
    def __init__(self, reply=b"", short_write=False, fail_write=False, fail_read=False,
                 fail_claim=False, fail_reset=False):
        self.reply = reply
        self.short_write = short_write
        self.fail_write = fail_write
        self.fail_read = fail_read
        self.fail_claim = fail_claim
        self.fail_reset = fail_reset
        self.sent = []
        self.reads = []
        self.configuration = None
        self.idVendor, self.idProduct, self.bus, self.address = 0x1915, 0x0101, 1, 7

    def reset(self):
        if self.fail_reset:
            raise usb.core.USBError("reset failed")

    def set_configuration(self, value):
        if self.fail_claim:
            raise usb.core.USBError("busy")
        self.configuration = value

    def write(self, endpoint, data, timeout=None):
        if self.fail_write:
            raise usb.core.USBError("Operation timed out")
        self.sent.append((endpoint, bytes(data), timeout))
        return len(data) - 1 if self.short_write else len(data)

    def read(self, endpoint, size, timeout=None):
        self.reads.append((endpoint, size, timeout))
        if self.fail_read:
            raise usb.core.USBError("Operation timed out")
        return bytearray(self.reply[:size])


@pytest.fixture
def usb_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(usb.util, "claim_interface", lambda dev, i: calls.append(("claim", i)))
    monkeypatch.setattr(usb.util, "release_interface", lambda dev, i: calls.append(("release", i)))
    monkeypatch.setattr(usb.util, "dispose_resources", lambda dev: calls.append(("dispose",)))
    return calls


def patch_find(monkeypatch, device):
    def find(find_all=False, **kw):
        if find_all:
            return iter([device] if device else [])
        if device is None or kw.get("idProduct", device.idProduct) != device.idProduct:
            return None
        return device
    monkeypatch.setattr(usb.core, "find", find)


def test_execute_writes_then_reads():
    dev = FakeDevice(reply=b"\x01\x02")
    chan = UsbChannel(dev)
    assert chan.execute(b"\x01", 2) == b"\x01\x02"
    assert dev.sent == [(0x01, b"\x01", 2000)]
    assert dev.reads == [(0x81, 2, 2000)]


def test_execute_send_only_skips_read():
    dev = FakeDevice()
    assert UsbChannel(dev, ep_out=0x02).execute(b"\x06\x04", 0) == b""
    assert dev.sent[0][0] == 0x02
    assert dev.reads == []


def test_write_errors():
    with pytest.raises(WriteFailed):
        UsbChannel(FakeDevice(fail_write=True)).execute(b"\x01", 2)
    with pytest.raises(WriteFailed, match="sent 1 of 2"):
        UsbChannel(FakeDevice(short_write=True)).execute(b"\x03\x00", 64)


def test_read_errors():
    with pytest.raises(ReadFailed):
        UsbChannel(FakeDevice(fail_read=True)).execute(b"\x01", 2)
    with pytest.raises(ReadFailed, match="got 1 of 64"):
        UsbChannel(FakeDevice(reply=b"\x00")).execute(b"\x03\x00", 64)


def test_transport_errors_share_base():
    for cls in (DeviceNotFound, ClaimFailed, WriteFailed, ReadFailed):
        assert issubclass(cls, TransportError)


def test_open_and_close(monkeypatch, usb_calls):
    dev = FakeDevice()
    patch_find(monkeypatch, dev)
    with UsbChannel.open(0x1915, 0x0101) as chan:
        assert chan.dev is dev
        assert dev.configuration == 1
    assert usb_calls == [("claim", 0), ("release", 0), ("dispose",)]
    assert chan.dev is None


def test_open_missing_device(monkeypatch, usb_calls):
    patch_find(monkeypatch, None)
    with pytest.raises(DeviceNotFound):
        UsbChannel.open(0x1915, 0x0101)


def test_open_claim_failure_releases(monkeypatch, usb_calls):
    patch_find(monkeypatch, FakeDevice(fail_claim=True))
    with pytest.raises(ClaimFailed):
        UsbChannel.open(0x1915, 0x0101)
    assert usb_calls == [("dispose",)]


def test_open_reset_failure(monkeypatch, usb_calls):
    patch_find(monkeypatch, FakeDevice(fail_reset=True))
    with pytest.raises(TransportError, match="reset"):
        UsbChannel.open(0x1915, 0x0101)


def test_channel_closed_on_error(monkeypatch, usb_calls):
    patch_find(monkeypatch, FakeDevice(fail_read=True))
    with pytest.raises(ReadFailed):
        with UsbChannel.open(0x1915, 0x0101) as chan:
            chan.execute(b"\x01", 2)
    assert ("dispose",) in usb_calls


def test_list_and_detect(monkeypatch):
    dev = FakeDevice()
    patch_find(monkeypatch, dev)
    assert ch.list_devices() == [{"vid": 0x1915, "pid": 0x0101, "bus": 1, "address": 7}]
    assert ch.detect_product() == 0x0101
    dev.idProduct = 0x001A
    assert ch.detect_product() == 0x001A
    patch_find(monkeypatch, None)
    assert ch.detect_product() is None
