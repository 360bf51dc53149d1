# usb_transport/channel.py
from __future__ import annotations

import usb.core
import usb.util

from ..config import (
    VENDOR_NORDIC, PID_NRF24LU, PID_NRFGO, EP_IN, EP_OUT_NRF24LU,
    USB_CONFIGURATION, USB_INTERFACE, TIMEOUT_MS,
)


class TransportError(RuntimeError):
    pass

class DeviceNotFound(TransportError):
    pass

class ClaimFailed(TransportError):
    pass

class WriteFailed(TransportError):
    pass

class ReadFailed(TransportError):
    pass


class UsbChannel:
    """
    Канал команд поверх двух bulk-эндпоинтов.
    Одна команда за раз: запись в OUT, затем чтение ровно N байт из IN.
    Повторов нет, решает вызывающий код.
    """

    def __init__(self, device, ep_out: int = EP_OUT_NRF24LU, ep_in: int = EP_IN,
                 timeout: int = TIMEOUT_MS, interface: int = USB_INTERFACE):
        self.dev = device
        self.ep_out = ep_out
        self.ep_in = ep_in
        self.timeout = timeout
        self.interface = interface

    @classmethod
    def open(cls, vendor_id: int, product_id: int, ep_out: int = EP_OUT_NRF24LU,
             ep_in: int = EP_IN, timeout: int = TIMEOUT_MS) -> "UsbChannel":
        dev = usb.core.find(idVendor=vendor_id, idProduct=product_id)
        if dev is None:
            raise DeviceNotFound(f"device {vendor_id:04X}:{product_id:04X} not found")
        try:
            dev.reset()
        except usb.core.USBError as e:
            usb.util.dispose_resources(dev)
            raise TransportError(f"failed to reset device: {e}") from e
        try:
            dev.set_configuration(USB_CONFIGURATION)
            usb.util.claim_interface(dev, USB_INTERFACE)
        except usb.core.USBError as e:
            usb.util.dispose_resources(dev)
            raise ClaimFailed(f"failed to set configuration and claim interface: {e}") from e
        return cls(dev, ep_out=ep_out, ep_in=ep_in, timeout=timeout)

    def execute(self, cmd: bytes, expected: int) -> bytes:
        """Отправить команду и прочитать ответ; expected=0 - ответа нет."""
        try:
            sent = self.dev.write(self.ep_out, cmd, timeout=self.timeout)
        except usb.core.USBError as e:
            raise WriteFailed(f"bulk OUT 0x{self.ep_out:02X} failed: {e}") from e
        if sent != len(cmd):
            raise WriteFailed(f"bulk OUT 0x{self.ep_out:02X}: sent {sent} of {len(cmd)} bytes")
        if expected == 0:
            return b""

        try:
            data = self.dev.read(self.ep_in, expected, timeout=self.timeout)
        except usb.core.USBError as e:
            raise ReadFailed(f"bulk IN 0x{self.ep_in:02X} failed: {e}") from e
        if len(data) != expected:
            raise ReadFailed(f"bulk IN 0x{self.ep_in:02X}: got {len(data)} of {expected} bytes")
        return bytes(data)

    def close(self):
        if self.dev is None:
            return
        try:
            usb.util.release_interface(self.dev, self.interface)
        except usb.core.USBError:
            pass  # интерфейс мог быть не захвачен
        usb.util.dispose_resources(self.dev)
        self.dev = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def list_devices(vendor_id: int = VENDOR_NORDIC) -> list[dict]:
    found = usb.core.find(find_all=True, idVendor=vendor_id) or []
    return [
        {"vid": d.idVendor, "pid": d.idProduct, "bus": d.bus, "address": d.address}
        for d in found
    ]


def detect_product(vendor_id: int = VENDOR_NORDIC,
                   product_ids=(PID_NRF24LU, PID_NRFGO)) -> int | None:
    """Первый найденный product id из списка (nRF24LU1+ раньше nRFgo)."""
    for pid in product_ids:
        if usb.core.find(idVendor=vendor_id, idProduct=pid) is not None:
            return pid
    return None
