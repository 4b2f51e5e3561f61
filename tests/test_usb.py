from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
import usb.core
import usb.util

from provctl.core.errors import UsbError, UsbOpenError
from provctl.transports import usb as usb_transport
from provctl.transports.usb import PyUsbBackend, PyUsbDevice


class FakeUsbDev:
    def __init__(self, serial: str | None, product_id: int = 0xC00C, ports: tuple[int, ...] = (2, 3)) -> None:
        self.idVendor = 0x2B04
        self.idProduct = product_id
        self.bus = 1
        self.port_numbers = ports
        self._serial = serial
        self.transfers: list[tuple] = []

    @property
    def serial_number(self) -> str | None:
        if self._serial == "busy":
            raise usb.core.USBError("Access denied (insufficient permissions)")
        return self._serial

    def ctrl_transfer(self, *args) -> int:
        self.transfers.append(args)
        return 0


@pytest.fixture(autouse=True)
def no_dispose(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(usb.util, "dispose_resources", lambda dev: None)


def test_identity_fields() -> None:
    normal = PyUsbDevice(FakeUsbDev("E00FCE68AAAA", product_id=0xC01A))
    dfu = PyUsbDevice(FakeUsbDev("E00FCE68AAAA", product_id=0xD00C, ports=()))

    assert normal.platform_id == 26
    assert normal.is_in_dfu_mode is False
    assert normal.bus_port == "1-2.3"
    assert dfu.platform_id == 12
    assert dfu.is_in_dfu_mode is True
    assert dfu.bus_port is None


def test_open_reads_lowercase_serial() -> None:
    device = PyUsbDevice(FakeUsbDev("E00FCE68AAAA"))
    asyncio.run(device.open())
    assert device.id == "e00fce68aaaa"


def test_open_busy_device_raises() -> None:
    with pytest.raises(UsbOpenError, match="insufficient permissions"):
        asyncio.run(PyUsbDevice(FakeUsbDev("busy")).open())
    with pytest.raises(UsbOpenError, match="serial number"):
        asyncio.run(PyUsbDevice(FakeUsbDev(None)).open())


def test_control_requests() -> None:
    raw = FakeUsbDev("e00fce68aaaa")
    device = PyUsbDevice(raw)

    asyncio.run(device.enter_dfu_mode())
    asyncio.run(device.send_control_request(10, b'{"cmd":"enter_shipping"}'))

    assert raw.transfers[0][:4] == (0x40, ord("P"), 0, 50)
    assert raw.transfers[0][4] is None
    assert raw.transfers[1][3] == 10
    assert raw.transfers[1][4] == b'{"cmd":"enter_shipping"}'


def test_control_request_failure_is_a_usb_error() -> None:
    raw = FakeUsbDev("e00fce68aaaa")

    def broken(*args):
        raise usb.core.USBError("Pipe error")

    raw.ctrl_transfer = broken

    with pytest.raises(UsbError, match="control request 50"):
        asyncio.run(PyUsbDevice(raw).enter_dfu_mode())


def test_backend_opens_device_by_id(monkeypatch: pytest.MonkeyPatch) -> None:
    found = [FakeUsbDev("busy"), FakeUsbDev("E00FCE68BBBB"), FakeUsbDev("E00FCE68AAAA")]
    monkeypatch.setattr(usb.core, "find", lambda **kwargs: iter(found))

    backend = PyUsbBackend()
    assert len(asyncio.run(backend.list_devices())) == 3

    device = asyncio.run(backend.open_device_by_id("E00FCE68AAAA"))
    assert device.id == "e00fce68aaaa"

    with pytest.raises(UsbOpenError, match="not found"):
        asyncio.run(backend.open_device_by_id("e00fce68cccc"))


def test_backend_without_libusb(monkeypatch: pytest.MonkeyPatch) -> None:
    def no_backend(**kwargs):
        raise usb.core.NoBackendError("No backend available")

    monkeypatch.setattr(usb.core, "find", no_backend)

    with pytest.raises(UsbError, match="enumeration failed"):
        asyncio.run(PyUsbBackend().list_devices())


def test_vendor_filter(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict = {}

    def find(**kwargs):
        seen.update(kwargs)
        return []

    monkeypatch.setattr(usb.core, "find", find)
    asyncio.run(PyUsbBackend().list_devices())

    assert seen == {"find_all": True, "idVendor": usb_transport.PARTICLE_VENDOR_ID}
