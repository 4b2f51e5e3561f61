"""USB transport implementation using pyusb."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import usb.core
import usb.util

from provctl.core.errors import UsbError, UsbOpenError

PARTICLE_VENDOR_ID = 0x2B04
DFU_PRODUCT_PREFIX = 0xD000
CTRL_REQUEST_DFU_MODE = 50
CTRL_REQUEST_APP_CUSTOM = 10

# Vendor request, host to device, recipient device.
_BM_REQUEST_OUT = 0x40
_VENDOR_REQUEST = ord("P")
_CONTROL_TIMEOUT_MS = 5000

LOGGER = logging.getLogger(__name__)


class PyUsbDevice:
    """One attached device; identity fields are read when the device is opened."""

    def __init__(self, dev: Any) -> None:
        self._dev = dev
        self.vendor_id: int = dev.idVendor
        self.product_id: int = dev.idProduct
        self.platform_id: int = dev.idProduct & 0x00FF
        self.is_in_dfu_mode: bool = (dev.idProduct & 0xFF00) == DFU_PRODUCT_PREFIX
        self.id: str = ""
        ports = getattr(dev, "port_numbers", None)
        self.bus_port: str | None = (
            f"{dev.bus}-{'.'.join(str(p) for p in ports)}" if ports else None
        )

    async def open(self) -> None:
        def _open() -> str:
            serial = self._dev.serial_number
            if not serial:
                raise UsbOpenError("device has no serial number descriptor")
            return serial

        try:
            serial = await asyncio.to_thread(_open)
        except (usb.core.USBError, ValueError, NotImplementedError) as exc:
            raise UsbOpenError(f"cannot open USB device {self.bus_port or '?'}: {exc}") from exc
        self.id = serial.lower()

    async def close(self) -> None:
        await asyncio.to_thread(usb.util.dispose_resources, self._dev)

    async def enter_dfu_mode(self) -> None:
        await self.send_control_request(CTRL_REQUEST_DFU_MODE)

    async def send_control_request(self, request_type: int, payload: bytes | None = None) -> None:
        def _send() -> None:
            self._dev.ctrl_transfer(
                _BM_REQUEST_OUT,
                _VENDOR_REQUEST,
                0,
                request_type,
                payload or None,
                _CONTROL_TIMEOUT_MS,
            )

        try:
            await asyncio.to_thread(_send)
        except usb.core.USBError as exc:
            raise UsbError(f"control request {request_type} to {self.id} failed: {exc}") from exc


class PyUsbBackend:
    def __init__(self, vendor_id: int = PARTICLE_VENDOR_ID) -> None:
        self.vendor_id = vendor_id

    async def list_devices(self) -> list[PyUsbDevice]:
        def _find() -> list[Any]:
            return list(usb.core.find(find_all=True, idVendor=self.vendor_id) or [])

        try:
            found = await asyncio.to_thread(_find)
        except (usb.core.NoBackendError, usb.core.USBError) as exc:
            raise UsbError(f"USB enumeration failed: {exc}") from exc
        return [PyUsbDevice(dev) for dev in found]

    async def open_device_by_id(self, device_id: str) -> PyUsbDevice:
        wanted = device_id.lower()
        for device in await self.list_devices():
            try:
                await device.open()
            except UsbOpenError:
                continue
            if device.id == wanted:
                return device
            await device.close()
        raise UsbOpenError(f"device {device_id} not found on USB")
