from __future__ import annotations

import asyncio
import io
import struct
import zipfile
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

from provctl.core.errors import CloudApiError, UsbOpenError
from provctl.transports.base import FlashToolResult

ARGON_ID = "e00fce68a1a1a1a1a1a1a1a1"
TRACKER_ID = "e00fce68d2d2d2d2d2d2d2d2"

RESTORE_CATALOG = {
    "platforms": [
        {"id": 12, "name": "argon", "gen": 3},
        {"id": 26, "name": "tracker", "gen": 3},
        {"id": 6, "name": "photon", "gen": 2},
    ],
    "versionsZipByPlatform": {
        "argon": ["2.0.1", "3.0.0"],
        "tracker": ["3.0.0"],
        "photon": ["2.0.1"],
    },
}

VERSION_INFO = {
    "versions": [
        {"sys": 2002, "semVer": "2.0.1"},
        {"sys": 3000, "semVer": "3.0.0"},
    ]
}

MODULES = {
    "system-part1": {"prefixInfo": {"moduleStartAddy": "30000", "moduleFlags": 0}},
    "softdevice": {"prefixInfo": {"moduleStartAddy": "1000", "moduleFlags": 1}},
    "bootloader": {"prefixInfo": {"moduleStartAddy": "f4000", "moduleFlags": 0}},
}
TRACKER_MODULES = {**MODULES, "ncp": {"prefixInfo": {"moduleStartAddy": "0", "moduleFlags": 0}}}


def make_firmware(platform_id: int = 12, dep_version: int = 3000) -> bytes:
    prefix = struct.pack(
        "<IIBBHHBBBBHBBH",
        0xB4000,
        0xF4000,
        0,
        0,
        6,
        platform_id,
        5,
        1,
        4,
        1,
        dep_version,
        0,
        0,
        0,
    )
    return prefix + b"\x5a" * 256


def make_restore_zip(platform: str, modules: dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name in modules:
            archive.writestr(f"{platform}/{name}.bin", bytes(range(64)))
        archive.writestr(f"{platform}/firmware.bin", b"tinker")
    return buffer.getvalue()


class FakeCatalog:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def fetch_restore_catalog(self) -> dict[str, Any]:
        self.calls.append("deviceRestore")
        return {**RESTORE_CATALOG}

    async def fetch_version_info(self) -> dict[str, Any]:
        self.calls.append("versionInfo")
        return {**VERSION_INFO}

    def _modules(self, platform_name: str) -> dict[str, Any]:
        return TRACKER_MODULES if platform_name == "tracker" else MODULES

    async def fetch_module_info(self, restore_semver: str, platform_name: str) -> dict[str, Any]:
        self.calls.append(f"module:{restore_semver}/{platform_name}")
        return {name: {"prefixInfo": dict(v["prefixInfo"])} for name, v in self._modules(platform_name).items()}

    async def fetch_restore_zip(self, restore_semver: str, platform_name: str) -> bytes:
        self.calls.append(f"zip:{restore_semver}/{platform_name}")
        return make_restore_zip(platform_name, self._modules(platform_name))


class FakeCloud:
    def __init__(self, *, platform_id: int = 12, default_firmware: int | None = 7) -> None:
        self.platform_id = platform_id
        self.default_firmware = default_firmware
        self.calls: list[tuple[str, Any]] = []
        self.failing: set[str] = set()
        self.online: set[str] = set()
        self.device_pages = [
            {"devices": [{"id": ARGON_ID, "name": "argon-old"}], "meta": {"total_pages": 2}},
            {"devices": [{"id": TRACKER_ID, "name": "tracker-old"}], "meta": {"total_pages": 2}},
        ]

    def _record(self, op: str, arg: Any = None) -> None:
        self.calls.append((op, arg))
        if op in self.failing:
            raise CloudApiError(f"{op} failed", status_code=400)

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]

    async def get_product(self) -> dict[str, Any]:
        self._record("get_product")
        return {"id": 1234, "platform_id": self.platform_id, "name": "fleet"}

    async def list_product_firmware(self) -> list[dict[str, Any]]:
        self._record("list_product_firmware")
        if self.default_firmware is None:
            return [{"version": 3, "product_default": False}]
        return [
            {"version": 3, "product_default": False},
            {"version": self.default_firmware, "product_default": True},
        ]

    async def download_product_firmware(self, version: int) -> bytes:
        self._record("download_product_firmware", version)
        return make_firmware(platform_id=self.platform_id)

    async def list_devices(self, page: int = 1) -> dict[str, Any]:
        self._record("list_devices", page)
        return self.device_pages[page - 1]

    async def get_user(self) -> dict[str, Any]:
        self._record("get_user")
        return {"username": "operator@example.com"}

    async def add_device_to_product(self, device_id: str) -> None:
        self._record("add_device_to_product", device_id)

    async def get_device(self, device_id: str) -> dict[str, Any]:
        self._record("get_device", device_id)
        return {"id": device_id, "name": "unit-7", "serial_number": "P046AB1234", "online": False}

    async def claim_device(self, device_id: str) -> None:
        self._record("claim_device", device_id)

    async def update_device(self, device_id: str, **fields: Any) -> dict[str, Any]:
        self._record("update_device", fields)
        return {"ok": True}

    async def assign_device_groups(self, device_id: str, groups: Sequence[str]) -> None:
        self._record("assign_device_groups", list(groups))

    async def signal_device(self, device_id: str, signal: bool = True) -> None:
        self._record("signal_device", device_id)

    async def event_stream(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            await asyncio.sleep(0.01)
            for device_id in sorted(self.online):
                yield {
                    "name": "spark/status",
                    "data": "online",
                    "published_at": "2024-05-01T12:00:00.000Z",
                    "coreid": device_id,
                }


class FakeDevice:
    def __init__(self, usb: FakeUsb, device_id: str, platform_id: int) -> None:
        self.usb = usb
        self.id = device_id
        self.vendor_id = 0x2B04
        self.platform_id = platform_id
        self.is_in_dfu_mode = usb.dfu.get(device_id, False)
        self.product_id = (0xD000 if self.is_in_dfu_mode else 0xC000) | platform_id
        self.bus_port = "1-4"

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        self.usb.closes += 1

    async def enter_dfu_mode(self) -> None:
        self.usb.dfu[self.id] = True

    async def send_control_request(self, request_type: int, payload: bytes | None = None) -> None:
        self.usb.control_requests.append((self.id, request_type, payload))


class FakeUsb:
    def __init__(self) -> None:
        self.attached: dict[str, int] = {}
        self.dfu: dict[str, bool] = {}
        self.control_requests: list[tuple[str, int, bytes | None]] = []
        self.closes = 0

    def attach(self, device_id: str, platform_id: int) -> FakeDevice:
        self.attached[device_id] = platform_id
        return FakeDevice(self, device_id, platform_id)

    async def list_devices(self) -> list[FakeDevice]:
        return [FakeDevice(self, device_id, platform) for device_id, platform in self.attached.items()]

    async def open_device_by_id(self, device_id: str) -> FakeDevice:
        if device_id not in self.attached:
            raise UsbOpenError(f"device {device_id} not found")
        return FakeDevice(self, device_id, self.attached[device_id])


class FakeFlashTool:
    def __init__(self) -> None:
        self.parts: list[str] = []
        self.exit_codes: dict[str, int] = {}

    async def run(self, args: Sequence[str], *, timeout_s: float) -> FlashToolResult:
        name = Path(args[args.index("-D") + 1]).name
        self.parts.append(name)
        return FlashToolResult(exit_code=self.exit_codes.get(name, 0), output=f"Download done for {name}")


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)

