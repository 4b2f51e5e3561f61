"""Transport interfaces for the external collaborators."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol


class UsbDevice(Protocol):
    id: str
    vendor_id: int
    product_id: int
    platform_id: int
    is_in_dfu_mode: bool
    bus_port: str | None

    async def open(self) -> None:
        """Claim the device; raises UsbOpenError when it is held elsewhere."""

    async def close(self) -> None:
        ...

    async def enter_dfu_mode(self) -> None:
        ...

    async def send_control_request(self, request_type: int, payload: bytes | None = None) -> None:
        ...


class UsbBackend(Protocol):
    async def list_devices(self) -> list[UsbDevice]:
        """Enumerate attached devices without opening them."""

    async def open_device_by_id(self, device_id: str) -> UsbDevice:
        """Find and open a device; raises UsbOpenError when it is not available."""


@dataclass(frozen=True)
class FlashToolResult:
    exit_code: int
    output: str


class FlashTool(Protocol):
    async def run(self, args: Sequence[str], *, timeout_s: float) -> FlashToolResult:
        """Run the flashing utility; raises FlashToolError on timeout or signal."""


class CloudApi(Protocol):
    async def get_product(self) -> dict[str, Any]:
        ...

    async def list_product_firmware(self) -> list[dict[str, Any]]:
        ...

    async def download_product_firmware(self, version: int) -> bytes:
        ...

    async def list_devices(self, page: int = 1) -> dict[str, Any]:
        ...

    async def get_user(self) -> dict[str, Any]:
        ...

    async def add_device_to_product(self, device_id: str) -> None:
        ...

    async def get_device(self, device_id: str) -> dict[str, Any]:
        ...

    async def claim_device(self, device_id: str) -> None:
        ...

    async def update_device(self, device_id: str, **fields: Any) -> dict[str, Any]:
        ...

    async def assign_device_groups(self, device_id: str, groups: Sequence[str]) -> None:
        ...

    async def signal_device(self, device_id: str, signal: bool = True) -> None:
        ...

    def event_stream(self) -> AsyncIterator[dict[str, Any]]:
        """Yield raw product events: ``name``, ``data``, ``published_at``, ``coreid``."""


class Catalog(Protocol):
    async def fetch_restore_catalog(self) -> dict[str, Any]:
        ...

    async def fetch_version_info(self) -> dict[str, Any]:
        ...

    async def fetch_module_info(self, restore_semver: str, platform_name: str) -> dict[str, Any]:
        ...

    async def fetch_restore_zip(self, restore_semver: str, platform_name: str) -> bytes:
        ...
