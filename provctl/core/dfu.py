"""Drive a device through DFU mode and flash a plan part by part."""

from __future__ import annotations

import asyncio
import enum
import logging
import sys
from collections.abc import Awaitable, Callable, Sequence

from provctl.core.errors import DfuError, FlashError, FlashToolError, UsbError
from provctl.core.model import FlashPart
from provctl.core.status import StatusBus
from provctl.core.usb_tracker import SessionTable
from provctl.transports.base import FlashTool, UsbBackend, UsbDevice

DFU_SETTLE_S = 2.0
LEAVE_SETTLE_S = 8.0
REOPEN_ATTEMPTS = 10
REOPEN_DELAY_S = 2.0

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class FlashState(str, enum.Enum):
    NOT_IN_DFU = "not-in-dfu"
    ENTERING_DFU = "entering-dfu"
    IN_DFU = "in-dfu"
    FLASHED = "flashed"
    REOPENING = "reopening"
    DONE = "done"
    FAILED = "failed"


def dfu_util_args(device: UsbDevice, part: FlashPart, *, host_platform: str = sys.platform) -> list[str]:
    args = ["-d", f"0x{device.vendor_id:04x}:0x{device.product_id:04x}"]
    if host_platform.startswith("linux") and device.bus_port:
        args += ["-p", device.bus_port]
    else:
        args += ["-S", device.id]
    args += ["-a", str(part.alt)]
    args += ["-s", f"0x{part.address:08x}" + (":leave" if part.leave else "")]
    args += ["-D", str(part.binary_path)]
    return args


async def reopen_device(
    usb: UsbBackend,
    device_id: str,
    *,
    attempts: int,
    delay_s: float,
    sleep: Sleep = asyncio.sleep,
) -> UsbDevice | None:
    """Reopen by id, retrying with a fixed delay; ``None`` when every attempt fails."""
    for attempt in range(attempts):
        try:
            return await usb.open_device_by_id(device_id)
        except UsbError as exc:
            LOGGER.debug("reopen %s attempt %d failed: %s", device_id, attempt + 1, exc)
        await sleep(delay_s)
    return None


class DfuFlashExecutor:
    def __init__(
        self,
        usb: UsbBackend,
        flash_tool: FlashTool,
        status: StatusBus,
        sessions: SessionTable,
        *,
        flash_timeout_s: float = 120.0,
        host_platform: str = sys.platform,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.usb = usb
        self.flash_tool = flash_tool
        self.status = status
        self.sessions = sessions
        self.flash_timeout_s = flash_timeout_s
        self.host_platform = host_platform
        self.sleep = sleep
        self.states: dict[str, FlashState] = {}

    def _transition(self, device_id: str, state: FlashState, message: str) -> None:
        LOGGER.debug("%s: flash state %s", device_id, state.value)
        if state in (FlashState.DONE, FlashState.FAILED):
            self.states.pop(device_id, None)
        else:
            self.states[device_id] = state
        self.status.device_log(device_id, message)

    async def flash(self, device: UsbDevice | None, plan: Sequence[FlashPart]) -> UsbDevice | None:
        """Flash every part of ``plan``; return the reopened device handle.

        The handle may be ``None`` when the device did not come back after the
        last part. A nonzero exit from the flashing utility aborts the plan.
        """
        if device is None:
            raise DfuError("device handle unavailable, cannot start flashing")
        device_id = device.id
        self.sessions.set_timeout(device_id, self.flash_timeout_s)

        try:
            current = await self._enter_dfu(device)
            for part in plan:
                current = await self._flash_part(device_id, current, part)
        except Exception as exc:
            self._transition(device_id, FlashState.FAILED, f"flash failed: {exc}")
            raise

        self.status.logs.merge_json(device_id, {"flashSuccess": True})
        self._transition(device_id, FlashState.DONE, "flash firmware done!")
        self.sessions.reset_timeout(device_id)
        return current

    async def _enter_dfu(self, device: UsbDevice) -> UsbDevice:
        device_id = device.id
        if not device.is_in_dfu_mode:
            self._transition(device_id, FlashState.NOT_IN_DFU, "device not in DFU mode")
        while not device.is_in_dfu_mode:
            self._transition(device_id, FlashState.ENTERING_DFU, "entering DFU mode")
            await device.enter_dfu_mode()
            await device.close()
            await self.sleep(DFU_SETTLE_S)
            device = await self.usb.open_device_by_id(device_id)
        self._transition(device_id, FlashState.IN_DFU, "device in DFU mode")
        return device

    async def _flash_part(self, device_id: str, device: UsbDevice | None, part: FlashPart) -> UsbDevice | None:
        if device is None:
            raise DfuError(f"device {device_id} did not reconnect, cannot flash {part.name}")

        self._transition(device_id, FlashState.IN_DFU, f"flashing {part.name}")
        args = dfu_util_args(device, part, host_platform=self.host_platform)
        await device.close()

        try:
            result = await self.flash_tool.run(args, timeout_s=self.flash_timeout_s)
        except FlashToolError as exc:
            self.status.device_log(device_id, f"flashing {part.name} by DFU failed: {exc}")
            raise DfuError(str(exc)) from exc

        self.status.logs.append_transcript(device_id, part.name, result.output)
        if result.exit_code != 0:
            self.status.device_log(device_id, f"flashing {part.name} by DFU failed")
            raise FlashError(part.name, result.exit_code)
        self._transition(device_id, FlashState.FLASHED, f"flashed {part.name}")

        if part.leave:
            await self.sleep(LEAVE_SETTLE_S)

        self._transition(device_id, FlashState.REOPENING, f"reopening device after {part.name}")
        reopened = await reopen_device(
            self.usb,
            device_id,
            attempts=REOPEN_ATTEMPTS,
            delay_s=REOPEN_DELAY_S,
            sleep=self.sleep,
        )
        if reopened is None:
            LOGGER.warning("%s: not reopened after flashing %s", device_id, part.name)
            self.status.device_log(device_id, f"device did not reconnect after {part.name}")
        self.sessions.touch(device_id)
        return reopened
