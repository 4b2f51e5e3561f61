from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest

from provctl.core.dfu import DfuFlashExecutor, dfu_util_args, reopen_device
from provctl.core.errors import DfuError, FlashError, FlashToolError, UsbOpenError
from provctl.core.model import FlashPart
from provctl.core.status import DeviceLogStore, StatusBus
from provctl.core.usb_tracker import SessionTable
from provctl.transports.base import FlashToolResult

DEVICE_ID = "e00fce68aaaaaaaaaaaaaaaa"


class FakeDevice:
    def __init__(self, *, in_dfu: bool = True, bus_port: str | None = "1-2.3") -> None:
        self.id = DEVICE_ID
        self.vendor_id = 0x2B04
        self.product_id = 0xD00C if in_dfu else 0xC00C
        self.platform_id = 12
        self.is_in_dfu_mode = in_dfu
        self.bus_port = bus_port
        self.closed = False
        self.dfu_requests = 0

    async def open(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def enter_dfu_mode(self) -> None:
        self.dfu_requests += 1

    async def send_control_request(self, request_type: int, payload: bytes | None = None) -> None:
        return None


class FakeUsb:
    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.opens = 0

    async def list_devices(self) -> list[FakeDevice]:
        return []

    async def open_device_by_id(self, device_id: str) -> FakeDevice:
        self.opens += 1
        if self.failures > 0:
            self.failures -= 1
            raise UsbOpenError(f"{device_id} not found")
        return FakeDevice()


class FakeFlashTool:
    def __init__(self, exit_codes: dict[str, int] | None = None) -> None:
        self.exit_codes = exit_codes or {}
        self.calls: list[list[str]] = []

    async def run(self, args: Sequence[str], *, timeout_s: float) -> FlashToolResult:
        self.calls.append(list(args))
        path = args[args.index("-D") + 1]
        return FlashToolResult(exit_code=self.exit_codes.get(Path(path).stem, 0), output=f"flashed {path}")


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def no_sleep(seconds: float) -> None:
    return None


def _plan(tmp_path: Path) -> tuple[FlashPart, ...]:
    return (
        FlashPart(name="system-part1", binary_path=tmp_path / "system-part1.bin", address=0x30000, alt=0),
        FlashPart(name="firmware", binary_path=tmp_path / "firmware.bin", address=0xB4000, alt=0),
        FlashPart(name="a5", binary_path=tmp_path / "a5.bin", address=1753, alt=1, leave=True),
    )


def _executor(tmp_path: Path, usb: FakeUsb, tool: FakeFlashTool, sleeps: list[float] | None = None):
    logs = DeviceLogStore(tmp_path / "logs")
    sessions = SessionTable(clock=FakeClock())
    sessions.touch(DEVICE_ID)

    async def record_sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    executor = DfuFlashExecutor(
        usb,
        tool,
        StatusBus(logs),
        sessions,
        flash_timeout_s=120.0,
        host_platform="linux",
        sleep=record_sleep,
    )
    return executor, logs, sessions


def test_dfu_util_args_linux_uses_bus_port(tmp_path: Path) -> None:
    part = FlashPart(name="a5", binary_path=tmp_path / "a5.bin", address=1753, alt=1, leave=True)
    args = dfu_util_args(FakeDevice(), part, host_platform="linux")

    assert args == [
        "-d",
        "0x2b04:0xd00c",
        "-p",
        "1-2.3",
        "-a",
        "1",
        "-s",
        "0x000006d9:leave",
        "-D",
        str(tmp_path / "a5.bin"),
    ]


def test_dfu_util_args_falls_back_to_serial(tmp_path: Path) -> None:
    part = FlashPart(name="firmware", binary_path=tmp_path / "firmware.bin", address=0xB4000, alt=0)

    on_mac = dfu_util_args(FakeDevice(), part, host_platform="darwin")
    no_port = dfu_util_args(FakeDevice(bus_port=None), part, host_platform="linux")

    assert on_mac[2:4] == ["-S", DEVICE_ID]
    assert no_port[2:4] == ["-S", DEVICE_ID]
    assert "0x000b4000" in on_mac


def test_reopen_device_retries_then_succeeds() -> None:
    usb = FakeUsb(failures=2)
    device = asyncio.run(reopen_device(usb, DEVICE_ID, attempts=5, delay_s=2.0, sleep=no_sleep))

    assert device is not None
    assert usb.opens == 3


def test_reopen_device_gives_up() -> None:
    usb = FakeUsb(failures=10)
    device = asyncio.run(reopen_device(usb, DEVICE_ID, attempts=3, delay_s=2.0, sleep=no_sleep))

    assert device is None
    assert usb.opens == 3


def test_flash_plan_success(tmp_path: Path) -> None:
    usb = FakeUsb()
    tool = FakeFlashTool()
    sleeps: list[float] = []
    executor, logs, sessions = _executor(tmp_path, usb, tool, sleeps)

    result = asyncio.run(executor.flash(FakeDevice(), _plan(tmp_path)))

    assert result is not None
    assert len(tool.calls) == 3
    assert DEVICE_ID not in executor.states
    assert logs.read_json(DEVICE_ID) == {"flashSuccess": True}
    assert (logs.root / DEVICE_ID / "dfu-firmware.txt").exists()
    assert 8.0 in sleeps
    assert sessions.get(DEVICE_ID).disconnect_timeout_s == sessions.default_timeout_s
    assert "flash firmware done!" in (logs.root / DEVICE_ID / "log.txt").read_text()


def test_flash_enters_dfu_mode_first(tmp_path: Path) -> None:
    usb = FakeUsb()
    tool = FakeFlashTool()
    sleeps: list[float] = []
    executor, _, _ = _executor(tmp_path, usb, tool, sleeps)
    device = FakeDevice(in_dfu=False)

    asyncio.run(executor.flash(device, _plan(tmp_path)[:1]))

    assert device.dfu_requests == 1
    assert device.closed
    assert sleeps[0] == 2.0
    assert len(tool.calls) == 1


def test_failing_middle_part_stops_plan(tmp_path: Path) -> None:
    usb = FakeUsb()
    tool = FakeFlashTool(exit_codes={"firmware": 74})
    executor, logs, sessions = _executor(tmp_path, usb, tool)

    with pytest.raises(FlashError) as excinfo:
        asyncio.run(executor.flash(FakeDevice(), _plan(tmp_path)))

    assert excinfo.value.part == "firmware"
    assert excinfo.value.exit_code == 74
    assert len(tool.calls) == 2
    assert executor.states == {}
    assert "flashSuccess" not in logs.read_json(DEVICE_ID)
    assert sessions.get(DEVICE_ID).disconnect_timeout_s == 120.0


def test_flash_tool_error_is_a_dfu_error(tmp_path: Path) -> None:
    class TimingOutTool(FakeFlashTool):
        async def run(self, args: Sequence[str], *, timeout_s: float) -> FlashToolResult:
            raise FlashToolError("dfu-util has timed out after 120s")

    executor, _, _ = _executor(tmp_path, FakeUsb(), TimingOutTool())

    with pytest.raises(DfuError, match="timed out"):
        asyncio.run(executor.flash(FakeDevice(), _plan(tmp_path)))


def test_unset_handle_fails_fast(tmp_path: Path) -> None:
    executor, _, _ = _executor(tmp_path, FakeUsb(), FakeFlashTool())

    with pytest.raises(DfuError, match="unavailable"):
        asyncio.run(executor.flash(None, _plan(tmp_path)))


def test_device_not_reopened_fails_next_part(tmp_path: Path) -> None:
    usb = FakeUsb(failures=100)
    tool = FakeFlashTool()
    executor, _, _ = _executor(tmp_path, usb, tool)

    with pytest.raises(DfuError, match="did not reconnect"):
        asyncio.run(executor.flash(FakeDevice(), _plan(tmp_path)))

    assert len(tool.calls) == 1
    assert usb.opens == 10


def test_lost_device_is_reported_to_status_and_log(tmp_path: Path) -> None:
    usb = FakeUsb(failures=100)
    executor, logs, _ = _executor(tmp_path, usb, FakeFlashTool())
    plan = (FlashPart(name="a5", binary_path=tmp_path / "a5.bin", address=1753, alt=1, leave=True),)

    async def scenario() -> tuple[object, list[str]]:
        queue = executor.status.subscribe()
        handle = await executor.flash(FakeDevice(), plan)
        messages = []
        while not queue.empty():
            messages.append(queue.get_nowait().message)
        return handle, messages

    handle, messages = asyncio.run(scenario())

    assert handle is None
    assert "device did not reconnect after a5" in messages
    assert messages[-1] == "flash firmware done!"
    log_text = (logs.root / DEVICE_ID / "log.txt").read_text()
    for line in ("device in DFU mode", "flashed a5", "reopening device after a5", "device did not reconnect after a5"):
        assert line in log_text
    assert executor.states == {}


def test_failure_transition_is_logged(tmp_path: Path) -> None:
    tool = FakeFlashTool(exit_codes={"system-part1": 1})
    executor, logs, _ = _executor(tmp_path, FakeUsb(), tool)

    with pytest.raises(FlashError):
        asyncio.run(executor.flash(FakeDevice(), _plan(tmp_path)))

    assert "flash failed: " in (logs.root / DEVICE_ID / "log.txt").read_text()
