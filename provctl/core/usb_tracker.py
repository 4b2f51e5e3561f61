"""USB presence polling and Device Session bookkeeping."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from provctl.core.errors import UsbError, UsbOpenError
from provctl.core.model import DEFAULT_DISCONNECT_TIMEOUT_S, DeviceSession
from provctl.core.status import StatusBus
from provctl.transports.base import UsbBackend, UsbDevice

LOGGER = logging.getLogger(__name__)

RunStarter = Callable[[UsbDevice], Awaitable[object]]


class SessionTable:
    """Device Sessions keyed by device id, sharing one clock."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        default_timeout_s: float = DEFAULT_DISCONNECT_TIMEOUT_S,
    ) -> None:
        self.clock = clock
        self.default_timeout_s = default_timeout_s
        self._sessions: dict[str, DeviceSession] = {}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, device_id: str) -> DeviceSession | None:
        return self._sessions.get(device_id)

    def touch(self, device_id: str) -> DeviceSession:
        session = self._sessions.get(device_id)
        now = self.clock()
        if session is None:
            session = DeviceSession(
                device_id=device_id,
                last_seen=now,
                disconnect_timeout_s=self.default_timeout_s,
            )
            self._sessions[device_id] = session
        else:
            session.last_seen = now
        return session

    def set_timeout(self, device_id: str, timeout_s: float) -> None:
        session = self._sessions.get(device_id)
        if session is not None:
            session.disconnect_timeout_s = timeout_s

    def reset_timeout(self, device_id: str) -> None:
        self.set_timeout(device_id, self.default_timeout_s)

    def evict_expired(self) -> list[str]:
        now = self.clock()
        expired = [device_id for device_id, session in self._sessions.items() if session.expired(now)]
        for device_id in expired:
            del self._sessions[device_id]
        return expired


class UsbTracker:
    """Polls USB, starts one provisioning run per newly seen device.

    A session's ``checking`` flag stays set until the session is evicted, so a
    device gets one provisioning attempt per physical connection.
    """

    def __init__(
        self,
        usb: UsbBackend,
        sessions: SessionTable,
        start_run: RunStarter,
        status: StatusBus,
        *,
        scan_period_s: float = 5.0,
        max_concurrent_runs: int = 8,
    ) -> None:
        self.usb = usb
        self.sessions = sessions
        self.start_run = start_run
        self.status = status
        self.scan_period_s = scan_period_s
        self._slots = asyncio.Semaphore(max_concurrent_runs)
        self.in_flight: dict[str, asyncio.Task[None]] = {}

    async def poll_once(self) -> list[str]:
        """Run one enumeration pass; return the ids of evicted sessions."""
        try:
            devices = await self.usb.list_devices()
        except UsbError as exc:
            LOGGER.warning("USB enumeration failed: %s", exc)
            devices = []

        for device in devices:
            try:
                await device.open()
            except UsbOpenError:
                # Held by the flashing utility, or not ready yet.
                continue

            session = self.sessions.touch(device.id)
            if session.checking or device.id in self.in_flight:
                await device.close()
                continue
            session.checking = True
            self._launch(device)

        evicted = self.sessions.evict_expired()
        for device_id in evicted:
            self.status.usb_disconnect(device_id)
        return evicted

    def _launch(self, device: UsbDevice) -> None:
        device_id = device.id
        task = asyncio.create_task(self._guarded_run(device), name=f"provision-{device_id}")
        self.in_flight[device_id] = task
        task.add_done_callback(lambda t: self._finished(device_id, t))

    async def _guarded_run(self, device: UsbDevice) -> None:
        async with self._slots:
            await self.start_run(device)

    def _finished(self, device_id: str, task: asyncio.Task[None]) -> None:
        if self.in_flight.get(device_id) is task:
            del self.in_flight[device_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("provisioning task for %s ended with %r", device_id, exc)

    async def run_forever(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.scan_period_s)

    async def drain(self) -> None:
        """Wait for every in-flight provisioning run to finish."""
        while self.in_flight:
            await asyncio.gather(*self.in_flight.values(), return_exceptions=True)
            await asyncio.sleep(0)
