"""Correlate cloud stream events with one-shot waits registered by workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from provctl.core.errors import EventWaitTimeout, ProvctlError
from provctl.core.model import CloudEvent, EventWait
from provctl.core.status import DeviceLogStore
from provctl.transports.base import CloudApi

STREAM_RECONNECT_DELAY_S = 5.0

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def normalize_event(raw: dict[str, Any], device_names: dict[str, str]) -> CloudEvent:
    device_id = str(raw.get("coreid", ""))
    raw_data = raw.get("data")
    data: Any = raw_data
    if isinstance(raw_data, str):
        try:
            data = json.loads(raw_data)
        except ValueError:
            data = raw_data
    return CloudEvent(
        device_id=device_id,
        name=str(raw.get("name", "")),
        data=data,
        raw_data=raw_data,
        published_at=raw.get("published_at"),
        device_name=device_names.get(device_id),
    )


class EventCorrelator:
    """Single consumer of the product event stream.

    Waits are kept in registration order and matched newest first. Every
    wait whose filters accept an event is resolved by it. The subscription is
    reopened after a fixed delay whenever the stream ends or fails, until
    ``close()`` is called.
    """

    def __init__(
        self,
        cloud: CloudApi,
        logs: DeviceLogStore,
        *,
        reconnect_delay_s: float = STREAM_RECONNECT_DELAY_S,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.cloud = cloud
        self.logs = logs
        self.reconnect_delay_s = reconnect_delay_s
        self.sleep = sleep
        self.device_names: dict[str, str] = {}
        self._waits: list[EventWait] = []
        self._stream_task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return len(self._waits)

    @property
    def connected(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    def remember_name(self, device_id: str, name: str | None) -> None:
        if name:
            self.device_names[device_id] = name

    def load_names(self, devices: Iterable[dict[str, Any]]) -> None:
        for device in devices:
            self.remember_name(str(device.get("id", "")), device.get("name"))

    def connect(self) -> None:
        if self.connected:
            return
        self._stream_task = asyncio.create_task(self._consume(), name="cloud-event-stream")

    async def close(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _consume(self) -> None:
        while True:
            try:
                async for raw in self.cloud.event_stream():
                    try:
                        self.handle_event(raw)
                    except (OSError, ValueError) as exc:
                        LOGGER.warning("exception in cloud event handler: %s", exc)
            except ProvctlError as exc:
                LOGGER.error("error opening event stream: %s", exc)
            else:
                LOGGER.warning("cloud event stream closed")
            LOGGER.info("reconnecting to cloud event stream in %gs", self.reconnect_delay_s)
            await self.sleep(self.reconnect_delay_s)

    def handle_event(self, raw: dict[str, Any]) -> CloudEvent:
        event = normalize_event(raw, self.device_names)
        self.logs.record_event(event)
        self.dispatch(event)
        return event

    def dispatch(self, event: CloudEvent) -> int:
        resolved = 0
        for index in range(len(self._waits) - 1, -1, -1):
            wait = self._waits[index]
            if not wait.matches(event):
                continue
            if wait.timer is not None:
                wait.timer.cancel()
                wait.timer = None
            if not wait.future.done():
                wait.future.set_result(event)
            del self._waits[index]
            resolved += 1
        return resolved

    def wait_for_event(
        self,
        device_id: str,
        event_name: str | None = None,
        event_data: Any = None,
        timeout_s: float | None = None,
    ) -> asyncio.Future[CloudEvent]:
        loop = asyncio.get_running_loop()
        wait = EventWait(
            device_id=device_id,
            future=loop.create_future(),
            event_name=event_name,
            event_data=event_data,
        )
        if timeout_s is not None:
            wait.timer = loop.call_later(timeout_s, self._expire, wait, timeout_s)
        self._waits.append(wait)
        return wait.future

    def _expire(self, wait: EventWait, timeout_s: float) -> None:
        wait.timer = None
        if wait in self._waits:
            self._waits.remove(wait)
        if not wait.future.done():
            what = wait.event_name or "any event"
            wait.future.set_exception(
                EventWaitTimeout(f"timed out after {timeout_s:g}s waiting for {what} from {wait.device_id}")
            )
