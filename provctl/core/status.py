"""Status observer bus and per-device log artifacts."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from provctl.core.model import CloudEvent, StatusEvent, StatusOp

LOGGER = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeviceLogStore:
    """Files kept under ``<root>/<device id>/`` for each provisioned device."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def device_dir(self, device_id: str, *, create: bool = True) -> Path | None:
        path = self.root / device_id
        if not path.is_dir():
            if not create:
                return None
            path.mkdir(parents=True, exist_ok=True)
        return path

    def _append(self, path: Path, text: str) -> None:
        with path.open("a", encoding="utf-8") as fh:
            fh.write(text)

    def append_log(self, device_id: str, message: str) -> None:
        self._append(self.device_dir(device_id) / "log.txt", f"{_timestamp()}: {message}\n")

    def merge_json(self, device_id: str, values: dict[str, Any]) -> dict[str, Any]:
        path = self.device_dir(device_id) / "device.json"
        current: dict[str, Any] = {}
        if path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    current = loaded
            except ValueError:
                LOGGER.warning("ignoring unreadable %s", path)
        current.update(values)
        path.write_text(json.dumps(current, indent=2, default=str), encoding="utf-8")
        return current

    def read_json(self, device_id: str) -> dict[str, Any]:
        path = self.root / device_id / "device.json"
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def append_transcript(self, device_id: str, part: str, output: str) -> None:
        self._append(self.device_dir(device_id) / f"dfu-{part}.txt", f"{_timestamp()}:\n{output}\n\n")

    def record_event(self, event: CloudEvent) -> bool:
        """Log a cloud event for a device that is being provisioned.

        Devices without a log directory are not ours and are ignored.
        """
        directory = self.device_dir(event.device_id, create=False)
        if directory is None:
            return False
        if event.name == "spark/device/diagnostics/update":
            (directory / "diag.json").write_text(json.dumps(event.data, indent=2), encoding="utf-8")
        self._append(
            directory / "events.txt",
            f"name: {event.name}\ndata: {event.raw_data}\ntime: {event.published_at}\n\n",
        )
        return True


class StatusBus:
    """Fan-out of status events to subscribers, the log and device files.

    Subscribers get their own ``asyncio.Queue``; a display surface such as a
    server-sent events endpoint consumes it.
    """

    def __init__(self, logs: DeviceLogStore) -> None:
        self.logs = logs
        self._subscribers: list[asyncio.Queue[StatusEvent]] = []

    def subscribe(self) -> asyncio.Queue[StatusEvent]:
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StatusEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: StatusEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)

    def log(self, message: str, level: int = logging.INFO) -> None:
        LOGGER.log(level, message)
        self.publish(StatusEvent(op=StatusOp.LOG, message=message, level=logging.getLevelName(level).lower()))

    def device_log(self, device_id: str, message: str) -> None:
        LOGGER.info("%s: %s", device_id, message)
        self.logs.append_log(device_id, message)
        self.publish(StatusEvent(op=StatusOp.DEVICE_LOG, device_id=device_id, message=message))

    def device_info(self, device_id: str, info: dict[str, Any]) -> None:
        self.publish(StatusEvent(op=StatusOp.DEVICE_INFO, device_id=device_id, info=dict(info)))

    def usb_disconnect(self, device_id: str) -> None:
        LOGGER.info("%s: disconnected from USB", device_id)
        self.publish(StatusEvent(op=StatusOp.USB_DISCONNECT, device_id=device_id))

    def setup_done(self, device_id: str) -> None:
        self.publish(StatusEvent(op=StatusOp.SETUP_DONE, device_id=device_id))

    def setup_failed(self, device_id: str) -> None:
        self.publish(StatusEvent(op=StatusOp.SETUP_FAILED, device_id=device_id))
