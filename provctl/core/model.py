"""Core data models shared by the resolver, planner, executor and workflow."""

from __future__ import annotations

import asyncio
import enum
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_DISCONNECT_TIMEOUT_S = 8.0


@dataclass(frozen=True)
class VersionEntry:
    system_version: int
    semver: str


@dataclass(frozen=True)
class PlatformEntry:
    id: int
    name: str
    generation: int


@dataclass(frozen=True)
class RestoreCatalog:
    platforms: tuple[PlatformEntry, ...]
    versions_by_platform: dict[str, tuple[str, ...]]


@dataclass(frozen=True)
class ModuleInfo:
    """Module metadata for one flashable part.

    ``start_address`` is kept as the hex string published in the module
    header; it is parsed when the flash plan is built.
    """

    name: str
    start_address: str
    flags: int = 0


@dataclass(frozen=True)
class VersionTriple:
    system_version: int
    semver: str | None
    restore_semver: str


@dataclass(frozen=True)
class FlashPart:
    name: str
    binary_path: Path
    address: int
    alt: int
    leave: bool = False


@dataclass
class DeviceSession:
    device_id: str
    last_seen: float
    disconnect_timeout_s: float = DEFAULT_DISCONNECT_TIMEOUT_S
    checking: bool = False

    def expired(self, now: float) -> bool:
        return now >= self.last_seen + self.disconnect_timeout_s


@dataclass(frozen=True)
class CloudEvent:
    device_id: str
    name: str
    data: Any
    raw_data: str | None
    published_at: str | None = None
    device_name: str | None = None


@dataclass
class EventWait:
    device_id: str
    future: asyncio.Future[CloudEvent]
    event_name: str | None = None
    event_data: Any = None
    timer: asyncio.TimerHandle | None = None

    def matches(self, event: CloudEvent) -> bool:
        if event.device_id != self.device_id:
            return False
        if self.event_name is not None and self.event_name != event.name:
            return False
        if self.event_data is not None and self.event_data != event.data:
            return False
        return True


class StatusOp(str, enum.Enum):
    LOG = "log"
    DEVICE_LOG = "deviceLog"
    DEVICE_INFO = "deviceInfo"
    USB_DISCONNECT = "usbDisconnect"
    SETUP_DONE = "setupDone"
    SETUP_FAILED = "setupFailed"


@dataclass(frozen=True)
class StatusEvent:
    op: StatusOp
    device_id: str | None = None
    message: str | None = None
    level: str | None = None
    info: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        payload: dict[str, Any] = {"op": self.op.value}
        if self.device_id is not None:
            payload["id"] = self.device_id
        if self.level is not None:
            payload["level"] = self.level
        if self.message is not None:
            payload["msg"] = self.message
        if self.info:
            payload["info"] = self.info
        return json.dumps(payload)


class ProvisionOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    DONE = "done"
    FAILED = "failed"
