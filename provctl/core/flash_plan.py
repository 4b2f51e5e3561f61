"""Build ordered DFU flash plans from module metadata and platform facts."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

from provctl.core.errors import StagingError
from provctl.core.model import FlashPart, ModuleInfo, PlatformEntry
from provctl.core.versions import TRACKER_PLATFORM_ID

PRIMARY_PARTS = (
    "system-part1",
    "system-part2",
    "system-part3",
    "softdevice",
    "firmware",
    "bootloader",
    "setup-done",
    "a5",
)
NCP_PARTS = ("ncp", "a5")

DROP_MODULE_INFO_FLAG = 0x01
MODULE_PREFIX_SIZE = 24

ADDRESS_MARKER = "a5"
ADDRESS_MARKER_BINARY = "a5.bin"
ADDRESS_MARKER_ADDRESS = 1753
COMPLETION_MARKER = "setup-done"
COMPLETION_MARKER_BINARY = "01.bin"
COMPLETION_MARKER_ADDRESS = 0x1FC6

OTA_STAGED_PARTS = frozenset({"bootloader", "ncp"})
GEN3_OTA_ADDRESS = 0x80289000
GEN3_TRACKER_OTA_ADDRESS = 0x80689000
GEN3_OTA_ALT = 2
LEGACY_OTA_ADDRESS = 0x080C0000

LOGGER = logging.getLogger(__name__)


def ensure_marker_binaries(staging_dir: Path) -> None:
    """Write the single-byte marker images used by the synthetic parts."""
    staging_dir.mkdir(parents=True, exist_ok=True)
    (staging_dir / ADDRESS_MARKER_BINARY).write_bytes(b"\xa5")
    (staging_dir / COMPLETION_MARKER_BINARY).write_bytes(b"\x01")


def _strip_module_prefix(binary_path: Path, name: str) -> Path:
    stripped = binary_path.with_name(f"{name}.noprefix.bin")
    try:
        data = binary_path.read_bytes()
    except OSError as exc:
        raise StagingError(f"Could not read {binary_path}: {exc}") from exc
    stripped.write_bytes(data[MODULE_PREFIX_SIZE:])
    return stripped


def _module_part(name: str, module: ModuleInfo, platform: PlatformEntry, staging_dir: Path) -> FlashPart:
    binary_path = staging_dir / f"{name}.bin"
    if module.flags & DROP_MODULE_INFO_FLAG:
        binary_path = _strip_module_prefix(binary_path, name)

    try:
        address = int(module.start_address, 16)
    except ValueError as exc:
        raise StagingError(
            f"Module {name} has an invalid start address '{module.start_address}'"
        ) from exc
    alt = 0

    if name in OTA_STAGED_PARTS:
        if platform.generation == 3:
            address = GEN3_TRACKER_OTA_ADDRESS if platform.id == TRACKER_PLATFORM_ID else GEN3_OTA_ADDRESS
            alt = GEN3_OTA_ALT
        else:
            address = LEGACY_OTA_ADDRESS

    return FlashPart(name=name, binary_path=binary_path, address=address, alt=alt)


def build_flash_plan(
    part_names: Sequence[str],
    modules: Mapping[str, ModuleInfo],
    platform: PlatformEntry,
    staging_dir: Path,
) -> tuple[FlashPart, ...]:
    """Resolve ``part_names`` into flashable parts, in the given order.

    The address marker is always kept: flashing it makes the device move the
    staged bootloader into place and reboot. The completion marker only exists
    on generation 3. Parts without module metadata are dropped.
    """
    plan: list[FlashPart] = []
    for name in part_names:
        if name == ADDRESS_MARKER:
            plan.append(
                FlashPart(
                    name=name,
                    binary_path=staging_dir / ADDRESS_MARKER_BINARY,
                    address=ADDRESS_MARKER_ADDRESS,
                    alt=1,
                    leave=True,
                )
            )
        elif name == COMPLETION_MARKER:
            if platform.generation == 3:
                plan.append(
                    FlashPart(
                        name=name,
                        binary_path=staging_dir / COMPLETION_MARKER_BINARY,
                        address=COMPLETION_MARKER_ADDRESS,
                        alt=1,
                    )
                )
        elif name in modules:
            plan.append(_module_part(name, modules[name], platform, staging_dir))
        else:
            LOGGER.debug("no module info for %s, dropped from plan", name)
    return tuple(plan)


def describe_plan(plan: Sequence[FlashPart]) -> list[str]:
    return [
        f"{part.name}: alt={part.alt} addr=0x{part.address:08x}{' leave' if part.leave else ''} {part.binary_path}"
        for part in plan
    ]
