"""Decode the module prefix embedded at the start of a firmware binary."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

from provctl.core.errors import ModuleHeaderError
from provctl.core.model import ModuleInfo

# start, end, reserved, flags, version, platform, function, index,
# dependency function/index/version, second dependency function/index/version
_PREFIX = struct.Struct("<IIBBHHBBBBHBBH")


@dataclass(frozen=True)
class ModulePrefix:
    start_address: int
    end_address: int
    flags: int
    module_version: int
    platform_id: int
    module_function: int
    module_index: int
    dep_module_function: int
    dep_module_index: int
    dep_module_version: int

    def to_module_info(self, name: str) -> ModuleInfo:
        return ModuleInfo(name=name, start_address=f"{self.start_address:x}", flags=self.flags)


def parse_module_prefix(data: bytes, *, offset: int = 0) -> ModulePrefix:
    if len(data) < offset + _PREFIX.size:
        raise ModuleHeaderError(
            f"Binary too short for a module prefix ({len(data)} bytes, need {offset + _PREFIX.size})"
        )
    (
        start,
        end,
        _reserved,
        flags,
        version,
        platform_id,
        function,
        index,
        dep_function,
        dep_index,
        dep_version,
        _dep2_function,
        _dep2_index,
        _dep2_version,
    ) = _PREFIX.unpack_from(data, offset)
    if end < start:
        raise ModuleHeaderError(f"Module prefix end 0x{end:x} precedes start 0x{start:x}")
    return ModulePrefix(
        start_address=start,
        end_address=end,
        flags=flags,
        module_version=version,
        platform_id=platform_id,
        module_function=function,
        module_index=index,
        dep_module_function=dep_function,
        dep_module_index=dep_index,
        dep_module_version=dep_version,
    )


def read_module_prefix(path: Path) -> ModulePrefix:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ModuleHeaderError(f"Could not read firmware binary {path}: {exc}") from exc
    return parse_module_prefix(data)
