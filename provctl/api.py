"""Stable public API for building tooling on top of provctl.

This module is the supported integration surface for third-party callers such
as a status web page or a batch script. Avoid importing from internal modules
unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

from provctl.core.config_loader import ProvisioningConfig, build_config, load_config
from provctl.core.errors import (
    CloudApiError,
    ConfigError,
    DfuError,
    EventWaitTimeout,
    FlashError,
    FlashToolError,
    ProvctlError,
    StagingError,
    UsbError,
    UsbOpenError,
    VersionResolutionError,
)
from provctl.core.flash_plan import NCP_PARTS, PRIMARY_PARTS, build_flash_plan, describe_plan
from provctl.core.model import (
    CloudEvent,
    FlashPart,
    ProvisionOutcome,
    StatusEvent,
    StatusOp,
    VersionTriple,
)
from provctl.core.service import ProvisioningService
from provctl.core.versions import VersionResolver
from provctl.transports.base import Catalog, CloudApi, FlashTool, UsbBackend, UsbDevice

__all__ = [
    "ProvctlError",
    "ConfigError",
    "StagingError",
    "VersionResolutionError",
    "CloudApiError",
    "UsbError",
    "UsbOpenError",
    "FlashToolError",
    "DfuError",
    "FlashError",
    "EventWaitTimeout",
    "ProvisioningConfig",
    "build_config",
    "load_config",
    "CloudEvent",
    "FlashPart",
    "ProvisionOutcome",
    "StatusEvent",
    "StatusOp",
    "VersionTriple",
    "VersionResolver",
    "PRIMARY_PARTS",
    "NCP_PARTS",
    "build_flash_plan",
    "describe_plan",
    "Catalog",
    "CloudApi",
    "FlashTool",
    "UsbBackend",
    "UsbDevice",
    "ProvisioningService",
]
