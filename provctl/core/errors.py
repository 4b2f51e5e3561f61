"""Domain-specific errors for provctl."""


class ProvctlError(Exception):
    """Base error for provctl."""


class ConfigError(ProvctlError):
    """Raised when a required setting is missing or invalid."""


class StagingError(ProvctlError):
    """Raised when cached catalogs or firmware cannot be staged."""


class VersionResolutionError(StagingError):
    """Raised when no restore image or module metadata matches the firmware."""


class ModuleHeaderError(StagingError):
    """Raised when a firmware binary does not carry a readable module prefix."""


class CloudApiError(ProvctlError):
    """Raised when a cloud REST call or the event stream fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UsbError(ProvctlError):
    """Base USB transport error."""


class UsbOpenError(UsbError):
    """Raised when a USB device cannot be opened (absent or held by another process)."""


class FlashToolError(ProvctlError):
    """Raised when the external flashing utility cannot run, times out or is killed."""


class DfuError(ProvctlError):
    """Raised when a device cannot be driven through a flash plan."""


class FlashError(DfuError):
    """Raised when the flashing utility reports failure for one part."""

    def __init__(self, part: str, exit_code: int) -> None:
        super().__init__(f"flashing {part} by DFU failed (exit code {exit_code})")
        self.part = part
        self.exit_code = exit_code


class EventWaitTimeout(ProvctlError):
    """Raised when no matching cloud event arrives before a wait expires."""
