"""Bounded asyncio subprocess wrapper around the dfu-util executable."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from provctl.core.errors import FlashToolError
from provctl.transports.base import FlashToolResult

LOGGER = logging.getLogger(__name__)


class DfuUtil:
    def __init__(self, executable: str = "dfu-util") -> None:
        self.executable = executable

    async def run(self, args: Sequence[str], *, timeout_s: float) -> FlashToolResult:
        cmd = [self.executable, *args]
        LOGGER.debug("running %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise FlashToolError(f"{self.executable} process error: {exc}") from exc

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FlashToolError(f"{self.executable} has timed out after {timeout_s:g}s") from None

        output = stdout.decode(errors="replace") if stdout else ""
        if process.returncode is not None and process.returncode < 0:
            raise FlashToolError(f"{self.executable} was terminated by signal {-process.returncode}")
        return FlashToolResult(exit_code=process.returncode or 0, output=output)
