"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer

from provctl.core.config_loader import ProvisioningConfig, load_config
from provctl.core.errors import ProvctlError
from provctl.core.flash_plan import describe_plan
from provctl.core.service import ProvisioningService

app = typer.Typer(help="Provision USB-attached IoT devices into a cloud product")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to the YAML config file")
LogLevelOption = typer.Option(None, "--log-level", help="Override log_level from the config")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_service(config_path: Path | None, log_level: str | None) -> ProvisioningService:
    config: ProvisioningConfig = load_config(config_path)
    _configure_logging(log_level or config.log_level)
    return ProvisioningService(config)


async def _prepare(service: ProvisioningService) -> None:
    try:
        await service.prepare()
    finally:
        await service.aclose()


async def _signal(service: ProvisioningService, device_id: str) -> bool:
    try:
        return await service.signal_device(device_id)
    finally:
        await service.aclose()


@app.command("run")
def run_provisioning(
    config: Path | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Stage firmware, then provision every matching device plugged in by USB."""
    try:
        service = _build_service(config, log_level)
        asyncio.run(service.run())
    except KeyboardInterrupt:
        typer.echo("Stopped")
    except ProvctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("prepare")
def prepare_staging(
    config: Path | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Download and stage firmware and restore images without touching USB."""
    try:
        service = _build_service(config, log_level)
        asyncio.run(_prepare(service))
        staged = service.staged
        typer.echo(f"Staged firmware {staged.firmware_version} in {staged.staging_dir}")
        typer.echo(
            f"Platform {staged.platform.name} ({staged.platform.id}), "
            f"restore image {staged.version.restore_semver}"
        )
    except ProvctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("plan")
def show_plan(
    config: Path | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Print the DFU flash plans built from the staged firmware."""
    try:
        service = _build_service(config, log_level)
        asyncio.run(_prepare(service))
        typer.echo("Primary plan:")
        for line in describe_plan(service.primary_plan):
            typer.echo(f"  {line}")
        if service.ncp_plan:
            typer.echo("NCP plan:")
            for line in describe_plan(service.ncp_plan):
                typer.echo(f"  {line}")
    except ProvctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("signal")
def signal_device(
    device_id: str,
    config: Path | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Ask a device to signal (blink its status LED)."""
    try:
        service = _build_service(config, log_level)
        if not asyncio.run(_signal(service, device_id)):
            typer.echo(f"Error: could not signal {device_id}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Signal sent to {device_id}")
    except ProvctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
