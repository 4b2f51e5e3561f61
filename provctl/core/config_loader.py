"""Configuration loading and validation for YAML-based provctl settings."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from provctl.core.errors import ConfigError

AUTH_TOKEN_ENV = "PROVCTL_AUTH_TOKEN"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class ProvisioningConfig:
    product_id: int
    auth: str | None = None
    flash_firmware: bool = True
    force_system_version: str | None = None
    firmware_version: int | None = None
    lock_firmware_version: int | None = None
    flash_now: bool = False
    flash_tracker_ncp: bool = True
    claim_device: bool = False
    mark_as_development: bool = False
    device_name_is_serial_number: bool = False
    device_group_name: str | None = None
    device_group_format: str | None = None
    batch_size: int | None = None
    wait_device_online: bool = False
    tracker_shipping_mode: bool = False
    staging_dir: Path = Path("staging")
    device_logs_dir: Path = Path("deviceLogs")
    flash_timeout_s: float = 120.0
    usb_scan_period_s: float = 5.0
    max_concurrent_runs: int = 8
    dfu_util_path: str = "dfu-util"
    api_base_url: str = "https://api.particle.io"
    catalog_base_url: str = "https://docs.particle.io/assets/files"
    log_level: str = "INFO"

    def config_hash(self) -> str:
        """Hash of every setting that shapes the staged firmware.

        The auth token is left out so that rotating credentials keeps the
        staging cache.
        """
        settings = asdict(self)
        settings.pop("auth", None)
        canonical = json.dumps(settings, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "provctl" / "config.yaml"


def _load_schema_validator() -> Any:
    schema_text = resources.files("provctl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded


def _resolve_dir(value: str | None, default: str, base: Path) -> Path:
    path = Path(value or default).expanduser()
    if not path.is_absolute():
        path = base / path
    return path


def build_config(doc: dict[str, Any], *, base_dir: Path | None = None, source: str = "<config>") -> ProvisioningConfig:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    if doc.get("device_group_name") and doc.get("device_group_format"):
        raise ConfigError("Set either device_group_name or device_group_format, not both")
    if doc.get("device_group_format") == "dateQuantity" and not doc.get("batch_size"):
        raise ConfigError("device_group_format 'dateQuantity' requires batch_size")
    if doc.get("flash_now") and not doc.get("lock_firmware_version"):
        LOGGER.warning("flash_now has no effect without lock_firmware_version")

    base = base_dir or Path.cwd()
    settings = dict(doc)
    settings["staging_dir"] = _resolve_dir(doc.get("staging_dir"), "staging", base)
    settings["device_logs_dir"] = _resolve_dir(doc.get("device_logs_dir"), "deviceLogs", base)
    settings["flash_timeout_s"] = float(doc.get("flash_timeout_s", 120.0))
    settings["usb_scan_period_s"] = float(doc.get("usb_scan_period_s", 5.0))
    if not settings.get("auth"):
        settings["auth"] = os.environ.get(AUTH_TOKEN_ENV) or None
    return ProvisioningConfig(**settings)


def load_config(path: Path | None = None) -> ProvisioningConfig:
    config_path = path or default_config_path()
    if not config_path.exists():
        raise ConfigError(f"Config file {config_path} does not exist")
    doc = _read_yaml(config_path)
    return build_config(doc, base_dir=config_path.parent, source=str(config_path))
