"""Persistent staging state: cached catalogs, firmware and restore images.

Everything in the staging directory derives from the configuration alone, so
the directory is wiped whenever the configuration hash changes.
"""

from __future__ import annotations

import io
import json
import logging
import shutil
import zipfile
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from pathlib import Path, PurePosixPath
from typing import Any

from jsonschema import ValidationError, validators

from provctl.core.config_loader import ProvisioningConfig
from provctl.core.errors import ConfigError, StagingError, VersionResolutionError
from provctl.core.flash_plan import ensure_marker_binaries
from provctl.core.model import ModuleInfo, PlatformEntry, RestoreCatalog, VersionEntry, VersionTriple
from provctl.core.module_header import ModulePrefix, parse_module_prefix, read_module_prefix
from provctl.core.versions import VersionResolver, needs_ncp_upgrade
from provctl.transports.base import Catalog, CloudApi

STATE_FILE = "savedData.json"
FIRMWARE_FILE = "firmware.bin"
RESTORE_ZIP_FILE = "restore.zip"

LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def _catalog_validator(definition: str) -> Any:
    schema_text = resources.files("provctl.schemas").joinpath("staging.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    schema["$ref"] = f"#/$defs/{definition}"
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _validate(definition: str, doc: Any, source: str) -> None:
    try:
        _catalog_validator(definition).validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise StagingError(f"Invalid {source}{where}: {exc.message}") from exc


def parse_version_table(doc: Any) -> tuple[VersionEntry, ...]:
    _validate("versionInfo", doc, "versionInfo.json")
    return tuple(VersionEntry(system_version=int(v["sys"]), semver=str(v["semVer"])) for v in doc["versions"])


def parse_restore_catalog(doc: Any) -> RestoreCatalog:
    _validate("deviceRestore", doc, "deviceRestore.json")
    platforms = tuple(
        PlatformEntry(id=int(p["id"]), name=str(p["name"]), generation=int(p["gen"]))
        for p in doc["platforms"]
    )
    versions = {name: tuple(semvers) for name, semvers in doc["versionsZipByPlatform"].items()}
    return RestoreCatalog(platforms=platforms, versions_by_platform=versions)


def parse_module_info(doc: Any) -> dict[str, ModuleInfo]:
    _validate("moduleInfo", doc, "module info")
    modules: dict[str, ModuleInfo] = {}
    for name, entry in doc.items():
        prefix = entry["prefixInfo"]
        modules[name] = ModuleInfo(
            name=name,
            start_address=str(prefix["moduleStartAddy"]),
            flags=int(prefix.get("moduleFlags", 0)),
        )
    return modules


def _prefix_document(prefix: ModulePrefix) -> dict[str, Any]:
    return {
        "prefixInfo": {
            "moduleStartAddy": f"{prefix.start_address:x}",
            "moduleEndAddy": f"{prefix.end_address:x}",
            "moduleFlags": prefix.flags,
            "moduleVersion": prefix.module_version,
            "platformID": prefix.platform_id,
            "depModuleVersion": prefix.dep_module_version,
        }
    }


@dataclass
class StagingState:
    config_hash: str
    restore_catalog: dict[str, Any] | None = None
    version_info: dict[str, Any] | None = None
    firmware_versions: list[dict[str, Any]] = field(default_factory=list)
    default_firmware_version: int = 0
    firmware_version: int | None = None
    platform_id: int | None = None
    version: VersionTriple | None = None
    should_upgrade_ncp: bool = False
    module_info: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "configHash": self.config_hash,
            "deviceRestoreInfo": self.restore_catalog,
            "versionInfo": self.version_info,
            "firmwareVersions": self.firmware_versions,
            "defaultFirmwareVersion": self.default_firmware_version,
            "firmwareVersion": self.firmware_version,
            "platformId": self.platform_id,
            "systemVersion": self.version.system_version if self.version else None,
            "systemVersionSemVer": self.version.semver if self.version else None,
            "restoreSemVer": self.version.restore_semver if self.version else None,
            "shouldUpgradeTrackerNCP": self.should_upgrade_ncp,
            "moduleInfo": self.module_info,
        }

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> StagingState:
        version = None
        if doc.get("systemVersion") is not None and doc.get("restoreSemVer"):
            version = VersionTriple(
                system_version=int(doc["systemVersion"]),
                semver=doc.get("systemVersionSemVer"),
                restore_semver=str(doc["restoreSemVer"]),
            )
        return cls(
            config_hash=str(doc.get("configHash", "")),
            restore_catalog=doc.get("deviceRestoreInfo"),
            version_info=doc.get("versionInfo"),
            firmware_versions=list(doc.get("firmwareVersions") or []),
            default_firmware_version=int(doc.get("defaultFirmwareVersion") or 0),
            firmware_version=doc.get("firmwareVersion"),
            platform_id=doc.get("platformId"),
            version=version,
            should_upgrade_ncp=bool(doc.get("shouldUpgradeTrackerNCP", False)),
            module_info=doc.get("moduleInfo"),
        )


@dataclass(frozen=True)
class StagedFirmware:
    staging_dir: Path
    firmware_version: int
    version: VersionTriple
    platform: PlatformEntry
    modules: dict[str, ModuleInfo]
    resolver: VersionResolver
    should_upgrade_ncp: bool


class StagingManager:
    def __init__(self, config: ProvisioningConfig, cloud: CloudApi, catalog: Catalog) -> None:
        self.config = config
        self.cloud = cloud
        self.catalog = catalog
        self.staging_dir = config.staging_dir
        self.state_path = self.staging_dir / STATE_FILE
        self.state = StagingState(config_hash=config.config_hash())

    def load_state(self) -> StagingState:
        config_hash = self.config.config_hash()
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        state: StagingState | None = None
        if self.state_path.exists():
            try:
                state = StagingState.from_dict(json.loads(self.state_path.read_text(encoding="utf-8")))
            except (ValueError, TypeError) as exc:
                LOGGER.info("failed to load %s (%s), recreating", STATE_FILE, exc)
            if state is not None and state.config_hash != config_hash:
                LOGGER.info("config changed, recreating staging state")
                self.clear()
                state = None
        self.state = state or StagingState(config_hash=config_hash)
        return self.state

    def clear(self) -> None:
        shutil.rmtree(self.staging_dir, ignore_errors=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def save(self) -> None:
        self.state_path.write_text(json.dumps(self.state.to_dict(), indent=2), encoding="utf-8")

    async def prepare(self) -> StagedFirmware:
        """Fill the staging directory and return everything a flash plan needs."""
        state = self.load_state()

        if state.restore_catalog is None:
            doc = await self.catalog.fetch_restore_catalog()
            parse_restore_catalog(doc)
            state.restore_catalog = doc
            self.save()
        if state.version_info is None:
            doc = await self.catalog.fetch_version_info()
            parse_version_table(doc)
            state.version_info = doc
            self.save()

        resolver = VersionResolver(
            parse_version_table(state.version_info),
            parse_restore_catalog(state.restore_catalog),
        )

        await self._refresh_firmware_versions()

        firmware_path = self.staging_dir / FIRMWARE_FILE
        if not firmware_path.exists() or state.version is None or state.platform_id is None:
            await self._stage_firmware(firmware_path, resolver)

        if state.version is None or state.platform_id is None:
            raise StagingError("Firmware was not staged")
        platform = resolver.platform(state.platform_id)
        if platform is None:
            raise VersionResolutionError(f"Platform {state.platform_id} is not in the restore catalog")

        if state.module_info is None:
            doc = await self.catalog.fetch_module_info(state.version.restore_semver, platform.name)
            parse_module_info(doc)
            doc["firmware"] = _prefix_document(read_module_prefix(firmware_path))
            state.module_info = doc
            self.save()

        modules = parse_module_info(state.module_info)
        if "firmware" not in modules:
            raise VersionResolutionError("No module info for the user firmware")

        restore_zip = self.staging_dir / RESTORE_ZIP_FILE
        if not restore_zip.exists():
            data = await self.catalog.fetch_restore_zip(state.version.restore_semver, platform.name)
            restore_zip.write_bytes(data)
            self._extract_restore(data)

        ensure_marker_binaries(self.staging_dir)

        return StagedFirmware(
            staging_dir=self.staging_dir,
            firmware_version=state.firmware_version or 0,
            version=state.version,
            platform=platform,
            modules=modules,
            resolver=resolver,
            should_upgrade_ncp=state.should_upgrade_ncp,
        )

    async def _refresh_firmware_versions(self) -> None:
        versions = await self.cloud.list_product_firmware()
        self.state.firmware_versions = list(versions)
        self.state.default_firmware_version = 0
        for entry in versions:
            if entry.get("product_default"):
                self.state.default_firmware_version = int(entry["version"])
        self.save()

    async def _stage_firmware(self, firmware_path: Path, resolver: VersionResolver) -> None:
        version = self.config.firmware_version or self.state.default_firmware_version
        if not version:
            raise ConfigError("firmware_version not set and the product has no default firmware")

        data = await self.cloud.download_product_firmware(version)
        LOGGER.info("using firmware version %s", version)
        firmware_path.write_bytes(data)
        prefix = parse_module_prefix(data)

        triple = resolver.resolve(
            prefix.platform_id,
            prefix.dep_module_version,
            force_semver=self.config.force_system_version,
        )
        self.state.firmware_version = version
        self.state.platform_id = prefix.platform_id
        self.state.version = triple
        self.state.should_upgrade_ncp = needs_ncp_upgrade(triple.system_version, prefix.platform_id)
        self.state.module_info = None
        self.save()

    def _extract_restore(self, data: bytes) -> None:
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as exc:
            raise StagingError(f"restore image is not a zip archive: {exc}") from exc
        with archive:
            for member in archive.infolist():
                if member.is_dir():
                    continue
                name = PurePosixPath(member.filename).name
                if not name or name == FIRMWARE_FILE:
                    continue
                (self.staging_dir / name).write_bytes(archive.read(member))
