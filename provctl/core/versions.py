"""Lookups between system versions, semantic versions and restore images."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from provctl.core.errors import VersionResolutionError
from provctl.core.model import PlatformEntry, RestoreCatalog, VersionEntry, VersionTriple

TRACKER_PLATFORM_ID = 26
NCP_UPGRADE_MIN_SYSTEM_VERSION = 3000
LOGGER = logging.getLogger(__name__)


def needs_ncp_upgrade(system_version: int, platform_id: int) -> bool:
    return system_version >= NCP_UPGRADE_MIN_SYSTEM_VERSION and platform_id == TRACKER_PLATFORM_ID


class VersionResolver:
    """Linear lookups over the cached version table and restore catalog.

    Every lookup returns ``None`` when nothing matches; callers decide whether
    absence is fatal.
    """

    def __init__(self, versions: Sequence[VersionEntry], catalog: RestoreCatalog) -> None:
        self.versions = tuple(versions)
        self.catalog = catalog

    def system_version_to_semver(self, system_version: int) -> str | None:
        for entry in self.versions:
            if entry.system_version == system_version:
                return entry.semver
        return None

    def semver_to_system_version(self, semver: str) -> int | None:
        for entry in self.versions:
            if entry.semver == semver:
                return entry.system_version
        return None

    def platform(self, platform_id: int) -> PlatformEntry | None:
        for entry in self.catalog.platforms:
            if entry.id == platform_id:
                return entry
        return None

    def platform_id_to_name(self, platform_id: int) -> str | None:
        entry = self.platform(platform_id)
        return entry.name if entry else None

    def find_restore_semver(self, platform_id: int, system_version: int) -> str | None:
        """Return the least published restore version that satisfies ``system_version``.

        The platform's list is walked from the newest release down; the walk
        keeps the closest qualifying image so an exact match wins over a newer
        one.
        """
        name = self.platform_id_to_name(platform_id)
        if name is None:
            return None
        published = self.catalog.versions_by_platform.get(name)
        if not published:
            return None

        best: str | None = None
        best_system: int | None = None
        for semver in reversed(published):
            candidate = self.semver_to_system_version(semver)
            if candidate is None or candidate < system_version:
                continue
            if best_system is None or candidate < best_system:
                best, best_system = semver, candidate
        return best

    def resolve(
        self,
        platform_id: int,
        dependency_version: int,
        *,
        force_semver: str | None = None,
    ) -> VersionTriple:
        if force_semver:
            system_version = self.semver_to_system_version(force_semver)
            if system_version is None:
                raise VersionResolutionError(
                    f"force_system_version {force_semver} is not a known Device OS version"
                )
            LOGGER.info("using force_system_version=%s", force_semver)
        else:
            system_version = dependency_version

        semver = self.system_version_to_semver(system_version)
        restore = self.find_restore_semver(platform_id, system_version)
        if restore is None:
            raise VersionResolutionError(
                f"No restore image for platform {platform_id} supports system version {system_version}"
            )
        if semver != restore:
            LOGGER.warning("not an exact system match, using %s instead of %s", restore, semver)
        return VersionTriple(system_version=system_version, semver=semver, restore_semver=restore)
