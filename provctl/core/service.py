"""Provisioning orchestrator used by the CLI and future UI frontends."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from collections.abc import Callable
from datetime import date
from typing import Any

from provctl.core.config_loader import ProvisioningConfig
from provctl.core.dfu import DfuFlashExecutor, Sleep, reopen_device
from provctl.core.errors import CloudApiError, ConfigError, EventWaitTimeout, ProvctlError
from provctl.core.events import EventCorrelator
from provctl.core.flash_plan import NCP_PARTS, PRIMARY_PARTS, build_flash_plan
from provctl.core.model import FlashPart, ProvisionOutcome
from provctl.core.staging import StagedFirmware, StagingManager
from provctl.core.status import DeviceLogStore, StatusBus
from provctl.core.usb_tracker import SessionTable, UsbTracker
from provctl.core.versions import TRACKER_PLATFORM_ID
from provctl.transports.base import Catalog, CloudApi, FlashTool, UsbBackend, UsbDevice

ONLINE_EVENT = "spark/status"
ONLINE_DATA = "online"
ONLINE_TIMEOUT_S = 10 * 60.0
NCP_REOPEN_ATTEMPTS = 5
NCP_REOPEN_DELAY_S = 2.0
SHIPPING_MODE_REQUEST = 10

LOGGER = logging.getLogger(__name__)


def device_group_name(config: ProvisioningConfig, today: date) -> str | None:
    if config.device_group_name:
        return config.device_group_name
    stamp = today.strftime("%Y%m%d")
    if config.device_group_format == "date":
        return stamp
    if config.device_group_format == "dateQuantity":
        return f"{stamp}_{config.batch_size}"
    return None


class ProvisioningService:
    """Orchestrator context: owns every piece of shared provisioning state.

    Collaborators default to the real cloud, catalog, USB and dfu-util
    adapters; tests pass fakes instead.
    """

    def __init__(
        self,
        config: ProvisioningConfig,
        *,
        cloud: CloudApi | None = None,
        catalog: Catalog | None = None,
        usb: UsbBackend | None = None,
        flash_tool: FlashTool | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        today: Callable[[], date] = date.today,
        host_platform: str = sys.platform,
    ) -> None:
        self.config = config
        self.cloud = cloud or self._default_cloud(config)
        self.catalog = catalog or self._default_catalog(config)
        self.usb = usb or self._default_usb()
        self.flash_tool = flash_tool or self._default_flash_tool(config)
        self.logs = DeviceLogStore(config.device_logs_dir)
        self.status = StatusBus(self.logs)
        self.sessions = SessionTable(clock=clock)
        self.events = EventCorrelator(self.cloud, self.logs, sleep=sleep)
        self.staging = StagingManager(config, self.cloud, self.catalog)
        self.executor = DfuFlashExecutor(
            self.usb,
            self.flash_tool,
            self.status,
            self.sessions,
            flash_timeout_s=config.flash_timeout_s,
            host_platform=host_platform,
            sleep=sleep,
        )
        self.tracker = UsbTracker(
            self.usb,
            self.sessions,
            self.provision,
            self.status,
            scan_period_s=config.usb_scan_period_s,
            max_concurrent_runs=config.max_concurrent_runs,
        )
        self.product: dict[str, Any] | None = None
        self.staged: StagedFirmware | None = None
        self.primary_plan: tuple[FlashPart, ...] = ()
        self.ncp_plan: tuple[FlashPart, ...] = ()
        self.username: str | None = None
        self._sleep = sleep
        self._today = today

    @staticmethod
    def _default_cloud(config: ProvisioningConfig) -> CloudApi:
        from provctl.transports.cloud import ParticleCloud

        if not config.auth:
            raise ConfigError("No access token: set 'auth' in the config file or PROVCTL_AUTH_TOKEN")
        return ParticleCloud(auth_token=config.auth, product_id=config.product_id, base_url=config.api_base_url)

    @staticmethod
    def _default_catalog(config: ProvisioningConfig) -> Catalog:
        from provctl.transports.cloud import CatalogClient

        return CatalogClient(base_url=config.catalog_base_url)

    @staticmethod
    def _default_usb() -> UsbBackend:
        from provctl.transports.usb import PyUsbBackend

        return PyUsbBackend()

    @staticmethod
    def _default_flash_tool(config: ProvisioningConfig) -> FlashTool:
        from provctl.transports.dfu_util import DfuUtil

        return DfuUtil(config.dfu_util_path)

    @property
    def product_platform_id(self) -> int | None:
        if self.product is None:
            return None
        return self.product.get("platform_id")

    async def prepare(self) -> StagedFirmware:
        """Check product access, stage firmware and build the flash plans."""
        try:
            self.product = await self.cloud.get_product()
        except CloudApiError as exc:
            raise ConfigError(
                f"product_id {self.config.product_id} is invalid or you do not have access to it: {exc}"
            ) from exc

        self.staged = await self.staging.prepare()
        self.build_plans()
        version = self.staged.version
        self.status.log(
            f"firmware {self.staged.firmware_version} targets Device OS {version.semver or version.system_version}, "
            f"restore image {version.restore_semver} for {self.staged.platform.name}"
        )
        return self.staged

    def build_plans(self) -> None:
        if self.staged is None:
            raise ConfigError("Firmware is not staged; run prepare first")
        self.primary_plan = build_flash_plan(
            PRIMARY_PARTS,
            self.staged.modules,
            self.staged.platform,
            self.staged.staging_dir,
        )
        self.ncp_plan = ()
        if self.staged.should_upgrade_ncp:
            self.ncp_plan = build_flash_plan(
                NCP_PARTS,
                self.staged.modules,
                self.staged.platform,
                self.staged.staging_dir,
            )

    async def initialize(self) -> None:
        await self.prepare()
        if self.config.claim_device:
            user = await self.cloud.get_user()
            self.username = user.get("username")
        await self._load_device_names()
        self.events.connect()
        self.status.log("Initialization complete, scanning USB now...")

    async def _load_device_names(self) -> None:
        page = 1
        try:
            while True:
                body = await self.cloud.list_devices(page)
                self.events.load_names(body.get("devices", []))
                total_pages = int(body.get("meta", {}).get("total_pages", 1))
                if page >= total_pages:
                    break
                page += 1
        except CloudApiError as exc:
            LOGGER.warning("failed to retrieve product device list: %s", exc)
            return
        LOGGER.info("product device list retrieved")

    async def run(self) -> None:
        await self.initialize()
        try:
            await self.tracker.run_forever()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self.events.close()
        for client in (self.cloud, self.catalog):
            closer = getattr(client, "aclose", None)
            if closer is not None:
                await closer()

    async def signal_device(self, device_id: str) -> bool:
        try:
            await self.cloud.signal_device(device_id)
        except CloudApiError as exc:
            LOGGER.warning("signal %s failed: %s", device_id, exc)
            self.status.device_log(device_id, "error signaling device")
            return False
        self.status.device_log(device_id, "signaling device")
        return True

    async def provision(self, device: UsbDevice) -> ProvisionOutcome:
        """Run the provisioning workflow for one attached device.

        Always ends in a terminal status event unless the device is of the
        wrong platform, which is skipped silently.
        """
        device_id = device.id
        if device.platform_id != self.product_platform_id:
            LOGGER.info("wrong type of device, ignoring %s", device_id)
            await device.close()
            return ProvisionOutcome.SKIPPED

        self.status.device_log(device_id, "connected by USB")
        try:
            await self._run_steps(device)
        except Exception as exc:
            LOGGER.exception("%s: exception provisioning device", device_id)
            self.status.device_log(device_id, f"setup failed: {exc}")
            self.status.setup_failed(device_id)
            return ProvisionOutcome.FAILED

        self.status.device_log(device_id, "setup done!")
        self.status.setup_done(device_id)
        return ProvisionOutcome.DONE

    async def _fetch_device_info(self, device_id: str) -> dict[str, Any]:
        try:
            info = await self.cloud.get_device(device_id)
        except CloudApiError:
            self.status.device_log(device_id, "failed to get device info")
            raise
        self.events.remember_name(device_id, info.get("name"))
        self.status.device_info(device_id, info)
        return info

    async def _run_steps(self, device: UsbDevice) -> None:
        config = self.config
        device_id = device.id
        platform_id = device.platform_id

        try:
            await self.cloud.add_device_to_product(device_id)
        except CloudApiError:
            self.status.device_log(device_id, "failed to add to product")
            raise
        self.status.device_log(device_id, "added to product")

        device_info = await self._fetch_device_info(device_id)

        if config.claim_device:
            self.status.device_log(device_id, "claiming device")
            await self.cloud.claim_device(device_id)
            self.logs.merge_json(device_id, {"claimDevice": self.username})

        updates: dict[str, Any] = {}
        if config.mark_as_development:
            updates["development"] = True
        if config.device_name_is_serial_number and device_info.get("serial_number"):
            updates["name"] = device_info["serial_number"]
            self.events.remember_name(device_id, updates["name"])
        if config.lock_firmware_version:
            updates["desired_firmware_version"] = config.lock_firmware_version
            if config.flash_now:
                updates["flash"] = True
        if updates:
            self.status.device_log(device_id, "setting device info")
            await self.cloud.update_device(device_id, **updates)

        group = device_group_name(config, self._today())
        if group:
            self.status.device_log(device_id, f"assigning device group {group}")
            await self.cloud.assign_device_groups(device_id, [group])
            self.logs.merge_json(device_id, {"deviceGroup": group})

        device_info = await self._fetch_device_info(device_id)
        self.logs.merge_json(device_id, {"deviceInfo": device_info})

        handle: UsbDevice | None = device
        if config.flash_firmware:
            self.status.device_log(device_id, "flashing firmware")
            handle = await self.executor.flash(handle, self.primary_plan)

        if config.flash_tracker_ncp and self.ncp_plan:
            if handle is not None:
                await handle.close()
            handle = await reopen_device(
                self.usb,
                device_id,
                attempts=NCP_REOPEN_ATTEMPTS,
                delay_s=NCP_REOPEN_DELAY_S,
                sleep=self._sleep,
            )
            self.status.device_log(device_id, "flashing NCP")
            handle = await self.executor.flash(handle, self.ncp_plan)

        if config.wait_device_online:
            self.status.device_log(device_id, "waiting for device online")
            try:
                await self.events.wait_for_event(
                    device_id,
                    ONLINE_EVENT,
                    ONLINE_DATA,
                    timeout_s=ONLINE_TIMEOUT_S,
                )
            except EventWaitTimeout:
                self.logs.merge_json(device_id, {"online": False})
                raise
            self.logs.merge_json(device_id, {"online": True})
            self.status.device_log(device_id, "device is online")

        if config.tracker_shipping_mode:
            await self._enter_shipping_mode(device_id, platform_id)

    async def _enter_shipping_mode(self, device_id: str, platform_id: int) -> None:
        if platform_id != TRACKER_PLATFORM_ID:
            self.status.device_log(device_id, "shipping mode skipped, not a tracker")
            return
        payload = json.dumps({"cmd": "enter_shipping"}).encode("utf-8")
        handle: UsbDevice | None = None
        try:
            handle = await self.usb.open_device_by_id(device_id)
            await handle.send_control_request(SHIPPING_MODE_REQUEST, payload)
        except ProvctlError as exc:
            LOGGER.warning("%s: shipping mode exception: %s", device_id, exc)
            self.status.device_log(device_id, "shipping mode failed")
            return
        finally:
            if handle is not None:
                await handle.close()
        self.status.device_log(device_id, "entered shipping mode")
