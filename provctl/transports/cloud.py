"""Cloud device-management and documentation catalog clients built on httpx."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from provctl.core.errors import CloudApiError

LOGGER = logging.getLogger(__name__)


class ParticleCloud:
    """Product-scoped REST client for the device cloud.

    One instance is bound to a single product and access token. Every call
    raises ``CloudApiError`` on transport failure or an HTTP status >= 400.
    """

    def __init__(
        self,
        *,
        auth_token: str,
        product_id: int,
        base_url: str = "https://api.particle.io",
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.product_id = product_id
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_s),
        )
        self._headers = {"Authorization": f"Bearer {auth_token}"}

    @property
    def _product_path(self) -> str:
        return f"/v1/products/{self.product_id}"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise CloudApiError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            LOGGER.warning("cloud error %s for %s %s", response.status_code, method, path)
            raise CloudApiError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise CloudApiError(f"{method} {path} returned invalid JSON") from exc

    async def get_product(self) -> dict[str, Any]:
        body = await self._json("GET", self._product_path)
        return body.get("product", body)

    async def list_product_firmware(self) -> list[dict[str, Any]]:
        return await self._json("GET", f"{self._product_path}/firmware")

    async def download_product_firmware(self, version: int) -> bytes:
        response = await self._request("GET", f"{self._product_path}/firmware/{version}/binary")
        return response.content

    async def list_devices(self, page: int = 1) -> dict[str, Any]:
        return await self._json("GET", f"{self._product_path}/devices", params={"page": page})

    async def get_user(self) -> dict[str, Any]:
        return await self._json("GET", "/v1/user")

    async def add_device_to_product(self, device_id: str) -> None:
        await self._request("POST", f"{self._product_path}/devices", json_body={"id": device_id})

    async def get_device(self, device_id: str) -> dict[str, Any]:
        return await self._json("GET", f"{self._product_path}/devices/{device_id}")

    async def claim_device(self, device_id: str) -> None:
        await self._request("POST", "/v1/devices", json_body={"id": device_id})

    async def update_device(self, device_id: str, **fields: Any) -> dict[str, Any]:
        return await self._json("PUT", f"{self._product_path}/devices/{device_id}", json_body=fields)

    async def assign_device_groups(self, device_id: str, groups: Sequence[str]) -> None:
        await self._request(
            "PUT",
            f"{self._product_path}/devices/{device_id}",
            json_body={"groups": list(groups)},
        )

    async def signal_device(self, device_id: str, signal: bool = True) -> None:
        await self._request(
            "PUT",
            f"{self._product_path}/devices/{device_id}",
            json_body={"signal": "1" if signal else "0"},
        )

    async def event_stream(self) -> AsyncIterator[dict[str, Any]]:
        """Yield product events from the server-sent event stream until it closes."""
        path = f"{self._product_path}/events"
        try:
            async with self._client.stream(
                "GET",
                path,
                headers={**self._headers, "Accept": "text/event-stream"},
                timeout=httpx.Timeout(30.0, read=None),
            ) as response:
                if response.status_code >= 400:
                    raise CloudApiError(
                        f"GET {path} returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                async for event in parse_sse_lines(response.aiter_lines()):
                    yield event
        except httpx.HTTPError as exc:
            raise CloudApiError(f"event stream failed: {exc}") from exc


async def parse_sse_lines(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Turn server-sent event lines into ``{"name": ..., **payload}`` dicts.

    Comment lines (``:ok``) and events without a JSON object payload are
    skipped.
    """
    name: str | None = None
    data_lines: list[str] = []
    async for line in lines:
        if line.startswith(":"):
            continue
        if not line:
            if name and data_lines:
                try:
                    payload = json.loads("\n".join(data_lines))
                except ValueError:
                    LOGGER.debug("skipping event %s with non-JSON envelope", name)
                    payload = None
                if isinstance(payload, dict):
                    yield {"name": name, **payload}
            name, data_lines = None, []
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            name = value
        elif field == "data":
            data_lines.append(value)


class CatalogClient:
    """Fetches restore-image catalogs and bundles from the documentation site."""

    def __init__(
        self,
        *,
        base_url: str = "https://docs.particle.io/assets/files",
        timeout_s: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(timeout_s),
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str) -> httpx.Response:
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as exc:
            raise CloudApiError(f"error downloading {path}: {exc}") from exc
        if response.status_code >= 400:
            raise CloudApiError(
                f"error downloading {path}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def _get_json(self, path: str) -> dict[str, Any]:
        response = await self._get(path)
        try:
            return response.json()
        except ValueError as exc:
            raise CloudApiError(f"{path} is not valid JSON") from exc

    async def fetch_restore_catalog(self) -> dict[str, Any]:
        return await self._get_json("deviceRestore.json")

    async def fetch_version_info(self) -> dict[str, Any]:
        return await self._get_json("versionInfo.json")

    async def fetch_module_info(self, restore_semver: str, platform_name: str) -> dict[str, Any]:
        return await self._get_json(f"device-restore/{restore_semver}/{platform_name}.json")

    async def fetch_restore_zip(self, restore_semver: str, platform_name: str) -> bytes:
        response = await self._get(f"device-restore/{restore_semver}/{platform_name}.zip")
        return response.content
