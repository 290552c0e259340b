import logging
import os
import time
from typing import Any, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..errors import BadRequest, DownloadError, NotFoundError
from ..models import Edition

logger = logging.getLogger(__name__)


class MetadataService:
    """Finds and downloads server jars for each edition."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache_ttl_seconds: int = 6 * 60 * 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or default_settings
        self._cache_ttl_seconds = cache_ttl_seconds
        self._cache: dict[str, tuple[float, Any]] = {}
        self._timeout = httpx.Timeout(self.settings.http_timeout)
        self._transport = transport

    async def resolve_download_url(self, edition: Edition, version: str) -> str:
        if edition == Edition.VANILLA:
            return await self.vanilla_server_url(version)
        if edition == Edition.PAPER:
            return self.settings.paper_download_url.replace("{version}", version)
        raise BadRequest(f"Unsupported edition: {edition}")

    async def vanilla_server_url(self, version: str) -> str:
        logger.info("Fetching Vanilla URL for version %s", version)
        manifest = await self._version_manifest()
        entry = next(
            (
                item
                for item in manifest.get("versions", [])
                if isinstance(item, dict) and item.get("id") == version
            ),
            None,
        )
        if entry is None or not entry.get("url"):
            raise NotFoundError(f"Unknown Minecraft version: {version}")

        details = await self._get_json(entry["url"])
        server = (details.get("downloads") or {}).get("server") if isinstance(details, dict) else None
        if not isinstance(server, dict) or not server.get("url"):
            raise NotFoundError(f"Minecraft {version} has no server download")
        return server["url"]

    async def download_jar(self, url: str, dest_path: str) -> None:
        logger.info("Downloading jar file from %s to %s", url, dest_path)
        started = time.monotonic()
        tmp_path = f"{dest_path}.part"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport, follow_redirects=True
            ) as client:
                async with client.stream("GET", url, headers={"User-Agent": "mcsm/1.0"}) as response:
                    if response.status_code >= 400:
                        raise DownloadError(
                            f"Jar download failed ({response.status_code}) from {url}"
                        )
                    with open(tmp_path, "wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
            os.replace(tmp_path, dest_path)
        except httpx.RequestError as exc:
            raise DownloadError(f"Jar download failed: {exc}") from exc
        except OSError as exc:
            raise DownloadError(f"Failed to save jar file: {exc}") from exc
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
        logger.info("Server jar downloaded to %s in %.1f seconds", dest_path, time.monotonic() - started)

    async def _version_manifest(self) -> dict[str, Any]:
        cached = self._get_cache("vanilla_manifest")
        if cached is not None:
            return cached
        data = await self._get_json(self.settings.vanilla_manifest_url)
        if not isinstance(data, dict):
            raise DownloadError("Version manifest is invalid")
        self._set_cache("vanilla_manifest", data)
        return data

    def _get_cache(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        if not entry:
            return None
        expires_at, value = entry
        if expires_at < time.time():
            self._cache.pop(key, None)
            return None
        return value

    def _set_cache(self, key: str, value: Any) -> None:
        self._cache[key] = (time.time() + self._cache_ttl_seconds, value)

    async def _get_json(self, url: str) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, headers={"User-Agent": "mcsm/1.0"})
        except httpx.RequestError as exc:
            raise DownloadError(f"Metadata request failed: {exc}") from exc

        if response.status_code >= 400:
            raise DownloadError(f"Metadata error {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as exc:
            raise DownloadError(f"Metadata from {url} is not JSON") from exc
