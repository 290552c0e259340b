import logging
from typing import Any, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..errors import LookupUnavailable, PlayerNotFound

logger = logging.getLogger(__name__)


class PlayerDirectory:
    """Resolves player names to UUIDs so players can be listed before they first join."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.base_url = self.settings.player_lookup_url
        self.timeout = httpx.Timeout(self.settings.http_timeout)
        self._transport = transport

    async def resolve_uuid(self, name: str) -> str:
        logger.info("Fetching UUID for player %s", name)
        data = await self._get(name)
        if data.get("error") or data.get("success") is False:
            raise PlayerNotFound(f"Player lookup failed for {name}: {data.get('message') or data.get('code')}")
        try:
            return str(data["data"]["player"]["id"])
        except (KeyError, TypeError) as exc:
            raise PlayerNotFound(f"Player lookup returned no id for {name}") from exc

    async def _get(self, name: str) -> dict[str, Any]:
        url = f"{self.base_url}{name}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers={"User-Agent": "mcsm/1.0"})
        except httpx.RequestError as exc:
            raise LookupUnavailable(f"Player lookup request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise LookupUnavailable(
                f"Player lookup error {response.status_code}: {response.text[:200]}"
            ) from exc
        if not isinstance(data, dict):
            raise LookupUnavailable("Player lookup returned an unexpected payload")
        if response.status_code >= 500 and not data.get("error"):
            raise LookupUnavailable(f"Player lookup error {response.status_code}")
        return data
