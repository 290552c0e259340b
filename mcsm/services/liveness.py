import asyncio
import logging
from typing import Optional

from mcstatus import JavaServer

from ..config import Settings, settings as default_settings
from ..errors import Unreachable
from ..models import QueryStatus

logger = logging.getLogger(__name__)

WILDCARD_HOST = "0.0.0.0"


class LivenessProber:
    """Stateless GameSpy4 status query against a server's query port."""

    def __init__(self, settings: Optional[Settings] = None, timeout: Optional[float] = None) -> None:
        self.settings = settings or default_settings
        self.timeout = timeout if timeout is not None else self.settings.query_timeout

    async def probe(self, host: Optional[str], port: int) -> QueryStatus:
        host = (host or "").strip() or WILDCARD_HOST
        server = JavaServer(host, int(port), timeout=self.timeout)
        try:
            response = await server.async_query()
        except (OSError, asyncio.TimeoutError, ValueError, EOFError) as exc:
            raise Unreachable(f"No query response from {host}:{port}: {exc}") from exc

        return QueryStatus(
            players=response.players.online,
            max_players=response.players.max,
            motd=response.motd.to_plain(),
            version=getattr(response.software, "version", None),
            map=getattr(response, "map", None),
        )
