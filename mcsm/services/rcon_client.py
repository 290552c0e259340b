import asyncio
import logging
from typing import Optional

import aiomcrcon

from ..config import Settings, settings as default_settings
from ..errors import RconAuthError, RconConnError, RconTimeout

logger = logging.getLogger(__name__)


class RconClient:
    """One-shot remote console: connect, authenticate, one command, one reply, disconnect."""

    def __init__(self, settings: Optional[Settings] = None, timeout: Optional[float] = None) -> None:
        self.settings = settings or default_settings
        self.timeout = timeout if timeout is not None else self.settings.rcon_timeout

    async def send_command(self, host: str, port: int, password: str, command: str) -> str:
        host = host.strip() or "0.0.0.0"
        client = aiomcrcon.Client(host, int(port), password)
        try:
            await asyncio.wait_for(client.connect(), self.timeout)
            response, _ = await asyncio.wait_for(client.send_cmd(command), self.timeout)
        except aiomcrcon.errors.IncorrectPasswordError as exc:
            raise RconAuthError(f"RCON authentication failed for {host}:{port}") from exc
        except aiomcrcon.errors.RCONConnectionError as exc:
            raise RconConnError(f"RCON connection to {host}:{port} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise RconTimeout(f"RCON at {host}:{port} did not answer within {self.timeout}s") from exc
        except OSError as exc:
            raise RconConnError(f"RCON connection to {host}:{port} failed: {exc}") from exc
        finally:
            await self._close(client)

        logger.debug("RCON %s:%s %r -> %r", host, port, command, response)
        return response

    async def _close(self, client: "aiomcrcon.Client") -> None:
        try:
            await client.close()
        except (aiomcrcon.errors.RCONConnectionError, aiomcrcon.errors.ClientNotConnectedError, OSError) as exc:
            logger.debug("Ignoring RCON close error: %s", exc)
