import asyncio
import logging
from typing import Optional

from rcon.exceptions import EmptyResponse, SessionTimeout, UnexpectedTerminator, WrongPassword
from rcon.source import rcon

from ..config import Settings, settings as default_settings
from .errors import GatewayUnavailable

logger = logging.getLogger(__name__)


class CommandGateway:
    """One RCON connection per command: connect, authenticate, send, read, close.

    Connections are never reused; the server's RCON implementation does not
    cope well with long-lived idle sessions.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings

    async def send_command(self, command: str) -> str:
        return await self._execute(command)

    async def kick(self, player_name: str, reason: str = "Kicked by admin") -> str:
        return await self._execute("kick", player_name, reason)

    async def graceful_stop(self) -> None:
        # The server may drop the connection before answering "stop"
        await self._execute("stop", tolerate_eof=True)

    async def _execute(self, command: str, *arguments: str, tolerate_eof: bool = False) -> str:
        timeout = self.settings.rcon_timeout_seconds
        try:
            return await asyncio.wait_for(
                rcon(
                    command,
                    *arguments,
                    host=self.settings.rcon_host,
                    port=self.settings.rcon_port,
                    passwd=self.settings.rcon_password,
                    timeout=timeout,
                ),
                timeout,
            )
        except WrongPassword as exc:
            raise GatewayUnavailable("RCON authentication failed") from exc
        except asyncio.TimeoutError as exc:
            raise GatewayUnavailable(f"RCON timed out after {timeout:g}s") from exc
        except (SessionTimeout, UnexpectedTerminator, EmptyResponse) as exc:
            raise GatewayUnavailable(f"RCON protocol error: {type(exc).__name__}") from exc
        except EOFError as exc:
            if tolerate_eof:
                logger.info("RCON connection closed after %r; treating as sent", command)
                return ""
            raise GatewayUnavailable("RCON connection closed unexpectedly") from exc
        except OSError as exc:
            raise GatewayUnavailable(f"RCON unavailable: {exc}") from exc
