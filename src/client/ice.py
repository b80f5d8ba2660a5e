"""ICE server (STUN/TURN) providers for the call client.

The signaling server publishes its configured ICE servers at
``GET /ice-servers``; the client reads them before building each peer
connection. A static provider covers offline use and tests.
"""

import logging
from abc import ABC, abstractmethod

import aiohttp
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"


class IceServer(BaseModel):
    """STUN or TURN server entry."""

    urls: list[str] = Field(..., min_length=1)
    username: str | None = None
    credential: str | None = None

    @field_validator("urls", mode="before")
    @classmethod
    def coerce_urls(cls, v: str | list[str]) -> list[str]:
        """Accept a single URL string as browsers do."""
        if isinstance(v, str):
            return [v]
        return v


class IceServerProvider(ABC):
    """Source of the ICE server list used for new peer connections."""

    @abstractmethod
    async def get_ice_servers(self) -> list[IceServer]:
        """Current ICE server list."""
        pass


class StaticIceServerProvider(IceServerProvider):
    """Fixed ICE server list."""

    def __init__(self, servers: list[IceServer] | None = None) -> None:
        self._servers = servers if servers is not None else [IceServer(urls=[DEFAULT_STUN_URL])]

    async def get_ice_servers(self) -> list[IceServer]:
        return list(self._servers)


class HttpIceServerProvider(IceServerProvider):
    """ICE servers fetched from the signaling server's /ice-servers endpoint.

    Falls back to a public STUN server when the endpoint is unreachable or
    returns an unexpected body, so a call can still be attempted on open
    networks.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = 5.0,
        fallback: list[IceServer] | None = None,
    ) -> None:
        """Initialize provider.

        Args:
            url: Full URL of the /ice-servers endpoint
            timeout_s: Request timeout in seconds
            fallback: Servers used when the fetch fails
        """
        self.url = url
        self.timeout_s = timeout_s
        self.fallback = fallback if fallback is not None else [IceServer(urls=[DEFAULT_STUN_URL])]

    async def get_ice_servers(self) -> list[IceServer]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.url) as response:
                    response.raise_for_status()
                    data = await response.json()

            servers = [IceServer.model_validate(entry) for entry in data["iceServers"]]

        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(
                "Failed to fetch ICE servers, using fallback",
                extra={"url": self.url, "error": str(e)},
            )
            return list(self.fallback)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(
                "Invalid ICE server response, using fallback",
                extra={"url": self.url, "error": str(e)},
            )
            return list(self.fallback)

        logger.debug("ICE servers fetched", extra={"url": self.url, "count": len(servers)})
        return servers
