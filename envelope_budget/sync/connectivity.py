"""
Connectivity Probes

Used by the sync coordinator to tell "storage is unreachable" apart from
"storage refused the write". A probe never raises: any failure to reach
the probe URL within its timeout means offline.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from envelope_budget.config import ConnectivitySettings, get_settings


logger = structlog.get_logger(__name__)


class ConnectivityProbe(ABC):
    """Answers whether the network is currently usable."""

    @abstractmethod
    async def is_online(self) -> bool:
        pass


class HttpConnectivityProbe(ConnectivityProbe):
    """
    Fetches a tiny resource with a HEAD request.

    Any HTTP response counts as online; only transport failures and
    timeouts count as offline.
    """

    def __init__(
        self,
        settings: Optional[ConnectivitySettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings().connectivity
        self._client = client

    async def is_online(self) -> bool:
        timeout = httpx.Timeout(self._settings.probe_timeout_seconds)
        try:
            if self._client is not None:
                await self._client.head(self._settings.probe_url, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    await client.head(self._settings.probe_url)
            return True
        except httpx.HTTPError as e:
            logger.info("connectivity_probe_failed", url=self._settings.probe_url, error=str(e))
            return False


class StaticConnectivityProbe(ConnectivityProbe):
    """
    Fixed answer, for tests and local-only use.

    Flip .online to simulate the network going away and coming back.
    """

    def __init__(self, online: bool = True):
        self.online = online
        self.calls = 0

    async def is_online(self) -> bool:
        self.calls += 1
        return self.online
