"""
Reachability check against the collector.

Any HTTP response counts as connected; transport errors and deadline misses
count as offline. The probe never raises.
"""
import asyncio
import logging

import httpx

from src.agent import metrics

logger = logging.getLogger(__name__)


class ConnectivityProbe:
    """
    Time-boxed connectivity check.

    Args:
        client: Shared httpx.AsyncClient
        url: URL to probe (the collector's health endpoint)
    """

    def __init__(self, client: httpx.AsyncClient, url: str):
        self.client = client
        self.url = url

    async def _probe(self) -> bool:
        await self.client.get(self.url)
        return True

    async def has_connectivity(self, timeout: float) -> bool:
        """
        Returns:
            True if the probe URL answered within ``timeout`` seconds
        """
        try:
            connected = await asyncio.wait_for(self._probe(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("Connectivity probe timed out after %.1fs", timeout)
            connected = False
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe failed: %s", e)
            connected = False
        except Exception as e:
            logger.warning("Unexpected connectivity probe error: %s", e)
            connected = False

        metrics.connectivity_checks_total.labels(result="online" if connected else "offline").inc()
        return connected
