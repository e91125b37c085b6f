"""
HTTP client utilities for bucketflow
"""

import asyncio
import logging
from typing import Dict, Optional

import httpx

from .error import TransportException

logger = logging.getLogger(__name__)


class HttpClient:
    """
    HTTP client wrapper with connection pooling and connection-level retry.

    One instance is shared by every concurrently running unit of work;
    ``httpx.AsyncClient`` is safe for concurrent use from one event loop.
    """

    def __init__(
        self,
        timeout: int = 30,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=100),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        """Make HTTP request with exponential backoff retry on connection errors."""
        for attempt in range(self.max_retries):
            try:
                return await self._client.request(method, url, headers=headers, content=content)
            except httpx.RequestError as ex:
                if attempt < self.max_retries - 1:
                    wait_time = min(1000 * (2 ** attempt), 10000) / 1000
                    logger.debug(
                        "[HTTP] %s %s failed (%s), retrying in %.1fs", method, url, ex, wait_time
                    )
                    await asyncio.sleep(wait_time)
                else:
                    raise TransportException(f"{method} {url} failed: {ex}") from ex

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
