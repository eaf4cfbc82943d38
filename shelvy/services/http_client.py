import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class OptimizedHTTPClient:
    """Async HTTP client with pooled connections and retry logic"""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        timeout = httpx.Timeout(
            timeout=10.0,
            connect=5.0,
            read=10.0,
            write=5.0
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """Async GET over the shared pool"""
        return await self._client.get(url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        """Async POST over the shared pool"""
        return await self._client.post(url, **kwargs)

    async def get_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5, **kwargs) -> Optional[httpx.Response]:
        """GET with exponential backoff on transport errors"""
        for attempt in range(retries):
            try:
                return await self.get(url, **kwargs)
            except httpx.TimeoutException:
                logger.warning(f"GET {url} timed out (attempt {attempt + 1}/{retries})")
            except httpx.RequestError as e:
                logger.warning(f"GET {url} failed: {e} (attempt {attempt + 1}/{retries})")
            if attempt < retries - 1:
                await asyncio.sleep(backoff * (2 ** attempt))
        return None

    async def close(self):
        await self._client.aclose()


# Global client instance
_global_client: Optional[OptimizedHTTPClient] = None


async def get_http_client() -> OptimizedHTTPClient:
    """Return the global client, creating it on first use"""
    global _global_client
    if _global_client is None:
        _global_client = OptimizedHTTPClient()
    return _global_client


def set_http_client(client: Optional[OptimizedHTTPClient]) -> None:
    """Install a specific client (e.g. one backed by httpx.MockTransport)"""
    global _global_client
    _global_client = client


async def cleanup_http_client():
    """Close the global client"""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
