"""
Centralized HTTP Client Configuration

Provides a standardized async HTTP client with bounded timeouts and
connection pooling. Requests are made exactly once: failed calls surface to
the caller, which records the outcome as an entity status instead of retrying.
"""
import logging
from typing import Optional

import httpx

from leadengine.core.config import get_settings

logger = logging.getLogger(__name__)


class HTTPClientConfig:
    """Configuration for HTTP client."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        max_connections: int = 100,
        max_keepalive_connections: int = 20
    ):
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.user_agent = user_agent or settings.reddit_user_agent
        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections

    def to_limits(self):
        """Convert to httpx.Limits object."""
        return httpx.Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=self.max_keepalive_connections
        )

    def to_timeout(self):
        """Convert to httpx.Timeout object."""
        return httpx.Timeout(self.timeout)


class HTTPClient:
    """Centralized async HTTP client with standard configuration."""

    def __init__(
        self,
        config: Optional[HTTPClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config or HTTPClientConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _ensure_client(self):
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                limits=self.config.to_limits(),
                timeout=self.config.to_timeout(),
                headers={'User-Agent': self.config.user_agent},
                transport=self._transport,
            )

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make a single HTTP request.

        Raises:
            httpx.HTTPError: For transport errors and timeouts
        """
        await self._ensure_client()
        response = await self._client.request(method, url, **kwargs)
        logger.debug("HTTP {} {} -> {}".format(method, url, response.status_code))
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """Make GET request."""
        return await self.request('GET', url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        """Make POST request."""
        return await self.request('POST', url, **kwargs)


_global_client: Optional[HTTPClient] = None


def get_http_client() -> HTTPClient:
    """Get the global HTTP client instance."""
    global _global_client
    if _global_client is None:
        _global_client = HTTPClient()
    return _global_client


async def close_http_client():
    """Close the global HTTP client's connections; it reconnects on next use."""
    if _global_client:
        await _global_client.close()

