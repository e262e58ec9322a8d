"""
Shared aiohttp session handling for HTTP-based channels.

One lazily created ClientSession per channel, bounded by a
total request timeout.
"""

from typing import Any, Optional, Tuple
import json
import logging

import aiohttp


logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


class HttpClient:
    """Owns one aiohttp session and decodes JSON replies."""

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def request_json(self, method: str, url: str, **kwargs) -> Tuple[int, Any]:
        """
        Perform a request and return (status, body).

        The body is decoded JSON when possible, otherwise the raw
        text. Transport errors (aiohttp.ClientError,
        asyncio.TimeoutError) propagate to the channel.
        """
        session = await self.get_session()
        async with session.request(method, url, **kwargs) as response:
            text = await response.text()
            try:
                body = json.loads(text) if text else None
            except ValueError:
                body = text
            return response.status, body

    async def close(self) -> None:
        """Close the session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


__all__ = [
    "DEFAULT_HTTP_TIMEOUT_SECONDS",
    "HttpClient",
]
