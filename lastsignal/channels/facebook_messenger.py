"""
Facebook Messenger Channel.

============================================================
PURPOSE
============================================================
Deliver notifications through the Graph API Send API.

- POST /me/messages with the page access token
- A JSON "error" object in the reply is a failure even on
  HTTP 200
- Health: GET /me must return an "id"

============================================================
"""

from typing import Any, Optional
import asyncio
import logging

import aiohttp

from lastsignal.channels.base import Channel, ChannelResult
from lastsignal.channels.http import DEFAULT_HTTP_TIMEOUT_SECONDS, HttpClient


logger = logging.getLogger(__name__)


class FacebookMessengerChannel(Channel):
    """Sends notifications to one Messenger user."""

    GRAPH_URL = "https://graph.facebook.com/v18.0"

    def __init__(
        self,
        user_id: str,
        access_token: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        http: Optional[HttpClient] = None,
    ):
        self._user_id = user_id
        self._access_token = access_token
        self._http = http or HttpClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "facebook_messenger"

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def send_url(self) -> str:
        return f"{self.GRAPH_URL}/me/messages"

    @property
    def profile_url(self) -> str:
        return f"{self.GRAPH_URL}/me"

    async def send(self, message: str) -> ChannelResult:
        payload = {
            "recipient": {"id": self._user_id},
            "message": {"text": message},
        }
        try:
            status, body = await self._http.request_json(
                "POST",
                self.send_url,
                params={"access_token": self._access_token},
                json=payload,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Messenger request failed: {e}")
            return ChannelResult.failed(f"HTTP request failed: {e}")

        if status != 200:
            return ChannelResult.failed(f"HTTP {status}: {body}")

        error = _graph_error(body)
        if error is not None:
            return ChannelResult.failed(f"Facebook API error: {error}")

        return ChannelResult.success()

    async def health_check(self) -> bool:
        try:
            status, body = await self._http.request_json(
                "GET",
                self.profile_url,
                params={"access_token": self._access_token},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Messenger health check HTTP error: {e}")
            return False

        if status != 200 or not isinstance(body, dict):
            logger.debug(f"Messenger health check failed: HTTP {status}")
            return False
        if _graph_error(body) is not None:
            logger.debug(f"Messenger health check API error: {body.get('error')}")
            return False
        return "id" in body

    async def close(self) -> None:
        await self._http.close()


def _graph_error(body: Any) -> Optional[str]:
    if isinstance(body, dict) and "error" in body:
        error = body["error"]
        if isinstance(error, dict):
            return error.get("message") or "Unknown Facebook API error"
        return str(error)
    return None


__all__ = [
    "FacebookMessengerChannel",
]
