"""
Telegram Channel.

============================================================
PURPOSE
============================================================
Send notifications to a Telegram chat through the Bot API,
and treat messages from that chat as check-ins.

PRINCIPLES:
- Client-side rate limiting to prevent spam
- Plain text, no parse mode (message bodies are user text)
- getUpdates polling; consumed updates are confirmed by
  advancing the update offset

============================================================
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import asyncio
import logging

import aiohttp

from lastsignal.channels.base import ChannelResult, CheckinResponse, ReplyCapableChannel
from lastsignal.channels.http import DEFAULT_HTTP_TIMEOUT_SECONDS, HttpClient
from lastsignal.core.clock import ensure_utc
from lastsignal.core.exceptions import ChannelError


logger = logging.getLogger(__name__)

# Date assigned to updates that can never be a check-in (other chats, non-messages)
_IRRELEVANT = datetime.fromtimestamp(0, tz=timezone.utc)


# ============================================================
# RATE LIMITER
# ============================================================

class TelegramRateLimiter:
    """
    Rate limiter for Telegram messages.

    Prevents excessive message sending.
    """

    def __init__(
        self,
        max_per_minute: int = 20,
        max_per_hour: int = 100,
    ):
        """Initialize rate limiter."""
        self._max_per_minute = max_per_minute
        self._max_per_hour = max_per_hour
        self._minute_window: List[datetime] = []
        self._hour_window: List[datetime] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        """Try to acquire a send slot."""
        async with self._lock:
            now = datetime.now(timezone.utc)

            # Clean old entries
            minute_ago = now - timedelta(minutes=1)
            hour_ago = now - timedelta(hours=1)

            self._minute_window = [t for t in self._minute_window if t > minute_ago]
            self._hour_window = [t for t in self._hour_window if t > hour_ago]

            # Check limits
            if len(self._minute_window) >= self._max_per_minute:
                return False
            if len(self._hour_window) >= self._max_per_hour:
                return False

            # Record this send
            self._minute_window.append(now)
            self._hour_window.append(now)

            return True

    @property
    def remaining_minute(self) -> int:
        """Remaining sends in current minute."""
        minute_ago = datetime.now(timezone.utc) - timedelta(minutes=1)
        count = sum(1 for t in self._minute_window if t > minute_ago)
        return max(0, self._max_per_minute - count)

    @property
    def remaining_hour(self) -> int:
        """Remaining sends in current hour."""
        hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        count = sum(1 for t in self._hour_window if t > hour_ago)
        return max(0, self._max_per_hour - count)


# ============================================================
# TELEGRAM CHANNEL
# ============================================================

class TelegramChannel(ReplyCapableChannel):
    """
    Sends notifications to one Telegram chat.

    Any text message from the same chat newer than the
    watermark is a check-in candidate.
    """

    BASE_URL = "https://api.telegram.org/bot"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        rate_limiter: Optional[TelegramRateLimiter] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        http: Optional[HttpClient] = None,
    ):
        """
        Initialize Telegram channel.

        Args:
            bot_token: Telegram bot token
            chat_id: Chat to send to and accept replies from
            rate_limiter: Optional rate limiter
        """
        self._bot_token = bot_token
        self._chat_id = str(chat_id)
        self._rate_limiter = rate_limiter or TelegramRateLimiter()
        self._http = http or HttpClient(timeout=timeout)

        self._offset: Optional[int] = None
        self._pending_updates: Dict[int, datetime] = {}

    @property
    def name(self) -> str:
        return "telegram"

    @property
    def chat_id(self) -> str:
        return self._chat_id

    @property
    def offset(self) -> Optional[int]:
        return self._offset

    def _url(self, method: str) -> str:
        return f"{self.BASE_URL}{self._bot_token}/{method}"

    # --------------------------------------------------------
    # SEND / HEALTH
    # --------------------------------------------------------

    async def send(self, message: str) -> ChannelResult:
        if not await self._rate_limiter.acquire():
            logger.warning("Telegram rate limit reached, message not sent")
            return ChannelResult.failed("Telegram rate limit reached")

        payload = {
            "chat_id": self._chat_id,
            "text": message,
            "disable_web_page_preview": True,
        }
        try:
            status, body = await self._http.request_json(
                "POST", self._url("sendMessage"), json=payload
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error sending Telegram message: {e}")
            return ChannelResult.failed(f"HTTP request failed: {e}")

        if status == 200 and isinstance(body, dict) and body.get("ok"):
            return ChannelResult.success()

        logger.error(f"Telegram API error: {status} - {body}")
        return ChannelResult.failed(f"Telegram API error: HTTP {status}: {_description(body)}")

    async def health_check(self) -> bool:
        try:
            status, body = await self._http.request_json("GET", self._url("getMe"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Telegram health check HTTP error: {e}")
            return False
        return status == 200 and isinstance(body, dict) and bool(body.get("ok"))

    # --------------------------------------------------------
    # REPLIES
    # --------------------------------------------------------

    async def poll_for_replies(self, since: Optional[datetime]) -> List[CheckinResponse]:
        params: Dict[str, Any] = {"timeout": 0, "allowed_updates": '["message"]'}
        if self._offset is not None:
            params["offset"] = self._offset

        try:
            status, body = await self._http.request_json(
                "GET", self._url("getUpdates"), params=params
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChannelError(
                f"getUpdates failed: {e}", channel=self.name, operation="poll", cause=e
            ) from e

        if status != 200 or not isinstance(body, dict) or not body.get("ok"):
            raise ChannelError(
                f"getUpdates returned HTTP {status}: {_description(body)}",
                channel=self.name,
                operation="poll",
            )

        responses = []
        for update in body.get("result") or []:
            response = self._parse_update(update, since)
            if response is not None:
                responses.append(response)

        # Updates at or before the watermark are never check-ins again
        self._confirm_through(ensure_utc(since) if since is not None else _IRRELEVANT)

        logger.debug(f"Found {len(responses)} Telegram check-in replies")
        return responses

    async def mark_consumed_until(self, timestamp: datetime) -> None:
        self._confirm_through(ensure_utc(timestamp))

    def _confirm_through(self, timestamp: datetime) -> None:
        """Advance the offset past the leading run of updates dated <= timestamp."""
        confirmed = None
        for update_id in sorted(self._pending_updates):
            if self._pending_updates[update_id] > timestamp:
                break
            confirmed = update_id
        if confirmed is None:
            return

        # getUpdates with offset > update_id confirms everything before it
        self._offset = confirmed + 1
        self._pending_updates = {
            update_id: sent_at
            for update_id, sent_at in self._pending_updates.items()
            if update_id >= self._offset
        }
        logger.debug(f"Telegram update offset advanced to {self._offset}")

    def _parse_update(
        self,
        update: Dict[str, Any],
        since: Optional[datetime],
    ) -> Optional[CheckinResponse]:
        message = update.get("message")
        update_id = update.get("update_id")
        if not isinstance(update_id, int):
            return None
        if not isinstance(message, dict):
            self._pending_updates[update_id] = _IRRELEVANT
            return None

        chat = message.get("chat") or {}
        if str(chat.get("id")) != self._chat_id:
            self._pending_updates[update_id] = _IRRELEVANT
            return None

        sent_at = datetime.fromtimestamp(int(message.get("date", 0)), tz=timezone.utc)
        self._pending_updates[update_id] = sent_at

        if since is not None and sent_at <= ensure_utc(since):
            return None

        sender = message.get("from") or {}
        return CheckinResponse.found_at(
            timestamp=sent_at,
            subject=str(message.get("text", ""))[:100],
            sender=str(sender.get("username") or sender.get("first_name") or "Unknown"),
        )

    async def close(self) -> None:
        await self._http.close()


def _description(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("description", body))
    return str(body)


__all__ = [
    "TelegramRateLimiter",
    "TelegramChannel",
]
