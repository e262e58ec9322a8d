"""
WHOOP Channel (detection-only).

============================================================
PURPOSE
============================================================
Treats recent WHOOP device activity as a check-in.

- send() never delivers: always SKIPPED
- Latest activity = newest updated_at across the most recent
  cycle, sleep and recovery records (each endpoint
  best-effort)
- poll_for_replies() ignores the watermark: the device feed
  has no consumable messages, so freshness is judged against
  now minus max_hours_since_activity

============================================================
"""

from datetime import datetime, timedelta
from typing import List, Optional
import asyncio
import logging

import aiohttp
from pydantic import BaseModel, ValidationError

from lastsignal.channels.base import ChannelResult, CheckinResponse, ReplyCapableChannel
from lastsignal.channels.http import DEFAULT_HTTP_TIMEOUT_SECONDS, HttpClient
from lastsignal.channels.oauth import WhoopOAuth
from lastsignal.core.clock import ClockProtocol, SystemClock, ensure_utc
from lastsignal.core.exceptions import ChannelError, InvalidConfigError, OAuthError


logger = logging.getLogger(__name__)

API_BASE = "https://api.prod.whoop.com/developer/v1"
ACTIVITY_ENDPOINTS = {
    "cycle": f"{API_BASE}/cycle",
    "sleep": f"{API_BASE}/activity/sleep",
    "recovery": f"{API_BASE}/recovery",
}
DEFAULT_MAX_HOURS_SINCE_ACTIVITY = 24


# ============================================================
# API PAYLOADS
# ============================================================

class ActivityRecord(BaseModel):
    """Common part of cycle / sleep / recovery records."""
    updated_at: datetime


class ActivityPage(BaseModel):
    records: List[ActivityRecord] = []


# ============================================================
# CHANNEL
# ============================================================

class WhoopChannel(ReplyCapableChannel):
    """Detection-only channel backed by the WHOOP developer API."""

    def __init__(
        self,
        oauth: WhoopOAuth,
        max_hours_since_activity: int = DEFAULT_MAX_HOURS_SINCE_ACTIVITY,
        clock: Optional[ClockProtocol] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        http: Optional[HttpClient] = None,
    ):
        if int(max_hours_since_activity) <= 0:
            raise InvalidConfigError(
                "max_hours_since_activity",
                max_hours_since_activity,
                "max_hours_since_activity must be greater than 0",
            )
        self._oauth = oauth
        self._max_hours = int(max_hours_since_activity)
        self._clock = clock or SystemClock()
        self._http = http or HttpClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "WHOOP"

    @property
    def freshness_window(self) -> timedelta:
        return timedelta(hours=self._max_hours)

    # --------------------------------------------------------
    # CHANNEL API
    # --------------------------------------------------------

    async def send(self, message: str) -> ChannelResult:
        return ChannelResult.skipped("WHOOP is a check-only channel")

    async def health_check(self) -> bool:
        try:
            latest = await self.latest_activity()
        except ChannelError as e:
            logger.warning(f"WHOOP health check failed: {e}")
            return False

        age = self._clock.now() - latest
        logger.info(f"WHOOP health check: most recent activity {age} ago")
        return self._is_fresh(latest)

    async def poll_for_replies(self, since: Optional[datetime]) -> List[CheckinResponse]:
        latest = await self.latest_activity()
        if not self._is_fresh(latest):
            logger.debug(f"WHOOP: no activity within {self._max_hours}h, latest at {latest.isoformat()}")
            return []

        logger.info(f"WHOOP detected recent activity at {latest.isoformat()}, treating as check-in")
        return [
            CheckinResponse.found_at(
                timestamp=latest,
                subject="WHOOP Device Activity Detected",
                sender="WHOOP Device",
            )
        ]

    async def mark_consumed_until(self, timestamp: datetime) -> None:
        return None

    async def close(self) -> None:
        await self._http.close()

    # --------------------------------------------------------
    # ACTIVITY FEED
    # --------------------------------------------------------

    def _is_fresh(self, latest: datetime) -> bool:
        return latest > self._clock.now() - self.freshness_window

    async def latest_activity(self) -> datetime:
        """
        Newest activity timestamp across all endpoints.

        Raises:
            ChannelError: if no endpoint produced a timestamp
        """
        try:
            token = await self._oauth.get_valid_access_token()
        except OAuthError as e:
            raise ChannelError(
                f"WHOOP authentication unavailable: {e}",
                channel=self.name,
                operation="activity",
                cause=e,
            ) from e

        latest: Optional[datetime] = None
        for kind, url in ACTIVITY_ENDPOINTS.items():
            try:
                timestamp = await self._fetch_latest(url, token)
            except ChannelError as e:
                logger.debug(f"WHOOP {kind} lookup failed: {e}")
                continue
            if timestamp is not None and (latest is None or timestamp > latest):
                latest = timestamp

        if latest is None:
            raise ChannelError(
                "No recent activity data found from WHOOP API",
                channel=self.name,
                operation="activity",
            )
        return latest

    async def _fetch_latest(self, url: str, token: str) -> Optional[datetime]:
        try:
            status, body = await self._http.request_json(
                "GET",
                url,
                params={"limit": "1"},
                headers={"Authorization": f"Bearer {token}"},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChannelError(f"Request failed: {e}", channel=self.name, cause=e) from e

        if status != 200:
            raise ChannelError(f"WHOOP API returned HTTP {status}", channel=self.name)

        try:
            page = ActivityPage.model_validate(body)
        except ValidationError as e:
            raise ChannelError(f"Unexpected WHOOP payload: {e}", channel=self.name, cause=e) from e

        if not page.records:
            return None
        return ensure_utc(page.records[0].updated_at)


__all__ = [
    "ACTIVITY_ENDPOINTS",
    "DEFAULT_MAX_HOURS_SINCE_ACTIVITY",
    "WhoopChannel",
]
