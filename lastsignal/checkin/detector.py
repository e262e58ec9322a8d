"""
Check-in Detector.

============================================================
RESPONSIBILITY
============================================================
Turns channel replies into check-in events.

1. Watermark = later of last_checkin / last_checkin_request
2. Poll every channel concurrently; one failing channel is
   logged and does not abort the others
3. Merge, keep "found" responses, pick the newest
4. record_checkin() unless the reply is no newer than the
   last check-in, then mark_consumed_until(newest) on every
   channel concurrently, best-effort

State is written once, after all polls returned, never from
inside a concurrent channel task.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence
import asyncio
import logging

from lastsignal.channels.base import CheckinResponse, ReplyCapableChannel
from lastsignal.core.exceptions import ChannelAuthError
from lastsignal.core.state_manager import StateManager


logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Outcome of one detection pass."""

    response: Optional[CheckinResponse] = None
    polled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    mark_failed: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.response is not None


class CheckinDetector:
    """Polls reply-capable channels and records the newest check-in."""

    async def detect(
        self,
        channels: Sequence[ReplyCapableChannel],
        state_manager: StateManager,
    ) -> DetectionResult:
        result = DetectionResult()
        if not channels:
            return result

        since = state_manager.checkin_watermark()
        logger.debug(f"Checking for check-in replies since {since.isoformat() if since else 'ever'}")

        polls = await asyncio.gather(
            *(channel.poll_for_replies(since) for channel in channels),
            return_exceptions=True,
        )

        candidates: List[CheckinResponse] = []
        for channel, outcome in zip(channels, polls):
            result.polled.append(channel.name)
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, ChannelAuthError):
                    logger.error(f"{channel.name} rejected its credentials: {outcome}")
                else:
                    logger.warning(f"Polling {channel.name} for replies failed: {outcome}")
                result.failed.append(channel.name)
                continue
            candidates.extend(r for r in outcome if r.found and r.timestamp is not None)

        if not candidates:
            logger.debug("No check-in replies found")
            return result

        newest = max(candidates, key=lambda r: r.timestamp)
        last_checkin = state_manager.state.last_checkin
        checkin_at = min(newest.timestamp, state_manager.clock.now())
        if last_checkin is not None and checkin_at <= last_checkin:
            logger.debug(
                f"Reply at {newest.timestamp.isoformat()} is not newer than the last "
                f"check-in {last_checkin.isoformat()}, nothing to record"
            )
        else:
            logger.info(
                f"Check-in reply detected at {newest.timestamp.isoformat()} "
                f"from {newest.sender!r}: {newest.subject!r}"
            )
            state_manager.record_checkin(at=newest.timestamp)
            result.response = newest

        result.mark_failed = await self._mark_all(channels, newest.timestamp)
        return result

    async def _mark_all(
        self,
        channels: Sequence[ReplyCapableChannel],
        until: datetime,
    ) -> List[str]:
        marks = await asyncio.gather(
            *(channel.mark_consumed_until(until) for channel in channels),
            return_exceptions=True,
        )
        failed = []
        for channel, outcome in zip(channels, marks):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning(f"Marking replies consumed on {channel.name} failed: {outcome}")
                failed.append(channel.name)
        return failed


__all__ = [
    "DetectionResult",
    "CheckinDetector",
]
