"""
Channels - Base Types.

============================================================
RESPONSIBILITY
============================================================
The capability set every notification / detection channel
implements, and the tagged values they return.

- Channel: send, health_check, name, close
- ReplyCapableChannel: adds reply polling and consumption
- ReplyAdapter: lets any plain channel stand in for a
  reply-capable one, with neutral answers

"Failed to send" and "no reply found" are expected outcomes.
They are returned as values (ChannelResult, CheckinResponse),
not raised.

============================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional


# ============================================================
# CHANNEL RESULT
# ============================================================

class ResultStatus(Enum):
    """Outcome of a single channel send."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    """The channel cannot meaningfully act right now."""


@dataclass(frozen=True)
class ChannelResult:
    """Tagged value: Success | Failed(reason) | Skipped(reason)."""

    status: ResultStatus
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "ChannelResult":
        return cls(ResultStatus.SUCCESS)

    @classmethod
    def failed(cls, reason: str) -> "ChannelResult":
        return cls(ResultStatus.FAILED, reason)

    @classmethod
    def skipped(cls, reason: str) -> "ChannelResult":
        return cls(ResultStatus.SKIPPED, reason)

    @property
    def is_success(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == ResultStatus.FAILED

    @property
    def is_skipped(self) -> bool:
        return self.status == ResultStatus.SKIPPED

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}: {self.reason}"
        return self.status.value


# ============================================================
# CHECK-IN RESPONSE
# ============================================================

@dataclass(frozen=True)
class CheckinResponse:
    """Tagged value: none, or found with timestamp/subject/sender."""

    found: bool
    timestamp: Optional[datetime] = None
    subject: Optional[str] = None
    sender: Optional[str] = None

    @classmethod
    def none(cls) -> "CheckinResponse":
        return cls(found=False)

    @classmethod
    def found_at(
        cls,
        timestamp: datetime,
        subject: str = "",
        sender: str = "",
    ) -> "CheckinResponse":
        return cls(found=True, timestamp=timestamp, subject=subject, sender=sender)


# ============================================================
# CHANNEL INTERFACES
# ============================================================

class Channel(ABC):
    """
    A notification channel.

    send() returns FAILED for expected delivery problems instead
    of raising; callers still tolerate exceptions.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier, e.g. 'email', 'telegram'."""
        ...

    @abstractmethod
    async def send(self, message: str) -> ChannelResult:
        """Deliver a message."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Whether the channel can currently deliver."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None


class ReplyCapableChannel(Channel):
    """A channel that can also observe check-in replies."""

    @abstractmethod
    async def poll_for_replies(self, since: Optional[datetime]) -> List[CheckinResponse]:
        """Return check-in candidates observed after the watermark."""
        ...

    @abstractmethod
    async def mark_consumed_until(self, timestamp: datetime) -> None:
        """Acknowledge every reply up to and including timestamp."""
        ...


# ============================================================
# REPLY ADAPTER
# ============================================================

class ReplyAdapter(ReplyCapableChannel):
    """Wraps a plain channel; polling finds nothing, marking does nothing."""

    def __init__(self, channel: Channel):
        self._inner = channel

    @property
    def inner(self) -> Channel:
        return self._inner

    @property
    def name(self) -> str:
        return self._inner.name

    async def send(self, message: str) -> ChannelResult:
        return await self._inner.send(message)

    async def health_check(self) -> bool:
        return await self._inner.health_check()

    async def close(self) -> None:
        await self._inner.close()

    async def poll_for_replies(self, since: Optional[datetime]) -> List[CheckinResponse]:
        return []

    async def mark_consumed_until(self, timestamp: datetime) -> None:
        return None


def as_reply_capable(channel: Channel) -> ReplyCapableChannel:
    """Return the channel itself when it polls, otherwise a ReplyAdapter."""
    if isinstance(channel, ReplyCapableChannel):
        return channel
    return ReplyAdapter(channel)


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ResultStatus",
    "ChannelResult",
    "CheckinResponse",
    "Channel",
    "ReplyCapableChannel",
    "ReplyAdapter",
    "as_reply_capable",
]
