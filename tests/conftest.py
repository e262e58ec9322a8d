"""
Shared fixtures.

Channel doubles are MagicMocks spec'd on the channel ABCs,
with AsyncMock coroutines so call order and arguments can
be asserted.
"""

from datetime import datetime, timezone
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock
import logging

import pytest

from lastsignal.channels.base import Channel, ChannelResult, CheckinResponse, ReplyCapableChannel
from lastsignal.core.clock import MockClock
from lastsignal.core.state_manager import StateManager


START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Deterministic clock starting at START."""
    return MockClock(START)


@pytest.fixture
def state_manager(tmp_path, clock):
    """State manager writing into a temporary data directory."""
    return StateManager(tmp_path, clock=clock)


@pytest.fixture
def make_channel():
    """Build a send-only channel double."""

    def build(
        name: str = "fake",
        healthy: bool = True,
        result: Optional[ChannelResult] = None,
        send_error: Optional[BaseException] = None,
        health_error: Optional[BaseException] = None,
    ) -> MagicMock:
        channel = MagicMock(spec=Channel)
        channel.name = name
        channel.health_check = AsyncMock(return_value=healthy, side_effect=health_error)
        channel.send = AsyncMock(
            return_value=result or ChannelResult.success(), side_effect=send_error
        )
        channel.close = AsyncMock()
        return channel

    return build


@pytest.fixture
def make_reply_channel(make_channel):
    """Build a reply-capable channel double."""

    def build(
        name: str = "replies",
        responses: Optional[List[CheckinResponse]] = None,
        poll_error: Optional[BaseException] = None,
        mark_error: Optional[BaseException] = None,
        **kwargs,
    ) -> MagicMock:
        base = make_channel(name=name, **kwargs)
        channel = MagicMock(spec=ReplyCapableChannel)
        channel.name = name
        channel.health_check = base.health_check
        channel.send = base.send
        channel.close = base.close
        channel.poll_for_replies = AsyncMock(return_value=responses or [], side_effect=poll_error)
        channel.mark_consumed_until = AsyncMock(return_value=None, side_effect=mark_error)
        return channel

    return build


@pytest.fixture
def restore_root_logging():
    """Undo setup_logging's root handler replacement after the test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
