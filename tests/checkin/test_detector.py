"""
Tests for the check-in detector.

============================================================
PURPOSE
============================================================
1. Watermark passed to every channel
2. Newest reply across channels wins
3. Every channel is marked, not just the winner
4. One failing channel does not hide the others

============================================================
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch
import logging

import pytest

from lastsignal.channels.base import CheckinResponse
from lastsignal.checkin.detector import CheckinDetector
from lastsignal.core.exceptions import ChannelAuthError, ChannelError


START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class TestCheckinDetector:
    """Tests for CheckinDetector.detect."""

    @pytest.mark.asyncio
    async def test_no_channels(self, state_manager):
        """Test nothing to poll finds nothing."""
        result = await CheckinDetector().detect([], state_manager)

        assert not result.found
        assert result.polled == []

    @pytest.mark.asyncio
    async def test_watermark_is_passed(self, make_reply_channel, state_manager, clock):
        """Test channels are polled since the later of check-in and request."""
        state_manager.record_checkin()
        clock.advance(hours=5)
        state_manager.record_checkin_request()
        channel = make_reply_channel()

        await CheckinDetector().detect([channel], state_manager)

        channel.poll_for_replies.assert_awaited_once_with(START + timedelta(hours=5))

    @pytest.mark.asyncio
    async def test_fresh_install_polls_without_watermark(self, make_reply_channel, state_manager):
        """Test the very first poll has no watermark."""
        channel = make_reply_channel()

        await CheckinDetector().detect([channel], state_manager)

        channel.poll_for_replies.assert_awaited_once_with(None)

    @pytest.mark.asyncio
    async def test_newest_wins_and_all_marked(self, make_reply_channel, state_manager, clock):
        """Test replies at T1 < T2 record T2 and mark both channels until T2."""
        t1 = START + timedelta(hours=1)
        t2 = START + timedelta(hours=2)
        clock.advance(hours=3)
        first = make_reply_channel("email", responses=[CheckinResponse.found_at(t1, "RE: hi", "me")])
        second = make_reply_channel("telegram", responses=[CheckinResponse.found_at(t2, "ok", "me")])

        result = await CheckinDetector().detect([first, second], state_manager)

        assert result.found
        assert result.response.timestamp == t2
        assert state_manager.state.last_checkin == t2
        first.mark_consumed_until.assert_awaited_once_with(t2)
        second.mark_consumed_until.assert_awaited_once_with(t2)

    @pytest.mark.asyncio
    async def test_none_responses_ignored(self, make_reply_channel, state_manager):
        """Test 'none' responses are not check-ins."""
        channel = make_reply_channel(responses=[CheckinResponse.none()])

        result = await CheckinDetector().detect([channel], state_manager)

        assert not result.found
        assert state_manager.state.last_checkin is None
        channel.mark_consumed_until.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self, make_reply_channel, state_manager, clock):
        """Test a poll error is logged and other replies still count."""
        clock.advance(hours=2)
        broken = make_reply_channel("email", poll_error=ChannelError("imap down"))
        working = make_reply_channel(
            "telegram", responses=[CheckinResponse.found_at(START + timedelta(hours=1))]
        )

        result = await CheckinDetector().detect([broken, working], state_manager)

        assert result.found
        assert result.failed == ["email"]
        assert result.polled == ["email", "telegram"]
        assert state_manager.state.last_checkin == START + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_mark_failure_is_best_effort(self, make_reply_channel, state_manager, clock):
        """Test a failing mark does not undo the recorded check-in."""
        clock.advance(hours=2)
        reply = CheckinResponse.found_at(START + timedelta(hours=1))
        flaky = make_reply_channel("email", responses=[reply], mark_error=RuntimeError("nope"))
        other = make_reply_channel("telegram")

        result = await CheckinDetector().detect([flaky, other], state_manager)

        assert result.mark_failed == ["email"]
        other.mark_consumed_until.assert_awaited_once()
        assert state_manager.state.last_checkin == START + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_checkin_resets_request_tracking(self, make_reply_channel, state_manager, clock):
        """Test a detected reply clears the unanswered request window."""
        state_manager.record_checkin_request()
        clock.advance(hours=2)
        channel = make_reply_channel(
            responses=[CheckinResponse.found_at(START + timedelta(hours=1))]
        )

        await CheckinDetector().detect([channel], state_manager)

        state = state_manager.state
        assert state.first_unanswered_request is None
        assert state.checkin_request_count == 0

    @pytest.mark.asyncio
    async def test_repeated_reply_not_rewritten(self, make_reply_channel, state_manager, clock):
        """Test a reply already recorded does not rewrite the state file."""
        clock.advance(hours=2)
        reply = CheckinResponse.found_at(START + timedelta(hours=1))
        channel = make_reply_channel(responses=[reply])
        await CheckinDetector().detect([channel], state_manager)
        clock.advance(minutes=5)

        with patch.object(state_manager, "_write") as write:
            result = await CheckinDetector().detect([channel], state_manager)

        write.assert_not_called()
        assert not result.found
        assert state_manager.state.last_checkin == START + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_future_reply_capped_once(self, make_reply_channel, state_manager):
        """Test a future-dated reply is recorded at now and not again."""
        reply = CheckinResponse.found_at(START + timedelta(hours=6))
        channel = make_reply_channel(responses=[reply])

        first = await CheckinDetector().detect([channel], state_manager)
        with patch.object(state_manager, "_write") as write:
            second = await CheckinDetector().detect([channel], state_manager)

        assert first.found
        assert state_manager.state.last_checkin == START
        write.assert_not_called()
        assert not second.found
        channel.mark_consumed_until.assert_awaited_with(START + timedelta(hours=6))

    @pytest.mark.asyncio
    async def test_rejected_credentials_logged_as_error(self, make_reply_channel, state_manager, caplog):
        """Test an auth failure is counted as failed and logged at ERROR."""
        locked = make_reply_channel("email", poll_error=ChannelAuthError("bad password"))

        with caplog.at_level(logging.WARNING, logger="lastsignal.checkin.detector"):
            result = await CheckinDetector().detect([locked], state_manager)

        assert result.failed == ["email"]
        assert [r.levelno for r in caplog.records] == [logging.ERROR]
