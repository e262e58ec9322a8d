"""
Tests for the escalation scheduler.

============================================================
PURPOSE
============================================================
1. Check-in requests: due, retry delay, recorded on failure
2. Escalation: fire, suppress, partial retry, exhaustion
3. Detection resets the cycle
4. Control loop: tick, cool-down, max_cycles, cancellation

============================================================
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
import asyncio

import pytest

from lastsignal.channels.base import ChannelResult, CheckinResponse
from lastsignal.checkin.detector import DetectionResult
from lastsignal.core.duration import ConfigDuration
from lastsignal.core.exceptions import DeliveryExhaustedError, StatePersistenceError
from lastsignal.delivery.models import BroadcastAggregate, RecipientTarget
from lastsignal.orchestrator.models import Phase
from lastsignal.orchestrator.scheduler import EscalationScheduler


START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def messages():
    adapter = MagicMock()
    adapter.checkin_message.return_value = "are you there?"
    adapter.last_signal_message.return_value = "goodbye"
    return adapter


@pytest.fixture
def build_scheduler(state_manager, messages):
    """Scheduler with 7d / 14d thresholds and 24h / 12h retry delays."""

    def build(checkin_channels, targets, **kwargs):
        params = dict(
            state_manager=state_manager,
            checkin_channels=checkin_channels,
            recipient_targets=targets,
            message_adapter=messages,
            checkin_interval=ConfigDuration.from_days(7),
            escalation_after=ConfigDuration.from_days(14),
            checkin_retry_delay=ConfigDuration.from_hours(24),
            recipient_retry_delay=ConfigDuration.from_hours(12),
            tick_interval=ConfigDuration.from_hours(1),
            error_cooldown=5.0,
            sleep=AsyncMock(),
        )
        params.update(kwargs)
        return EscalationScheduler(**params)

    return build


def target(channel, recipient_id):
    return RecipientTarget(recipient_id=recipient_id, channel=channel)


# ============================================================
# CHECK-IN REQUEST TESTS
# ============================================================

class TestCheckinRequests:
    """Tests for the request step."""

    @pytest.mark.asyncio
    async def test_first_cycle_requests_checkin(self, build_scheduler, make_reply_channel, state_manager):
        """Test a fresh install asks for a check-in straight away."""
        channel = make_reply_channel("email")
        scheduler = build_scheduler([channel], [])

        result = await scheduler.run_cycle()

        channel.send.assert_awaited_once_with("are you there?")
        assert result.request_sent
        assert result.request_result.is_success
        assert state_manager.state.checkin_request_count == 1
        assert state_manager.state.first_unanswered_request == START
        assert scheduler.phase is Phase.REQUEST_PENDING

    @pytest.mark.asyncio
    async def test_failed_request_still_recorded(self, build_scheduler, make_reply_channel, state_manager):
        """Test the request is recorded even when no output delivered it."""
        channel = make_reply_channel("email", result=ChannelResult.failed("smtp down"))
        scheduler = build_scheduler([channel], [])

        result = await scheduler.run_cycle()

        assert result.request_result.is_failed
        assert state_manager.state.last_checkin_request == START
        assert state_manager.state.checkin_request_count == 1

    @pytest.mark.asyncio
    async def test_retry_delay_respected(self, build_scheduler, make_reply_channel, state_manager, clock):
        """Test requests are spaced by the retry delay."""
        channel = make_reply_channel("email")
        scheduler = build_scheduler([channel], [])

        await scheduler.run_cycle()
        clock.advance(hours=23)
        second = await scheduler.run_cycle()

        assert not second.request_sent
        assert channel.send.await_count == 1

        clock.advance(hours=1)
        third = await scheduler.run_cycle()

        assert third.request_sent
        assert channel.send.await_count == 2
        assert state_manager.state.checkin_request_count == 2
        assert state_manager.state.first_unanswered_request == START

    @pytest.mark.asyncio
    async def test_not_due_after_recent_checkin(self, build_scheduler, make_reply_channel, state_manager, clock):
        """Test nothing is sent inside the check-in interval."""
        channel = make_reply_channel("email")
        state_manager.record_checkin()
        scheduler = build_scheduler([channel], [])

        clock.advance(days=6, hours=23)
        result = await scheduler.run_cycle()

        assert not result.request_sent
        channel.send.assert_not_awaited()
        assert scheduler.phase is Phase.IDLE

    @pytest.mark.asyncio
    async def test_detected_reply_prevents_request(self, build_scheduler, make_reply_channel, state_manager, clock):
        """Test a reply found this cycle resets the interval before the request step."""
        state_manager.record_checkin()
        clock.advance(days=8)
        reply = CheckinResponse.found_at(clock.now() - timedelta(hours=1), subject="Re: check-in")
        channel = make_reply_channel("email", responses=[reply])
        scheduler = build_scheduler([channel], [])

        result = await scheduler.run_cycle()

        assert result.checkin_detected
        assert not result.request_sent
        assert state_manager.state.last_checkin == reply.timestamp
        channel.mark_consumed_until.assert_awaited_once_with(reply.timestamp)


# ============================================================
# ESCALATION TESTS
# ============================================================

class TestEscalation:
    """Tests for the escalation step."""

    @pytest.mark.asyncio
    async def test_fires_after_threshold(self, build_scheduler, make_reply_channel, make_channel, state_manager, clock):
        """Test the last signal goes out once the silence threshold passes."""
        checkin = make_reply_channel("email")
        recipient = make_channel("telegram")
        state_manager.record_checkin()
        scheduler = build_scheduler([checkin], [target(recipient, "telegram:1")])

        clock.advance(days=14)
        result = await scheduler.run_cycle()

        recipient.send.assert_awaited_once_with("goodbye")
        assert result.escalation_attempted
        assert result.broadcast.aggregate is BroadcastAggregate.FIRED
        assert state_manager.state.last_escalation_fired == clock.now()
        assert state_manager.is_recipient_notified("telegram:1")
        assert scheduler.phase is Phase.ESCALATED

    @pytest.mark.asyncio
    async def test_anchor_is_first_unanswered_request(self, build_scheduler, make_reply_channel, make_channel, clock):
        """Test a never-checked-in user escalates from the first request."""
        recipient = make_channel("telegram")
        scheduler = build_scheduler([make_reply_channel("email")], [target(recipient, "telegram:1")])

        await scheduler.run_cycle()
        clock.advance(days=13, hours=23)
        await scheduler.run_cycle()
        recipient.send.assert_not_awaited()

        clock.advance(hours=1)
        await scheduler.run_cycle()

        recipient.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhausted_raises_after_request_step(self, build_scheduler, make_reply_channel, make_channel, state_manager, clock):
        """Test nobody reached is a hard error raised after the request was recorded."""
        checkin = make_reply_channel("email")
        recipient = make_channel("telegram", result=ChannelResult.failed("403"))
        state_manager.record_checkin()
        scheduler = build_scheduler([checkin], [target(recipient, "telegram:1")])
        clock.advance(days=15)

        with pytest.raises(DeliveryExhaustedError) as exc_info:
            await scheduler.run_cycle()

        assert "telegram:1" in exc_info.value.message
        assert exc_info.value.context["action"] == "last_signal"
        assert exc_info.value.context["failed"] == 1
        checkin.send.assert_awaited_once()
        assert state_manager.state.checkin_request_count == 1
        assert state_manager.state.last_escalation_fired is None

    @pytest.mark.asyncio
    async def test_already_complete_is_noop(self, build_scheduler, make_reply_channel, make_channel, state_manager, clock):
        """Test a pass where everyone was already notified neither sends nor raises."""
        recipient = make_channel("telegram")
        state_manager.record_checkin()
        state_manager.record_recipient_notified("telegram:1")
        scheduler = build_scheduler([make_reply_channel("email")], [target(recipient, "telegram:1")])
        clock.advance(days=14)

        result = await scheduler.run_cycle()

        assert result.broadcast.aggregate is BroadcastAggregate.ALREADY_COMPLETE
        recipient.send.assert_not_awaited()
        assert state_manager.state.last_escalation_fired is None

    @pytest.mark.asyncio
    async def test_suppressed_after_full_fire(self, build_scheduler, make_reply_channel, make_channel, state_manager, clock):
        """Test a completed fire is not repeated within the window."""
        recipient = make_channel("telegram")
        state_manager.record_checkin()
        scheduler = build_scheduler([make_reply_channel("email")], [target(recipient, "telegram:1")])
        clock.advance(days=14)
        await scheduler.run_cycle()

        clock.advance(days=1)
        result = await scheduler.run_cycle()

        assert not result.escalation_attempted
        assert recipient.send.await_count == 1

    @pytest.mark.asyncio
    async def test_partial_fire_retries_pending(self, build_scheduler, make_reply_channel, make_channel, state_manager, clock):
        """Test unreached recipients are retried after the recipient retry delay."""
        first = make_channel("telegram")
        second = make_channel("messenger", result=ChannelResult.failed("timeout"))
        state_manager.record_checkin()
        scheduler = build_scheduler(
            [make_reply_channel("email")],
            [target(first, "telegram:1"), target(second, "facebook_messenger:2")],
        )
        clock.advance(days=14)
        await scheduler.run_cycle()
        assert state_manager.pending_recipients(scheduler.recipient_ids) == ["facebook_messenger:2"]

        second.send.return_value = ChannelResult.success()
        clock.advance(hours=11)
        early = await scheduler.run_cycle()
        assert not early.escalation_attempted

        clock.advance(hours=1)
        retry = await scheduler.run_cycle()

        assert retry.broadcast.aggregate is BroadcastAggregate.FIRED
        assert first.send.await_count == 1
        assert second.send.await_count == 2
        assert state_manager.pending_recipients(scheduler.recipient_ids) == []
        assert state_manager.state.last_escalation_fired == clock.now()

    @pytest.mark.asyncio
    async def test_failed_retry_waits_full_delay(self, build_scheduler, make_reply_channel, make_channel, state_manager, clock):
        """Test a retry that reaches nobody is not repeated after each cool-down."""
        first = make_channel("telegram")
        second = make_channel("messenger", result=ChannelResult.failed("timeout"))
        state_manager.record_checkin()
        scheduler = build_scheduler(
            [make_reply_channel("email")],
            [target(first, "telegram:1"), target(second, "facebook_messenger:2")],
        )
        clock.advance(days=14)
        await scheduler.run_cycle()

        clock.advance(hours=12)
        with pytest.raises(DeliveryExhaustedError):
            await scheduler.run_cycle()
        assert second.send.await_count == 2
        assert state_manager.state.last_broadcast_attempt == clock.now()

        for _ in range(2):
            clock.advance(minutes=5)
            result = await scheduler.run_cycle()
            assert not result.escalation_attempted
        assert second.send.await_count == 2

        clock.advance(hours=12)
        with pytest.raises(DeliveryExhaustedError):
            await scheduler.run_cycle()
        assert second.send.await_count == 3

    @pytest.mark.asyncio
    async def test_checkin_clears_escalated_phase(self, build_scheduler, make_reply_channel, make_channel, state_manager, clock):
        """Test a reply after the fire returns the switch to idle."""
        recipient = make_channel("telegram")
        checkin = make_reply_channel("email")
        state_manager.record_checkin()
        scheduler = build_scheduler([checkin], [target(recipient, "telegram:1")])
        clock.advance(days=14)
        await scheduler.run_cycle()
        assert scheduler.phase is Phase.ESCALATED

        state_manager.record_checkin()
        state_manager.clear_recipient_tracking()

        assert scheduler.phase is Phase.IDLE


# ============================================================
# CONTROL LOOP TESTS
# ============================================================

class TestRunForever:
    """Tests for the control loop."""

    @pytest.mark.asyncio
    async def test_ticks_between_cycles(self, build_scheduler, make_reply_channel):
        """Test the tick interval separates successful cycles, with no sleep after the last."""
        sleep = AsyncMock()
        scheduler = build_scheduler([make_reply_channel("email")], [], sleep=sleep)

        await scheduler.run_forever(max_cycles=3)

        assert scheduler.cycle_count == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(3600)

    @pytest.mark.asyncio
    async def test_cooldown_after_failure(self, build_scheduler, make_reply_channel):
        """Test a failing cycle is logged, marked and followed by the cool-down."""
        sleep = AsyncMock()
        detector = MagicMock()
        detector.detect = AsyncMock(
            side_effect=[RuntimeError("boom"), DetectionResult(), DetectionResult()]
        )
        scheduler = build_scheduler(
            [make_reply_channel("email")], [], sleep=sleep, detector=detector
        )

        await scheduler.run_forever(max_cycles=3)

        assert [c.args[0] for c in sleep.await_args_list] == [5.0, 3600]
        assert scheduler.cycle_count == 3
        assert scheduler.last_cycle.success

    @pytest.mark.asyncio
    async def test_failure_recorded_on_cycle(self, build_scheduler, make_reply_channel, state_manager):
        """Test the failed cycle carries the error text."""
        scheduler = build_scheduler([make_reply_channel("email")], [])

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr(
                state_manager,
                "record_checkin_request",
                MagicMock(side_effect=StatePersistenceError("disk full")),
            )
            await scheduler.run_forever(max_cycles=1)

        assert scheduler.last_cycle.error == "disk full"
        assert not scheduler.last_cycle.success

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, build_scheduler, make_reply_channel):
        """Test cancellation stops the loop instead of being treated as a failure."""
        sleep = AsyncMock()
        detector = MagicMock()
        detector.detect = AsyncMock(side_effect=asyncio.CancelledError())
        scheduler = build_scheduler(
            [make_reply_channel("email")], [], sleep=sleep, detector=detector
        )

        with pytest.raises(asyncio.CancelledError):
            await scheduler.run_forever(max_cycles=5)

        sleep.assert_not_awaited()
