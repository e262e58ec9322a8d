"""
Tests for broadcast delivery with per-recipient dedup.

============================================================
PURPOSE
============================================================
1. Every recipient attempted, no short-circuit
2. Already-notified recipients are never contacted
3. Success is persisted before the next recipient
4. Aggregate: FIRED / ALREADY_COMPLETE / EXHAUSTED

============================================================
"""

from unittest.mock import patch

import pytest

from lastsignal.channels.base import ChannelResult
from lastsignal.core.exceptions import StatePersistenceError
from lastsignal.delivery.broadcast import broadcast_to_all
from lastsignal.delivery.models import (
    ALREADY_NOTIFIED,
    HEALTH_CHECK_FAILED,
    BroadcastAggregate,
    BroadcastReport,
    RecipientTarget,
)


def _target(make_channel, recipient_id, **kwargs):
    return RecipientTarget(recipient_id=recipient_id, channel=make_channel(recipient_id, **kwargs))


class TestBroadcast:
    """Tests for broadcast_to_all."""

    @pytest.mark.asyncio
    async def test_all_succeed(self, make_channel, state_manager):
        """Test every recipient is attempted and recorded."""
        targets = [_target(make_channel, "email:a"), _target(make_channel, "telegram:1")]

        report = await broadcast_to_all(targets, "goodbye", state_manager)

        assert report.aggregate is BroadcastAggregate.FIRED
        assert report.newly_notified == ["email:a", "telegram:1"]
        assert state_manager.is_recipient_notified("email:a")
        assert state_manager.is_recipient_notified("telegram:1")

    @pytest.mark.asyncio
    async def test_no_short_circuit(self, make_channel, state_manager):
        """Test a failure does not stop later recipients."""
        failing = _target(make_channel, "email:a", result=ChannelResult.failed("bounced"))
        unhealthy = _target(make_channel, "email:b", healthy=False)
        good = _target(make_channel, "telegram:1")

        report = await broadcast_to_all([failing, unhealthy, good], "goodbye", state_manager)

        assert report.aggregate is BroadcastAggregate.FIRED
        assert [o.result.status for o in report.outcomes] == [
            ChannelResult.failed("x").status,
            ChannelResult.skipped("x").status,
            ChannelResult.success().status,
        ]
        assert report.outcomes[1].result.reason == HEALTH_CHECK_FAILED
        assert report.unreached == ["email:a", "email:b"]
        good.channel.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_notified_never_touched(self, make_channel, state_manager):
        """Test dedup skips without a health check or send."""
        state_manager.record_recipient_notified("email:a")
        done = _target(make_channel, "email:a")
        pending = _target(make_channel, "telegram:1")

        report = await broadcast_to_all([done, pending], "goodbye", state_manager)

        done.channel.health_check.assert_not_awaited()
        done.channel.send.assert_not_awaited()
        assert report.outcomes[0].already_notified
        assert report.outcomes[0].result.reason == ALREADY_NOTIFIED
        assert report.newly_notified == ["telegram:1"]

    @pytest.mark.asyncio
    async def test_all_already_notified_is_noop(self, make_channel, state_manager):
        """Test a fully delivered broadcast is ALREADY_COMPLETE."""
        state_manager.record_recipient_notified("email:a")
        state_manager.record_recipient_notified("telegram:1")
        targets = [_target(make_channel, "email:a"), _target(make_channel, "telegram:1")]

        report = await broadcast_to_all(targets, "goodbye", state_manager)

        assert report.aggregate is BroadcastAggregate.ALREADY_COMPLETE
        for target in targets:
            target.channel.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nobody_reached_is_exhausted(self, make_channel, state_manager):
        """Test no new success with someone unreached is EXHAUSTED."""
        targets = [
            _target(make_channel, "email:a", healthy=False),
            _target(make_channel, "telegram:1", send_error=TimeoutError("slow")),
        ]

        report = await broadcast_to_all(targets, "goodbye", state_manager)

        assert report.aggregate is BroadcastAggregate.EXHAUSTED
        assert report.counts() == {
            "newly_notified": 0,
            "already_notified": 0,
            "failed": 1,
            "skipped": 1,
        }

    @pytest.mark.asyncio
    async def test_partial_prior_delivery_then_failure_is_exhausted(self, make_channel, state_manager):
        """Test one old success plus one new failure is still EXHAUSTED."""
        state_manager.record_recipient_notified("email:a")
        targets = [
            _target(make_channel, "email:a"),
            _target(make_channel, "telegram:1", result=ChannelResult.failed("blocked")),
        ]

        report = await broadcast_to_all(targets, "goodbye", state_manager)

        assert report.aggregate is BroadcastAggregate.EXHAUSTED
        assert report.unreached == ["telegram:1"]

    @pytest.mark.asyncio
    async def test_recorded_before_next_recipient(self, make_channel, state_manager):
        """Test the first success is on disk before the second send."""
        seen = {}
        second = _target(make_channel, "telegram:1")

        async def check_first_recorded(message):
            seen["first_recorded"] = state_manager.is_recipient_notified("email:a")
            return ChannelResult.success()

        second.channel.send.side_effect = check_first_recorded

        await broadcast_to_all([_target(make_channel, "email:a"), second], "goodbye", state_manager)

        assert seen["first_recorded"] is True

    @pytest.mark.asyncio
    async def test_persistence_failure_propagates(self, make_channel, state_manager):
        """Test a delivery that cannot be recorded aborts the broadcast."""
        first = _target(make_channel, "email:a")
        second = _target(make_channel, "telegram:1")

        with patch.object(
            state_manager, "record_recipient_notified",
            side_effect=StatePersistenceError("disk full"),
        ):
            with pytest.raises(StatePersistenceError):
                await broadcast_to_all([first, second], "goodbye", state_manager)

        second.channel.send.assert_not_awaited()


class TestBroadcastReport:
    """Tests for BroadcastReport."""

    def test_empty_report_is_complete(self):
        """Test no targets means nothing left to do."""
        assert BroadcastReport().aggregate is BroadcastAggregate.ALREADY_COMPLETE

    @pytest.mark.asyncio
    async def test_to_dict(self, make_channel, state_manager):
        """Test the serialized report."""
        report = await broadcast_to_all([_target(make_channel, "email:a")], "goodbye", state_manager)

        data = report.to_dict()

        assert data["aggregate"] == "fired"
        assert data["outcomes"] == [{
            "recipient_id": "email:a",
            "channel": "email:a",
            "result": "success",
            "newly_notified": True,
        }]
