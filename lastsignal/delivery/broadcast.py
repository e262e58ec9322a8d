"""
Delivery - Broadcast With Dedup.

============================================================
PURPOSE
============================================================
Deliver the last signal to every recipient, independently,
never contacting a recipient twice for one escalation.

RULES (per recipient, configured order, no short-circuit):
- Already notified -> SKIPPED("already notified"); the
  channel is not touched at all
- Unhealthy (False or raised) -> SKIPPED("health check failed")
- send SUCCESS -> record_recipient_notified() BEFORE the next
  recipient, so a crash never loses a delivery record
- send FAILED / SKIPPED / raised -> recorded as returned

Persistence errors propagate: a delivery whose record could
not be written must not be assumed to have happened.

============================================================
"""

from typing import Sequence
import logging

from lastsignal.channels.base import ChannelResult
from lastsignal.core.state_manager import StateManager
from lastsignal.delivery.models import (
    ALREADY_NOTIFIED,
    HEALTH_CHECK_FAILED,
    BroadcastReport,
    RecipientOutcome,
    RecipientTarget,
)


logger = logging.getLogger(__name__)


async def broadcast_to_all(
    targets: Sequence[RecipientTarget],
    message: str,
    state_manager: StateManager,
) -> BroadcastReport:
    """Send to every recipient not yet notified; one outcome each."""
    report = BroadcastReport()

    for target in targets:
        recipient_id = target.recipient_id
        channel = target.channel

        if state_manager.is_recipient_notified(recipient_id):
            logger.info(f"Recipient {recipient_id} already notified, skipping")
            report.outcomes.append(
                RecipientOutcome(
                    recipient_id=recipient_id,
                    channel_name=channel.name,
                    result=ChannelResult.skipped(ALREADY_NOTIFIED),
                )
            )
            continue

        try:
            healthy = await channel.health_check()
        except Exception as e:
            logger.warning(f"Health check for {recipient_id} raised: {e}")
            healthy = False

        if not healthy:
            logger.warning(f"Recipient {recipient_id} ({channel.name}) failed health check")
            report.outcomes.append(
                RecipientOutcome(
                    recipient_id=recipient_id,
                    channel_name=channel.name,
                    result=ChannelResult.skipped(HEALTH_CHECK_FAILED),
                )
            )
            continue

        try:
            result = await channel.send(message)
        except Exception as e:
            logger.error(f"Sending last signal to {recipient_id} raised: {e}")
            result = ChannelResult.failed(f"Send raised: {e}")

        newly_notified = False
        if result.is_success:
            state_manager.record_recipient_notified(recipient_id)
            newly_notified = True
            logger.info(f"Last signal delivered to {recipient_id}")
        elif result.is_failed:
            logger.error(f"Last signal to {recipient_id} failed: {result.reason}")
        else:
            logger.warning(f"Last signal to {recipient_id} skipped: {result.reason}")

        report.outcomes.append(
            RecipientOutcome(
                recipient_id=recipient_id,
                channel_name=channel.name,
                result=result,
                newly_notified=newly_notified,
            )
        )

    counts = report.counts()
    logger.info(
        f"Broadcast complete: aggregate={report.aggregate.value} | "
        f"new={counts['newly_notified']} | already={counts['already_notified']} | "
        f"failed={counts['failed']} | skipped={counts['skipped']}"
    )
    return report


__all__ = [
    "broadcast_to_all",
]
