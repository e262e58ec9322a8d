"""
Delivery - Ordered Fallback.

============================================================
PURPOSE
============================================================
Deliver a check-in request through the first channel that
can take it. Configuration order is the priority list.

RULES:
- Unhealthy (False or raised) -> skip to the next channel
- send SUCCESS -> stop, nothing after it is touched
- send FAILED or raised -> log, next channel
- send SKIPPED -> stop, returned as-is (deliberate refusal)
- Nothing left -> FAILED naming every channel tried

============================================================
"""

from typing import List, Sequence
import logging

from lastsignal.channels.base import Channel, ChannelResult


logger = logging.getLogger(__name__)


async def deliver_with_fallback(channels: Sequence[Channel], message: str) -> ChannelResult:
    """Try channels in order until one delivers or refuses."""
    if not channels:
        return ChannelResult.failed("No outputs configured")

    attempts: List[str] = []

    for channel in channels:
        name = channel.name

        try:
            healthy = await channel.health_check()
        except Exception as e:
            logger.warning(f"Health check for {name} raised: {e}")
            healthy = False

        if not healthy:
            logger.warning(f"Output {name} failed health check, trying next")
            attempts.append(f"{name} (health check failed)")
            continue

        try:
            result = await channel.send(message)
        except Exception as e:
            logger.error(f"Output {name} raised while sending: {e}")
            attempts.append(f"{name} (error: {e})")
            continue

        if result.is_success:
            logger.info(f"Message delivered via {name}")
            return result

        if result.is_skipped:
            logger.info(f"Output {name} skipped delivery: {result.reason}")
            return result

        logger.warning(f"Output {name} failed: {result.reason}")
        attempts.append(f"{name} ({result.reason})")

    summary = ", ".join(attempts)
    logger.error(f"All outputs failed or were skipped: {summary}")
    return ChannelResult.failed(f"All outputs failed or were skipped: {summary}")


__all__ = [
    "deliver_with_fallback",
]
