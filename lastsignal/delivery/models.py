"""
Delivery Models.

Value types produced and consumed by the fallback and
broadcast algorithms.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from lastsignal.channels.base import Channel, ChannelResult


ALREADY_NOTIFIED = "already notified"
HEALTH_CHECK_FAILED = "health check failed"


@dataclass(frozen=True)
class RecipientTarget:
    """One configured last-signal destination."""

    recipient_id: str
    channel: Channel


@dataclass(frozen=True)
class RecipientOutcome:
    """What happened to one recipient during a broadcast pass."""

    recipient_id: str
    channel_name: str
    result: ChannelResult
    newly_notified: bool = False

    @property
    def already_notified(self) -> bool:
        return self.result.is_skipped and self.result.reason == ALREADY_NOTIFIED


class BroadcastAggregate(Enum):
    """Caller-facing verdict for a whole broadcast pass."""

    FIRED = "fired"
    """At least one recipient newly succeeded."""

    ALREADY_COMPLETE = "already_complete"
    """Every recipient was notified in an earlier pass; a no-op."""

    EXHAUSTED = "exhausted"
    """Nobody newly reached and someone still unreached; a hard error."""


@dataclass
class BroadcastReport:
    """One outcome per target, in configured order."""

    outcomes: List[RecipientOutcome] = field(default_factory=list)

    @property
    def newly_notified(self) -> List[str]:
        return [o.recipient_id for o in self.outcomes if o.newly_notified]

    @property
    def unreached(self) -> List[str]:
        return [
            o.recipient_id
            for o in self.outcomes
            if not o.newly_notified and not o.already_notified
        ]

    @property
    def aggregate(self) -> BroadcastAggregate:
        if self.newly_notified:
            return BroadcastAggregate.FIRED
        if not self.unreached:
            return BroadcastAggregate.ALREADY_COMPLETE
        return BroadcastAggregate.EXHAUSTED

    def counts(self) -> Dict[str, int]:
        failed = sum(1 for o in self.outcomes if o.result.is_failed)
        skipped = sum(
            1 for o in self.outcomes if o.result.is_skipped and not o.already_notified
        )
        return {
            "newly_notified": len(self.newly_notified),
            "already_notified": sum(1 for o in self.outcomes if o.already_notified),
            "failed": failed,
            "skipped": skipped,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aggregate": self.aggregate.value,
            "counts": self.counts(),
            "outcomes": [
                {
                    "recipient_id": o.recipient_id,
                    "channel": o.channel_name,
                    "result": str(o.result),
                    "newly_notified": o.newly_notified,
                }
                for o in self.outcomes
            ],
        }


__all__ = [
    "ALREADY_NOTIFIED",
    "HEALTH_CHECK_FAILED",
    "RecipientTarget",
    "RecipientOutcome",
    "BroadcastAggregate",
    "BroadcastReport",
]
