"""
Delivery Package.

Ordered fallback for check-in requests and deduplicated
broadcast for the last signal.
"""

from .models import (
    ALREADY_NOTIFIED,
    HEALTH_CHECK_FAILED,
    RecipientTarget,
    RecipientOutcome,
    BroadcastAggregate,
    BroadcastReport,
)
from .fallback import deliver_with_fallback
from .broadcast import broadcast_to_all


__all__ = [
    "ALREADY_NOTIFIED",
    "HEALTH_CHECK_FAILED",
    "RecipientTarget",
    "RecipientOutcome",
    "BroadcastAggregate",
    "BroadcastReport",
    "deliver_with_fallback",
    "broadcast_to_all",
]
