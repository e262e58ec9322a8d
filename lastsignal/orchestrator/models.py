"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Data models for the control loop.

- Lifecycle phase derived from persisted state
- Per-cycle result record
- Status snapshot for the `status` command

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from lastsignal.channels.base import ChannelResult
from lastsignal.core.clock import to_iso8601
from lastsignal.core.duration import ConfigDuration
from lastsignal.core.state_manager import LifecycleState
from lastsignal.delivery.models import BroadcastReport


# ============================================================
# PHASE
# ============================================================

class Phase(Enum):
    """
    Where the switch is in its lifecycle.

    Derived from the persisted record, never stored.
    """

    IDLE = "idle"
    """No outstanding request; waiting for the next interval."""

    REQUEST_PENDING = "request_pending"
    """At least one check-in request is unanswered."""

    ESCALATED = "escalated"
    """The last signal has fired since the last check-in."""

    @classmethod
    def from_state(cls, state: LifecycleState) -> "Phase":
        if state.last_escalation_fired is not None:
            return cls.ESCALATED
        if state.first_unanswered_request is not None or state.checkin_request_count > 0:
            return cls.REQUEST_PENDING
        return cls.IDLE


# ============================================================
# CYCLE RESULT
# ============================================================

@dataclass
class CycleResult:
    """Result of one control-loop cycle."""

    cycle_id: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    checkin_detected: bool = False
    request_result: Optional[ChannelResult] = None
    broadcast: Optional[BroadcastReport] = None
    error: Optional[str] = None

    @property
    def request_sent(self) -> bool:
        return self.request_result is not None

    @property
    def escalation_attempted(self) -> bool:
        return self.broadcast is not None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def duration_seconds(self) -> float:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at) if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "checkin_detected": self.checkin_detected,
            "request_result": str(self.request_result) if self.request_result else None,
            "broadcast": self.broadcast.to_dict() if self.broadcast else None,
            "error": self.error,
        }


# ============================================================
# STATUS SNAPSHOT
# ============================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_iso8601(value) if value else None


@dataclass
class StatusSnapshot:
    """Point-in-time view of the switch for operators."""

    phase: Phase
    state: LifecycleState
    checkin_interval: ConfigDuration
    escalation_after: ConfigDuration
    data_directory: str
    recipients: List[str] = field(default_factory=list)
    would_request_checkin: bool = False
    would_fire_escalation: bool = False

    @property
    def notified_recipients(self) -> List[str]:
        return [r for r in self.recipients if self.state.is_recipient_notified(r)]

    @property
    def pending_recipients(self) -> List[str]:
        return self.state.pending_recipients(self.recipients)

    @property
    def next_checkin_due(self) -> Optional[datetime]:
        if self.state.last_checkin is None:
            return None
        return self.state.last_checkin + self.checkin_interval.as_timedelta()

    @property
    def escalation_due_at(self) -> Optional[datetime]:
        anchor = self.state.last_checkin or self.state.escalation_anchor
        if anchor is None:
            return None
        return anchor + self.escalation_after.as_timedelta()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "last_checkin": _iso(self.state.last_checkin),
            "last_checkin_request": _iso(self.state.last_checkin_request),
            "first_unanswered_request": _iso(self.state.first_unanswered_request),
            "last_signal_fired": _iso(self.state.last_escalation_fired),
            "checkin_request_count": self.state.checkin_request_count,
            "next_checkin_due": _iso(self.next_checkin_due),
            "escalation_due_at": _iso(self.escalation_due_at),
            "would_request_checkin": self.would_request_checkin,
            "would_fire_escalation": self.would_fire_escalation,
            "checkin_interval": str(self.checkin_interval),
            "escalation_after": str(self.escalation_after),
            "recipients_notified": self.notified_recipients,
            "recipients_pending": self.pending_recipients,
            "data_directory": self.data_directory,
        }

    def render(self) -> str:
        """Human-readable multi-line rendering."""
        data = self.to_dict()
        lines = ["LastSignal Status", "=" * 40]
        for key in (
            "phase",
            "last_checkin",
            "last_checkin_request",
            "checkin_request_count",
            "next_checkin_due",
            "escalation_due_at",
            "would_request_checkin",
            "would_fire_escalation",
            "last_signal_fired",
            "checkin_interval",
            "escalation_after",
            "data_directory",
        ):
            value = data[key]
            lines.append(f"  {key:24s} {value if value is not None else '-'}")
        lines.append(f"  {'recipients_notified':24s} {len(self.notified_recipients)}/{len(self.recipients)}")
        for recipient_id in self.pending_recipients:
            lines.append(f"    pending: {recipient_id}")
        return "\n".join(lines)


# ============================================================
# CHANNEL HEALTH
# ============================================================

@dataclass(frozen=True)
class ChannelHealth:
    """One row of the `test` command output."""

    tier: str
    recipient_id: str
    channel_name: str
    healthy: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "recipient_id": self.recipient_id,
            "channel": self.channel_name,
            "healthy": self.healthy,
            "error": self.error,
        }


__all__ = [
    "Phase",
    "CycleResult",
    "StatusSnapshot",
    "ChannelHealth",
]
