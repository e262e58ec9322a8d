"""
Core Module - State Manager.

============================================================
RESPONSIBILITY
============================================================
Owns the persisted lifecycle state of the switch.

- Single source of truth for "when did what happen"
- Answers the threshold questions the scheduler asks
- Flushes every mutation to disk before it becomes visible
- Nothing else in the process mutates the record

============================================================
PERSISTENCE
============================================================
One JSON record, state.json in the data directory.

- Missing file: empty default state
- Unknown keys ignored, missing keys take defaults
- Corrupt file: StatePersistenceError
- Writes go to a temp file in the same directory and are
  moved into place with os.replace (whole-record atomic)
- A mutation is applied to a copy; the copy only replaces
  the in-memory record after the write succeeded

============================================================
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional
import json
import logging
import os
import tempfile

from lastsignal import __version__
from lastsignal.core.clock import ClockProtocol, SystemClock, from_iso8601, to_iso8601
from lastsignal.core.duration import ConfigDuration
from lastsignal.core.exceptions import StatePersistenceError


logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"


# ============================================================
# LIFECYCLE STATE
# ============================================================

@dataclass
class LifecycleState:
    """
    Persisted lifecycle record.

    The predicates take "now" explicitly so the record stays
    a plain value; StateManager supplies it from its clock.
    """

    last_checkin: Optional[datetime] = None
    last_checkin_request: Optional[datetime] = None
    first_unanswered_request: Optional[datetime] = None
    last_escalation_fired: Optional[datetime] = None
    last_broadcast_attempt: Optional[datetime] = None
    checkin_request_count: int = 0
    recipient_notifications: Dict[str, datetime] = field(default_factory=dict)
    version: str = __version__

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    @property
    def checkin_watermark(self) -> Optional[datetime]:
        """Later of last_checkin / last_checkin_request, or None."""
        candidates = [t for t in (self.last_checkin, self.last_checkin_request) if t]
        return max(candidates) if candidates else None

    @property
    def escalation_anchor(self) -> Optional[datetime]:
        """Start of the unanswered-request window when never checked in."""
        return self.first_unanswered_request or self.last_checkin_request

    def should_request_checkin(self, threshold: ConfigDuration, now: datetime) -> bool:
        if self.last_checkin is None:
            return True
        return threshold.has_elapsed(now - self.last_checkin)

    def should_fire_escalation(self, threshold: ConfigDuration, now: datetime) -> bool:
        if self.last_checkin is None:
            anchor = self.escalation_anchor
            if anchor is None:
                return False
            return threshold.has_elapsed(now - anchor)
        return threshold.has_elapsed(now - self.last_checkin)

    def has_fired_recently(self, threshold: ConfigDuration, now: datetime) -> bool:
        if self.last_escalation_fired is None:
            return False
        return threshold.is_within(now - self.last_escalation_fired)

    def request_retry_due(self, retry_delay: ConfigDuration, now: datetime) -> bool:
        """
        Check whether another check-in request may be sent.

        True when no request has been made since the last check-in,
        otherwise once retry_delay has passed since the last request.
        """
        if self.last_checkin_request is None:
            return True
        if self.last_checkin is not None and self.last_checkin_request < self.last_checkin:
            return True
        return retry_delay.has_elapsed(now - self.last_checkin_request)

    def broadcast_retry_due(
        self,
        retry_delay: ConfigDuration,
        all_recipient_ids: Iterable[str],
        now: datetime,
    ) -> bool:
        """
        Check whether a fired escalation should retry its stragglers.

        True when the last signal fired, some recipients are still
        pending, and retry_delay has passed since the latest broadcast
        pass (successful or not).
        """
        if self.last_escalation_fired is None:
            return False
        if not self.pending_recipients(all_recipient_ids):
            return False
        last_pass = max(
            t for t in (self.last_escalation_fired, self.last_broadcast_attempt) if t
        )
        return retry_delay.has_elapsed(now - last_pass)

    def is_recipient_notified(self, recipient_id: str) -> bool:
        return recipient_id in self.recipient_notifications

    def pending_recipients(self, all_recipient_ids: Iterable[str]) -> List[str]:
        return [
            recipient_id
            for recipient_id in all_recipient_ids
            if recipient_id not in self.recipient_notifications
        ]

    # --------------------------------------------------------
    # SERIALIZATION
    # --------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the on-disk layout."""
        return {
            "last_checkin": _dump_ts(self.last_checkin),
            "last_checkin_request": _dump_ts(self.last_checkin_request),
            "first_unanswered_request": _dump_ts(self.first_unanswered_request),
            "last_signal_fired": _dump_ts(self.last_escalation_fired),
            "last_broadcast_attempt": _dump_ts(self.last_broadcast_attempt),
            "checkin_request_count": self.checkin_request_count,
            "version": self.version,
            "last_signal_recipients_notified": {
                recipient_id: to_iso8601(notified_at)
                for recipient_id, notified_at in self.recipient_notifications.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleState":
        """Deserialize, tolerating missing and unknown keys."""
        notified = data.get("last_signal_recipients_notified") or {}
        return cls(
            last_checkin=_load_ts(data.get("last_checkin")),
            last_checkin_request=_load_ts(data.get("last_checkin_request")),
            first_unanswered_request=_load_ts(data.get("first_unanswered_request")),
            last_escalation_fired=_load_ts(data.get("last_signal_fired")),
            last_broadcast_attempt=_load_ts(data.get("last_broadcast_attempt")),
            checkin_request_count=int(data.get("checkin_request_count", 0)),
            recipient_notifications={
                str(recipient_id): from_iso8601(notified_at)
                for recipient_id, notified_at in notified.items()
            },
            version=str(data.get("version", __version__)),
        )

    def copy(self) -> "LifecycleState":
        return replace(self, recipient_notifications=dict(self.recipient_notifications))


def _dump_ts(value: Optional[datetime]) -> Optional[str]:
    return to_iso8601(value) if value else None


def _load_ts(value: Optional[str]) -> Optional[datetime]:
    return from_iso8601(value) if value else None


# ============================================================
# STATE MANAGER
# ============================================================

class StateManager:
    """
    Loads, queries and durably mutates the lifecycle state.

    Every record_* method returns only after the new record is
    on disk. On a write failure it raises StatePersistenceError
    and the in-memory record is left exactly as it was.
    """

    def __init__(
        self,
        data_directory: Path,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize state manager.

        Args:
            data_directory: Directory holding state.json
            clock: Time source (defaults to SystemClock)
        """
        self._path = Path(data_directory) / STATE_FILE_NAME
        self._clock = clock or SystemClock()
        self._state = self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    @property
    def state(self) -> LifecycleState:
        """Read-only view; callers get a copy."""
        return self._state.copy()

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def should_request_checkin(self, threshold: ConfigDuration) -> bool:
        return self._state.should_request_checkin(threshold, self._clock.now())

    def should_fire_escalation(self, threshold: ConfigDuration) -> bool:
        return self._state.should_fire_escalation(threshold, self._clock.now())

    def has_fired_recently(self, threshold: ConfigDuration) -> bool:
        return self._state.has_fired_recently(threshold, self._clock.now())

    def request_retry_due(self, retry_delay: ConfigDuration) -> bool:
        return self._state.request_retry_due(retry_delay, self._clock.now())

    def broadcast_retry_due(
        self,
        retry_delay: ConfigDuration,
        all_recipient_ids: Iterable[str],
    ) -> bool:
        return self._state.broadcast_retry_due(retry_delay, all_recipient_ids, self._clock.now())

    def is_recipient_notified(self, recipient_id: str) -> bool:
        return self._state.is_recipient_notified(recipient_id)

    def pending_recipients(self, all_recipient_ids: Iterable[str]) -> List[str]:
        return self._state.pending_recipients(all_recipient_ids)

    def checkin_watermark(self) -> Optional[datetime]:
        return self._state.checkin_watermark

    # --------------------------------------------------------
    # MUTATIONS
    # --------------------------------------------------------

    def record_checkin(self, at: Optional[datetime] = None) -> None:
        """
        Record confirmed activity.

        `at` is when the activity happened (a reply timestamp);
        it is capped at now and never moves last_checkin back.
        """
        now = self._clock.now()
        checkin_at = min(at, now) if at is not None else now
        logger.info(f"Recording check-in at {checkin_at.isoformat()}")

        def apply(state: LifecycleState) -> None:
            if state.last_checkin is None or checkin_at > state.last_checkin:
                state.last_checkin = checkin_at
            state.checkin_request_count = 0
            state.first_unanswered_request = None

        self._commit(apply)

    def record_checkin_request(self) -> None:
        now = self._clock.now()
        logger.info(f"Recording check-in request at {now.isoformat()}")

        def apply(state: LifecycleState) -> None:
            state.last_checkin_request = now
            state.checkin_request_count += 1
            if state.first_unanswered_request is None:
                state.first_unanswered_request = now

        self._commit(apply)

    def record_escalation_fired(self) -> None:
        now = self._clock.now()
        logger.info(f"Recording last signal fired at {now.isoformat()}")

        def apply(state: LifecycleState) -> None:
            state.last_escalation_fired = now

        self._commit(apply)

    def record_broadcast_attempt(self) -> None:
        """Mark that a broadcast pass ran, whatever it reached."""
        now = self._clock.now()

        def apply(state: LifecycleState) -> None:
            state.last_broadcast_attempt = now

        self._commit(apply)

    def record_recipient_notified(self, recipient_id: str) -> None:
        now = self._clock.now()
        logger.info(f"Recording last signal delivered to {recipient_id} at {now.isoformat()}")

        def apply(state: LifecycleState) -> None:
            state.recipient_notifications[recipient_id] = now

        self._commit(apply)

    def clear_recipient_tracking(self) -> None:
        """Forget every notified recipient and the last fired timestamp."""
        logger.info("Clearing last signal recipient tracking")

        def apply(state: LifecycleState) -> None:
            state.recipient_notifications.clear()
            state.last_escalation_fired = None
            state.last_broadcast_attempt = None

        self._commit(apply)

    # --------------------------------------------------------
    # PERSISTENCE
    # --------------------------------------------------------

    def _commit(self, mutate: Callable[[LifecycleState], None]) -> None:
        candidate = self._state.copy()
        mutate(candidate)
        candidate.version = __version__
        self._write(candidate)
        self._state = candidate

    def _load(self) -> LifecycleState:
        if not self._path.exists():
            logger.info(f"State file {self._path} does not exist, starting with empty state")
            return LifecycleState()

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise StatePersistenceError(
                f"Failed to read state file: {e}", path=str(self._path), cause=e
            ) from e
        except json.JSONDecodeError as e:
            raise StatePersistenceError(
                f"State file is not valid JSON: {e}", path=str(self._path), cause=e
            ) from e

        if not isinstance(data, dict):
            raise StatePersistenceError(
                "State file must contain a JSON object", path=str(self._path)
            )

        try:
            state = LifecycleState.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise StatePersistenceError(
                f"State file has malformed fields: {e}", path=str(self._path), cause=e
            ) from e

        logger.debug(f"Loaded state from {self._path}")
        return state

    def _write(self, state: LifecycleState) -> None:
        payload = json.dumps(state.to_dict(), indent=2)
        tmp_name = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._path.parent,
                prefix=".state-",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            logger.error(f"Failed to persist state to {self._path}: {e}")
            raise StatePersistenceError(
                f"Failed to write state file: {e}", path=str(self._path), cause=e
            ) from e


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "STATE_FILE_NAME",
    "LifecycleState",
    "StateManager",
]
