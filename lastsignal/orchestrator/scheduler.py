"""
Orchestrator - Escalation Scheduler.

============================================================
RESPONSIBILITY
============================================================
The control loop. One cycle, in strict order:

1. Detect check-in replies (concurrent polling)
2. Request a check-in when one is due and the retry delay
   allows it (ordered fallback), then record the request
   whatever the outcome
3. Fire the last signal when the silence threshold passed
   and it has not fired within that window, or retry the
   recipients a partial fire left behind once the recipient
   retry delay has passed since the last pass (broadcast)

A cycle that raises is logged and retried after the
cool-down. Nothing stops the loop except cancellation or
max_cycles.

============================================================
STATE DISCIPLINE
============================================================
- The scheduler only mutates state through StateManager
- Mutations happen between channel calls, never inside
  a concurrent channel task
- A failed state write fails the cycle; the mutation is
  not assumed to have happened

============================================================
"""

from typing import Any, Awaitable, Callable, List, Optional, Sequence
import asyncio
import logging

from lastsignal.channels.base import Channel, ReplyCapableChannel
from lastsignal.checkin.detector import CheckinDetector
from lastsignal.core.duration import ConfigDuration
from lastsignal.core.exceptions import DeliveryExhaustedError, LastSignalError
from lastsignal.core.state_manager import StateManager
from lastsignal.delivery.broadcast import broadcast_to_all
from lastsignal.delivery.fallback import deliver_with_fallback
from lastsignal.delivery.models import BroadcastAggregate, RecipientTarget
from lastsignal.messages.adapter import MessageAdapter
from lastsignal.orchestrator.models import CycleResult, Phase


logger = logging.getLogger(__name__)

DEFAULT_ERROR_COOLDOWN_SECONDS = 300.0


class EscalationScheduler:
    """
    Drives detection, check-in requests and escalation.

    All timing comes from the state manager's clock and the
    injected sleep, so the loop runs deterministically in tests.
    """

    def __init__(
        self,
        state_manager: StateManager,
        checkin_channels: Sequence[ReplyCapableChannel],
        recipient_targets: Sequence[RecipientTarget],
        message_adapter: MessageAdapter,
        checkin_interval: ConfigDuration,
        escalation_after: ConfigDuration,
        checkin_retry_delay: ConfigDuration,
        recipient_retry_delay: ConfigDuration,
        tick_interval: ConfigDuration,
        detector: Optional[CheckinDetector] = None,
        error_cooldown: float = DEFAULT_ERROR_COOLDOWN_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize scheduler.

        Args:
            state_manager: Persisted lifecycle state
            checkin_channels: Ordered check-in outputs (reply-capable view)
            recipient_targets: Ordered last-signal recipients
            message_adapter: Source of the message texts
            checkin_interval: Silence before a check-in is requested
            escalation_after: Silence before the last signal fires
            checkin_retry_delay: Minimum gap between check-in requests
            recipient_retry_delay: Minimum gap before retrying unreached recipients
            tick_interval: Sleep between successful cycles
            detector: Reply detector (defaults to CheckinDetector)
            error_cooldown: Sleep in seconds after a failed cycle
            sleep: Awaitable sleep, injectable for tests
        """
        self._state = state_manager
        self._checkin_channels = list(checkin_channels)
        self._targets = list(recipient_targets)
        self._messages = message_adapter
        self._checkin_interval = checkin_interval
        self._escalation_after = escalation_after
        self._checkin_retry_delay = checkin_retry_delay
        self._recipient_retry_delay = recipient_retry_delay
        self._tick_interval = tick_interval
        self._detector = detector or CheckinDetector()
        self._error_cooldown = error_cooldown
        self._sleep = sleep

        self._cycle_count = 0
        self._last_cycle: Optional[CycleResult] = None

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return Phase.from_state(self._state.state)

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def last_cycle(self) -> Optional[CycleResult]:
        return self._last_cycle

    @property
    def recipient_ids(self) -> List[str]:
        return [t.recipient_id for t in self._targets]

    @property
    def checkin_channels(self) -> List[Channel]:
        return list(self._checkin_channels)

    # --------------------------------------------------------
    # Cycle
    # --------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """
        Run one detect / request / escalate cycle.

        Raises:
            DeliveryExhaustedError: escalation due but nobody reached
            StatePersistenceError: a state write failed
        """
        self._cycle_count += 1
        result = CycleResult(cycle_id=self._cycle_count, started_at=self._state.clock.now())
        self._last_cycle = result
        logger.debug(f"Cycle {result.cycle_id} started | phase={self.phase.value}")

        detection = await self._detector.detect(self._checkin_channels, self._state)
        result.checkin_detected = detection.found

        await self._maybe_request_checkin(result)
        await self._maybe_escalate(result)

        result.completed_at = self._state.clock.now()
        logger.debug(f"Cycle {result.cycle_id} complete | phase={self.phase.value}")
        return result

    # --------------------------------------------------------
    # Decisions
    # --------------------------------------------------------

    def would_request_checkin(self) -> bool:
        """Whether a cycle run now would send a check-in request."""
        return self._state.should_request_checkin(
            self._checkin_interval
        ) and self._state.request_retry_due(self._checkin_retry_delay)

    def would_fire_escalation(self) -> bool:
        """Whether a cycle run now would broadcast the last signal."""
        if not self._state.should_fire_escalation(self._escalation_after):
            return False
        if self._state.has_fired_recently(self._escalation_after):
            return self._state.broadcast_retry_due(
                self._recipient_retry_delay, self.recipient_ids
            )
        return True

    # --------------------------------------------------------
    # Actions
    # --------------------------------------------------------

    async def _maybe_request_checkin(self, result: CycleResult) -> None:
        if not self.would_request_checkin():
            return

        logger.info("Check-in due, sending check-in request")
        outcome = await deliver_with_fallback(
            self._checkin_channels, self._messages.checkin_message()
        )
        result.request_result = outcome

        if outcome.is_success:
            logger.info("Check-in request delivered")
        elif outcome.is_skipped:
            logger.warning(f"Check-in request skipped: {outcome.reason}")
        else:
            logger.error(f"Check-in request not delivered: {outcome.reason}")

        self._state.record_checkin_request()

    async def _maybe_escalate(self, result: CycleResult) -> None:
        if not self.would_fire_escalation():
            return

        if self._state.has_fired_recently(self._escalation_after):
            logger.warning("Retrying last signal for recipients not yet reached")
        else:
            logger.critical("Silence threshold exceeded, firing last signal")

        report = await broadcast_to_all(
            self._targets, self._messages.last_signal_message(), self._state
        )
        result.broadcast = report
        self._state.record_broadcast_attempt()

        aggregate = report.aggregate
        if aggregate is BroadcastAggregate.FIRED:
            self._state.record_escalation_fired()
        elif aggregate is BroadcastAggregate.ALREADY_COMPLETE:
            logger.info("Every recipient already notified, nothing to send")
        else:
            counts = report.counts()
            raise DeliveryExhaustedError(
                f"Last signal could not be delivered to any recipient: "
                f"{', '.join(report.unreached)}",
                action="last_signal",
                failed=counts["failed"],
                skipped=counts["skipped"],
            )

    # --------------------------------------------------------
    # Main Loop
    # --------------------------------------------------------

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """
        Run cycles until cancelled.

        Args:
            max_cycles: Stop after this many cycles (tests, one-shot runs)
        """
        tick = self._tick_interval.as_seconds()
        logger.info(
            f"Starting control loop | interval={self._tick_interval} | "
            f"checkin_every={self._checkin_interval} | escalate_after={self._escalation_after}"
        )

        completed = 0
        while max_cycles is None or completed < max_cycles:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                logger.info("Control loop cancelled")
                raise
            except Exception as e:
                if self._last_cycle is not None:
                    self._last_cycle.error = str(e)
                    self._last_cycle.completed_at = self._state.clock.now()
                if isinstance(e, LastSignalError):
                    logger.error(f"Cycle failed: {e.to_log_format()}")
                else:
                    logger.error(f"Cycle failed: {e}", exc_info=True)
                completed += 1
                if max_cycles is not None and completed >= max_cycles:
                    break
                logger.info(f"Cooling down for {self._error_cooldown:.0f}s before retrying")
                await self._sleep(self._error_cooldown)
                continue

            completed += 1
            if max_cycles is not None and completed >= max_cycles:
                break
            logger.debug(f"Waiting {tick:.0f}s until next cycle")
            await self._sleep(tick)


__all__ = [
    "DEFAULT_ERROR_COOLDOWN_SECONDS",
    "EscalationScheduler",
]
