"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Application facade - wires configuration into a running
switch.

- Builds channels, state, messages and the scheduler
- Single entrypoint for run / checkin / status / test
- Starts background WHOOP token refresh when needed
- Handles signals (SIGINT, SIGTERM)

============================================================
ARCHITECTURAL POSITION
============================================================
- No threshold logic lives here; the scheduler and the
  state manager own it
- The facade ONLY assembles and coordinates

============================================================
"""

from typing import Any, Awaitable, Callable, List, Optional
import asyncio
import json
import logging
import signal
import sys

from lastsignal.channels.base import Channel, as_reply_capable
from lastsignal.channels.factory import ChannelContext, ChannelFactory
from lastsignal.channels.oauth import TokenRefresher
from lastsignal.config.models import AppConfig, ChannelDescriptor
from lastsignal.core.clock import ClockProtocol, SystemClock
from lastsignal.core.exceptions import ConfigurationError, EscalationCompleteError
from lastsignal.core.state_manager import StateManager
from lastsignal.delivery.models import RecipientTarget
from lastsignal.messages.adapter import MessageAdapter, create_message_adapter
from lastsignal.orchestrator.models import ChannelHealth, CycleResult, Phase, StatusSnapshot
from lastsignal.orchestrator.scheduler import DEFAULT_ERROR_COOLDOWN_SECONDS, EscalationScheduler


# ============================================================
# LOGGING SETUP
# ============================================================

_LEVEL_NAMES = {
    "trace": "DEBUG",
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
}


def setup_logging(
    level: str = "info",
    log_format: str = "text",
) -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: trace, debug, info, warn or error
        log_format: Output format (json or text)

    Returns:
        Configured logger
    """
    level_name = _LEVEL_NAMES.get(level.lower(), level.upper())
    log_level = getattr(logging, level_name, logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("lastsignal")


# ============================================================
# APPLICATION
# ============================================================

class LastSignalApp:
    """
    The assembled dead-man's switch.

    Construct with a validated AppConfig; every collaborator
    can be injected for tests.
    """

    def __init__(
        self,
        config: AppConfig,
        clock: Optional[ClockProtocol] = None,
        state_manager: Optional[StateManager] = None,
        message_adapter: Optional[MessageAdapter] = None,
        channel_context: Optional[ChannelContext] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        error_cooldown: float = DEFAULT_ERROR_COOLDOWN_SECONDS,
    ):
        """
        Initialize application.

        Args:
            config: Validated configuration
            clock: Time source (defaults to SystemClock)
            state_manager: Lifecycle state (defaults to one in the data directory)
            message_adapter: Message texts (defaults to the configured adapter)
            channel_context: Shared channel dependencies
            sleep: Awaitable sleep for the control loop
            error_cooldown: Seconds to wait after a failed cycle

        Raises:
            ConfigurationError: the data directory cannot be created or
                a channel cannot be built
        """
        self._config = config
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger("lastsignal.app")

        data_path = config.data_path
        try:
            data_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create data directory {data_path}: {e}",
                config_key="app.data_directory",
                actual_value=str(data_path),
                cause=e,
            ) from e

        self._state = state_manager or StateManager(data_path, clock=self._clock)
        self._messages = message_adapter or create_message_adapter(
            config.last_signal.adapter_type,
            config.message_file_path,
            clock=self._clock,
        )
        self._context = channel_context or ChannelContext(
            data_directory=data_path, clock=self._clock
        )

        self._checkin_descriptors = list(config.checkin.outputs)
        self._checkin_channels = [
            as_reply_capable(self._build_channel(d)) for d in self._checkin_descriptors
        ]
        self._targets = [
            RecipientTarget(recipient_id=d.recipient_id, channel=self._build_channel(d))
            for d in config.recipient.last_signal_outputs
        ]

        self._refresher: Optional[TokenRefresher] = None
        if self._context.oauth is not None:
            self._refresher = TokenRefresher(self._context.oauth)

        self._scheduler = EscalationScheduler(
            state_manager=self._state,
            checkin_channels=self._checkin_channels,
            recipient_targets=self._targets,
            message_adapter=self._messages,
            checkin_interval=config.checkin_interval,
            escalation_after=config.escalation_after,
            checkin_retry_delay=config.checkin.output_retry_delay,
            recipient_retry_delay=config.recipient.output_retry_delay,
            tick_interval=config.app.check_interval,
            error_cooldown=error_cooldown,
            sleep=sleep,
        )

        self._main_task: Optional["asyncio.Task[Any]"] = None

        self._logger.info(
            f"LastSignal initialized | checkin_outputs={len(self._checkin_channels)} | "
            f"recipients={len(self._targets)} | data_directory={data_path}"
        )

    def _build_channel(self, descriptor: ChannelDescriptor) -> Channel:
        return ChannelFactory.create(
            descriptor.type,
            descriptor.config,
            bidirectional=descriptor.bidirectional,
            context=self._context,
        )

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def state_manager(self) -> StateManager:
        return self._state

    @property
    def scheduler(self) -> EscalationScheduler:
        return self._scheduler

    @property
    def token_refresher(self) -> Optional[TokenRefresher]:
        return self._refresher

    # --------------------------------------------------------
    # Run
    # --------------------------------------------------------

    def ensure_not_complete(self) -> None:
        """
        Refuse to run once every recipient has the last signal.

        Raises:
            EscalationCompleteError: fired and nobody left to notify
        """
        state = self._state.state
        ids = [t.recipient_id for t in self._targets]
        if state.last_escalation_fired is not None and not state.pending_recipients(ids):
            raise EscalationCompleteError(
                "The last signal has already been delivered to every recipient. "
                "Run 'lastsignal checkin' to reset before starting again.",
                context={"last_signal_fired": state.last_escalation_fired.isoformat()},
            )

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """
        Run the control loop until cancelled.

        Raises:
            EscalationCompleteError: see ensure_not_complete
        """
        self.ensure_not_complete()

        self._main_task = asyncio.current_task()
        self._install_signal_handlers()
        if self._refresher is not None:
            self._refresher.start()

        try:
            await self._scheduler.run_forever(max_cycles=max_cycles)
        except asyncio.CancelledError:
            self._logger.info("Shutdown requested, control loop stopped")
        finally:
            self._restore_signal_handlers()
            if self._refresher is not None:
                await self._refresher.stop()
            self._main_task = None

    async def run_single_cycle(self) -> CycleResult:
        return await self._scheduler.run_cycle()

    def stop(self) -> None:
        """Cancel the running control loop, if any."""
        if self._main_task is not None and not self._main_task.done():
            self._main_task.cancel()

    # --------------------------------------------------------
    # Commands
    # --------------------------------------------------------

    def record_manual_checkin(self) -> None:
        """Check in from the command line and reset escalation tracking."""
        self._state.record_checkin()
        self._state.clear_recipient_tracking()
        self._logger.info("Manual check-in recorded")

    def get_status_snapshot(self) -> StatusSnapshot:
        state = self._state.state
        return StatusSnapshot(
            phase=Phase.from_state(state),
            state=state,
            checkin_interval=self._config.checkin_interval,
            escalation_after=self._config.escalation_after,
            data_directory=str(self._config.data_path),
            recipients=[t.recipient_id for t in self._targets],
            would_request_checkin=self._scheduler.would_request_checkin(),
            would_fire_escalation=self._scheduler.would_fire_escalation(),
        )

    async def test_all_channels(self) -> List[ChannelHealth]:
        """Health-check every configured output concurrently; nothing is sent."""
        rows = [
            ("checkin", d.recipient_id, c)
            for d, c in zip(self._checkin_descriptors, self._checkin_channels)
        ] + [("recipient", t.recipient_id, t.channel) for t in self._targets]

        outcomes = await asyncio.gather(
            *(channel.health_check() for _, _, channel in rows),
            return_exceptions=True,
        )

        results = []
        for (tier, recipient_id, channel), outcome in zip(rows, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self._logger.warning(f"Health check for {recipient_id} raised: {outcome}")
                results.append(ChannelHealth(tier, recipient_id, channel.name, False, str(outcome)))
            else:
                results.append(ChannelHealth(tier, recipient_id, channel.name, bool(outcome)))
        return results

    async def close(self) -> None:
        """Release channel sessions and stop background tasks."""
        if self._refresher is not None:
            await self._refresher.stop()

        channels: List[Channel] = list(self._checkin_channels)
        channels.extend(t.channel for t in self._targets)
        for channel in channels:
            try:
                await channel.close()
            except Exception as e:
                self._logger.warning(f"Closing {channel.name} failed: {e}")

        if self._context.oauth is not None:
            await self._context.oauth.close()

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                self._logger.debug(f"Cannot install handler for {sig.name}")

    def _restore_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _handle_signal(self, sig: signal.Signals) -> None:
        self._logger.info(f"Received signal {sig.name}")
        self.stop()


__all__ = [
    "setup_logging",
    "LastSignalApp",
]
