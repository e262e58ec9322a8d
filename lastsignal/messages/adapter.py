"""
Message Adapters.

============================================================
RESPONSIBILITY
============================================================
Produce the two texts the switch sends.

- Check-in request: fixed reminder text
- Last signal: template loaded from the message file,
  created with a default template when missing;
  "{timestamp}" is replaced with the send time (UTC)

============================================================
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
import logging

from lastsignal.core.clock import ClockProtocol, SystemClock, format_utc
from lastsignal.core.exceptions import ConfigurationError, InvalidConfigError


logger = logging.getLogger(__name__)

CHECKIN_MESSAGE = (
    "Hello! This is your scheduled check-in reminder from LastSignal.\n\n"
    "Please respond to confirm you're okay. If you don't respond within the "
    "configured timeframe, the emergency contacts will be notified.\n\n"
    "To check in, you can reply to this message or use any of the configured "
    "response methods."
)

DEFAULT_LAST_SIGNAL_TEMPLATE = """This is an automated message from LastSignal.

I have not received a check-in from my designated contact within the expected timeframe.
This message is being sent as a precautionary measure to ensure my wellbeing.

If you are receiving this message, please:
1. Try to contact me through normal means
2. If you cannot reach me, consider checking on me in person
3. Contact emergency services if necessary

This system was set up to ensure my safety and peace of mind.

Generated at: {timestamp}

LastSignal - Automated Safety System"""


class MessageAdapter(ABC):
    """Source of outgoing message texts."""

    @abstractmethod
    def checkin_message(self) -> str:
        ...

    @abstractmethod
    def last_signal_message(self) -> str:
        ...


class FileMessageAdapter(MessageAdapter):
    """Last-signal text comes from a user-editable file."""

    def __init__(self, message_file: Path, clock: Optional[ClockProtocol] = None):
        self._path = Path(message_file)
        self._clock = clock or SystemClock()

    @property
    def path(self) -> Path:
        return self._path

    def checkin_message(self) -> str:
        return CHECKIN_MESSAGE

    def last_signal_message(self) -> str:
        template = self._load_template()
        return template.replace("{timestamp}", format_utc(self._clock.now()))

    def _load_template(self) -> str:
        try:
            if not self._path.exists():
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._path.write_text(DEFAULT_LAST_SIGNAL_TEMPLATE, encoding="utf-8")
                logger.info(f"Created default message file at {self._path}")
                return DEFAULT_LAST_SIGNAL_TEMPLATE
            return self._path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigurationError(
                f"Message file {self._path} is unusable: {e}",
                config_key="last_signal.message_file",
                cause=e,
            ) from e


def create_message_adapter(
    adapter_type: str,
    message_file: Path,
    clock: Optional[ClockProtocol] = None,
) -> MessageAdapter:
    if adapter_type == "file":
        return FileMessageAdapter(message_file, clock=clock)
    raise InvalidConfigError(
        "last_signal.adapter_type", adapter_type, "Unknown message adapter type"
    )


__all__ = [
    "CHECKIN_MESSAGE",
    "DEFAULT_LAST_SIGNAL_TEMPLATE",
    "MessageAdapter",
    "FileMessageAdapter",
    "create_message_adapter",
]
