"""
Configuration Models.

============================================================
RESPONSIBILITY
============================================================
Typed configuration the rest of the service consumes.

- checkin: how often to expect a check-in and where to ask
- recipient: when to fire and who receives the last signal
- last_signal: where the last-signal text comes from
- app: data directory, logging, loop interval

All validation errors are ConfigurationError subclasses and
fatal at startup.

============================================================
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from lastsignal.channels.factory import generate_recipient_id, validate_channel_config
from lastsignal.core.duration import ConfigDuration
from lastsignal.core.exceptions import (
    InvalidConfigError,
    InvalidDurationError,
    MissingConfigError,
)


VALID_LOG_LEVELS = ("trace", "debug", "info", "warn", "error")
DEFAULT_DATA_DIRECTORY = "~/.lastsignal"


# ============================================================
# HELPERS
# ============================================================

def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        raise MissingConfigError(key)
    if not isinstance(value, Mapping):
        raise InvalidConfigError(key, value, "must be a mapping")
    return value


def _duration(data: Mapping[str, Any], key: str, section: str) -> ConfigDuration:
    if data.get(key) is None:
        raise MissingConfigError(f"{section}.{key}")
    try:
        return ConfigDuration.parse(data[key])
    except InvalidDurationError as e:
        raise InvalidConfigError(f"{section}.{key}", data[key], e.context.get("reason", str(e))) from e


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def expand_path(value: str) -> Path:
    return Path(value).expanduser()


# ============================================================
# CHANNEL DESCRIPTOR
# ============================================================

@dataclass
class ChannelDescriptor:
    """One configured output: type, destination config, reply flag."""

    type: str
    config: Dict[str, str] = field(default_factory=dict)
    bidirectional: bool = False

    @property
    def recipient_id(self) -> str:
        return generate_recipient_id(self.type, self.config)

    @classmethod
    def from_dict(cls, data: Any, context: str) -> "ChannelDescriptor":
        if not isinstance(data, Mapping):
            raise InvalidConfigError(context, data, "output must be a mapping")
        if not data.get("type"):
            raise MissingConfigError(f"{context}.type")

        raw_config = data.get("config") or {}
        if not isinstance(raw_config, Mapping):
            raise InvalidConfigError(f"{context}.config", raw_config, "must be a mapping")

        config = {}
        for key, value in raw_config.items():
            if value is None:
                raise InvalidConfigError(f"{context}.config.{key}", value, "value cannot be empty")
            config[str(key)] = _stringify(value)

        return cls(
            type=str(data["type"]),
            config=config,
            bidirectional=bool(data.get("bidirectional", False)),
        )

    def validate(self, context: str) -> None:
        validate_channel_config(self.type, self.config, context=context)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        secrets = ("password", "access_token", "bot_token", "client_secret")
        return {
            "type": self.type,
            "bidirectional": self.bidirectional,
            "config": {
                k: ("***" if redact and k in secrets else v)
                for k, v in self.config.items()
            },
        }


# ============================================================
# SECTIONS
# ============================================================

@dataclass
class CheckinConfig:
    duration_between_checkins: ConfigDuration
    output_retry_delay: ConfigDuration
    outputs: List[ChannelDescriptor]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CheckinConfig":
        outputs = data.get("outputs") or []
        if not isinstance(outputs, list):
            raise InvalidConfigError("checkin.outputs", outputs, "must be a list")
        return cls(
            duration_between_checkins=_duration(data, "duration_between_checkins", "checkin"),
            output_retry_delay=_duration(data, "output_retry_delay", "checkin"),
            outputs=[
                ChannelDescriptor.from_dict(o, f"checkin.outputs[{i}]")
                for i, o in enumerate(outputs)
            ],
        )


@dataclass
class RecipientConfig:
    max_time_since_last_checkin: ConfigDuration
    output_retry_delay: ConfigDuration
    last_signal_outputs: List[ChannelDescriptor]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecipientConfig":
        outputs = data.get("last_signal_outputs") or []
        if not isinstance(outputs, list):
            raise InvalidConfigError("recipient.last_signal_outputs", outputs, "must be a list")
        return cls(
            max_time_since_last_checkin=_duration(data, "max_time_since_last_checkin", "recipient"),
            output_retry_delay=_duration(data, "output_retry_delay", "recipient"),
            last_signal_outputs=[
                ChannelDescriptor.from_dict(o, f"recipient.last_signal_outputs[{i}]")
                for i, o in enumerate(outputs)
            ],
        )


@dataclass
class LastSignalConfig:
    adapter_type: str = "file"
    message_file: str = "message.txt"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LastSignalConfig":
        return cls(
            adapter_type=str(data.get("adapter_type", "file")),
            message_file=str(data.get("message_file", "message.txt")),
        )


@dataclass
class AppSettings:
    data_directory: str = DEFAULT_DATA_DIRECTORY
    log_level: str = "info"
    check_interval: ConfigDuration = field(default_factory=lambda: ConfigDuration.from_hours(1))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppSettings":
        settings = cls(
            data_directory=str(data.get("data_directory", DEFAULT_DATA_DIRECTORY)),
            log_level=str(data.get("log_level", "info")).lower(),
        )
        if data.get("check_interval") is not None:
            settings.check_interval = _duration(data, "check_interval", "app")
        return settings

    @property
    def data_path(self) -> Path:
        return expand_path(self.data_directory)


# ============================================================
# APP CONFIG
# ============================================================

@dataclass
class AppConfig:
    """Root configuration object."""

    checkin: CheckinConfig
    recipient: RecipientConfig
    last_signal: LastSignalConfig = field(default_factory=LastSignalConfig)
    app: AppSettings = field(default_factory=AppSettings)
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Any, source_path: Optional[Path] = None) -> "AppConfig":
        if not isinstance(data, Mapping):
            raise InvalidConfigError("<root>", data, "configuration must be a mapping")
        return cls(
            checkin=CheckinConfig.from_dict(_section(data, "checkin")),
            recipient=RecipientConfig.from_dict(_section(data, "recipient")),
            last_signal=LastSignalConfig.from_dict(data.get("last_signal") or {}),
            app=AppSettings.from_dict(data.get("app") or {}),
            source_path=source_path,
        )

    # --------------------------------------------------------
    # DERIVED VALUES
    # --------------------------------------------------------

    @property
    def checkin_interval(self) -> ConfigDuration:
        return self.checkin.duration_between_checkins

    @property
    def escalation_after(self) -> ConfigDuration:
        return self.recipient.max_time_since_last_checkin

    @property
    def data_path(self) -> Path:
        return self.app.data_path

    @property
    def message_file_path(self) -> Path:
        """Absolute or ~ paths as given, otherwise relative to the data directory."""
        raw = self.last_signal.message_file
        if raw.startswith("/") or raw.startswith("~"):
            return expand_path(raw)
        return self.data_path / raw

    def recipient_ids(self) -> List[str]:
        return [o.recipient_id for o in self.recipient.last_signal_outputs]

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    def validate(self) -> "AppConfig":
        """
        Validate the whole configuration.

        Raises:
            ConfigurationError: on the first problem found
        """
        if not self.checkin.outputs:
            raise InvalidConfigError(
                "checkin.outputs", [], "At least one checkin output must be configured"
            )
        if not self.recipient.last_signal_outputs:
            raise InvalidConfigError(
                "recipient.last_signal_outputs", [],
                "At least one last signal output must be configured",
            )

        for i, output in enumerate(self.checkin.outputs):
            output.validate(f"checkin.outputs[{i}]")
        for i, output in enumerate(self.recipient.last_signal_outputs):
            output.validate(f"recipient.last_signal_outputs[{i}]")

        if self.app.log_level not in VALID_LOG_LEVELS:
            raise InvalidConfigError(
                "app.log_level",
                self.app.log_level,
                f"Must be one of: {', '.join(VALID_LOG_LEVELS)}",
            )

        if self.last_signal.adapter_type != "file":
            raise InvalidConfigError(
                "last_signal.adapter_type", self.last_signal.adapter_type,
                "Unknown message adapter type",
            )

        return self

    def to_dict(self) -> Dict[str, Any]:
        """Redacted view for status output."""
        return {
            "checkin": {
                "duration_between_checkins": str(self.checkin.duration_between_checkins),
                "output_retry_delay": str(self.checkin.output_retry_delay),
                "outputs": [o.to_dict() for o in self.checkin.outputs],
            },
            "recipient": {
                "max_time_since_last_checkin": str(self.recipient.max_time_since_last_checkin),
                "output_retry_delay": str(self.recipient.output_retry_delay),
                "last_signal_outputs": [o.to_dict() for o in self.recipient.last_signal_outputs],
            },
            "last_signal": {
                "adapter_type": self.last_signal.adapter_type,
                "message_file": self.last_signal.message_file,
            },
            "app": {
                "data_directory": self.app.data_directory,
                "log_level": self.app.log_level,
                "check_interval": str(self.app.check_interval),
            },
        }


__all__ = [
    "VALID_LOG_LEVELS",
    "DEFAULT_DATA_DIRECTORY",
    "ChannelDescriptor",
    "CheckinConfig",
    "RecipientConfig",
    "LastSignalConfig",
    "AppSettings",
    "AppConfig",
]
