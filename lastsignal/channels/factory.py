"""
Channel Factory.

============================================================
PURPOSE
============================================================
Builds channel instances from typed descriptors and derives
the recipient ids used for last-signal deduplication.

FEATURES:
- Per-type required fields, shared with config validation
- Registry of creators, extendable for new channel types
- Deterministic recipient ids (pure function of config)

============================================================
USAGE
============================================================
```python
channel = ChannelFactory.create("email", {"to": "...", ...}, bidirectional=True)
recipient_id = generate_recipient_id("email", {"to": "a@example.com"})
# -> "email:a@example.com"
```

============================================================
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple
import hashlib
import logging

from lastsignal.channels.base import Channel
from lastsignal.channels.email_bidirectional import BidirectionalEmailChannel
from lastsignal.channels.email_channel import DEFAULT_SUBJECT_PREFIX, EmailChannel
from lastsignal.channels.facebook_messenger import FacebookMessengerChannel
from lastsignal.channels.oauth import WhoopOAuth
from lastsignal.channels.telegram import TelegramChannel
from lastsignal.channels.whoop import DEFAULT_MAX_HOURS_SINCE_ACTIVITY, WhoopChannel
from lastsignal.core.clock import ClockProtocol
from lastsignal.core.exceptions import (
    ConfigurationError,
    InvalidConfigError,
    MissingConfigError,
)


logger = logging.getLogger(__name__)


# ============================================================
# CHANNEL TYPE SPECS
# ============================================================

@dataclass(frozen=True)
class ChannelTypeSpec:
    """Static facts about one channel type."""

    channel_type: str
    required_fields: Tuple[str, ...] = ()
    numeric_fields: Tuple[str, ...] = ()
    destination_field: Optional[str] = None
    supports_bidirectional: bool = False


CHANNEL_TYPES: Dict[str, ChannelTypeSpec] = {
    "email": ChannelTypeSpec(
        channel_type="email",
        required_fields=("to", "smtp_host", "smtp_port", "username", "password"),
        numeric_fields=("smtp_port", "imap_port"),
        destination_field="to",
        supports_bidirectional=True,
    ),
    "facebook_messenger": ChannelTypeSpec(
        channel_type="facebook_messenger",
        required_fields=("user_id", "access_token"),
        destination_field="user_id",
    ),
    "telegram": ChannelTypeSpec(
        channel_type="telegram",
        required_fields=("bot_token", "chat_id"),
        destination_field="chat_id",
    ),
    "whoop": ChannelTypeSpec(
        channel_type="whoop",
        numeric_fields=("max_hours_since_activity",),
    ),
}


def validate_channel_config(
    channel_type: str,
    config: Mapping[str, str],
    context: str = "outputs",
) -> ChannelTypeSpec:
    """
    Check a channel's type and fields.

    Raises:
        InvalidConfigError: unknown type or non-numeric numeric field
        MissingConfigError: required field absent or empty
    """
    spec = CHANNEL_TYPES.get(channel_type)
    if spec is None:
        raise InvalidConfigError(
            f"{context}.type",
            channel_type,
            f"Unknown output type '{channel_type}'. "
            f"Known types: {', '.join(sorted(CHANNEL_TYPES))}",
        )

    for name in spec.required_fields:
        if not str(config.get(name, "")).strip():
            raise MissingConfigError(f"{context}.config.{name}", source=f"{channel_type} output")

    for name in spec.numeric_fields:
        if name in config:
            value = str(config[name]).strip()
            if not value.isdigit() or int(value) <= 0:
                raise InvalidConfigError(
                    f"{context}.config.{name}",
                    config[name],
                    f"'{name}' must be a positive integer",
                )

    return spec


# ============================================================
# RECIPIENT IDS
# ============================================================

def generate_recipient_id(channel_type: str, config: Mapping[str, str]) -> str:
    """
    Stable deduplication key for one configured destination.

    "<type>:<destination>" where the type has a destination
    field, otherwise "<type>:<sha256 of sorted items>[:16]".
    """
    spec = CHANNEL_TYPES.get(channel_type)
    if spec is not None and spec.destination_field:
        destination = str(config.get(spec.destination_field, "")).strip()
        if destination:
            return f"{channel_type}:{destination}"

    canonical = "\n".join(f"{key}={config[key]}" for key in sorted(config))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"{channel_type}:{digest}"


# ============================================================
# CHANNEL FACTORY
# ============================================================

@dataclass
class ChannelContext:
    """Process-wide dependencies some channels need."""

    data_directory: Optional[Path] = None
    clock: Optional[ClockProtocol] = None
    oauth: Optional[WhoopOAuth] = None

    def whoop_oauth(self) -> WhoopOAuth:
        if self.oauth is None:
            if self.data_directory is None:
                raise ConfigurationError("WHOOP output requires a data directory for its tokens")
            self.oauth = WhoopOAuth(data_directory=self.data_directory, clock=self.clock)
        return self.oauth


ChannelCreator = Callable[[Mapping[str, str], bool, ChannelContext], Channel]


def _create_email(config: Mapping[str, str], bidirectional: bool, ctx: ChannelContext) -> Channel:
    common = dict(
        to=config["to"],
        smtp_host=config["smtp_host"],
        smtp_port=int(config["smtp_port"]),
        username=config["username"],
        password=config["password"],
        from_address=config.get("from") or None,
        subject_prefix=config.get("subject_prefix") or DEFAULT_SUBJECT_PREFIX,
    )
    if bidirectional:
        return BidirectionalEmailChannel(
            imap_host=config.get("imap_host") or None,
            imap_port=int(config.get("imap_port") or 993),
            **common,
        )
    return EmailChannel(**common)


def _create_facebook_messenger(
    config: Mapping[str, str], bidirectional: bool, ctx: ChannelContext
) -> Channel:
    return FacebookMessengerChannel(user_id=config["user_id"], access_token=config["access_token"])


def _create_telegram(config: Mapping[str, str], bidirectional: bool, ctx: ChannelContext) -> Channel:
    return TelegramChannel(bot_token=config["bot_token"], chat_id=config["chat_id"])


def _create_whoop(config: Mapping[str, str], bidirectional: bool, ctx: ChannelContext) -> Channel:
    return WhoopChannel(
        oauth=ctx.whoop_oauth(),
        max_hours_since_activity=int(
            config.get("max_hours_since_activity") or DEFAULT_MAX_HOURS_SINCE_ACTIVITY
        ),
        clock=ctx.clock,
    )


class ChannelFactory:
    """
    Factory for creating channels.

    Provides centralized channel creation with a registry
    for extension.
    """

    _creators: Dict[str, ChannelCreator] = {
        "email": _create_email,
        "facebook_messenger": _create_facebook_messenger,
        "telegram": _create_telegram,
        "whoop": _create_whoop,
    }

    @classmethod
    def register(
        cls,
        channel_type: str,
        creator: ChannelCreator,
        spec: Optional[ChannelTypeSpec] = None,
    ) -> None:
        """Register a creator (and its type spec) for a channel type."""
        cls._creators[channel_type] = creator
        CHANNEL_TYPES[channel_type] = spec or ChannelTypeSpec(channel_type=channel_type)

    @classmethod
    def unregister(cls, channel_type: str) -> None:
        cls._creators.pop(channel_type, None)
        CHANNEL_TYPES.pop(channel_type, None)

    @classmethod
    def supported_types(cls) -> Tuple[str, ...]:
        return tuple(sorted(cls._creators))

    @classmethod
    def create(
        cls,
        channel_type: str,
        config: Mapping[str, str],
        bidirectional: bool = False,
        context: Optional[ChannelContext] = None,
    ) -> Channel:
        """
        Create a channel.

        Raises:
            ConfigurationError: unknown type or invalid fields
        """
        spec = validate_channel_config(channel_type, config)
        if bidirectional and not spec.supports_bidirectional:
            logger.warning(f"'bidirectional' has no effect on {channel_type} outputs")
            bidirectional = False

        creator = cls._creators.get(channel_type)
        if creator is None:
            raise InvalidConfigError("type", channel_type, "No creator registered")

        channel = creator(config, bidirectional, context or ChannelContext())
        logger.debug(f"Created {channel.name} channel for {generate_recipient_id(channel_type, config)}")
        return channel


__all__ = [
    "ChannelTypeSpec",
    "CHANNEL_TYPES",
    "ChannelContext",
    "ChannelFactory",
    "generate_recipient_id",
    "validate_channel_config",
]
