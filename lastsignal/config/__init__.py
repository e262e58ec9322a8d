"""
Configuration Package.

Typed configuration and the YAML / environment loader.
"""

from .models import (
    VALID_LOG_LEVELS,
    ChannelDescriptor,
    CheckinConfig,
    RecipientConfig,
    LastSignalConfig,
    AppSettings,
    AppConfig,
)
from .loader import (
    EXAMPLE_CONFIG,
    load_config,
    parse_config,
    resolve_config_path,
)


__all__ = [
    "VALID_LOG_LEVELS",
    "ChannelDescriptor",
    "CheckinConfig",
    "RecipientConfig",
    "LastSignalConfig",
    "AppSettings",
    "AppConfig",
    "EXAMPLE_CONFIG",
    "load_config",
    "parse_config",
    "resolve_config_path",
]
