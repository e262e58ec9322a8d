"""
Configuration Loader.

============================================================
RESPONSIBILITY
============================================================
Reads config.yaml into a validated AppConfig.

Resolution order for the file:
1. explicit path (--config)
2. LASTSIGNAL_CONFIG
3. ~/.lastsignal/config.yaml

A .env file is loaded first (python-dotenv), then
${VAR} placeholders in output config values are expanded.
LASTSIGNAL_DATA_DIR and LASTSIGNAL_LOG_LEVEL override the
app section.

============================================================
"""

from pathlib import Path
from typing import Any, Mapping, Optional, Union
import logging
import os
import re

import yaml
from dotenv import load_dotenv

from lastsignal.config.models import AppConfig
from lastsignal.core.exceptions import ConfigurationError, InvalidConfigError, MissingConfigError


logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LASTSIGNAL_CONFIG"
DATA_DIR_ENV_VAR = "LASTSIGNAL_DATA_DIR"
LOG_LEVEL_ENV_VAR = "LASTSIGNAL_LOG_LEVEL"
DEFAULT_CONFIG_PATH = Path("~/.lastsignal/config.yaml")

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def resolve_config_path(path: Optional[Union[str, Path]] = None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def expand_placeholders(value: str, key: str, env: Optional[Mapping[str, str]] = None) -> str:
    """
    Replace ${VAR} with the environment value.

    Raises:
        MissingConfigError: when VAR is not set
    """
    env = os.environ if env is None else env

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in env:
            raise MissingConfigError(name, source=f"environment (referenced by {key})")
        return env[name]

    return _PLACEHOLDER.sub(replace, value)


def _expand_outputs(config: AppConfig, env: Optional[Mapping[str, str]]) -> None:
    tiers = (
        ("checkin.outputs", config.checkin.outputs),
        ("recipient.last_signal_outputs", config.recipient.last_signal_outputs),
    )
    for tier, outputs in tiers:
        for i, output in enumerate(outputs):
            output.config = {
                k: expand_placeholders(v, f"{tier}[{i}].config.{k}", env)
                for k, v in output.config.items()
            }


def _apply_env_overrides(config: AppConfig, env: Optional[Mapping[str, str]]) -> None:
    env = os.environ if env is None else env
    if env.get(DATA_DIR_ENV_VAR):
        config.app.data_directory = env[DATA_DIR_ENV_VAR]
    if env.get(LOG_LEVEL_ENV_VAR):
        config.app.log_level = env[LOG_LEVEL_ENV_VAR].lower()


def parse_config(
    data: Any,
    source_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Build, expand, override and validate an AppConfig from parsed YAML."""
    config = AppConfig.from_dict(data, source_path=source_path)
    _expand_outputs(config, env)
    _apply_env_overrides(config, env)
    return config.validate()


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    load_env_file: bool = True,
) -> AppConfig:
    """
    Load configuration from YAML file.

    Raises:
        ConfigurationError: missing file, bad YAML or invalid values
    """
    if load_env_file:
        load_dotenv()

    config_path = resolve_config_path(path)
    if not config_path.exists():
        raise ConfigurationError(
            f"Config file not found: {config_path}",
            config_key="config_path",
            actual_value=str(config_path),
        )

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read config file {config_path}: {e}", cause=e
        ) from e
    except yaml.YAMLError as e:
        raise InvalidConfigError("<file>", str(config_path), f"Invalid YAML: {e}") from e

    if data is None:
        raise InvalidConfigError("<file>", str(config_path), "Config file is empty")

    config = parse_config(data, source_path=config_path, env=env)
    logger.debug(f"Loaded configuration from {config_path}")
    return config


EXAMPLE_CONFIG = """\
checkin:
  duration_between_checkins: 7d
  output_retry_delay: 24h
  outputs:
    - type: email
      bidirectional: true
      config:
        to: me@example.com
        smtp_host: smtp.example.com
        smtp_port: 587
        username: me@example.com
        password: ${LASTSIGNAL_SMTP_PASSWORD}

recipient:
  max_time_since_last_checkin: 14d
  output_retry_delay: 12h
  last_signal_outputs:
    - type: email
      config:
        to: emergency@example.com
        smtp_host: smtp.example.com
        smtp_port: 587
        username: me@example.com
        password: ${LASTSIGNAL_SMTP_PASSWORD}

last_signal:
  adapter_type: file
  message_file: message.txt

app:
  data_directory: ~/.lastsignal
  log_level: info
  check_interval: 1h
"""


__all__ = [
    "CONFIG_ENV_VAR",
    "DATA_DIR_ENV_VAR",
    "LOG_LEVEL_ENV_VAR",
    "DEFAULT_CONFIG_PATH",
    "EXAMPLE_CONFIG",
    "expand_placeholders",
    "resolve_config_path",
    "parse_config",
    "load_config",
]
