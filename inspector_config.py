#!/usr/bin/env python3
"""
Inspector Configuration

Run settings for the SSL inspector, loaded from environment variables and
overridden by command line flags. Settings are passed explicitly into the
inspector; nothing in the engine reads globals.
"""

import os
from dataclasses import dataclass

VERSION = "1.0.0"

DEFAULT_PORT = 443
CONNECTION_TIMEOUT = 10  # seconds, connect and handshake combined

ENV_PREFIX = "SSL_INSPECTOR_"


class InspectorError(Exception):
    """Base class for configuration-time errors that abort a run."""


class ConfigError(InspectorError):
    """Raised when a configuration value cannot be used."""


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str) -> float:
    try:
        timeout = float(value)
    except ValueError as e:
        raise ConfigError(f"Invalid timeout: {value!r}") from e
    if timeout <= 0:
        raise ConfigError(f"Timeout must be positive, got {value!r}")
    return timeout


@dataclass(frozen=True)
class InspectorConfig:
    endpoint: str = ""
    truststore: str = ""
    truststore_password: str = ""
    debug: bool = False
    timeout: float = float(CONNECTION_TIMEOUT)


def load_config() -> InspectorConfig:
    """Build a config from SSL_INSPECTOR_* environment variables."""
    env = os.environ
    return InspectorConfig(
        endpoint=env.get(ENV_PREFIX + "ENDPOINT", InspectorConfig.endpoint),
        truststore=env.get(ENV_PREFIX + "TRUSTSTORE", InspectorConfig.truststore),
        truststore_password=env.get(ENV_PREFIX + "TRUSTSTORE_PASSWORD", InspectorConfig.truststore_password),
        debug=_parse_bool(env.get(ENV_PREFIX + "DEBUG", "false")),
        timeout=_parse_timeout(env.get(ENV_PREFIX + "TIMEOUT", str(CONNECTION_TIMEOUT))),
    )
