"""Painter configuration loading, validation and credential files."""

from luogu_painter.configs.credentials import (
    CredentialFileError,
    SessionRow,
    read_sessions,
    read_tokens,
)
from luogu_painter.configs.loader import (
    AppConfig,
    ConfigError,
    ConnectionConfig,
    EndpointsConfig,
    LoggingConfig,
    PainterConfig,
    load_config,
)

__all__ = [
    "AppConfig",
    "ConfigError",
    "ConnectionConfig",
    "CredentialFileError",
    "EndpointsConfig",
    "LoggingConfig",
    "PainterConfig",
    "SessionRow",
    "load_config",
    "read_sessions",
    "read_tokens",
]
