"""Configuration loader for the painter.

Loads and validates ``painter.yaml`` into typed, frozen dataclasses.
Endpoints, timeouts, retry bounds, the cooldown and log rotation all come
from this file.

Durations are stored in **seconds** throughout Python, except
``painter.cooldown_ms`` which keeps the unit users pass on the command
line (``-t/--cooldown``).

Usage::

    from luogu_painter.configs.loader import load_config
    cfg = load_config()                       # default path
    cfg = load_config("/custom/painter.yaml") # explicit path
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from luogu_painter.imaging.palette import DEFAULT_PALETTE, MAX_PALETTE_SIZE, Palette
from luogu_painter.utils.fs import load_yaml
from luogu_painter.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "painter.yaml"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EndpointsConfig:
    board_url: str
    paint_url: str
    socket_url: str


@dataclass(frozen=True)
class ConnectionConfig:
    """Socket and HTTP timing."""

    request_timeout_s: float
    join_timeout_s: float
    heartbeat_interval_s: float
    heartbeat_timeout_s: float
    reconnect_interval_s: float
    join_retry_interval_s: float | None = None


@dataclass(frozen=True)
class PainterConfig:
    """Scheduler behaviour."""

    cooldown_ms: int
    randomize: bool = False
    dither: bool = True
    preview_interval_s: float = 60.0

    @property
    def cooldown_s(self) -> float:
        return self.cooldown_ms / 1000.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None
    json: bool = False
    color: bool = True
    max_bytes: int = 0
    backup_count: int = 5


@dataclass(frozen=True)
class AppConfig:
    """Top-level configuration."""

    endpoints: EndpointsConfig
    connection: ConnectionConfig
    retry: RetryPolicy
    painter: PainterConfig
    palette: Palette
    logging: LoggingConfig


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _parse_palette(raw: Any) -> Palette:
    if raw is None:
        return DEFAULT_PALETTE
    if not isinstance(raw, list):
        raise ConfigError(f"palette must be a list of [r, g, b], got {type(raw).__name__}")
    try:
        return Palette.from_rgb(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid palette: {exc}") from exc


def _validate_config(cfg: AppConfig) -> None:
    """Validate ranges and cross-field consistency.

    Raises
    ------
    ConfigError
        On any invalid combination.
    """
    # -- Endpoints --------------------------------------------------------
    e = cfg.endpoints
    for name in ("board_url", "paint_url"):
        url = getattr(e, name)
        if not url.startswith(("http://", "https://")):
            raise ConfigError(f"endpoints.{name} must be an http(s) URL, got {url!r}")
    if not e.socket_url.startswith(("ws://", "wss://")):
        raise ConfigError(
            f"endpoints.socket_url must be a ws(s) URL, got {e.socket_url!r}"
        )

    # -- Connection values positive -----------------------------------------
    c = cfg.connection
    for name in ("request_timeout_s", "join_timeout_s", "heartbeat_interval_s"):
        if getattr(c, name) <= 0:
            raise ConfigError(f"{name} must be > 0, got {getattr(c, name)}")
    if c.heartbeat_timeout_s <= c.heartbeat_interval_s:
        raise ConfigError(
            f"heartbeat_timeout_s ({c.heartbeat_timeout_s}) must exceed "
            f"heartbeat_interval_s ({c.heartbeat_interval_s})"
        )
    if c.reconnect_interval_s < 0:
        raise ConfigError(
            f"reconnect_interval_s must be >= 0, got {c.reconnect_interval_s}"
        )
    if c.join_retry_interval_s is not None and c.join_retry_interval_s <= 0:
        raise ConfigError(
            f"join_retry_interval_s must be > 0 or null, got {c.join_retry_interval_s}"
        )

    # -- Retry ----------------------------------------------------------------
    r = cfg.retry
    if r.max_attempts < 1:
        raise ConfigError(f"retry.max_attempts must be >= 1, got {r.max_attempts}")
    if r.base_delay_s < 0 or r.max_delay_s < 0:
        raise ConfigError("retry delays must be >= 0")
    if r.factor < 1:
        raise ConfigError(f"retry.factor must be >= 1, got {r.factor}")

    # -- Painter --------------------------------------------------------------
    p = cfg.painter
    if p.cooldown_ms < 0:
        raise ConfigError(f"painter.cooldown_ms must be >= 0, got {p.cooldown_ms}")
    if p.preview_interval_s < 0:
        raise ConfigError(
            f"painter.preview_interval_s must be >= 0, got {p.preview_interval_s}"
        )

    # -- Palette / logging ----------------------------------------------------
    if len(cfg.palette) > MAX_PALETTE_SIZE:
        raise ConfigError(
            f"palette has {len(cfg.palette)} colors, maximum is {MAX_PALETTE_SIZE}"
        )
    if cfg.logging.level.upper() not in _LOG_LEVELS:
        raise ConfigError(
            f"logging.level must be one of {', '.join(_LOG_LEVELS)}, "
            f"got {cfg.logging.level!r}"
        )
    if cfg.logging.max_bytes < 0 or cfg.logging.backup_count < 0:
        raise ConfigError("logging.max_bytes and logging.backup_count must be >= 0")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load and validate painter configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``painter.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    AppConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    path = DEFAULT_CONFIG_PATH if path is None else Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.debug("Loading configuration from %s", path)

    try:
        data: dict[str, Any] = load_yaml(path)
    except yaml.YAMLError as exc:
        raise ConfigError(str(exc)) from exc
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")

    try:
        # -- endpoints ------------------------------------------------------
        ep = data["endpoints"]
        endpoints = EndpointsConfig(
            board_url=str(ep["board_url"]),
            paint_url=str(ep["paint_url"]),
            socket_url=str(ep["socket_url"]),
        )

        # -- connection -----------------------------------------------------
        cd = data["connection"]
        connection = ConnectionConfig(
            request_timeout_s=float(cd["request_timeout_s"]),
            join_timeout_s=float(cd["join_timeout_s"]),
            heartbeat_interval_s=float(cd["heartbeat_interval_s"]),
            heartbeat_timeout_s=float(cd["heartbeat_timeout_s"]),
            reconnect_interval_s=float(cd["reconnect_interval_s"]),
            join_retry_interval_s=_optional_float(cd.get("join_retry_interval_s")),
        )

        # -- retry (optional) -----------------------------------------------
        rd = data.get("retry") or {}
        retry = RetryPolicy(
            max_attempts=int(rd.get("max_attempts", 5)),
            base_delay_s=float(rd.get("base_delay_s", 0.5)),
            factor=float(rd.get("factor", 2.0)),
            max_delay_s=float(rd.get("max_delay_s", 8.0)),
        )

        # -- painter --------------------------------------------------------
        pd = data["painter"]
        painter = PainterConfig(
            cooldown_ms=int(pd["cooldown_ms"]),
            randomize=bool(pd.get("randomize", False)),
            dither=bool(pd.get("dither", True)),
            preview_interval_s=float(pd.get("preview_interval_s", 60.0)),
        )

        # -- palette (optional) ---------------------------------------------
        palette = _parse_palette(data.get("palette"))

        # -- logging (optional) ---------------------------------------------
        ld = data.get("logging") or {}
        log_file = ld.get("file")
        logging_cfg = LoggingConfig(
            level=str(ld.get("level", "INFO")),
            file=None if log_file is None else str(log_file),
            json=bool(ld.get("json", False)),
            color=bool(ld.get("color", True)),
            max_bytes=int(ld.get("max_bytes", 0)),
            backup_count=int(ld.get("backup_count", 5)),
        )

        config = AppConfig(
            endpoints=endpoints,
            connection=connection,
            retry=retry,
            painter=painter,
            palette=palette,
            logging=logging_cfg,
        )

        _validate_config(config)
        logger.debug("Configuration loaded successfully")
        return config

    except KeyError as exc:
        raise ConfigError(
            f"Missing required configuration key: {exc}"
        ) from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid configuration value: {exc}"
        ) from exc
