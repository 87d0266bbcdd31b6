"""Logging setup for the painter CLI.

One call to ``setup_logging`` configures the root logger:

    - a stderr handler with human-readable lines (ANSI colors on a tty)
    - optionally a file handler, plain or JSON lines, rotated by size when
      ``max_bytes`` is set
    - Python warnings routed into logging
    - noisy third-party loggers raised to WARNING

Calling it again replaces the handlers it installed earlier.

Context fields (``push_context(actor="1234")``) are stored in a
contextvar and appended to every record.  Each asyncio task works on a
copy of the context it was created from, so an actor task's fields only
show up on that actor's lines::

    2026-10-19T08:12:04.511Z INFO     [actor=1234] (12, 40) <- 8
    {"t": "2026-10-19T08:12:04.511Z", "lvl": "INFO", "actor": "1234", ...}
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    'luogu_painter_log_context', default={}
)

# Handlers owned by setup_logging, removed on the next call
_installed: List[logging.Handler] = []


class ContextFormatter(logging.Formatter):
    """Render records with the active context fields.

    Parameters
    ----------
    as_json : bool
        Emit one JSON object per line instead of the human layout.
    color : bool
        Color the level name.  Ignored unless stderr is a terminal.
    """

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, as_json: bool = False, color: bool = False):
        super().__init__()
        self.as_json = as_json
        self.color = color and sys.stderr.isatty()

    @staticmethod
    def _timestamp(record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return ts.strftime('%Y-%m-%dT%H:%M:%S.') + f"{ts.microsecond // 1000:03d}Z"

    def format(self, record: logging.LogRecord) -> str:
        fields = _context.get()
        if self.as_json:
            entry: Dict[str, Any] = {
                't': self._timestamp(record),
                'lvl': record.levelname,
                'logger': record.name,
                **fields,
                'msg': record.getMessage(),
            }
            if record.exc_info:
                entry['exc'] = self.formatException(record.exc_info)
            return json.dumps(entry, default=str, ensure_ascii=False)

        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        line = f"{self._timestamp(record)} {level}"
        if fields:
            line += " [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        line += " " + record.getMessage()
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json: bool = False,
    color: bool = True,
    max_bytes: int = 0,
    backup_count: int = 5,
    quiet_libs: Iterable[str] = (),
    context: Optional[Dict[str, Any]] = None,
) -> List[logging.Handler]:
    """Configure the root logger for the CLI.

    Parameters
    ----------
    log_level : str
        Root level name, e.g. ``"INFO"``.
    log_file : str, optional
        Also write records to this file.  Parent directories are created.
    json : bool
        JSON lines in the file instead of the human layout.
    color : bool
        Colored level names on the console.
    max_bytes : int
        Rotate the file once it reaches this size; 0 disables rotation.
    backup_count : int
        Rotated files to keep.
    quiet_libs : iterable of str
        Logger names raised to WARNING (``aiohttp``, ``PIL`` ...).
    context : dict, optional
        Fields pushed before the first record.

    Returns
    -------
    list of logging.Handler
        The handlers now attached to the root logger.
    """
    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()

    root.setLevel(log_level.upper())

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ContextFormatter(color=color))
    _installed.append(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        if max_bytes > 0:
            file_handler: logging.Handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            )
        else:
            file_handler = logging.FileHandler(path, encoding='utf-8')
        file_handler.setFormatter(ContextFormatter(as_json=json))
        _installed.append(file_handler)

    for handler in _installed:
        root.addHandler(handler)

    for name in quiet_libs:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(True)

    if context:
        push_context(**context)

    return list(_installed)


def push_context(**fields: Any) -> None:
    """Attach *fields* to every later record in the current context."""
    _context.set({**_context.get(), **fields})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Drop the named fields, or all of them when *keys* is None."""
    if keys is None:
        _context.set({})
        return
    _context.set({k: v for k, v in _context.get().items() if k not in keys})


def current_context() -> Dict[str, Any]:
    return dict(_context.get())


def install_excepthook() -> None:
    """Log uncaught exceptions at CRITICAL; Ctrl+C keeps the default hook."""
    def hook(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger(__name__).critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = hook


def shutdown() -> None:
    """Flush and close every handler."""
    logging.shutdown()
