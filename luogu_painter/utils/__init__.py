"""Cross-cutting utilities (lowest dependency layer).

This package provides shared primitives for:
    - Named events over blinker signals (events)
    - Retry with exponential backoff (retry)
    - Atomic I/O and YAML loading (fs)
    - Unified logging (logging_config)

No module in utils/ may import from upper layers (net, imaging, painter).

Convenience imports:
    from luogu_painter.utils import events, fs, retry
    from luogu_painter.utils.logging_config import setup_logging, push_context
"""

from . import events
from . import fs
from . import logging_config
from . import retry

from .logging_config import push_context, setup_logging

__all__ = [
    'events',
    'fs',
    'logging_config',
    'retry',
    'setup_logging',
    'push_context',
]
