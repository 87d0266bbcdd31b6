"""Automated painter for the Luogu collaborative paint board.

Packages:
    - utils: events, retry, logging, file helpers
    - imaging: color science, palette, quantizer, PNG I/O
    - net: channel socket, HTTP API, board mirror
    - painter: pending pool and multi-actor scheduler
    - configs: YAML configuration and credential files
    - scripts: command-line entry point
"""

__version__ = "0.1.0"
