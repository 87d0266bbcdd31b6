#!/usr/bin/env python3
"""
Paint Script.

Quantize an image, place it on the paint board and keep the board
converged to it with one or more accounts.

Usage:
    luogu-painter image.png 100 200 -s sessions.csv
    luogu-painter image.png 100 200 --tokens tokens.txt -r -p preview.png
    luogu-painter image.png 100 200                # watch mode, no painting
    python -m luogu_painter image.png 100 200 -s sessions.csv -t 30000

Console output:
    Board loaded (WxH)          on every (re)load
    N pixels in total           target pixels inside the board
    N pixels remaining          whenever the count changes
    (x, y) <- color             every successful paint
    actor: message              every failed paint

Exit codes: 0 on clean shutdown or Ctrl-C, 1 on configuration or
unhandled errors, 2 on usage errors.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
import time
from pathlib import Path
from typing import Callable, Sequence

from luogu_painter.configs.credentials import read_sessions, read_tokens
from luogu_painter.configs.loader import AppConfig, ConfigError, load_config
from luogu_painter.imaging.image_io import load_rgba, save_preview
from luogu_painter.imaging.palette import Palette
from luogu_painter.imaging.quantizer import quantize
from luogu_painter.model import Actor, Pixel
from luogu_painter.net.api import BoardApi
from luogu_painter.net.board import PaintBoard
from luogu_painter.net.channel_socket import ChannelSocket
from luogu_painter.painter.scheduler import Painter
from luogu_painter.utils.logging_config import install_excepthook, setup_logging, shutdown

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------


class PreviewWriter:
    """Throttled writer for the preview PNG.

    ``request()`` may be called on every board event.  The file is written
    at most once per ``interval_s``; a request arriving inside the window
    is deferred to its end, so the last state always reaches the disk.
    """

    def __init__(
        self,
        path: str | Path,
        painter: Painter,
        palette: Palette,
        interval_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = Path(path)
        self.painter = painter
        self.palette = palette
        self.interval_s = interval_s
        self._clock = clock
        self._last: float | None = None
        self._timer: asyncio.TimerHandle | None = None

    def request(self) -> None:
        if self._timer is not None:
            return
        now = self._clock()
        if self._last is None or now - self._last >= self.interval_s:
            self.flush()
            return
        delay = self.interval_s - (now - self._last)
        self._timer = asyncio.get_running_loop().call_later(delay, self.flush)

    def flush(self) -> None:
        self._timer = None
        image = self.painter.board.snapshot()
        if image is None:
            return
        self._last = self._clock()
        try:
            save_preview(self.path, image, self.painter.pool.pixels, self.palette)
        except OSError as exc:
            logger.warning("Cannot write preview %s: %s", self.path, exc)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_painter(
    cfg: AppConfig,
    pixels: Sequence[Pixel],
    actors: Sequence[Actor],
) -> Painter:
    """Assemble API, socket, board and painter from *cfg*."""
    api = BoardApi(
        cfg.endpoints.board_url,
        cfg.endpoints.paint_url,
        timeout_s=cfg.connection.request_timeout_s,
    )
    socket = ChannelSocket(
        cfg.endpoints.socket_url,
        reconnect_interval_s=cfg.connection.reconnect_interval_s,
    )
    board = PaintBoard(
        api,
        socket,
        palette_size=len(cfg.palette),
        retry=cfg.retry,
        join_timeout_s=cfg.connection.join_timeout_s,
        heartbeat_timeout_s=cfg.connection.heartbeat_timeout_s,
        join_retry_interval_s=cfg.connection.join_retry_interval_s,
        reconnect_interval_s=cfg.connection.reconnect_interval_s,
    )
    return Painter(
        board,
        pixels,
        actors,
        cooldown_s=cfg.painter.cooldown_s,
        randomize=cfg.painter.randomize,
    )


def attach_console(painter: Painter, preview: PreviewWriter | None = None) -> None:
    """Print progress lines for painter events."""

    def on_load(sender, board, pixels, remaining) -> None:
        print(f"Board loaded ({board.width}x{board.height})")
        print(f"{len(pixels)} pixels in total")
        print(f"{remaining} pixels remaining")
        if preview is not None:
            preview.request()

    def on_update(sender, pixel, remaining) -> None:
        print(f"{remaining} pixels remaining")
        if preview is not None:
            preview.request()

    def on_paint(sender, actor, pixel) -> None:
        print(f"({pixel.x}, {pixel.y}) <- {pixel.color}")

    def on_error(sender, actor, error) -> None:
        print(f"{actor}: {error}")

    painter.events.subscribe("load", on_load)
    painter.events.subscribe("update", on_update)
    painter.events.subscribe("paint", on_paint)
    painter.events.subscribe("error", on_error)


async def run(
    cfg: AppConfig,
    pixels: Sequence[Pixel],
    actors: Sequence[Actor],
    preview_path: str | None = None,
) -> None:
    painter = build_painter(cfg, pixels, actors)
    preview = None
    if preview_path:
        preview = PreviewWriter(
            preview_path, painter, cfg.palette, cfg.painter.preview_interval_s,
        )
    attach_console(painter, preview)
    try:
        await painter.run()
    finally:
        if preview is not None:
            preview.cancel()
        await painter.close()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="luogu-painter",
        description="Keep an image painted on the Luogu paint board",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("png", type=str, help="Source image (any format Pillow reads)")
    parser.add_argument("x", type=int, help="Board x of the image's top-left corner")
    parser.add_argument("y", type=int, help="Board y of the image's top-left corner")

    # Credentials
    creds = parser.add_mutually_exclusive_group()
    creds.add_argument(
        "--sessions",
        "-s",
        type=str,
        help="Sessions CSV (uid, client_id per line)",
    )
    creds.add_argument(
        "--tokens",
        type=str,
        help="Token file (one token per line)",
    )

    # Painting
    parser.add_argument(
        "--randomize",
        "-r",
        action="store_true",
        default=None,
        help="Paint pixels in random order",
    )
    parser.add_argument(
        "--cooldown",
        "-t",
        type=int,
        metavar="MS",
        help="Per-account cooldown in milliseconds",
    )
    parser.add_argument(
        "--no-dither",
        action="store_true",
        help="Nearest-color mapping instead of Floyd-Steinberg dithering",
    )
    parser.add_argument(
        "--preview",
        "-p",
        type=str,
        metavar="FILE",
        help="Write a preview PNG of the converged board",
    )

    # Config / logging
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Configuration file path",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level override",
    )
    parser.add_argument("--log-file", type=str, help="Also log to this file")

    # Endpoint overrides (for test servers)
    parser.add_argument("--board-url", type=str, help=argparse.SUPPRESS)
    parser.add_argument("--paint-url", type=str, help=argparse.SUPPRESS)
    parser.add_argument("--socket", type=str, help=argparse.SUPPRESS)
    return parser


def apply_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Fold command-line flags into *cfg*."""
    endpoints = dataclasses.replace(
        cfg.endpoints,
        board_url=args.board_url or cfg.endpoints.board_url,
        paint_url=args.paint_url or cfg.endpoints.paint_url,
        socket_url=args.socket or cfg.endpoints.socket_url,
    )
    painter = dataclasses.replace(
        cfg.painter,
        cooldown_ms=cfg.painter.cooldown_ms if args.cooldown is None else args.cooldown,
        randomize=cfg.painter.randomize if args.randomize is None else args.randomize,
        dither=cfg.painter.dither and not args.no_dither,
    )
    log = dataclasses.replace(
        cfg.logging,
        level=args.log_level or cfg.logging.level,
        file=args.log_file or cfg.logging.file,
    )
    if painter.cooldown_ms < 0:
        raise ConfigError(f"--cooldown must be >= 0, got {painter.cooldown_ms}")
    return dataclasses.replace(cfg, endpoints=endpoints, painter=painter, logging=log)


def load_actors(args: argparse.Namespace) -> list[Actor]:
    if args.sessions:
        return read_sessions(args.sessions)
    if args.tokens:
        return read_tokens(args.tokens)
    return []


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    # Load config
    try:
        cfg = apply_overrides(load_config(args.config), args)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    setup_logging(
        cfg.logging.level,
        cfg.logging.file,
        json=cfg.logging.json,
        color=cfg.logging.color,
        max_bytes=cfg.logging.max_bytes,
        backup_count=cfg.logging.backup_count,
        quiet_libs=["aiohttp", "asyncio", "PIL"],
    )
    install_excepthook()

    # Everything that can be wrong with the inputs fails here, offline
    try:
        actors = load_actors(args)
        image = load_rgba(args.png)
    except (ConfigError, FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return 1

    pixels = quantize(image, args.x, args.y, cfg.palette, dither=cfg.painter.dither)
    logger.info(
        "Quantized %s into %d pixels at (%d, %d)", args.png, len(pixels), args.x, args.y,
    )

    try:
        asyncio.run(run(cfg, pixels, actors, args.preview))
    except KeyboardInterrupt:
        print("Interrupted")
        return 0
    except Exception:
        logger.exception("Unhandled error")
        return 1
    finally:
        shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
