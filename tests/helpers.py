"""Shared fakes for the async tests.

    - FakeWebSocket / FakeServer: stand-ins for aiohttp's websocket and
      ``ws_connect``, driven from the test with ``push`` / ``drop``
    - FakeApi: scripted ``BoardApi`` replacement
    - FakeBoard: minimal board mirror for scheduler unit tests
    - RecordingSleep: injectable sleep that records every delay
"""

from __future__ import annotations

import asyncio
import json
from collections import namedtuple
from typing import Any

import aiohttp
import numpy as np

from luogu_painter.model import Actor, BoardImage
from luogu_painter.net.board import BoardState, parse_snapshot
from luogu_painter.utils.events import EventBus

Msg = namedtuple("Msg", ["type", "data"])


async def settle(rounds: int = 30) -> None:
    """Let every ready task run for a while."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Websocket
# ---------------------------------------------------------------------------


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self._queue: asyncio.Queue = asyncio.Queue()

    async def send_str(self, text: str) -> None:
        if self.closed:
            raise ConnectionResetError("fake socket closed")
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            if self.close_code is None:
                self.close_code = 1000
            self._queue.put_nowait(None)

    def exception(self) -> None:
        return None

    # -- driven by the test ---------------------------------------------

    def push(self, obj: dict[str, Any]) -> None:
        self._queue.put_nowait(Msg(aiohttp.WSMsgType.TEXT, json.dumps(obj)))

    def push_raw(self, text: str) -> None:
        self._queue.put_nowait(Msg(aiohttp.WSMsgType.TEXT, text))

    def drop(self, code: int | None) -> None:
        """Server-side close with *code*."""
        self.close_code = code
        self._queue.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    # -- async iteration ------------------------------------------------

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> Msg:
        msg = await self._queue.get()
        if msg is None:
            self.closed = True
            raise StopAsyncIteration
        return msg


class FakeServer:
    """``connect`` factory handing out ``FakeWebSocket`` objects."""

    def __init__(self) -> None:
        self.connections: list[FakeWebSocket] = []
        self.fail_next = 0

    async def connect(self, url: str) -> FakeWebSocket:
        if self.fail_next:
            self.fail_next -= 1
            raise aiohttp.ClientConnectionError("connection refused")
        ws = FakeWebSocket()
        self.connections.append(ws)
        return ws

    @property
    def ws(self) -> FakeWebSocket:
        return self.connections[-1]


def join_result(channel: str = "paintboard", param: str = "", welcome: Any = "welcome") -> dict:
    return {
        "_ws_type": "join_result",
        "_channel": channel,
        "_channel_param": param,
        "welcome_message": welcome,
    }


def heartbeat(channel: str = "paintboard", param: str = "") -> dict:
    return {"_ws_type": "heartbeat", "_channel": channel, "_channel_param": param}


def broadcast(data: dict, channel: str = "paintboard", param: str = "") -> dict:
    return {
        "_ws_type": "server_broadcast",
        "_channel": channel,
        "_channel_param": param,
        **data,
    }


def board_update(x: int, y: int, color: int) -> dict:
    return broadcast({"type": "paintboard_update", "x": x, "y": y, "color": color})


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


class FakeApi:
    """Scripted snapshot / paint responses.

    ``snapshots`` items are returned (or raised) in order; the last one
    repeats.  ``paint_results`` items are consumed per paint call:
    ``None`` is success, an exception is raised.
    """

    def __init__(self, snapshots: list[Any] | None = None) -> None:
        self.snapshots = list(snapshots or ["00\n11"])
        self.paint_results: list[BaseException | None] = []
        self.paints: list[tuple[int, int, int, str]] = []
        self.fetches = 0
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def fetch_board(self) -> str:
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        item = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def paint(self, x: int, y: int, color: int, actor: Actor) -> None:
        self.paints.append((x, y, color, actor.id))
        if self.paint_results:
            result = self.paint_results.pop(0)
            if result is not None:
                raise result

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Board / sleep for scheduler tests
# ---------------------------------------------------------------------------


class FakeBoard:
    """Board mirror driven directly by the test."""

    def __init__(self, auto_apply: bool = False) -> None:
        self.events = EventBus(self)
        self.state = BoardState.UNINITIALIZED
        self.cells: np.ndarray | None = None
        self.auto_apply = auto_apply
        self.set_calls: list[tuple[int, int, int, str]] = []
        self.set_results: list[BaseException | None] = []
        self.set_gate: asyncio.Event | None = None

    async def start(self) -> None:
        self.state = BoardState.LOADING

    async def close(self) -> None:
        if self.state is BoardState.CLOSED:
            return
        self.state = BoardState.CLOSED
        self.cells = None
        self.events.emit("close")

    def load(self, text: str) -> None:
        self.cells = parse_snapshot(text)
        self.state = BoardState.READY
        self.events.emit("load", board=self.snapshot())

    def delta(self, x: int, y: int, color: int) -> None:
        self.cells[x, y] = color
        self.events.emit("update", x=x, y=y, color=color)

    def disconnect(self) -> None:
        self.state = BoardState.LOADING
        self.cells = None
        self.events.emit("reconnect", reason="test")

    def get(self, x: int, y: int) -> int | None:
        if self.cells is None or self.state is not BoardState.READY:
            return None
        if 0 <= x < self.cells.shape[0] and 0 <= y < self.cells.shape[1]:
            return int(self.cells[x, y])
        return None

    def snapshot(self) -> BoardImage | None:
        if self.cells is None:
            return None
        w, h = self.cells.shape
        return BoardImage(width=int(w), height=int(h), cells=self.cells.copy())

    async def set(self, x: int, y: int, color: int, actor: Actor) -> None:
        self.set_calls.append((x, y, color, actor.id))
        if self.set_gate is not None:
            await self.set_gate.wait()
        if self.set_results:
            result = self.set_results.pop(0)
            if result is not None:
                raise result
        if self.auto_apply and self.state is BoardState.READY:
            self.delta(x, y, color)


class RecordingSleep:
    """Records delays.  Positive delays park forever when ``block`` is set."""

    def __init__(self, block: bool = True) -> None:
        self.block = block
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.block and delay > 0:
            await asyncio.Event().wait()
        await asyncio.sleep(0)
