"""Live local mirror of the remote paint board.

State machine::

    UNINITIALIZED -> LOADING -> READY -> (fault) -> LOADING -> READY ... -> CLOSED

Loading sequence:
    1. Socket ``open`` -> join channel ``paintboard``.
    2. Join acknowledged -> fetch the snapshot over HTTP with retry.
    3. Deltas arriving meanwhile are buffered in receipt order.
    4. Snapshot parsed -> buffered deltas replayed -> ``READY`` + ``load``.

Any fault (transport drop, channel timeout, kickoff, snapshot retries
exhausted) drops the grid, emits ``reconnect`` and starts over at step 1.

Snapshot layout: one text line per x, one base-32 digit per y, so the
number of lines is the board width and the line length is the height.
Cells are stored as ``cells[x, y]``.

Events: ``load`` (board), ``update`` (x, y, color), ``reconnect``
(reason), ``close``.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Coroutine

import numpy as np

from luogu_painter.model import Actor, BoardImage
from luogu_painter.net import api as board_api
from luogu_painter.net.api import ApiStatusError, BoardApi
from luogu_painter.net.channel_socket import Channel, ChannelSocket, SocketError
from luogu_painter.utils.events import EventBus
from luogu_painter.utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

BOARD_CHANNEL = "paintboard"
UPDATE_TYPE = "paintboard_update"

_DIGITS = "0123456789abcdefghijklmnopqrstuv"
_INVALID = 0xFF
_DIGIT_TABLE = np.full(256, _INVALID, dtype=np.uint8)
for _value, _char in enumerate(_DIGITS):
    _DIGIT_TABLE[ord(_char)] = _value
    _DIGIT_TABLE[ord(_char.upper())] = _value


class BoardState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    CLOSED = "closed"


class SnapshotError(Exception):
    """Snapshot text could not be parsed.  Retried like a network error."""

    pass


class PaintBoardError(Exception):
    """A paint request failed for good.

    Attributes
    ----------
    message : str
        Server message or error description.
    code : int | None
        Failing status, ``None`` for network-level failures.
    actor : Actor
        Actor the request was sent for.
    """

    def __init__(self, message: str, code: int | None, actor: Actor) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.actor = actor

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"{self.message} ({self.code})"


def parse_snapshot(text: str, palette_size: int = 32) -> np.ndarray:
    """Decode snapshot text into a ``(width, height)`` uint8 array.

    Raises
    ------
    SnapshotError
        On empty input, ragged lines, characters that are not base-32
        digits, or digits outside ``[0, palette_size)``.
    """
    lines = text.strip().splitlines()
    if not lines or not lines[0]:
        raise SnapshotError("Empty board snapshot")
    height = len(lines[0])
    cells = np.empty((len(lines), height), dtype=np.uint8)
    for x, line in enumerate(lines):
        if len(line) != height:
            raise SnapshotError(
                f"Ragged snapshot: line {x} has {len(line)} cells, expected {height}"
            )
        try:
            raw = np.frombuffer(line.encode("ascii"), dtype=np.uint8)
        except UnicodeEncodeError as exc:
            raise SnapshotError(f"Non-ASCII character in snapshot line {x}") from exc
        values = _DIGIT_TABLE[raw]
        if (values == _INVALID).any():
            raise SnapshotError(f"Invalid digit in snapshot line {x}")
        cells[x] = values
    top = int(cells.max())
    if top >= palette_size:
        raise SnapshotError(
            f"Snapshot color {top} outside palette of {palette_size} colors"
        )
    return cells


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, SnapshotError) or board_api.is_transient(exc)


def _int_field(payload: dict[str, Any], name: str) -> int | None:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class PaintBoard:
    """Board mirror fed by the ``paintboard`` channel.

    Parameters
    ----------
    api : BoardApi
        Snapshot/paint HTTP client.
    socket : ChannelSocket
        Socket carrying the delta feed.  ``start()`` connects it.
    palette_size : int
        Number of valid colors; larger snapshot digits or delta colors are
        rejected.
    retry : RetryPolicy
        Backoff for snapshot fetch and paint requests.
    join_timeout_s, heartbeat_timeout_s, join_retry_interval_s : float
        Channel timing, see ``ChannelSocket.channel``.
    reconnect_interval_s : float
        Pause before rejoining after a channel fault.
    sleep : callable
        Injectable sleep used between retries.
    """

    def __init__(
        self,
        api: BoardApi,
        socket: ChannelSocket,
        *,
        palette_size: int = 32,
        retry: RetryPolicy | None = None,
        join_timeout_s: float = 5.0,
        heartbeat_timeout_s: float = 120.0,
        join_retry_interval_s: float | None = None,
        reconnect_interval_s: float = 2.0,
        sleep=asyncio.sleep,
    ) -> None:
        self.api = api
        self.socket = socket
        self.palette_size = palette_size
        self.retry = retry or RetryPolicy()
        self.join_timeout_s = join_timeout_s
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.join_retry_interval_s = join_retry_interval_s
        self.reconnect_interval_s = reconnect_interval_s
        self.events = EventBus(self)

        self._sleep = sleep
        self._state = BoardState.UNINITIALIZED
        self._cells: np.ndarray | None = None
        self._buffer: list[tuple[int, int, int]] = []
        self._channel: Channel | None = None
        self._joining = False
        self._load_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = asyncio.Event()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> BoardState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is BoardState.READY

    @property
    def width(self) -> int | None:
        return None if self._cells is None else int(self._cells.shape[0])

    @property
    def height(self) -> int | None:
        return None if self._cells is None else int(self._cells.shape[1])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect the socket and begin loading."""
        if self._state is not BoardState.UNINITIALIZED:
            raise RuntimeError(f"Board already started (state={self._state.value})")
        self._state = BoardState.LOADING
        self.socket.events.subscribe("open", self._on_socket_open)
        self.socket.events.subscribe("reconnect", self._on_socket_reconnect)
        self.socket.events.subscribe("close", self._on_socket_close)
        logger.info("Connecting to %s", self.socket.url)
        await self.socket.connect()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        """Stop everything and emit ``close``."""
        if self._state is BoardState.CLOSED:
            return
        self._state = BoardState.CLOSED
        self._cells = None
        self._buffer.clear()
        self._drop_channel()
        for task in list(self._tasks):
            task.cancel()
        await self.socket.close()
        await self.api.close()
        self._finish()

    def _finish(self) -> None:
        logger.info("Board closed")
        self._closed.set()
        self.events.emit("close")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, x: int, y: int) -> int | None:
        """Current color at ``(x, y)``; ``None`` if unknown."""
        cells = self._cells
        if cells is None or self._state is not BoardState.READY:
            return None
        if 0 <= x < cells.shape[0] and 0 <= y < cells.shape[1]:
            return int(cells[x, y])
        return None

    def snapshot(self) -> BoardImage | None:
        """Copy of the loaded board, or ``None`` before load."""
        if self._cells is None or self._state is not BoardState.READY:
            return None
        return BoardImage(
            width=int(self._cells.shape[0]),
            height=int(self._cells.shape[1]),
            cells=self._cells.copy(),
        )

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def set(self, x: int, y: int, color: int, actor: Actor) -> None:
        """Paint ``(x, y)`` with *color* as *actor*.

        The mirror itself is left alone; the delta feed reports the change.

        Raises
        ------
        PaintBoardError
            On a rejected request or once transient retries are exhausted.
        """
        if not 0 <= color < self.palette_size:
            raise PaintBoardError(f"Color {color} outside palette", None, actor)
        try:
            await retry_async(
                lambda: self.api.paint(x, y, color, actor),
                self.retry,
                is_transient=board_api.is_transient,
                what=f"Paint ({x}, {y}) for {actor}",
                sleep=self._sleep,
            )
        except ApiStatusError as exc:
            raise PaintBoardError(exc.message, exc.status, actor) from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not board_api.is_transient(exc):
                raise
            raise PaintBoardError(str(exc) or type(exc).__name__, None, actor) from exc

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _join(self) -> None:
        if self._state is not BoardState.LOADING or self._channel is not None or self._joining:
            return
        self._joining = True
        try:
            channel = await self.socket.channel(
                BOARD_CHANNEL,
                join_timeout_s=self.join_timeout_s,
                heartbeat_timeout_s=self.heartbeat_timeout_s,
                join_retry_interval_s=self.join_retry_interval_s,
            )
        except SocketError as exc:
            # the socket's own reconnect brings us back through "open"
            logger.warning("Cannot join %s: %s", BOARD_CHANNEL, exc)
            return
        finally:
            self._joining = False
        if self._state is not BoardState.LOADING:
            channel.quit()
            return
        self._channel = channel
        channel.events.subscribe("open", self._on_join)
        channel.events.subscribe("message", self._on_channel_message)
        channel.events.subscribe("error", self._on_channel_fault)
        channel.events.subscribe("kick", self._on_channel_fault)

    async def _load(self) -> None:
        async def fetch() -> np.ndarray:
            text = await self.api.fetch_board()
            return parse_snapshot(text, self.palette_size)

        try:
            cells = await retry_async(
                fetch, self.retry,
                is_transient=is_transient,
                what="Board snapshot",
                sleep=self._sleep,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Loading board failed: %s", exc)
            self._fault(f"snapshot fetch failed: {exc}")
            return

        if self._state is not BoardState.LOADING:
            return
        self._cells = cells
        buffered, self._buffer = self._buffer, []
        applied = sum(1 for delta in buffered if self._apply(*delta))
        self._state = BoardState.READY
        logger.info(
            "Board loaded (%dx%d), replayed %d/%d buffered updates",
            cells.shape[0], cells.shape[1], applied, len(buffered),
        )
        self.events.emit("load", board=self.snapshot())

    def _apply(self, x: int, y: int, color: int) -> bool:
        cells = self._cells
        if cells is None:
            return False
        if not (0 <= x < cells.shape[0] and 0 <= y < cells.shape[1]):
            logger.warning("Dropping update outside board: (%d, %d)", x, y)
            return False
        if not 0 <= color < self.palette_size:
            logger.warning("Dropping update with invalid color %d at (%d, %d)", color, x, y)
            return False
        cells[x, y] = color
        return True

    # ------------------------------------------------------------------
    # Faults
    # ------------------------------------------------------------------

    def _drop_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.events.clear()
            channel.quit()
        if self._load_task is not None:
            self._load_task.cancel()
            self._load_task = None

    def _enter_loading(self, reason: str) -> None:
        self._state = BoardState.LOADING
        self._cells = None
        self._buffer.clear()
        logger.warning("Board reloading: %s", reason)
        self.events.emit("reconnect", reason=reason)

    def _fault(self, reason: str) -> None:
        if self._state is BoardState.CLOSED:
            return
        self._load_task = None
        self._drop_channel()
        self._enter_loading(reason)
        self._spawn(self._rejoin_later())

    async def _rejoin_later(self) -> None:
        await self._sleep(self.reconnect_interval_s)
        if self.socket.is_open:
            await self._join()

    # ------------------------------------------------------------------
    # Socket / channel receivers
    # ------------------------------------------------------------------

    def _on_socket_open(self, sender) -> None:
        if self._state is BoardState.LOADING:
            self._spawn(self._join())

    def _on_socket_reconnect(self, sender, code=None, reason="") -> None:
        if self._state is BoardState.CLOSED:
            return
        # the socket has already closed every channel
        if self._channel is not None:
            self._channel.events.clear()
            self._channel = None
        if self._load_task is not None:
            self._load_task.cancel()
            self._load_task = None
        self._enter_loading(f"socket closed ({code}) {reason}".strip())

    def _on_socket_close(self, sender, code=None, reason="") -> None:
        if self._state is BoardState.CLOSED:
            return
        logger.error("Socket closed for good (%s %s)", code, reason)
        self._state = BoardState.CLOSED
        self._cells = None
        self._drop_channel()
        for task in list(self._tasks):
            task.cancel()
        self._spawn(self.api.close())
        self._finish()

    def _on_join(self, sender, welcome_message=None) -> None:
        if self._state is not BoardState.LOADING:
            return
        if self._load_task is not None:
            self._load_task.cancel()
        self._load_task = self._spawn(self._load())

    def _on_channel_message(self, sender, envelope=None, payload=None) -> None:
        payload = payload or {}
        if payload.get("type") != UPDATE_TYPE:
            return
        x, y, color = (_int_field(payload, k) for k in ("x", "y", "color"))
        if x is None or y is None or color is None:
            logger.debug("Dropping malformed update: %s", payload)
            return
        if self._state is BoardState.LOADING:
            self._buffer.append((x, y, color))
        elif self._state is BoardState.READY:
            if self._apply(x, y, color):
                self.events.emit("update", x=x, y=y, color=color)

    def _on_channel_fault(self, sender, **payload) -> None:
        error = payload.get("error") or "kicked off channel"
        self._fault(str(error))
