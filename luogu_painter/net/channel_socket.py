"""Channel-multiplexed websocket client with auto-reconnect.

Handles:
    - JSON text framing of outgoing envelopes
    - Demultiplexing of incoming envelopes by ``(channel, channel_param)``
    - **Auto-reconnect** when the server closes with a code in the retry
      range (``1000 < code < 2000``) or the transport fails
    - Per-channel join acknowledgement and liveness timers

Close codes outside the retry range (e.g. 1000 normal closure, 4xxx
application codes) end the socket for good: a terminal ``close`` event is
emitted and no reconnect is attempted.

Socket events: ``open``, ``message`` (envelope), ``reconnect`` (code,
reason), ``close`` (code, reason).
Channel events: ``open`` (welcome_message), ``message`` (envelope,
payload), ``kick`` (envelope), ``error`` (error), ``close``.

The transport is an aiohttp ``ClientWebSocketResponse`` by default; tests
pass a ``connect`` factory that returns an object with the same
``send_str`` / ``close`` / ``closed`` / ``close_code`` / async-iteration
surface.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import aiohttp

from luogu_painter.net.envelopes import (
    ChannelData,
    DisconnectChannel,
    ExclusiveKickoff,
    Heartbeat,
    IncomingEnvelope,
    JoinChannel,
    JoinResult,
    OutgoingEnvelope,
    ServerBroadcast,
    decode,
    encode,
)
from luogu_painter.utils.events import EventBus

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_URL = "wss://ws.luogu.com.cn/ws"

EVENT_OPEN = "open"
EVENT_MESSAGE = "message"
EVENT_RECONNECT = "reconnect"
EVENT_CLOSE = "close"
EVENT_KICK = "kick"
EVENT_ERROR = "error"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SocketError(Exception):
    """Base exception for socket and channel failures."""

    pass


class SocketNotOpen(SocketError):
    """A send was attempted while no transport is connected."""

    pass


class ChannelTimeout(SocketError):
    """No join acknowledgement or no traffic within the allowed window."""

    pass


def is_retry_close_code(code: int | None) -> bool:
    """``True`` for close codes that ask the client to reconnect.

    A missing code means the transport died without a close frame, which
    is treated the same way.
    """
    return code is None or 1000 < code < 2000


Connector = Callable[[str], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class Channel:
    """One joined ``(name, param)`` sub-stream of a ``ChannelSocket``.

    Created through ``ChannelSocket.channel()``, which sends the join
    request.  Timers are explicit ``asyncio.TimerHandle`` fields and are
    cancelled by ``quit()``.

    Parameters
    ----------
    socket : ChannelSocket
        Owning socket.
    name, param, exclusive_key : str
        Channel identity as sent in ``join_channel``.
    join_timeout_s : float
        Seconds to wait for ``join_result`` before failing.
    heartbeat_timeout_s : float
        Seconds of silence after which a joined channel is considered dead.
    join_retry_interval_s : float | None
        If set, the join request is re-sent on this interval until it is
        acknowledged instead of failing after ``join_timeout_s``.
    """

    def __init__(
        self,
        socket: ChannelSocket,
        name: str,
        param: str = "",
        exclusive_key: str = "",
        *,
        join_timeout_s: float = 5.0,
        heartbeat_timeout_s: float = 120.0,
        join_retry_interval_s: float | None = None,
    ) -> None:
        self.socket = socket
        self.name = name
        self.param = param
        self.exclusive_key = exclusive_key
        self.join_timeout_s = join_timeout_s
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.join_retry_interval_s = join_retry_interval_s
        self.events = EventBus(self)

        self.joined = False
        self.closed = False
        self._join_timer: asyncio.TimerHandle | None = None
        self._liveness_timer: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        return f"Channel({self.name!r}, {self.param!r})"

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.param)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> None:
        """Send ``join_channel`` and arm the join timer."""
        await self.socket.send(
            JoinChannel(self.name, self.param, self.exclusive_key)
        )
        logger.debug("Join requested for %r", self)
        loop = asyncio.get_running_loop()
        if self.join_retry_interval_s is not None:
            self._join_timer = loop.call_later(
                self.join_retry_interval_s, self._resend_join,
            )
        else:
            self._join_timer = loop.call_later(
                self.join_timeout_s, self._fail,
                ChannelTimeout(
                    f"No join_result for {self!r} within {self.join_timeout_s}s"
                ),
            )

    def send(self, data: Any) -> Awaitable[None]:
        """Send a ``data`` envelope on this channel."""
        return self.socket.send(ChannelData(self.name, self.param, data))

    def quit(self, *, notify_server: bool = True) -> None:
        """Leave the channel: cancel timers, detach, emit ``close``.

        The ``disconnect_channel`` request is best effort; failures to send
        it are ignored.
        """
        if self.closed:
            return
        self.closed = True
        self.joined = False
        self._cancel_timers()
        self.socket._detach(self)
        if notify_server:
            self.socket._send_soon(
                DisconnectChannel(self.name, self.param, self.exclusive_key)
            )
        logger.debug("Left %r", self)
        self.events.emit(EVENT_CLOSE)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _cancel_timers(self) -> None:
        if self._join_timer is not None:
            self._join_timer.cancel()
            self._join_timer = None
        if self._liveness_timer is not None:
            self._liveness_timer.cancel()
            self._liveness_timer = None

    def _refresh_liveness(self) -> None:
        if self._liveness_timer is not None:
            self._liveness_timer.cancel()
        self._liveness_timer = asyncio.get_running_loop().call_later(
            self.heartbeat_timeout_s, self._fail,
            ChannelTimeout(
                f"No traffic on {self!r} for {self.heartbeat_timeout_s}s"
            ),
        )

    def _resend_join(self) -> None:
        if self.closed or self.joined:
            return
        logger.info("No join_result for %r yet; re-sending join", self)
        self.socket._send_soon(
            JoinChannel(self.name, self.param, self.exclusive_key)
        )
        self._join_timer = asyncio.get_running_loop().call_later(
            self.join_retry_interval_s, self._resend_join,
        )

    def _fail(self, error: SocketError) -> None:
        if self.closed:
            return
        logger.warning("%s", error)
        self.events.emit(EVENT_ERROR, error=error)
        self.quit()

    # ------------------------------------------------------------------
    # Dispatch (called by the socket)
    # ------------------------------------------------------------------

    def _handle(self, envelope: IncomingEnvelope) -> None:
        if self.closed:
            return
        if isinstance(envelope, JoinResult):
            if self._join_timer is not None:
                self._join_timer.cancel()
                self._join_timer = None
            first = not self.joined
            self.joined = True
            self._refresh_liveness()
            if first:
                logger.info(
                    "Joined %r (%s)", self, envelope.welcome_message or "no welcome",
                )
                self.events.emit(EVENT_OPEN, welcome_message=envelope.welcome_message)
        elif isinstance(envelope, Heartbeat):
            self._refresh_liveness()
        elif isinstance(envelope, ServerBroadcast):
            self._refresh_liveness()
            self.events.emit(
                EVENT_MESSAGE, envelope=envelope, payload=envelope.payload,
            )
        elif isinstance(envelope, ExclusiveKickoff):
            self._refresh_liveness()
            logger.warning("Kicked off %r: %s", self, envelope.payload)
            self.events.emit(EVENT_KICK, envelope=envelope)
        else:
            raise TypeError(f"Unhandled envelope type: {type(envelope).__name__}")

    def _transport_lost(self) -> None:
        """The connection under this channel is gone; no goodbye possible."""
        self.quit(notify_server=False)


# ---------------------------------------------------------------------------
# Socket
# ---------------------------------------------------------------------------


class ChannelSocket:
    """Websocket connection shared by all channels.

    Parameters
    ----------
    url : str
        Websocket endpoint.
    reconnect_interval_s : float
        Delay before reconnecting after a transport failure.
    connect : callable, optional
        ``async connect(url) -> transport``.  Defaults to aiohttp's
        ``ClientSession.ws_connect`` on a session owned by this socket.

    Examples
    --------
    >>> sock = ChannelSocket("wss://ws.luogu.com.cn/ws")
    >>> await sock.connect()
    >>> channel = await sock.channel("paintboard")
    """

    def __init__(
        self,
        url: str = DEFAULT_SOCKET_URL,
        *,
        reconnect_interval_s: float = 2.0,
        connect: Connector | None = None,
    ) -> None:
        self.url = url
        self.reconnect_interval_s = reconnect_interval_s
        self.events = EventBus(self)

        self._connect_fn = connect
        self._session: aiohttp.ClientSession | None = None
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self._closed = False
        self._channels: list[Channel] = []
        self._pending_sends: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def closed(self) -> bool:
        """``True`` once the socket has stopped for good."""
        return self._closed

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Start the background connect/reconnect loop."""
        if self._task is not None:
            raise SocketError("Socket is already running")
        self._closing = False
        self._task = asyncio.create_task(self._run(), name="channel-socket")

    async def wait_closed(self) -> None:
        """Return once the run loop has ended."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def close(self) -> None:
        """Stop reconnecting, close the transport and all channels."""
        if self._closed:
            return
        self._closing = True
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._finish(1000, "closed by client")

    async def _open_transport(self) -> Any:
        if self._connect_fn is not None:
            return await self._connect_fn(self.url)
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(self.url, autoping=True)

    async def _run(self) -> None:
        while not self._closing:
            try:
                ws = await self._open_transport()
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("Socket connect to %s failed: %s", self.url, exc)
                self.events.emit(EVENT_RECONNECT, code=None, reason=str(exc))
                await asyncio.sleep(self.reconnect_interval_s)
                continue

            self._ws = ws
            logger.info("Socket open: %s", self.url)
            self.events.emit(EVENT_OPEN)
            try:
                await self._pump(ws)
            finally:
                self._ws = None
                for channel in list(self._channels):
                    channel._transport_lost()

            if self._closing:
                break
            code = ws.close_code
            if is_retry_close_code(code):
                logger.warning("Socket closed (%s); reconnecting", code)
                self.events.emit(EVENT_RECONNECT, code=code, reason="")
                await asyncio.sleep(self.reconnect_interval_s)
                continue

            logger.info("Socket closed (%s); not reconnecting", code)
            self._finish(code, "closed by server")
            return

    async def _pump(self, ws: Any) -> None:
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self._dispatch(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Socket transport error: %s", ws.exception())
                break

    def _finish(self, code: int | None, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing = True
        for channel in list(self._channels):
            channel._transport_lost()
        for task in list(self._pending_sends):
            task.cancel()
        if self._session is not None and not self._session.closed:
            # ClientSession.close() is a coroutine; schedule it
            self._send_task(self._session.close())
        self.events.emit(EVENT_CLOSE, code=code, reason=reason)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, envelope: OutgoingEnvelope) -> None:
        """Serialize and send *envelope*.

        Raises
        ------
        SocketNotOpen
            If no transport is currently connected.
        """
        ws = self._ws
        if ws is None or ws.closed:
            raise SocketNotOpen("Socket is not open")
        logger.debug("↑ %s", envelope)
        await ws.send_str(encode(envelope))

    def _send_task(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    def _send_soon(self, envelope: OutgoingEnvelope) -> None:
        """Fire-and-forget send used from timer callbacks."""
        if not self.is_open:
            return

        async def _send() -> None:
            try:
                await self.send(envelope)
            except (SocketError, aiohttp.ClientError, ConnectionError) as exc:
                logger.debug("Dropped %s: %s", envelope, exc)

        self._send_task(_send())

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def channel(
        self,
        name: str,
        param: str = "",
        exclusive_key: str = "",
        *,
        join_timeout_s: float = 5.0,
        heartbeat_timeout_s: float = 120.0,
        join_retry_interval_s: float | None = None,
    ) -> Channel:
        """Create a channel and send its join request.

        Raises
        ------
        SocketNotOpen
            If the socket is not connected.
        """
        ch = Channel(
            self, name, param, exclusive_key,
            join_timeout_s=join_timeout_s,
            heartbeat_timeout_s=heartbeat_timeout_s,
            join_retry_interval_s=join_retry_interval_s,
        )
        self._channels.append(ch)
        try:
            await ch.join()
        except BaseException:
            self._detach(ch)
            raise
        return ch

    def _detach(self, channel: Channel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def _dispatch(self, data: str | bytes) -> None:
        envelope = decode(data)
        if envelope is None:
            return
        logger.debug("↓ %s", envelope)
        self.events.emit(EVENT_MESSAGE, envelope=envelope)
        key = (envelope.channel, envelope.channel_param)
        for channel in list(self._channels):
            if channel.key == key:
                channel._handle(envelope)
