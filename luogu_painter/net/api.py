"""HTTP side of the paint board: snapshot fetch and paint POST.

Both calls run on one ``aiohttp.ClientSession`` with a per-request
``ClientTimeout``.  Status handling:

    - ``fetch_board``: any HTTP status >= 300 raises ``ApiStatusError``.
    - ``paint``: the JSON body is ``{"status": int, "data": ...}``.  The
      request succeeds only if both the HTTP status and the body status are
      below 300; otherwise ``ApiStatusError`` carries the failing status and
      the server's message.

``is_transient`` classifies errors for the retry policy: network errors,
timeouts, 408 and 5xx are worth retrying; every other status is final.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from luogu_painter.model import Actor, AuthMode

logger = logging.getLogger(__name__)

DEFAULT_BOARD_URL = "https://www.luogu.com.cn/paintboard/board"
DEFAULT_PAINT_URL = "https://www.luogu.com.cn/paintboard/paint"


class ApiStatusError(Exception):
    """Non-success HTTP or body status.

    Attributes
    ----------
    status : int
        HTTP status, or the body ``status`` when the HTTP layer succeeded.
    message : str
        Server-provided message (``data`` field) or a short body excerpt.
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


def is_transient(exc: BaseException) -> bool:
    """``True`` for failures a retry may fix."""
    if isinstance(exc, ApiStatusError):
        return exc.status == 408 or 500 <= exc.status < 600
    return isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError))


def _message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, str):
            return data
        if data is not None:
            return json.dumps(data, ensure_ascii=False)
    return fallback


class BoardApi:
    """Client for the two paint board HTTP endpoints.

    Parameters
    ----------
    board_url : str
        ``GET`` endpoint returning the text snapshot.
    paint_url : str
        ``POST`` endpoint accepting ``x``, ``y``, ``color`` form fields.
    timeout_s : float
        Total timeout for each request.
    session : aiohttp.ClientSession, optional
        Shared session.  When omitted the client creates (and closes) its own.
    """

    def __init__(
        self,
        board_url: str = DEFAULT_BOARD_URL,
        paint_url: str = DEFAULT_PAINT_URL,
        *,
        timeout_s: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.board_url = board_url
        self.paint_url = paint_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch_board(self) -> str:
        """Return the raw snapshot text.

        Raises
        ------
        ApiStatusError
            On any non-2xx status.
        """
        session = self._get_session()
        async with session.get(self.board_url, timeout=self.timeout) as resp:
            text = await resp.text()
            if resp.status >= 300:
                raise ApiStatusError(resp.status, text[:200].strip() or resp.reason or "")
        logger.debug("Fetched board snapshot (%d bytes)", len(text))
        return text

    async def paint(self, x: int, y: int, color: int, actor: Actor) -> None:
        """Submit one paint request on behalf of *actor*.

        Raises
        ------
        ApiStatusError
            If the HTTP status or the body status is >= 300.
        """
        params: dict[str, str] = {}
        headers: dict[str, str] = {}
        if actor.auth is AuthMode.TOKEN:
            params["token"] = actor.credential
        else:
            headers["Cookie"] = f"_uid={actor.id}; __client_id={actor.credential}"
        form = {"x": str(x), "y": str(y), "color": str(color)}

        session = self._get_session()
        async with session.post(
            self.paint_url,
            params=params,
            headers=headers,
            data=form,
            timeout=self.timeout,
        ) as resp:
            text = await resp.text()
            http_status = resp.status

        try:
            body = json.loads(text)
        except ValueError:
            body = None

        if http_status >= 300:
            raise ApiStatusError(http_status, _message(body, text[:200].strip()))
        if not isinstance(body, dict) or not isinstance(body.get("status"), int):
            raise ApiStatusError(http_status, f"unexpected response body: {text[:200]!r}")
        if body["status"] >= 300:
            raise ApiStatusError(body["status"], _message(body, "paint rejected"))
        logger.debug("Painted (%d, %d) <- %d as %s", x, y, color, actor)
