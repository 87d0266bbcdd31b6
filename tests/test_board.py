"""Tests for the board mirror.

Covers:
    - Snapshot parsing (x = line, y = column, base-32 digits)
    - Load sequence: join -> snapshot -> buffered delta replay -> load
    - Live deltas, invalid deltas
    - Snapshot retry, fault handling and reload after reconnect
    - Paint write path retry / terminal failure
"""

from __future__ import annotations

import asyncio

import aiohttp
import numpy as np
import pytest

from helpers import (
    FakeApi,
    FakeServer,
    RecordingSleep,
    board_update,
    join_result,
    no_sleep,
    settle,
)
from luogu_painter.model import Actor
from luogu_painter.net.api import ApiStatusError
from luogu_painter.net.board import (
    BoardState,
    PaintBoard,
    PaintBoardError,
    SnapshotError,
    parse_snapshot,
)
from luogu_painter.net.channel_socket import ChannelSocket
from luogu_painter.utils.retry import RetryPolicy

ACTOR = Actor(id="42", credential="secret")


def make_board(server: FakeServer, api: FakeApi, **kwargs) -> PaintBoard:
    socket = ChannelSocket("ws://test/ws", reconnect_interval_s=0, connect=server.connect)
    kwargs.setdefault("reconnect_interval_s", 0)
    kwargs.setdefault("sleep", no_sleep)
    return PaintBoard(api, socket, **kwargs)


def record(board: PaintBoard) -> list[tuple[str, dict]]:
    calls: list[tuple[str, dict]] = []
    for name in ("load", "update", "reconnect", "close"):
        board.events.subscribe(
            name, lambda sender, _n=name, **payload: calls.append((_n, payload)),
        )
    return calls


async def bring_up(server: FakeServer, board: PaintBoard) -> None:
    await board.start()
    await settle()
    server.ws.push(join_result())
    await settle()


# ---------------------------------------------------------------------------
# Snapshot parsing
# ---------------------------------------------------------------------------


class TestParseSnapshot:
    def test_lines_are_x_characters_are_y(self) -> None:
        cells = parse_snapshot("012\nabc\n")
        assert cells.shape == (2, 3)
        assert cells[0, 2] == 2
        assert cells[1, 0] == 10
        assert cells[1, 2] == 12

    def test_full_digit_range_and_case(self) -> None:
        cells = parse_snapshot("0v\nVa")
        np.testing.assert_array_equal(cells, [[0, 31], [31, 10]])

    def test_crlf(self) -> None:
        cells = parse_snapshot("00\r\n11\r\n")
        np.testing.assert_array_equal(cells, [[0, 0], [1, 1]])

    @pytest.mark.parametrize("text", ["", "\n\n", "00\n1", "0w", "0-", "0é"])
    def test_invalid(self, text: str) -> None:
        with pytest.raises(SnapshotError):
            parse_snapshot(text)

    def test_digit_outside_palette(self) -> None:
        with pytest.raises(SnapshotError):
            parse_snapshot("04", palette_size=4)
        assert parse_snapshot("03", palette_size=4).max() == 3


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoading:
    def test_load_sequence(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            board = make_board(server, FakeApi(["00\n11"]))
            calls = record(board)
            assert board.state is BoardState.UNINITIALIZED
            assert board.get(0, 0) is None

            await board.start()
            await settle()
            assert board.state is BoardState.LOADING
            assert server.ws.sent[0]["type"] == "join_channel"
            assert server.ws.sent[0]["channel"] == "paintboard"

            server.ws.push(join_result())
            await settle()
            assert board.state is BoardState.READY
            assert (board.width, board.height) == (2, 2)
            assert [board.get(0, 0), board.get(0, 1), board.get(1, 0), board.get(1, 1)] == [0, 0, 1, 1]
            assert board.get(2, 0) is None
            assert board.get(-1, 0) is None

            ((name, payload),) = calls
            assert name == "load"
            image = payload["board"]
            assert (image.width, image.height) == (2, 2)
            # load carries a copy
            image.cells[0, 0] = 9
            assert board.get(0, 0) == 0
            await board.close()

        asyncio.run(scenario())

    def test_deltas_during_load_are_replayed_in_order(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            api = FakeApi(["00\n11"])
            api.gate = asyncio.Event()
            board = make_board(server, api)
            calls = record(board)
            await bring_up(server, board)
            assert board.state is BoardState.LOADING

            server.ws.push(board_update(0, 0, 5))
            server.ws.push(board_update(0, 0, 7))
            server.ws.push(board_update(1, 1, 3))
            await settle()
            assert board.get(0, 0) is None

            api.gate.set()
            await settle()
            assert board.state is BoardState.READY
            assert board.get(0, 0) == 7
            assert board.get(1, 1) == 3
            assert board.get(1, 0) == 1
            # replayed deltas are part of the load, not separate updates
            assert [name for name, _ in calls] == ["load"]
            assert calls[0][1]["board"].cells[0, 0] == 7
            await board.close()

        asyncio.run(scenario())

    def test_live_deltas(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            board = make_board(server, FakeApi(["00\n11"]))
            calls = record(board)
            await bring_up(server, board)

            server.ws.push(board_update(1, 0, 4))
            server.ws.push(board_update(1, 0, 4))
            server.ws.push(board_update(5, 5, 1))     # outside the board
            server.ws.push(board_update(0, 0, 40))    # outside the palette
            server.ws.push(board_update(0, 1, True))  # not an int
            await settle()

            assert board.get(1, 0) == 4
            assert board.get(0, 0) == 0
            updates = [payload for name, payload in calls if name == "update"]
            assert updates == [{"x": 1, "y": 0, "color": 4}] * 2
            await board.close()

        asyncio.run(scenario())

    def test_snapshot_retried_on_transient_errors(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            api = FakeApi([
                ApiStatusError(503, "busy"),
                asyncio.TimeoutError(),
                "0\n0",  # parses fine
            ])
            api.snapshots.insert(2, "00\n1")  # ragged -> SnapshotError
            board = make_board(server, api)
            await bring_up(server, board)
            assert board.state is BoardState.READY
            assert api.fetches == 4
            assert (board.width, board.height) == (2, 1)
            await board.close()

        asyncio.run(scenario())

    def test_snapshot_exhaustion_rejoins(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            api = FakeApi([ApiStatusError(500, "x"), ApiStatusError(500, "x"), "00\n11"])
            board = make_board(server, api, retry=RetryPolicy(max_attempts=2))
            calls = record(board)
            await bring_up(server, board)

            assert board.state is BoardState.LOADING
            assert [name for name, _ in calls] == ["reconnect"]
            assert server.ws.sent_types() == [
                "join_channel", "disconnect_channel", "join_channel",
            ]

            server.ws.push(join_result())
            await settle()
            assert board.state is BoardState.READY
            assert board.get(1, 1) == 1
            await board.close()

        asyncio.run(scenario())

    def test_non_transient_snapshot_error_rejoins(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            api = FakeApi([ApiStatusError(404, "gone"), "00\n11"])
            board = make_board(server, api)
            calls = record(board)
            await bring_up(server, board)
            assert api.fetches == 1
            assert [name for name, _ in calls] == ["reconnect"]
            await board.close()

        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Faults
# ---------------------------------------------------------------------------


class TestFaults:
    def test_transport_drop_reloads(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            api = FakeApi(["00\n11", "22\n33"])
            board = make_board(server, api)
            calls = record(board)
            await bring_up(server, board)
            assert board.get(0, 0) == 0

            server.ws.drop(1006)
            await settle()
            assert board.state is BoardState.LOADING
            assert board.get(0, 0) is None
            assert board.snapshot() is None
            assert len(server.connections) == 2
            assert server.ws.sent_types() == ["join_channel"]

            server.ws.push(join_result())
            await settle()
            assert board.state is BoardState.READY
            assert board.get(0, 0) == 2
            assert [name for name, _ in calls] == ["load", "reconnect", "load"]
            await board.close()

        asyncio.run(scenario())

    def test_kickoff_reloads(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            board = make_board(server, FakeApi(["00\n11"]))
            calls = record(board)
            await bring_up(server, board)
            server.ws.push({
                "_ws_type": "exclusive_kickoff",
                "_channel": "paintboard",
                "_channel_param": "",
            })
            await settle()
            assert [name for name, _ in calls] == ["load", "reconnect"]
            assert server.ws.sent_types()[-1] == "join_channel"
            server.ws.push(join_result())
            await settle()
            assert board.state is BoardState.READY
            await board.close()

        asyncio.run(scenario())

    def test_rejoin_waits_reconnect_interval(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            sleep = RecordingSleep(block=False)
            board = make_board(
                server, FakeApi(["00\n11"]), reconnect_interval_s=7.0, sleep=sleep,
            )
            await bring_up(server, board)
            server.ws.push({
                "_ws_type": "exclusive_kickoff",
                "_channel": "paintboard",
                "_channel_param": "",
            })
            await settle()
            assert sleep.delays == [7.0]
            assert server.ws.sent_types()[-1] == "join_channel"
            await board.close()

        asyncio.run(scenario())

    def test_liveness_timeout_reloads(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            board = make_board(server, FakeApi(["00\n11"]), heartbeat_timeout_s=0.03)
            calls = record(board)
            await bring_up(server, board)
            await asyncio.sleep(0.08)
            await settle()
            assert [name for name, _ in calls][:2] == ["load", "reconnect"]
            assert board.get(0, 0) is None
            await board.close()

        asyncio.run(scenario())

    def test_terminal_socket_close_closes_board(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            api = FakeApi(["00\n11"])
            board = make_board(server, api)
            calls = record(board)
            await bring_up(server, board)
            server.ws.drop(4000)
            await settle()
            assert board.state is BoardState.CLOSED
            assert board.get(0, 0) is None
            assert [name for name, _ in calls] == ["load", "close"]
            assert api.closed
            await asyncio.wait_for(board.wait_closed(), 1)

        asyncio.run(scenario())

    def test_close_emits_once(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            api = FakeApi(["00\n11"])
            board = make_board(server, api)
            calls = record(board)
            await bring_up(server, board)
            await board.close()
            await board.close()
            assert [name for name, _ in calls] == ["load", "close"]
            assert board.state is BoardState.CLOSED
            assert server.ws.closed
            assert api.closed

        asyncio.run(scenario())

    def test_start_twice_rejected(self) -> None:
        async def scenario() -> None:
            server = FakeServer()
            board = make_board(server, FakeApi())
            await board.start()
            with pytest.raises(RuntimeError):
                await board.start()
            await board.close()

        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestSet:
    def test_transient_failures_retried(self) -> None:
        async def scenario() -> None:
            api = FakeApi()
            api.paint_results = [
                ApiStatusError(503, "busy"),
                ApiStatusError(408, "timeout"),
                None,
            ]
            board = make_board(FakeServer(), api)
            await board.set(1, 0, 2, ACTOR)
            assert api.paints == [(1, 0, 2, "42")] * 3
            # the mirror is not touched by a write
            assert board.get(1, 0) is None

        asyncio.run(scenario())

    def test_rejection_is_terminal(self) -> None:
        async def scenario() -> None:
            api = FakeApi()
            api.paint_results = [ApiStatusError(403, "cooling down")]
            board = make_board(FakeServer(), api)
            with pytest.raises(PaintBoardError) as info:
                await board.set(0, 0, 1, ACTOR)
            assert info.value.code == 403
            assert info.value.message == "cooling down"
            assert info.value.actor is ACTOR
            assert len(api.paints) == 1

        asyncio.run(scenario())

    def test_exhausted_retries(self) -> None:
        async def scenario() -> None:
            api = FakeApi()
            api.paint_results = [ApiStatusError(500, "boom")] * 3
            board = make_board(FakeServer(), api, retry=RetryPolicy(max_attempts=3))
            with pytest.raises(PaintBoardError) as info:
                await board.set(0, 0, 1, ACTOR)
            assert info.value.code == 500
            assert len(api.paints) == 3

        asyncio.run(scenario())

    def test_network_errors(self) -> None:
        async def scenario() -> None:
            api = FakeApi()
            api.paint_results = [aiohttp.ClientConnectionError("reset")] * 2
            board = make_board(FakeServer(), api, retry=RetryPolicy(max_attempts=2))
            with pytest.raises(PaintBoardError) as info:
                await board.set(0, 0, 1, ACTOR)
            assert info.value.code is None
            assert "reset" in str(info.value)

        asyncio.run(scenario())

    def test_color_outside_palette(self) -> None:
        async def scenario() -> None:
            api = FakeApi()
            board = make_board(FakeServer(), api, palette_size=4)
            with pytest.raises(PaintBoardError):
                await board.set(0, 0, 4, ACTOR)
            assert api.paints == []

        asyncio.run(scenario())
