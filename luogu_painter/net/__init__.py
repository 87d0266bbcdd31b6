"""Network layer: channel socket, HTTP API and the board mirror.

    from luogu_painter.net import BoardApi, ChannelSocket, PaintBoard
"""

from luogu_painter.net.api import ApiStatusError, BoardApi
from luogu_painter.net.board import BoardState, PaintBoard, PaintBoardError, SnapshotError
from luogu_painter.net.channel_socket import (
    Channel,
    ChannelSocket,
    ChannelTimeout,
    SocketError,
    SocketNotOpen,
)

__all__ = [
    "ApiStatusError",
    "BoardApi",
    "BoardState",
    "Channel",
    "ChannelSocket",
    "ChannelTimeout",
    "PaintBoard",
    "PaintBoardError",
    "SnapshotError",
    "SocketError",
    "SocketNotOpen",
]
