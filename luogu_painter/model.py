"""Domain value types shared by every layer.

Coordinates are board pixels with the origin at the top-left corner,
``x`` growing to the right and ``y`` growing downwards.  Colors are
indices into the active ``Palette``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


@dataclass(frozen=True)
class Pixel:
    """One cell of the board and the palette index it shows."""

    x: int
    y: int
    color: int

    @property
    def key(self) -> tuple[int, int]:
        return (self.x, self.y)


class AuthMode(Enum):
    """How an actor's credential is attached to a paint request."""

    COOKIE = "cookie"  # _uid / __client_id cookies
    TOKEN = "token"    # ?token= query parameter


@dataclass(frozen=True)
class Actor:
    """An authenticated identity that paints one pixel per cooldown.

    ``credential`` is secret; ``repr`` hides it so actors can be logged.
    """

    id: str
    credential: str
    auth: AuthMode = AuthMode.TOKEN

    def __repr__(self) -> str:
        return f"Actor(id={self.id!r}, auth={self.auth.value})"

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class BoardImage:
    """Point-in-time copy of the board.

    ``cells`` has shape ``(width, height)`` and is indexed ``cells[x, y]``.
    """

    width: int
    height: int
    cells: np.ndarray

    def get(self, x: int, y: int) -> int | None:
        if 0 <= x < self.width and 0 <= y < self.height:
            return int(self.cells[x, y])
        return None
