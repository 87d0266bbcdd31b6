"""Pending-pixel pool with a rotating claim cursor.

Keeps, for the current list of relevant target pixels:
    - the indices whose board color differs from the target (pending)
    - the coordinates currently held by an actor (claimed)
    - a cursor that continues where the previous claim stopped

``claim`` scans circularly from the cursor, so every pending pixel is
offered once before any is offered again.  Both ``claim`` and ``release``
are plain synchronous calls: nothing can interleave between the check and
the mark.

Claims are keyed by coordinate and survive ``reset``, so an in-flight
pixel stays exclusive across a board reload.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from luogu_painter.model import Pixel


@dataclass(frozen=True)
class Claim:
    """An actor's exclusive hold on one target pixel."""

    index: int
    pixel: Pixel


class PendingPool:
    def __init__(self) -> None:
        self._pixels: list[Pixel] = []
        self._index: dict[tuple[int, int], int] = {}
        self._pending: set[int] = set()
        self._claimed: set[tuple[int, int]] = set()
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._pixels)

    @property
    def pixels(self) -> list[Pixel]:
        return list(self._pixels)

    @property
    def remaining(self) -> int:
        """Number of pending pixels, claimed or not."""
        return len(self._pending)

    @property
    def claimed(self) -> frozenset[tuple[int, int]]:
        return frozenset(self._claimed)

    def reset(self, pixels: Sequence[Pixel], needs_paint: Callable[[Pixel], bool]) -> None:
        """Replace the pixel list and recompute the pending set."""
        self._pixels = list(pixels)
        self._index = {p.key: i for i, p in enumerate(self._pixels)}
        self._pending = {i for i, p in enumerate(self._pixels) if needs_paint(p)}
        self._cursor = 0

    def clear(self) -> None:
        """Forget all pixels.  Outstanding claims are kept."""
        self.reset([], lambda p: False)

    def is_pending(self, x: int, y: int) -> bool:
        index = self._index.get((x, y))
        return index is not None and index in self._pending

    def observe(self, x: int, y: int, color: int) -> bool:
        """Record that the board now shows *color* at ``(x, y)``.

        Returns ``True`` when the pending set changed.
        """
        index = self._index.get((x, y))
        if index is None:
            return False
        was = index in self._pending
        now = self._pixels[index].color != color
        if now:
            self._pending.add(index)
        else:
            self._pending.discard(index)
        return was != now

    def has_work(self) -> bool:
        """``True`` if some pending pixel is not claimed."""
        held = sum(1 for key in self._claimed if self.is_pending(*key))
        return len(self._pending) > held

    def claim(self) -> Claim | None:
        """Claim the next pending, unclaimed pixel after the cursor."""
        n = len(self._pixels)
        if n == 0 or not self.has_work():
            return None
        for step in range(n):
            i = (self._cursor + step) % n
            pixel = self._pixels[i]
            if i in self._pending and pixel.key not in self._claimed:
                self._claimed.add(pixel.key)
                self._cursor = (i + 1) % n
                return Claim(i, pixel)
        return None

    def release(self, claim: Claim) -> None:
        self._claimed.discard(claim.pixel.key)
