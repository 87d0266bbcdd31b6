"""Board palette.

The palette is an immutable value passed explicitly to the quantizer,
the snapshot parser (digit range check) and the preview writer.  The
board's own 32-color palette is ``DEFAULT_PALETTE``; ``painter.yaml`` may
replace it with another list of RGB triples.

Index 0 (black) is an ordinary paintable color on this board; snapshot
digit ``0`` means black, not "transparent".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from luogu_painter.imaging.color import srgb8_to_lab

# Snapshot cells are single base-32 digits.
MAX_PALETTE_SIZE = 32

RGB = tuple[int, int, int]


@dataclass(frozen=True)
class Palette:
    """Ordered, non-empty sequence of 8-bit RGB colors."""

    colors: tuple[RGB, ...]
    _rgb: np.ndarray = field(init=False, repr=False, compare=False)
    _lab: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        colors = tuple(tuple(int(c) for c in color) for color in self.colors)
        if not colors:
            raise ValueError("Palette must contain at least one color")
        if len(colors) > MAX_PALETTE_SIZE:
            raise ValueError(
                f"Palette has {len(colors)} colors; at most "
                f"{MAX_PALETTE_SIZE} fit in a base-32 snapshot digit"
            )
        for i, color in enumerate(colors):
            if len(color) != 3 or not all(0 <= c <= 255 for c in color):
                raise ValueError(f"Palette entry {i} is not an RGB triple: {color}")

        rgb = np.array(colors, dtype=np.uint8)
        rgb.setflags(write=False)
        lab = srgb8_to_lab(rgb)
        lab.setflags(write=False)
        object.__setattr__(self, "colors", colors)
        object.__setattr__(self, "_rgb", rgb)
        object.__setattr__(self, "_lab", lab)

    @classmethod
    def from_rgb(cls, colors: Iterable[Sequence[int]]) -> Palette:
        return cls(tuple(tuple(c) for c in colors))

    def __len__(self) -> int:
        return len(self.colors)

    def __getitem__(self, index: int) -> RGB:
        return self.colors[index]

    @property
    def rgb(self) -> np.ndarray:
        """Read-only (N, 3) uint8 array."""
        return self._rgb

    @property
    def lab(self) -> np.ndarray:
        """Read-only (N, 3) Lab coordinates of the entries."""
        return self._lab

    def flat(self) -> list[int]:
        """``[r0, g0, b0, r1, ...]`` as Pillow's ``putpalette`` wants it."""
        return [c for color in self.colors for c in color]


DEFAULT_PALETTE = Palette((
    (0, 0, 0),
    (255, 255, 255),
    (170, 170, 170),
    (85, 85, 85),
    (254, 211, 199),
    (255, 196, 206),
    (250, 172, 142),
    (255, 139, 131),
    (244, 67, 54),
    (233, 30, 99),
    (226, 102, 158),
    (156, 39, 176),
    (103, 58, 183),
    (63, 81, 181),
    (0, 70, 112),
    (5, 113, 151),
    (33, 150, 243),
    (0, 188, 212),
    (59, 229, 219),
    (151, 253, 220),
    (22, 115, 0),
    (55, 169, 60),
    (137, 230, 66),
    (215, 255, 7),
    (255, 246, 209),
    (248, 203, 140),
    (255, 235, 59),
    (255, 193, 7),
    (255, 152, 0),
    (255, 87, 34),
    (184, 63, 39),
    (121, 85, 72),
))
