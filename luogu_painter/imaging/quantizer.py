"""Image → target pixels.

Converts an RGBA source image placed at a board offset into the list of
``Pixel`` values the painter should converge to.

Rules:
    - Alpha >= ``OPACITY_THRESHOLD`` (0x80) is painted; anything lower is
      dropped and takes no part in error diffusion.
    - Colors are matched with CIEDE2000 in Lab space.
    - Default strategy is Floyd–Steinberg error diffusion in 8-bit sRGB
      (7/16 right, 3/16 down-left, 5/16 down, 1/16 down-right, plain
      left-to-right scan).  ``dither=False`` gives nearest-color mapping.
    - The working color is rounded and clipped to 8 bits before the
      palette lookup; the diffused error uses the unrounded value.
    - Output is row-major (y outer, x inner).  Pixels that land outside
      the board are still emitted; the painter filters them once the
      board size is known.

The result depends only on the image, offset, palette and ``dither``:
no randomness, no clock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from luogu_painter.imaging.color import delta_e2000, srgb8_to_lab
from luogu_painter.imaging.palette import Palette
from luogu_painter.model import Pixel

logger = logging.getLogger(__name__)

OPACITY_THRESHOLD = 0x80

# (dy, dx, weight)
_FLOYD_STEINBERG = (
    (0, 1, 7.0 / 16.0),
    (1, -1, 3.0 / 16.0),
    (1, 0, 5.0 / 16.0),
    (1, 1, 1.0 / 16.0),
)


@dataclass(frozen=True)
class RGBAImage:
    """Decoded source image.

    ``data`` is a uint8 array of shape (height, width, 4).
    """

    width: int
    height: int
    data: np.ndarray

    def __post_init__(self) -> None:
        if self.data.dtype != np.uint8:
            raise ValueError(f"Expected uint8 RGBA data, got {self.data.dtype}")
        if self.data.shape != (self.height, self.width, 4):
            raise ValueError(
                f"Expected shape {(self.height, self.width, 4)}, "
                f"got {self.data.shape}"
            )

    @classmethod
    def from_array(cls, data: np.ndarray) -> RGBAImage:
        data = np.asarray(data, dtype=np.uint8)
        return cls(width=data.shape[1], height=data.shape[0], data=data)


class NearestColor:
    """Memoized CIEDE2000 nearest-palette lookup for 8-bit colors."""

    def __init__(self, palette: Palette) -> None:
        self._palette = palette
        self._cache: dict[tuple[int, int, int], int] = {}

    def __call__(self, rgb: tuple[int, int, int]) -> int:
        index = self._cache.get(rgb)
        if index is None:
            lab = srgb8_to_lab(np.array(rgb, dtype=np.float64))
            distances = delta_e2000(lab, self._palette.lab)
            # argmin returns the lowest index on ties
            index = int(np.argmin(distances))
            self._cache[rgb] = index
        return index


def quantize(
    image: RGBAImage,
    offset_x: int,
    offset_y: int,
    palette: Palette,
    *,
    dither: bool = True,
) -> list[Pixel]:
    """Quantize *image* against *palette* and place it at the offset.

    Parameters
    ----------
    image : RGBAImage
        Source pixels.
    offset_x, offset_y : int
        Board coordinates of the image's top-left corner.  May be negative.
    palette : Palette
        Target palette.
    dither : bool
        Floyd–Steinberg error diffusion when True (default), plain
        nearest color otherwise.

    Returns
    -------
    list[Pixel]
        Row-major target pixels for every sufficiently opaque source pixel.
    """
    height, width = image.height, image.width
    opaque = image.data[..., 3] >= OPACITY_THRESHOLD
    work = image.data[..., :3].astype(np.float64)
    nearest = NearestColor(palette)
    palette_rgb = palette.rgb.astype(np.float64)

    pixels: list[Pixel] = []
    for y in range(height):
        for x in range(width):
            if not opaque[y, x]:
                continue
            current = work[y, x]
            key = tuple(int(c) for c in np.clip(np.rint(current), 0, 255))
            index = nearest(key)
            pixels.append(Pixel(offset_x + x, offset_y + y, index))

            if not dither:
                continue
            error = current - palette_rgb[index]
            for dy, dx, weight in _FLOYD_STEINBERG:
                ny, nx = y + dy, x + dx
                if 0 <= ny < height and 0 <= nx < width and opaque[ny, nx]:
                    work[ny, nx] += error * weight

    logger.debug(
        "Quantized %dx%d image into %d pixels (dither=%s)",
        width, height, len(pixels), dither,
    )
    return pixels
