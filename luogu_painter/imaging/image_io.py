"""Image decoding and preview encoding (Pillow).

``load_rgba`` accepts anything Pillow can open and converts it to RGBA,
so palette PNGs, grayscale PNGs and RGB files all work as sources.

``save_preview`` renders the board as an indexed PNG with the target
pixels painted over it, i.e. what the board will look like once the
painter has converged.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Iterable, Union

import numpy as np
from PIL import Image

from luogu_painter.imaging.palette import Palette
from luogu_painter.imaging.quantizer import RGBAImage
from luogu_painter.model import BoardImage, Pixel
from luogu_painter.utils import fs

logger = logging.getLogger(__name__)


def load_rgba(path: Union[str, Path]) -> RGBAImage:
    """Decode *path* into an ``RGBAImage``.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If Pillow cannot decode the file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")
    try:
        with Image.open(path) as img:
            rgba = img.convert("RGBA")
            data = np.array(rgba, dtype=np.uint8)
    except OSError as exc:
        raise ValueError(f"Cannot decode image {path}: {exc}") from exc
    logger.info("Loaded image %s (%dx%d)", path, data.shape[1], data.shape[0])
    return RGBAImage.from_array(data)


def render_preview(
    board: BoardImage,
    pixels: Iterable[Pixel],
    palette: Palette,
) -> Image.Image:
    """Return a "P" mode image of *board* with *pixels* drawn on top."""
    cells = board.cells.copy()
    for pixel in pixels:
        if 0 <= pixel.x < board.width and 0 <= pixel.y < board.height:
            cells[pixel.x, pixel.y] = pixel.color
    # cells are (x, y); images are (row=y, col=x)
    rows = np.ascontiguousarray(cells.T, dtype=np.uint8)
    img = Image.frombytes("P", (board.width, board.height), rows.tobytes())
    img.putpalette(palette.flat())
    return img


def save_preview(
    path: Union[str, Path],
    board: BoardImage,
    pixels: Iterable[Pixel],
    palette: Palette,
) -> None:
    """Write the preview PNG atomically."""
    img = render_preview(board, pixels, palette)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    fs.atomic_write_bytes(path, buf.getvalue())
    logger.debug("Saved preview to %s", path)
