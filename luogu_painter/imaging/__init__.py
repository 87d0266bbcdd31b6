"""Image side of the painter: color science, palette, quantizer, PNG I/O."""

from luogu_painter.imaging.palette import DEFAULT_PALETTE, Palette
from luogu_painter.imaging.quantizer import OPACITY_THRESHOLD, RGBAImage, quantize

__all__ = [
    "DEFAULT_PALETTE",
    "OPACITY_THRESHOLD",
    "Palette",
    "RGBAImage",
    "quantize",
]
