"""Color space conversions and perceptual metrics.

Provides:
    - sRGB → linear RGB conversion (exact sRGB transfer function)
    - Linear RGB → XYZ → CIE L*a*b* (D65 illuminant)
    - ΔE2000: Perceptual color difference (CIEDE2000 formula)

Used by:
    - Quantizer: nearest palette color for every source pixel
    - Palette: precomputed Lab coordinates of the palette entries

All functions operate on numpy arrays with the channel axis LAST,
shape (..., 3), so a single color, a palette (N, 3) and an image
(H, W, 3) all go through the same code path.

Invariants:
    - sRGB input is 8-bit [0, 255] at the API boundary (``srgb8_to_lab``)
    - Linear RGB is [0, 1]
    - Lab coordinates: L[0,100], a,b roughly [-128, 127]
"""

import numpy as np

_SRGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])

_WHITE_POINTS = {
    "D65": np.array([0.95047, 1.0, 1.08883]),
    "D50": np.array([0.96422, 1.0, 0.82521]),
}


def srgb_to_linear(img: np.ndarray) -> np.ndarray:
    """Convert sRGB [0,1] to linear RGB [0,1].

    Notes
    -----
    Uses exact sRGB transfer function (not gamma 2.2 approximation):
        - Linear region for small values: x / 12.92
        - Power region: ((x + 0.055) / 1.055)^2.4
    """
    img = np.clip(np.asarray(img, dtype=np.float64), 0.0, 1.0)
    return np.where(img <= 0.04045, img / 12.92, ((img + 0.055) / 1.055) ** 2.4)


def rgb_to_xyz(rgb: np.ndarray) -> np.ndarray:
    """Convert linear RGB (..., 3) to CIE XYZ (D65)."""
    return np.asarray(rgb, dtype=np.float64) @ _SRGB_TO_XYZ.T


def xyz_to_lab(xyz: np.ndarray, white_point: str = "D65") -> np.ndarray:
    """Convert XYZ (..., 3) to CIE L*a*b*.

    Parameters
    ----------
    xyz : np.ndarray
        XYZ coordinates, shape (..., 3)
    white_point : str
        Reference white point, "D65" (default) or "D50"

    Returns
    -------
    np.ndarray
        Lab coordinates, same shape

    Notes
    -----
    Uses CIE standard transform with 6/29 threshold.
    """
    if white_point not in _WHITE_POINTS:
        raise ValueError(f"Unknown white_point: {white_point}. Use 'D65' or 'D50'.")

    xyz_norm = np.asarray(xyz, dtype=np.float64) / _WHITE_POINTS[white_point]

    delta = 6.0 / 29.0
    linear = xyz_norm / (3.0 * delta * delta) + (4.0 / 29.0)
    power = np.cbrt(xyz_norm)
    f = np.where(xyz_norm <= delta ** 3, linear, power)

    fx, fy, fz = f[..., 0], f[..., 1], f[..., 2]
    L = 116.0 * fy - 16.0
    a = 500.0 * (fx - fy)
    b = 200.0 * (fy - fz)
    return np.stack([L, a, b], axis=-1)


def srgb8_to_lab(rgb8: np.ndarray) -> np.ndarray:
    """Convert 8-bit sRGB (..., 3) straight to Lab (D65)."""
    linear = srgb_to_linear(np.asarray(rgb8, dtype=np.float64) / 255.0)
    return xyz_to_lab(rgb_to_xyz(linear))


def delta_e2000(
    lab1: np.ndarray,
    lab2: np.ndarray,
    kL: float = 1.0,
    kC: float = 1.0,
    kH: float = 1.0
) -> np.ndarray:
    """Compute CIEDE2000 color difference (ΔE2000).

    Parameters
    ----------
    lab1, lab2 : np.ndarray
        Lab colors, shape (..., 3); broadcast against each other, so a
        single color (3,) against a palette (N, 3) yields (N,)
    kL, kC, kH : float
        Weighting factors for lightness, chroma, hue (default 1.0)

    Returns
    -------
    np.ndarray
        ΔE2000 values with the broadcast shape minus the channel axis.
        Typical perceptual threshold: ΔE < 2.3 (just noticeable difference)

    Notes
    -----
    Implements full CIEDE2000 formula (Sharma et al. 2005), including the
    special cases for a zero chroma product in the hue difference and
    mean hue.
    """
    lab1 = np.asarray(lab1, dtype=np.float64)
    lab2 = np.asarray(lab2, dtype=np.float64)
    L1, a1, b1 = lab1[..., 0], lab1[..., 1], lab1[..., 2]
    L2, a2, b2 = lab2[..., 0], lab2[..., 1], lab2[..., 2]

    C1 = np.hypot(a1, b1)
    C2 = np.hypot(a2, b2)
    C_bar_7 = ((C1 + C2) / 2.0) ** 7
    G = 0.5 * (1.0 - np.sqrt(C_bar_7 / (C_bar_7 + 25.0 ** 7)))

    a1_prime = (1.0 + G) * a1
    a2_prime = (1.0 + G) * a2
    C1_prime = np.hypot(a1_prime, b1)
    C2_prime = np.hypot(a2_prime, b2)

    h1_prime = np.degrees(np.arctan2(b1, a1_prime)) % 360.0
    h2_prime = np.degrees(np.arctan2(b2, a2_prime)) % 360.0

    dL_prime = L2 - L1
    dC_prime = C2_prime - C1_prime

    chroma_product = C1_prime * C2_prime
    diff = h2_prime - h1_prime
    dh_prime = np.where(
        np.abs(diff) <= 180.0,
        diff,
        np.where(diff > 180.0, diff - 360.0, diff + 360.0),
    )
    dh_prime = np.where(chroma_product == 0.0, 0.0, dh_prime)
    dH_prime = 2.0 * np.sqrt(chroma_product) * np.sin(np.radians(dh_prime) / 2.0)

    L_bar_prime = (L1 + L2) / 2.0
    C_bar_prime = (C1_prime + C2_prime) / 2.0

    h_sum = h1_prime + h2_prime
    h_bar_prime = np.where(
        np.abs(diff) <= 180.0,
        h_sum / 2.0,
        np.where(h_sum < 360.0, (h_sum + 360.0) / 2.0, (h_sum - 360.0) / 2.0),
    )
    h_bar_prime = np.where(chroma_product == 0.0, h_sum, h_bar_prime)

    T = (1.0
         - 0.17 * np.cos(np.radians(h_bar_prime - 30.0))
         + 0.24 * np.cos(np.radians(2.0 * h_bar_prime))
         + 0.32 * np.cos(np.radians(3.0 * h_bar_prime + 6.0))
         - 0.20 * np.cos(np.radians(4.0 * h_bar_prime - 63.0)))

    dTheta = 30.0 * np.exp(-((h_bar_prime - 275.0) / 25.0) ** 2)

    C_bar_prime_7 = C_bar_prime ** 7
    RC = 2.0 * np.sqrt(C_bar_prime_7 / (C_bar_prime_7 + 25.0 ** 7))

    L_term = (L_bar_prime - 50.0) ** 2
    SL = 1.0 + (0.015 * L_term) / np.sqrt(20.0 + L_term)
    SC = 1.0 + 0.045 * C_bar_prime
    SH = 1.0 + 0.015 * C_bar_prime * T

    RT = -np.sin(np.radians(2.0 * dTheta)) * RC

    l_part = dL_prime / (kL * SL)
    c_part = dC_prime / (kC * SC)
    h_part = dH_prime / (kH * SH)

    return np.sqrt(l_part ** 2 + c_part ** 2 + h_part ** 2 + RT * c_part * h_part)
