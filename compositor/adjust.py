from __future__ import annotations

import math

import numpy as np

from .buffers import PixelBuffer, to_bytes
from .config import CONTRAST_PIVOT, LUMA_B, LUMA_G, LUMA_R
from .contracts import Adjustments
from .surface import blur_buffer


def hue_rotation_matrix(hue_deg: float) -> np.ndarray:
    """
    3x3 RGB rotation around the luma-weighted gray axis.

    This is an RGB-space approximation, not an HSL hue shift; the constants
    (0.143, 0.140, -0.283) are part of the look and must not be "fixed".
    """
    h = math.radians(hue_deg)
    cos_h = math.cos(h)
    sin_h = math.sin(h)
    rl, gl, bl = LUMA_R, LUMA_G, LUMA_B
    return np.array(
        [
            [rl + cos_h * (1 - rl) + sin_h * (-rl), gl + cos_h * (-gl) + sin_h * (-gl), bl + cos_h * (-bl) + sin_h * (1 - bl)],
            [rl + cos_h * (-rl) + sin_h * 0.143, gl + cos_h * (1 - gl) + sin_h * 0.140, bl + cos_h * (-bl) + sin_h * (-0.283)],
            [rl + cos_h * (-rl) + sin_h * (-(1 - rl)), gl + cos_h * (-gl) + sin_h * gl, bl + cos_h * (1 - bl) + sin_h * bl],
        ],
        dtype=np.float64,
    )


def is_identity(adj: Adjustments) -> bool:
    return (
        adj.brightness == 100
        and adj.contrast == 100
        and adj.saturation == 100
        and adj.hue == 0
        and adj.blur_radius == 0
    )


def apply_adjustments(buf: PixelBuffer, adj: Adjustments) -> PixelBuffer:
    """
    Brightness -> contrast -> saturation -> hue on every pixel, after an
    optional whole-image blur. Output is clamped to [0, 255]; alpha is kept.
    """
    if adj.blur_radius > 0:
        buf = blur_buffer(buf, adj.blur_radius)

    rgb = buf.rgb.astype(np.float64)

    rgb = rgb * (adj.brightness / 100.0)
    rgb = (rgb - CONTRAST_PIVOT) * (adj.contrast / 100.0) + CONTRAST_PIVOT

    gray = rgb[..., 0:1] * LUMA_R + rgb[..., 1:2] * LUMA_G + rgb[..., 2:3] * LUMA_B
    rgb = gray + (rgb - gray) * (adj.saturation / 100.0)

    # newR = r*M00 + g*M01 + b*M02, i.e. rgb @ M.T
    rgb = rgb @ hue_rotation_matrix(adj.hue).T

    return PixelBuffer(np.dstack([to_bytes(rgb), buf.alpha]))
