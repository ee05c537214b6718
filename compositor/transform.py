from __future__ import annotations

import logging
import math
from typing import Optional, Tuple, Union

from .buffers import PixelBuffer
from .contracts import TransformConfig
from .surface import compose, create_surface

logger = logging.getLogger(__name__)

# Exact (cos, sin) for quarter turns; avoids 6e-17 residue from math.cos.
_QUARTER_TURNS = {0: (1.0, 0.0), 90: (0.0, 1.0), 180: (-1.0, 0.0), 270: (0.0, -1.0)}

Dimension = Union[int, float, str, None]


def output_size(width: int, height: int, rotate_deg: int) -> Tuple[int, int]:
    if rotate_deg in (90, 270):
        return height, width
    return width, height


def transform_matrix(width: int, height: int, t: TransformConfig):
    """
    2x3 affine mapping source pixel space to the output canvas:

      translate(out_w/2, out_h/2) -> rotate(rotate_deg) -> scale(flip) -> translate(-w/2, -h/2)

    Flips act in the already-rotated frame (rotate, then flip).
    """
    out_w, out_h = output_size(width, height, t.rotate_deg)
    cos_t, sin_t = _QUARTER_TURNS[t.rotate_deg]
    sx = -1.0 if t.flip_h else 1.0
    sy = -1.0 if t.flip_v else 1.0
    return compose(
        [[1.0, 0.0, out_w / 2.0], [0.0, 1.0, out_h / 2.0]],
        [[cos_t, -sin_t, 0.0], [sin_t, cos_t, 0.0]],
        [[sx, 0.0, 0.0], [0.0, sy, 0.0]],
        [[1.0, 0.0, -width / 2.0], [0.0, 1.0, -height / 2.0]],
    )


def apply_transform(image: PixelBuffer, t: TransformConfig) -> PixelBuffer:
    """Rasterize `image` under rotation/flip into a new buffer."""
    out_w, out_h = output_size(image.width, image.height, t.rotate_deg)
    surface = create_surface(out_w, out_h)
    surface.draw_image(image, transform=transform_matrix(image.width, image.height, t))
    return surface.read_pixels()


def crop_to_square(image: PixelBuffer) -> PixelBuffer:
    """Centered square crop with side min(w, h)."""
    size = min(image.width, image.height)
    x = (image.width - size) // 2
    y = (image.height - size) // 2
    surface = create_surface(size, size)
    surface.draw_image(image, src_rect=(x, y, size, size), dst_rect=(0, 0, size, size))
    return surface.read_pixels()


def _parse_dimension(value: Dimension) -> Optional[int]:
    """Positive integer, or None for blank/invalid input."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        digits = ""
        for ch in value.lstrip("+"):
            if not ch.isdigit():
                break
            digits += ch
        if not digits:
            return None
        parsed = int(digits)
    else:
        if not math.isfinite(value):
            return None
        parsed = int(value)
    return parsed if parsed > 0 else None


def resolve_resize(
    width: int,
    height: int,
    new_width: Dimension,
    new_height: Dimension,
) -> Optional[Tuple[int, int]]:
    """
    Target size for a resize request, or None if both dimensions are
    blank/invalid. A missing dimension follows the original aspect ratio.
    """
    w = _parse_dimension(new_width)
    h = _parse_dimension(new_height)
    if w is None and h is None:
        return None
    aspect = width / float(height)
    if w is None:
        w = max(1, int(math.floor(h * aspect + 0.5)))
    elif h is None:
        h = max(1, int(math.floor(w / aspect + 0.5)))
    return w, h


def resize(image: PixelBuffer, new_width: Dimension, new_height: Dimension) -> Optional[PixelBuffer]:
    """Resized copy of `image`, or None if the request is a no-op."""
    target = resolve_resize(image.width, image.height, new_width, new_height)
    if target is None:
        logger.warning("Invalid resize dimensions: width=%r height=%r", new_width, new_height)
        return None
    w, h = target
    surface = create_surface(w, h)
    surface.draw_image(image, dst_rect=(0, 0, w, h))
    return surface.read_pixels()
