from __future__ import annotations

import numpy as np

from .buffers import PixelBuffer, to_bytes
from .contracts import ColorOverlay, EffectConfig
from .surface import surface_from


def apply_named_filter(buf: PixelBuffer, name: str) -> PixelBuffer:
    if name == "none":
        return buf
    surface = surface_from(buf)
    surface.apply_named_filter(name)
    return surface.read_pixels()


def apply_opacity(buf: PixelBuffer, opacity: float) -> PixelBuffer:
    """Scale alpha by opacity/100."""
    if opacity >= 100:
        return buf
    alpha = buf.alpha.astype(np.float32) * (opacity / 100.0)
    return PixelBuffer(np.dstack([buf.rgb, to_bytes(alpha)]))


def apply_color_overlay(buf: PixelBuffer, overlay: ColorOverlay) -> PixelBuffer:
    """Flat linear blend of RGB toward the overlay color; alpha untouched."""
    if not overlay.enabled or overlay.intensity <= 0:
        return buf
    i = overlay.intensity
    color = np.asarray(overlay.rgb, dtype=np.float32)
    rgb = buf.rgb.astype(np.float32) * (1.0 - i) + color * i
    return PixelBuffer(np.dstack([to_bytes(rgb), buf.alpha]))


def apply_filters(buf: PixelBuffer, config: EffectConfig) -> PixelBuffer:
    """
    Fixed order:
      1) named filter
      2) opacity
      3) color overlay
    """
    out = apply_named_filter(buf, config.filter)
    out = apply_opacity(out, config.opacity)
    return apply_color_overlay(out, config.color_overlay)
