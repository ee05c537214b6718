import numpy as np
import pytest

from compositor.buffers import PixelBuffer
from compositor.contracts import ColorOverlay, EffectConfig
from compositor.filters import apply_color_overlay, apply_filters, apply_named_filter, apply_opacity


def _solid(rgb, size=(3, 3), alpha=255):
    w, h = size
    px = np.zeros((h, w, 4), dtype=np.uint8)
    px[..., :3] = rgb
    px[..., 3] = alpha
    return PixelBuffer(px)


def test_none_returns_input():
    buf = _solid((1, 2, 3))
    assert apply_filters(buf, EffectConfig()) is buf


def test_grayscale_uses_luma_weights():
    out = apply_named_filter(_solid((255, 0, 0)), "grayscale")
    assert tuple(out.pixels[1, 1]) == (54, 54, 54, 255)


def test_invert():
    out = apply_named_filter(_solid((10, 20, 30), alpha=40), "invert")
    assert tuple(out.pixels[0, 0]) == (245, 235, 225, 40)


def test_sepia_clamps_white():
    out = apply_named_filter(_solid((255, 255, 255)), "sepia")
    assert tuple(out.pixels[0, 0, :3]) == (255, 255, 239)


def test_glow_boosts_opaque_pixels():
    out = apply_named_filter(_solid((101, 101, 101), size=(5, 5)), "glow")
    # 101 * 1.5 = 151.5; (151.5 - 127.5) * 1.2 + 127.5 = 156.3
    assert tuple(out.pixels[2, 2]) == (156, 156, 156, 255)


def test_glow_contrast_keeps_css_midpoint():
    # 85 * 1.5 = 127.5 sits on the contrast pivot and is not moved
    out = apply_named_filter(_solid((85, 85, 85), size=(5, 5)), "glow")
    assert tuple(out.pixels[2, 2]) == (128, 128, 128, 255)


def test_glow_adds_white_halo_around_subject():
    px = np.zeros((17, 17, 4), dtype=np.uint8)
    px[7:10, 7:10] = (100, 100, 100, 255)
    out = apply_named_filter(PixelBuffer(px), "glow")

    halo = out.pixels[8, 11]
    assert halo[3] > 0
    assert tuple(halo[:3]) == (255, 255, 255)


def test_unknown_filter_raises():
    with pytest.raises(ValueError):
        apply_named_filter(_solid((0, 0, 0)), "posterize")


def test_opacity_scales_alpha_only():
    out = apply_opacity(_solid((10, 20, 30)), 50)
    assert tuple(out.pixels[0, 0]) == (10, 20, 30, 128)
    assert apply_opacity(_solid((0, 0, 0), alpha=0), 0).alpha.max() == 0


def test_overlay_blends_rgb_and_keeps_alpha():
    overlay = ColorOverlay(enabled=True, color="#FF0000", intensity=0.5)
    out = apply_color_overlay(_solid((0, 0, 0), alpha=99), overlay)
    assert tuple(out.pixels[0, 0]) == (128, 0, 0, 99)


def test_overlay_disabled_is_noop():
    buf = _solid((5, 5, 5))
    assert apply_color_overlay(buf, ColorOverlay(enabled=False, intensity=1.0)) is buf


def test_filter_then_opacity_then_overlay():
    cfg = EffectConfig().merged(
        {"filter": "invert", "opacity": 50, "colorOverlay": {"enabled": True, "color": "#000000", "intensity": 0.5}}
    )
    out = apply_filters(_solid((55, 55, 55)), cfg)
    # invert -> 200, overlay toward black -> 100, alpha 255 * 0.5
    assert tuple(out.pixels[0, 0]) == (100, 100, 100, 128)
