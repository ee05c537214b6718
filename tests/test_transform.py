import numpy as np
import pytest

from compositor.buffers import PixelBuffer
from compositor.contracts import TransformConfig
from compositor.transform import apply_transform, crop_to_square, resize, resolve_resize


def _gradient(w: int, h: int) -> PixelBuffer:
    px = np.zeros((h, w, 4), dtype=np.uint8)
    px[..., 0] = np.arange(w, dtype=np.uint8)[None, :] * 10
    px[..., 1] = np.arange(h, dtype=np.uint8)[:, None] * 10
    px[..., 2] = 7
    px[..., 3] = 255
    return PixelBuffer(px)


def test_identity_is_exact_copy():
    buf = _gradient(5, 3)
    out = apply_transform(buf, TransformConfig())
    assert np.array_equal(out.pixels, buf.pixels)


def test_quarter_turn_is_clockwise_and_swaps_size():
    buf = _gradient(5, 3)
    out = apply_transform(buf, TransformConfig(rotate_deg=90))
    assert out.size == (3, 5)
    assert np.array_equal(out.pixels, np.rot90(buf.pixels, k=-1))


def test_half_turn():
    buf = _gradient(4, 3)
    out = apply_transform(buf, TransformConfig(rotate_deg=180))
    assert np.array_equal(out.pixels, np.rot90(buf.pixels, k=2))


def test_four_quarter_turns_round_trip():
    buf = _gradient(6, 4)
    out = buf
    for _ in range(4):
        out = apply_transform(out, TransformConfig(rotate_deg=90))
    assert np.array_equal(out.pixels, buf.pixels)


@pytest.mark.parametrize("flags", [{"flip_h": True}, {"flip_v": True}])
def test_flip_twice_round_trips(flags):
    buf = _gradient(5, 4)
    t = TransformConfig(**flags)
    once = apply_transform(buf, t)
    assert not np.array_equal(once.pixels, buf.pixels)
    assert np.array_equal(apply_transform(once, t).pixels, buf.pixels)


def test_flip_h_mirrors_columns():
    buf = _gradient(5, 4)
    out = apply_transform(buf, TransformConfig(flip_h=True))
    assert np.array_equal(out.pixels, buf.pixels[:, ::-1])


def test_flip_acts_in_rotated_frame():
    buf = _gradient(5, 3)
    out = apply_transform(buf, TransformConfig(rotate_deg=90, flip_h=True))
    assert np.array_equal(out.pixels, np.rot90(buf.pixels[:, ::-1], k=-1))


def test_crop_to_square_is_centered():
    buf = _gradient(5, 2)
    out = crop_to_square(buf)
    assert out.size == (2, 2)
    # offset floor((5 - 2) / 2) = 1
    assert np.array_equal(out.pixels, buf.pixels[:, 1:3])


def test_crop_to_square_on_square_is_copy():
    buf = _gradient(3, 3)
    assert np.array_equal(crop_to_square(buf).pixels, buf.pixels)


@pytest.mark.parametrize(
    "new_w, new_h, expected",
    [
        (200, None, (200, 50)),
        ("200", "", (200, 50)),
        (None, 25, (100, 25)),
        (30, 30, (30, 30)),
        ("12px", None, (12, 3)),
        (None, None, None),
        ("", "abc", None),
        (0, -5, None),
    ],
)
def test_resolve_resize(new_w, new_h, expected):
    assert resolve_resize(400, 100, new_w, new_h) == expected


def test_resize_keeps_aspect_for_missing_dimension():
    buf = PixelBuffer(np.full((100, 400, 4), 200, dtype=np.uint8))
    out = resize(buf, 200, None)
    assert out.size == (200, 50)
    assert (out.pixels == 200).all()


def test_resize_with_no_dimensions_is_noop(caplog):
    buf = _gradient(4, 4)
    assert resize(buf, "", None) is None
    assert "Invalid resize" in caplog.text
