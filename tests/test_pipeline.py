import io
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

import numpy as np
import pytest
from PIL import Image

from compositor.buffers import PixelBuffer
from compositor.contracts import EffectConfig
from compositor.errors import DecodeFailure, InvalidConfig
from compositor.pipeline import Compositor, PipelineState, render_pipeline
from compositor.surface import decode_image


def _png_bytes(rgba: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(rgba).save(buf, format="PNG")
    return buf.getvalue()


def _solid(rgb, w=4, h=4) -> np.ndarray:
    px = np.zeros((h, w, 4), dtype=np.uint8)
    px[..., :3] = rgb
    px[..., 3] = 255
    return px


class _FakeSegmenter:
    """Hands out futures the test resolves by hand."""

    def __init__(self):
        self.requests = []

    def request_mask(self, image: PixelBuffer) -> Future:
        fut: Future = Future()
        fut.set_running_or_notify_cancel()
        self.requests.append((image, fut))
        return fut


def _center_mask(image: PixelBuffer) -> np.ndarray:
    values = np.zeros((image.height, image.width), dtype=np.uint8)
    values[1:-1, 1:-1] = 1
    return values


def test_default_config_is_identity():
    rng = np.random.default_rng(2)
    original = PixelBuffer(rng.integers(0, 256, size=(6, 7, 4), dtype=np.uint8))
    out, timings = render_pipeline(original, EffectConfig())
    assert np.array_equal(out.pixels, original.pixels)
    assert timings.total_s >= 0


def test_segmentation_sees_pixels_before_adjustments():
    px = _solid((255, 255, 255))
    px[2, 2, :3] = 0
    cfg = EffectConfig().merged(
        {"segmentation": {"backgroundColorRemoval": {"enabled": True}}, "adjustments": {"brightness": 50}}
    )
    out, _ = render_pipeline(PixelBuffer(px), cfg)
    assert tuple(out.pixels[0, 0]) == (0, 0, 0, 0)
    assert tuple(out.pixels[2, 2]) == (0, 0, 0, 255)


def test_empty_compositor_renders_placeholder():
    comp = Compositor()
    out = comp.render()
    assert comp.state is PipelineState.EMPTY
    assert out.is_empty()
    with pytest.raises(RuntimeError):
        comp.export_current()


def test_load_image_resets_config_and_notifies():
    seen = []
    comp = Compositor()
    comp.on_render(seen.append)

    comp.load_image(_png_bytes(_solid((10, 20, 30))))
    comp.update_config({"filter": "invert"})
    assert tuple(comp.current.pixels[0, 0]) == (245, 235, 225, 255)

    comp.load_image(_png_bytes(_solid((1, 2, 3))))
    assert comp.config == EffectConfig()
    assert tuple(comp.current.pixels[0, 0]) == (1, 2, 3, 255)
    assert len(seen) == 3


def test_decode_failure_leaves_state_unchanged():
    comp = Compositor()
    comp.load_image(_png_bytes(_solid((9, 9, 9))))
    comp.update_config({"opacity": 40})
    before = comp.current

    with pytest.raises(DecodeFailure):
        comp.load_image(b"not an image")
    assert comp.current is before
    assert comp.config.opacity == 40


def test_invalid_config_leaves_state_unchanged():
    comp = Compositor()
    comp.load_image(_png_bytes(_solid((9, 9, 9))))
    with pytest.raises(InvalidConfig):
        comp.update_config({"filter": "nope"})
    assert comp.config.filter == "none"


def test_reset_all_returns_to_empty():
    comp = Compositor()
    comp.load_image(_png_bytes(_solid((9, 9, 9))))
    comp.reset_all()
    assert comp.state is PipelineState.EMPTY
    assert comp.current.is_empty()


def test_export_png_round_trips():
    comp = Compositor()
    comp.load_image(_png_bytes(_solid((50, 60, 70), w=6, h=3)))
    comp.rotate_clockwise()
    out = decode_image(comp.export_current("image/png"))
    assert out.size == (3, 6)
    assert tuple(out.pixels[0, 0]) == (50, 60, 70, 255)


def test_toggles():
    comp = Compositor()
    comp.load_image(_png_bytes(_solid((0, 0, 0))))
    comp.toggle_filter("sepia")
    assert comp.config.filter == "sepia"
    comp.toggle_filter("sepia")
    assert comp.config.filter == "none"
    comp.toggle_flip_h()
    comp.toggle_flip_v()
    assert comp.config.transform.flip_h and comp.config.transform.flip_v
    for _ in range(4):
        comp.rotate_clockwise()
    assert comp.config.transform.rotate_deg == 0


def test_crop_and_resize_replace_original():
    comp = Compositor()
    comp.load_image(_png_bytes(_solid((5, 5, 5), w=8, h=4)))
    comp.crop_to_square()
    assert comp.original.size == (4, 4)
    comp.resize(2, None)
    assert comp.original.size == (2, 2)
    assert comp.resize("", "") is comp.current
    assert comp.original.size == (2, 2)


def test_mask_removes_background():
    seg = _FakeSegmenter()
    comp = Compositor(seg)
    comp.load_image(_png_bytes(_solid((200, 0, 0))))
    comp.update_config({"segmentation": {"removeBackground": True}})
    assert len(seg.requests) == 1

    image, fut = seg.requests[0]
    fut.set_result(_center_mask(image))
    assert comp.mask is not None
    assert tuple(comp.current.pixels[0, 0]) == (0, 0, 0, 0)
    assert tuple(comp.current.pixels[1, 1]) == (200, 0, 0, 255)

    comp.update_config({"segmentation": {"removeBackground": False}})
    assert comp.mask is None
    assert tuple(comp.current.pixels[0, 0]) == (200, 0, 0, 255)


def test_stale_mask_is_discarded():
    seg = _FakeSegmenter()
    comp = Compositor(seg)
    comp.load_image(_png_bytes(_solid((200, 0, 0))))
    comp.update_config({"segmentation": {"removeBackground": True}})
    stale_image, stale = seg.requests[0]

    comp.load_image(_png_bytes(_solid((0, 200, 0), w=6, h=6)))
    comp.update_config({"segmentation": {"removeBackground": True}})
    fresh_image, fresh = seg.requests[1]

    stale.set_result(_center_mask(stale_image))
    assert comp.mask is None

    fresh.set_result(_center_mask(fresh_image))
    assert comp.mask is not None
    assert comp.mask.width == 6


def test_transform_change_requests_new_mask():
    seg = _FakeSegmenter()
    comp = Compositor(seg)
    comp.load_image(_png_bytes(_solid((200, 0, 0), w=6, h=4)))
    comp.update_config({"segmentation": {"removeBackground": True}})
    image, fut = seg.requests[0]
    fut.set_result(_center_mask(image))

    comp.rotate_clockwise()
    assert len(seg.requests) == 2
    rotated, _ = seg.requests[1]
    assert rotated.size == (4, 6)
    # old mask no longer applies to the rotated frame
    assert tuple(comp.current.pixels[0, 0]) == (200, 0, 0, 255)


def test_model_failure_disables_mask(caplog):
    seg = _FakeSegmenter()
    comp = Compositor(seg)
    px = _solid((255, 255, 255))
    px[1, 1, :3] = 0
    comp.load_image(_png_bytes(px))
    comp.update_config({"segmentation": {"removeBackground": True}})

    with caplog.at_level(logging.WARNING):
        seg.requests[0][1].set_exception(RuntimeError("model exploded"))
    assert comp.mask_available is False
    assert "model exploded" in caplog.text

    # color-based removal still works
    comp.update_config({"segmentation": {"backgroundColorRemoval": {"enabled": True}}})
    assert tuple(comp.current.pixels[0, 0]) == (0, 0, 0, 0)
    assert tuple(comp.current.pixels[1, 1]) == (0, 0, 0, 255)


def test_dispatch_hook_receives_mask_delivery():
    queued = []
    seg = _FakeSegmenter()
    comp = Compositor(seg, dispatch=queued.append)
    comp.load_image(_png_bytes(_solid((200, 0, 0))))
    comp.update_config({"segmentation": {"removeBackground": True}})
    image, fut = seg.requests[0]
    fut.set_result(_center_mask(image))

    assert comp.mask is None
    assert len(queued) == 1
    queued.pop()()
    assert comp.mask is not None


def test_without_segmenter_remove_background_is_noop(caplog):
    comp = Compositor()
    comp.load_image(_png_bytes(_solid((3, 4, 5))))
    comp.update_config({"segmentation": {"removeBackground": True}})
    assert tuple(comp.current.pixels[0, 0]) == (3, 4, 5, 255)
    assert "unavailable" in caplog.text


class _PoolSegmenter:
    """Computes masks on an executor thread, like MattingSegmenter(executor=...)."""

    def __init__(self, pool):
        self._pool = pool

    def request_mask(self, image: PixelBuffer) -> Future:
        return self._pool.submit(_center_mask, image)


def test_executor_masks_render_on_owner_thread():
    render_threads = []
    pool = ThreadPoolExecutor(max_workers=1)
    comp = Compositor(_PoolSegmenter(pool))
    comp.on_render(lambda _buf: render_threads.append(threading.current_thread()))

    comp.load_image(_png_bytes(_solid((200, 0, 0))))
    comp.update_config({"segmentation": {"removeBackground": True}})
    pool.shutdown(wait=True)
    comp.process_pending()

    assert comp.mask is not None
    assert tuple(comp.current.pixels[0, 0]) == (0, 0, 0, 0)
    assert render_threads
    assert all(t is threading.main_thread() for t in render_threads)


def test_worker_delivery_waits_for_next_host_call():
    seg = _FakeSegmenter()
    comp = Compositor(seg)
    comp.load_image(_png_bytes(_solid((200, 0, 0))))
    comp.update_config({"segmentation": {"removeBackground": True}})
    image, fut = seg.requests[0]

    worker = threading.Thread(target=fut.set_result, args=(_center_mask(image),))
    worker.start()
    worker.join()
    assert comp.mask is None

    comp.export_current()
    assert comp.mask is not None


def test_superseded_failure_keeps_model_available():
    seg = _FakeSegmenter()
    comp = Compositor(seg)
    comp.load_image(_png_bytes(_solid((200, 0, 0))))
    comp.update_config({"segmentation": {"removeBackground": True}})
    comp.update_config({"segmentation": {"removeBackground": False}})
    comp.update_config({"segmentation": {"removeBackground": True}})
    (_, first), (image, second) = seg.requests

    first.set_exception(RuntimeError("late failure"))
    assert comp.mask_available is True

    second.set_result(_center_mask(image))
    assert comp.mask is not None


def test_mask_with_wrong_geometry_is_dropped(caplog):
    seg = _FakeSegmenter()
    comp = Compositor(seg)
    comp.load_image(_png_bytes(_solid((200, 0, 0), w=6, h=4)))
    comp.update_config({"segmentation": {"removeBackground": True}})

    with caplog.at_level(logging.WARNING):
        seg.requests[0][1].set_result(np.ones((3, 3), dtype=np.uint8))
    assert comp.mask is None
    assert comp.mask_available is True
    assert "does not match" in caplog.text
    assert tuple(comp.current.pixels[0, 0]) == (200, 0, 0, 255)
