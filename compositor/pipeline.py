from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Deque, List, Mapping, Optional, Tuple

import numpy as np

from .adjust import apply_adjustments, is_identity
from .buffers import PixelBuffer, SegmentationMask
from .config import DEFAULT_EXPORT_MIME
from .contracts import EffectConfig, TransformConfig
from .errors import MaskUnavailable
from .filters import apply_filters
from .segmentation import apply_segmentation
from .surface import decode_image, encode_image
from .transform import apply_transform, crop_to_square, output_size, resize

if TYPE_CHECKING:
    from .segmenter import SegmentationModel

logger = logging.getLogger(__name__)

RenderListener = Callable[[PixelBuffer], None]
Dispatch = Callable[[Callable[[], None]], None]
MaskKey = Tuple[int, TransformConfig]


@dataclass(frozen=True)
class StageTimings:
    transform_s: float
    segmentation_s: float
    adjustments_s: float
    filters_s: float
    total_s: float


class PipelineState(str, Enum):
    EMPTY = "empty"
    LOADED = "loaded"


def render_pipeline(
    original: PixelBuffer,
    config: EffectConfig,
    mask: Optional[SegmentationMask] = None,
) -> Tuple[PixelBuffer, StageTimings]:
    """
    Deterministic, linear pipeline:
      1) Geometric transform of the original
      2) Segmentation (only if a segmentation effect is on)
      3) Color adjustments
      4) Filters
    """
    t0 = time.perf_counter()

    t_tr0 = time.perf_counter()
    buf = apply_transform(original, config.transform)
    t_tr1 = time.perf_counter()

    t_seg0 = time.perf_counter()
    if config.segmentation.is_active():
        buf = apply_segmentation(buf, config.segmentation, mask)
    t_seg1 = time.perf_counter()

    t_adj0 = time.perf_counter()
    if not is_identity(config.adjustments):
        buf = apply_adjustments(buf, config.adjustments)
    t_adj1 = time.perf_counter()

    t_fil0 = time.perf_counter()
    buf = apply_filters(buf, config)
    t_fil1 = time.perf_counter()

    t1 = time.perf_counter()
    return buf, StageTimings(
        transform_s=t_tr1 - t_tr0,
        segmentation_s=t_seg1 - t_seg0,
        adjustments_s=t_adj1 - t_adj0,
        filters_s=t_fil1 - t_fil0,
        total_s=t1 - t0,
    )


class Compositor:
    """
    Owns the effect config, the original image and the current mask, and
    re-renders on every change.

    Single-threaded: every public method runs one render to completion on
    the thread that created the compositor. Mask futures completing on
    another thread are handed to `dispatch`, which must run the callback on
    that thread. Without a dispatch hook they are queued and delivered by
    process_pending(), which every host call runs first.
    """

    def __init__(
        self,
        segmenter: Optional[SegmentationModel] = None,
        *,
        dispatch: Optional[Dispatch] = None,
    ):
        self._segmenter = segmenter
        self._dispatch = dispatch
        self._owner = threading.get_ident()
        self._inbox: Deque[Callable[[], None]] = deque()
        self._config = EffectConfig()
        self._original: Optional[PixelBuffer] = None
        self._mask: Optional[SegmentationMask] = None
        self._image_token = 0
        self._listeners: List[RenderListener] = []
        self._pending: Optional[Future] = None
        self.mask_available = segmenter is not None
        self.current: Optional[PixelBuffer] = None
        self.last_timings: Optional[StageTimings] = None

    # ── State ─────────────────────────────────────────────────────────
    @property
    def state(self) -> PipelineState:
        return PipelineState.EMPTY if self._original is None else PipelineState.LOADED

    @property
    def config(self) -> EffectConfig:
        return self._config

    @property
    def original(self) -> Optional[PixelBuffer]:
        return self._original

    @property
    def mask(self) -> Optional[SegmentationMask]:
        return self._mask

    def on_render(self, listener: RenderListener) -> None:
        self._listeners.append(listener)

    def process_pending(self) -> int:
        """Deliver mask results queued by worker threads; returns how many ran."""
        ran = 0
        while self._inbox:
            self._inbox.popleft()()
            ran += 1
        return ran

    # ── Host API ──────────────────────────────────────────────────────
    def load_image(self, data: bytes) -> PixelBuffer:
        """
        Decode and adopt a new original image; all effects reset.

        Raises DecodeFailure without touching the current state.
        """
        self.process_pending()
        image = decode_image(data)
        self._config = EffectConfig()
        self._replace_original(image)
        return self.render()

    def update_config(self, partial_config: Mapping[str, Any]) -> PixelBuffer:
        """
        Deep-merge `partial_config` into a new snapshot and re-render.

        Raises InvalidConfig (state unchanged) for values that cannot be clamped.
        """
        self.process_pending()
        old = self._config
        self._config = old.merged(partial_config)
        seg_on = self._config.segmentation.remove_background

        if not seg_on and old.segmentation.remove_background:
            self._drop_mask()

        out = self.render()
        if seg_on and (not old.segmentation.remove_background or old.transform != self._config.transform):
            self._request_mask()
        return out

    def reset_all(self) -> PixelBuffer:
        self.process_pending()
        self._config = EffectConfig()
        self._original = None
        self._image_token += 1
        self._drop_mask()
        return self.render()

    def export_current(self, mime_type: str = DEFAULT_EXPORT_MIME) -> bytes:
        self.process_pending()
        if self.current is None or self.current.is_empty():
            raise RuntimeError("Nothing to export: no image loaded.")
        return encode_image(self.current, mime_type)

    def crop_to_square(self) -> Optional[PixelBuffer]:
        self.process_pending()
        if self._original is None:
            return None
        self._replace_original(crop_to_square(self._original))
        out = self.render()
        self._request_mask_if_needed()
        return out

    def resize(self, width: Any, height: Any) -> Optional[PixelBuffer]:
        self.process_pending()
        if self._original is None:
            return None
        resized = resize(self._original, width, height)
        if resized is None:
            return self.current
        self._replace_original(resized)
        out = self.render()
        self._request_mask_if_needed()
        return out

    def rotate_clockwise(self) -> PixelBuffer:
        return self.update_config({"transform": {"rotate_deg": (self._config.transform.rotate_deg + 90) % 360}})

    def toggle_flip_h(self) -> PixelBuffer:
        return self.update_config({"transform": {"flip_h": not self._config.transform.flip_h}})

    def toggle_flip_v(self) -> PixelBuffer:
        return self.update_config({"transform": {"flip_v": not self._config.transform.flip_v}})

    def toggle_filter(self, name: str) -> PixelBuffer:
        """Select `name`, or go back to "none" if it is already active."""
        return self.update_config({"filter": "none" if self._config.filter == name else name})

    # ── Rendering ─────────────────────────────────────────────────────
    def render(self) -> PixelBuffer:
        if self._original is None:
            out = PixelBuffer.blank(0, 0)
            self.last_timings = None
        else:
            out, timings = render_pipeline(self._original, self._config, self._current_mask())
            self.last_timings = timings
            logger.debug("render %dx%d in %.3fs", out.width, out.height, timings.total_s)
        self.current = out
        for listener in list(self._listeners):
            listener(out)
        return out

    # ── Mask lifecycle ────────────────────────────────────────────────
    def _replace_original(self, image: PixelBuffer) -> None:
        self._original = image
        self._image_token += 1
        self._drop_mask()

    def _drop_mask(self) -> None:
        self._mask = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _mask_key(self) -> MaskKey:
        return self._image_token, self._config.transform

    def _current_mask(self) -> Optional[SegmentationMask]:
        if self._mask is not None and self._mask.transform == self._config.transform:
            return self._mask
        return None

    def _request_mask_if_needed(self) -> None:
        if self._config.segmentation.remove_background:
            self._request_mask()

    def _request_mask(self) -> None:
        if self._original is None:
            return
        if self._segmenter is None or not self.mask_available:
            logger.warning("Segmentation model unavailable; mask-based background removal disabled.")
            return

        key = self._mask_key()
        image = apply_transform(self._original, key[1])
        if self._pending is not None:
            self._pending.cancel()
        fut = self._segmenter.request_mask(image)
        self._pending = fut
        fut.add_done_callback(partial(self._on_mask_future, key))

    def _on_mask_future(self, key: MaskKey, fut: Future) -> None:
        delivery = partial(self._deliver_mask, key, fut)
        if self._dispatch is not None:
            self._dispatch(delivery)
        elif threading.get_ident() == self._owner:
            delivery()
        else:
            self._inbox.append(delivery)

    def _mask_from(self, key: MaskKey, fut: Future) -> SegmentationMask:
        """The delivered mask, or MaskUnavailable if the model failed or the geometry is off."""
        exc = fut.exception()
        if exc is not None:
            raise MaskUnavailable(f"Segmentation model failed: {exc}") from exc
        values = np.asarray(fut.result())
        expected = output_size(self._original.width, self._original.height, key[1].rotate_deg)
        if values.ndim != 2 or (values.shape[1], values.shape[0]) != expected:
            raise MaskUnavailable(f"Mask shape {values.shape} does not match image {expected[0]}x{expected[1]}")
        return SegmentationMask(values, transform=key[1])

    def _deliver_mask(self, key: MaskKey, fut: Future) -> None:
        if fut.cancelled():
            return
        if key != self._mask_key() or not self._config.segmentation.remove_background:
            logger.info("Discarding stale segmentation mask for image token %d", key[0])
            return
        current = fut is self._pending
        if current:
            self._pending = None
        elif fut.exception() is not None:
            logger.info("Ignoring failure of superseded segmentation request: %s", fut.exception())
            return

        try:
            self._mask = self._mask_from(key, fut)
        except MaskUnavailable as e:
            if fut.exception() is not None:
                self.mask_available = False
            self._mask = None
            logger.warning("%s", e)
        self.render()
