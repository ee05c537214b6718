from __future__ import annotations

import logging
import os
from concurrent.futures import Executor, Future
from typing import Optional, Protocol

import numpy as np

from .buffers import PixelBuffer
from .config import MASK_THRESHOLD, MODEL_SPEC, TARGET_SIZE
from .inference import predict_matte
from .model import load_model
from .postprocess import postprocess_matte
from .preprocess import buffer_to_rgb, normalize, resize_with_padding

logger = logging.getLogger(__name__)


class SegmentationModel(Protocol):
    def request_mask(self, image: PixelBuffer) -> "Future[np.ndarray]":
        """Deliver a (H, W) sentinel mask for `image` asynchronously."""
        ...


def _get_model_spec() -> str:
    return os.getenv("COMPOSITOR_MODEL", MODEL_SPEC)


def _get_mask_threshold() -> float:
    try:
        return float(os.getenv("COMPOSITOR_MASK_THRESHOLD", str(MASK_THRESHOLD)))
    except ValueError:
        return MASK_THRESHOLD


class MattingSegmenter:
    """
    Segmentation model backed by a local matting network.

    The network is loaded on first use and reused for the life of the object.
    Without an executor, request_mask() runs inline and returns a completed
    future.
    """

    def __init__(
        self,
        model_spec: Optional[str] = None,
        *,
        threshold: Optional[float] = None,
        executor: Optional[Executor] = None,
        target_size: int = TARGET_SIZE,
    ):
        self.model_spec = model_spec or _get_model_spec()
        self.threshold = _get_mask_threshold() if threshold is None else float(threshold)
        self.target_size = int(target_size)
        self._executor = executor
        self._model = None
        self._device = None

    def _ensure_model(self):
        if self._model is None:
            logger.info("Loading segmentation model %s", self.model_spec)
            self._model, self._device = load_model(self.model_spec)
        return self._model, self._device

    def predict(self, image: PixelBuffer) -> np.ndarray:
        """
        Linear path:
          1) flatten alpha, resize + pad to the model square
          2) normalize
          3) inference
          4) restore to image size + binarize
        """
        model, device = self._ensure_model()
        padded, meta = resize_with_padding(buffer_to_rgb(image), self.target_size)
        matte = predict_matte(model, normalize(padded), device)
        return postprocess_matte(matte, meta, threshold=self.threshold)

    def request_mask(self, image: PixelBuffer) -> "Future[np.ndarray]":
        if self._executor is not None:
            return self._executor.submit(self.predict, image)

        fut: Future = Future()
        fut.set_running_or_notify_cancel()
        try:
            fut.set_result(self.predict(image))
        except Exception as e:  # noqa: BLE001 - delivered through the future
            fut.set_exception(e)
        return fut
