from __future__ import annotations

import cv2
import numpy as np

from .config import KEEP_LARGEST_COMPONENT, MASK_SENTINEL, MASK_THRESHOLD
from .preprocess import Letterbox


def restore_mask_to_original(matte_sq: np.ndarray, box: Letterbox) -> np.ndarray:
    """Cut the image area out of the model square and scale it back to source size."""
    if matte_sq.ndim != 2:
        raise ValueError(f"Expected 2D matte, got shape={matte_sq.shape}")
    inner = matte_sq.astype(np.float32, copy=False)[box.content()]
    if inner.size == 0:
        raise ValueError("Matte crop is empty; letterbox does not match the matte.")
    restored = cv2.resize(inner, (box.orig_w, box.orig_h), interpolation=cv2.INTER_LINEAR)
    return np.clip(restored, 0.0, 1.0)


def largest_connected_component(binary: np.ndarray) -> np.ndarray:
    """Only the biggest 8-connected blob survives; empty or single-blob masks pass through."""
    if binary.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={binary.shape}")
    b = binary.astype(np.uint8)
    n, labels, stats, _ = cv2.connectedComponentsWithStats(b, connectivity=8)
    if n <= 2:
        return b
    # label 0 is background
    biggest = 1 + int(np.argmax(stats[1:, cv2.CC_STAT_AREA]))
    return (labels == biggest).astype(np.uint8)


def binarize_matte(
    matte: np.ndarray,
    threshold: float = MASK_THRESHOLD,
    keep_largest: bool = KEEP_LARGEST_COMPONENT,
) -> np.ndarray:
    """Probability matte -> uint8 mask: MASK_SENTINEL for subject, 0 elsewhere."""
    binary = (matte > float(threshold)).astype(np.uint8)
    if keep_largest:
        binary = largest_connected_component(binary)
    return binary * np.uint8(MASK_SENTINEL)


def postprocess_matte(matte_sq: np.ndarray, box: Letterbox, threshold: float = MASK_THRESHOLD) -> np.ndarray:
    return binarize_matte(restore_mask_to_original(matte_sq, box), threshold=threshold)
