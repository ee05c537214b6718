from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np
import torch

from .buffers import PixelBuffer, to_bytes
from .config import IMAGENET_MEAN, IMAGENET_STD, PAD_COLOR, TARGET_SIZE

_MEAN = np.asarray(IMAGENET_MEAN, dtype=np.float32)
_STD = np.asarray(IMAGENET_STD, dtype=np.float32)


@dataclass(frozen=True)
class Letterbox:
    """Where the scaled image sits inside the model's square input."""

    orig_w: int
    orig_h: int
    inner_w: int
    inner_h: int
    x_offset: int
    y_offset: int
    side: int = TARGET_SIZE

    def content(self) -> Tuple[slice, slice]:
        """(rows, cols) slices of the image area inside the square."""
        return (
            slice(self.y_offset, self.y_offset + self.inner_h),
            slice(self.x_offset, self.x_offset + self.inner_w),
        )


def buffer_to_rgb(buf: PixelBuffer) -> np.ndarray:
    """RGB uint8 (H, W, 3); transparent areas become the pad gray."""
    a = buf.alpha.astype(np.float32)[..., None] / 255.0
    return to_bytes(buf.rgb.astype(np.float32) * a + float(PAD_COLOR) * (1.0 - a))


def resize_with_padding(img: np.ndarray, target_size: int = TARGET_SIZE) -> Tuple[np.ndarray, Letterbox]:
    """
    Scale the longest side to `target_size` (up or down) and center the
    result on a pad-gray square.
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={img.shape}")
    h, w = img.shape[:2]
    if h <= 0 or w <= 0:
        raise ValueError(f"Invalid image size: {(h, w)}")

    scale = target_size / float(max(h, w))
    inner_w = max(1, int(round(w * scale)))
    inner_h = max(1, int(round(h * scale)))
    box = Letterbox(
        orig_w=w,
        orig_h=h,
        inner_w=inner_w,
        inner_h=inner_h,
        x_offset=(target_size - inner_w) // 2,
        y_offset=(target_size - inner_h) // 2,
        side=target_size,
    )

    interp = cv2.INTER_AREA if scale < 1 else cv2.INTER_CUBIC
    square = np.full((target_size, target_size, 3), PAD_COLOR, dtype=np.uint8)
    square[box.content()] = cv2.resize(img, (inner_w, inner_h), interpolation=interp)
    return square, box


def normalize(img: np.ndarray) -> torch.Tensor:
    """uint8 RGB square (S, S, 3) -> ImageNet-normalized float32 tensor (1, 3, S, S)."""
    if img.ndim != 3 or img.shape[2] != 3 or img.shape[0] != img.shape[1]:
        raise ValueError(f"Expected square RGB image (S,S,3), got {img.shape}")
    x = (img.astype(np.float32) / 255.0 - _MEAN) / _STD
    return torch.from_numpy(np.ascontiguousarray(x.transpose(2, 0, 1)))[None].float()
