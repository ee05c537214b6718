from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .config import MASK_SENTINEL
from .contracts import TransformConfig


def _frozen(arr: np.ndarray) -> np.ndarray:
    view = arr.view()
    view.flags.writeable = False
    return view


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """
    RGBA uint8 raster, shape (H, W, 4), row-major, origin top-left.

    The wrapped array is a read-only view: stages must allocate their output.
    """

    pixels: np.ndarray

    def __post_init__(self) -> None:
        px = self.pixels
        if px.ndim != 3 or px.shape[2] != 4:
            raise ValueError(f"Expected RGBA buffer (H,W,4), got shape={px.shape}")
        if px.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got dtype={px.dtype}")
        object.__setattr__(self, "pixels", _frozen(px))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def copy(self) -> np.ndarray:
        """Writable copy of the pixels."""
        return self.pixels.copy()

    def flat(self) -> np.ndarray:
        """Flat RGBA byte sequence (length width*height*4)."""
        return self.pixels.reshape(-1)

    @classmethod
    def blank(cls, width: int, height: int) -> "PixelBuffer":
        return cls(np.zeros((int(height), int(width), 4), dtype=np.uint8))

    @classmethod
    def from_rgb(cls, rgb: np.ndarray, alpha: Optional[np.ndarray] = None) -> "PixelBuffer":
        if rgb.ndim != 3 or rgb.shape[2] != 3:
            raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
        if alpha is None:
            alpha = np.full(rgb.shape[:2], 255, dtype=np.uint8)
        if alpha.shape != rgb.shape[:2]:
            raise ValueError(f"Alpha shape {alpha.shape} does not match RGB {rgb.shape[:2]}")
        return cls(np.dstack([rgb.astype(np.uint8, copy=False), alpha.astype(np.uint8, copy=False)]))


def to_bytes(values: np.ndarray) -> np.ndarray:
    """Store float channel values the way a byte raster does: round, then clamp."""
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


@dataclass(frozen=True, eq=False)
class SegmentationMask:
    """
    Per-pixel subject mask aligned 1:1 with the post-transform image.

    `transform` is the geometric transform the mask was computed under; the
    orchestrator only hands the mask to the segmentation stage while that
    transform is current.
    """

    values: np.ndarray
    transform: TransformConfig = field(default_factory=TransformConfig)

    def __post_init__(self) -> None:
        if self.values.ndim != 2:
            raise ValueError(f"Expected 2D mask, got shape={self.values.shape}")
        object.__setattr__(self, "values", _frozen(self.values))

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    def fits(self, buf: PixelBuffer) -> bool:
        return (self.width, self.height) == (buf.width, buf.height)

    def subject(self) -> np.ndarray:
        """Boolean (H, W) subject map."""
        return self.values == MASK_SENTINEL
