from __future__ import annotations

import io
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps

from .buffers import PixelBuffer, to_bytes
from .config import (
    EXPORT_FORMATS,
    FILTER_NAMES,
    FLATTEN_COLOR,
    GLOW_BLOOM_COLOR,
    GLOW_BLOOM_OPACITY,
    GLOW_BLOOM_RADIUS,
    GLOW_BRIGHTNESS,
    GLOW_CONTRAST,
    GLOW_CONTRAST_PIVOT,
    LUMA_B,
    LUMA_G,
    LUMA_R,
    SEPIA_MATRIX,
)
from .errors import DecodeFailure

Rect = Tuple[float, float, float, float]  # x, y, w, h


class RasterSurface:
    """
    Mutable RGBA drawing target.

    This is the only place pixels are modified in place; stages copy a buffer
    in with write_pixels(), operate, and read a fresh buffer back out.
    """

    def __init__(self, width: int, height: int):
        if width < 0 or height < 0:
            raise ValueError(f"Invalid surface size: {(width, height)}")
        self._px = np.zeros((int(height), int(width), 4), dtype=np.uint8)

    @property
    def width(self) -> int:
        return int(self._px.shape[1])

    @property
    def height(self) -> int:
        return int(self._px.shape[0])

    def read_pixels(self) -> PixelBuffer:
        return PixelBuffer(self._px.copy())

    def write_pixels(self, buf: PixelBuffer) -> None:
        if (buf.width, buf.height) != (self.width, self.height):
            raise ValueError(f"Buffer {buf.size} does not match surface {(self.width, self.height)}")
        self._px = buf.copy()

    def draw_image(
        self,
        image: PixelBuffer,
        src_rect: Optional[Rect] = None,
        dst_rect: Optional[Rect] = None,
        transform: Optional[np.ndarray] = None,
    ) -> None:
        """
        Draw `image` with canvas semantics (source-over).

        src_rect crops the image, dst_rect places and scales the crop, and
        `transform` (2x3 affine in continuous pixel coordinates) is applied
        on top, like a context transform.
        """
        src = image.pixels
        if src_rect is not None:
            sx, sy, sw, sh = (int(v) for v in src_rect)
            src = src[max(0, sy) : sy + sh, max(0, sx) : sx + sw]
        sh, sw = src.shape[:2]
        if sw == 0 or sh == 0 or self.width == 0 or self.height == 0:
            return

        dx, dy, dw, dh = dst_rect if dst_rect is not None else (0.0, 0.0, float(sw), float(sh))
        placement = np.array(
            [[dw / sw, 0.0, dx], [0.0, dh / sh, dy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )
        ctm = np.vstack([transform, [0.0, 0.0, 1.0]]) if transform is not None else np.eye(3)
        matrix = ctm @ placement

        if _is_plain_scale(matrix):
            drawn = self._place_scaled(src, matrix)
        else:
            drawn = self._warp(src, matrix)

        if not self._px[..., 3].any():
            self._px = drawn
        else:
            self._px = composite_over(drawn, self._px)

    def _place_scaled(self, src: np.ndarray, matrix: np.ndarray) -> np.ndarray:
        sh, sw = src.shape[:2]
        out_w = int(round(sw * matrix[0, 0]))
        out_h = int(round(sh * matrix[1, 1]))
        x0 = int(round(matrix[0, 2]))
        y0 = int(round(matrix[1, 2]))
        if (out_w, out_h) != (sw, sh):
            interp = cv2.INTER_AREA if out_w * out_h < sw * sh else cv2.INTER_CUBIC
            src = _resize_premultiplied(src, (out_w, out_h), interp)

        canvas = np.zeros_like(self._px)
        cx0, cy0 = max(0, x0), max(0, y0)
        cx1, cy1 = min(self.width, x0 + out_w), min(self.height, y0 + out_h)
        if cx1 > cx0 and cy1 > cy0:
            canvas[cy0:cy1, cx0:cx1] = src[cy0 - y0 : cy1 - y0, cx0 - x0 : cx1 - x0]
        return canvas

    def _warp(self, src: np.ndarray, matrix: np.ndarray) -> np.ndarray:
        # Canvas pixel centers sit at +0.5; OpenCV's at integer coordinates.
        half = np.array([[1.0, 0.0, 0.5], [0.0, 1.0, 0.5], [0.0, 0.0, 1.0]])
        unhalf = np.array([[1.0, 0.0, -0.5], [0.0, 1.0, -0.5], [0.0, 0.0, 1.0]])
        m = (unhalf @ matrix @ half)[:2]
        exact = np.allclose(m[:, :2], np.rint(m[:, :2])) and np.allclose(m[:, 2], np.rint(m[:, 2]))
        if exact:
            m = np.rint(m)
        return cv2.warpAffine(
            src,
            m,
            (self.width, self.height),
            flags=cv2.INTER_NEAREST if exact else cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0, 0),
        )

    def apply_blur(self, radius_px: float) -> None:
        if radius_px <= 0:
            return
        self._px = gaussian_blur(self._px, radius_px)

    def apply_named_filter(self, name: str) -> None:
        if name not in FILTER_NAMES:
            raise ValueError(f"Unknown filter: {name!r}")
        if name == "none":
            return
        f = self._px.astype(np.float32)
        rgb, alpha = f[..., :3], f[..., 3]
        if name == "grayscale":
            luma = rgb[..., 0] * LUMA_R + rgb[..., 1] * LUMA_G + rgb[..., 2] * LUMA_B
            rgb = np.repeat(luma[..., None], 3, axis=2)
        elif name == "invert":
            rgb = 255.0 - rgb
        elif name == "sepia":
            rgb = rgb @ np.asarray(SEPIA_MATRIX, dtype=np.float32).T
        elif name == "glow":
            self._px = _glow(rgb, alpha)
            return
        self._px = np.dstack([to_bytes(rgb), self._px[..., 3]])

    def export_encoded(self, mime_type: str) -> bytes:
        fmt = EXPORT_FORMATS.get(mime_type)
        if fmt is None:
            raise ValueError(f"Unsupported export type: {mime_type!r} (expected one of {sorted(EXPORT_FORMATS)})")
        img = Image.fromarray(self._px)
        if fmt == "JPEG":
            bg = Image.new("RGBA", img.size, (*FLATTEN_COLOR, 255))
            img = Image.alpha_composite(bg, img).convert("RGB")
        buf = io.BytesIO()
        img.save(buf, format=fmt)
        return buf.getvalue()


def _is_plain_scale(matrix: np.ndarray) -> bool:
    return matrix[0, 0] > 0 and matrix[1, 1] > 0 and matrix[0, 1] == 0 and matrix[1, 0] == 0


def _premultiply(px: np.ndarray) -> np.ndarray:
    f = px.astype(np.float32)
    return np.concatenate([f[..., :3] * (f[..., 3:4] / 255.0), f[..., 3:4]], axis=2)


def _unpremultiply(prem: np.ndarray) -> np.ndarray:
    out_a = np.clip(prem[..., 3:4], 0.0, 255.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        rgb = np.where(out_a > 0, prem[..., :3] * 255.0 / np.maximum(out_a, 1e-6), 0.0)
    return np.dstack([to_bytes(rgb), to_bytes(out_a[..., 0])])


def _resize_premultiplied(px: np.ndarray, size: Tuple[int, int], interpolation: int) -> np.ndarray:
    """Resize RGBA without dragging the color of transparent pixels into visible edges."""
    return _unpremultiply(cv2.resize(_premultiply(px), size, interpolation=interpolation))


def gaussian_blur(px: np.ndarray, radius_px: float) -> np.ndarray:
    """
    CSS blur(): Gaussian with sigma = radius, on premultiplied color so
    transparent pixels do not bleed their (meaningless) RGB into neighbors.
    """
    prem = _premultiply(px)
    return _unpremultiply(cv2.GaussianBlur(prem, (0, 0), sigmaX=float(radius_px), sigmaY=float(radius_px)))


def composite_over(top: np.ndarray, bottom: np.ndarray) -> np.ndarray:
    """Porter-Duff source-over on straight-alpha RGBA uint8 arrays."""
    t = top.astype(np.float32)
    b = bottom.astype(np.float32)
    ta = t[..., 3:4] / 255.0
    ba = b[..., 3:4] / 255.0
    out_a = ta + ba * (1.0 - ta)
    num = t[..., :3] * ta + b[..., :3] * ba * (1.0 - ta)
    with np.errstate(divide="ignore", invalid="ignore"):
        rgb = np.where(out_a > 0, num / np.maximum(out_a, 1e-6), 0.0)
    return np.dstack([to_bytes(rgb), to_bytes(out_a[..., 0] * 255.0)])


def _glow(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    # Each filter primitive clamps its output before the next one runs.
    rgb = np.clip(rgb * GLOW_BRIGHTNESS, 0.0, 255.0)
    rgb = np.clip((rgb - GLOW_CONTRAST_PIVOT) * GLOW_CONTRAST + GLOW_CONTRAST_PIVOT, 0.0, 255.0)
    boosted = np.dstack([to_bytes(rgb), alpha.astype(np.uint8)])

    # drop-shadow blur radius is twice the Gaussian sigma.
    halo = cv2.GaussianBlur(np.ascontiguousarray(alpha), (0, 0), sigmaX=GLOW_BLOOM_RADIUS / 2.0, sigmaY=GLOW_BLOOM_RADIUS / 2.0)
    bloom = np.zeros_like(boosted)
    bloom[..., :3] = GLOW_BLOOM_COLOR
    bloom[..., 3] = to_bytes(halo * GLOW_BLOOM_OPACITY)
    return composite_over(boosted, bloom)


def create_surface(width: int, height: int) -> RasterSurface:
    return RasterSurface(width, height)


def draw_image_into(
    surface: RasterSurface,
    image: PixelBuffer,
    src_rect: Optional[Rect] = None,
    dst_rect: Optional[Rect] = None,
    transform: Optional[np.ndarray] = None,
) -> None:
    surface.draw_image(image, src_rect=src_rect, dst_rect=dst_rect, transform=transform)


def read_pixels(surface: RasterSurface) -> PixelBuffer:
    return surface.read_pixels()


def write_pixels(surface: RasterSurface, buf: PixelBuffer) -> None:
    surface.write_pixels(buf)


def apply_blur(surface: RasterSurface, radius_px: float) -> None:
    surface.apply_blur(radius_px)


def apply_named_filter(surface: RasterSurface, name: str) -> None:
    surface.apply_named_filter(name)


def export_encoded(surface: RasterSurface, mime_type: str) -> bytes:
    return surface.export_encoded(mime_type)


def surface_from(buf: PixelBuffer) -> RasterSurface:
    surface = RasterSurface(buf.width, buf.height)
    surface.write_pixels(buf)
    return surface


def decode_image(data: bytes) -> PixelBuffer:
    """
    Decode uploaded bytes into an RGBA buffer (EXIF orientation applied).
    """
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        img = ImageOps.exif_transpose(img)
        rgba = img.convert("RGBA")
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise DecodeFailure(f"Could not decode image: {e}") from e
    arr = np.array(rgba, dtype=np.uint8)
    if arr.ndim != 3 or arr.shape[2] != 4:
        raise DecodeFailure(f"Unexpected decoded shape: {arr.shape}")
    return PixelBuffer(arr)


def encode_image(buf: PixelBuffer, mime_type: str) -> bytes:
    return surface_from(buf).export_encoded(mime_type)


def blur_buffer(buf: PixelBuffer, radius_px: float) -> PixelBuffer:
    surface = surface_from(buf)
    surface.apply_blur(radius_px)
    return surface.read_pixels()


def compose(*matrices: Sequence[Sequence[float]]) -> np.ndarray:
    """Compose 2x3 affines left to right, like successive context calls."""
    out = np.eye(3)
    for m in matrices:
        out = out @ np.vstack([np.asarray(m, dtype=np.float64), [0.0, 0.0, 1.0]])
    return out[:2]
