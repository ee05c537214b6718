from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Tuple

import cv2
import numpy as np

from .buffers import PixelBuffer, SegmentationMask, to_bytes
from .contracts import SegmentationConfig
from .surface import blur_buffer

logger = logging.getLogger(__name__)


class SubjectRule(str, Enum):
    MASK = "mask"
    COLOR_DISTANCE = "color_distance"
    EVERYTHING = "everything"


class BackgroundTreatment(str, Enum):
    REMOVE = "remove"
    GRAYSCALE = "grayscale"
    DIM = "dim"
    BLUR = "blur"
    KEEP = "keep"


def usable_mask(buf: PixelBuffer, mask: Optional[SegmentationMask]) -> Optional[SegmentationMask]:
    """
    Return the mask if it lines up with the buffer, else None.

    A mask of the wrong geometry is treated as missing (fail soft).
    """
    if mask is None:
        return None
    if not mask.fits(buf):
        logger.warning(
            "Ignoring segmentation mask: mask %dx%d does not match image %dx%d",
            mask.width,
            mask.height,
            buf.width,
            buf.height,
        )
        return None
    return mask


def select_subject_rule(seg: SegmentationConfig, mask: Optional[SegmentationMask]) -> SubjectRule:
    if seg.remove_background and mask is not None:
        return SubjectRule.MASK
    if seg.background_color_removal.enabled:
        return SubjectRule.COLOR_DISTANCE
    return SubjectRule.EVERYTHING


def select_background_treatment(seg: SegmentationConfig) -> BackgroundTreatment:
    """First matching rule wins."""
    rules = (
        (BackgroundTreatment.REMOVE, seg.remove_background or seg.background_color_removal.enabled),
        (BackgroundTreatment.GRAYSCALE, seg.grayscale_mode == "bg_gray"),
        (BackgroundTreatment.DIM, seg.dim_background.enabled and seg.dim_background.intensity > 0),
        (BackgroundTreatment.BLUR, seg.blur_background.enabled and seg.blur_background.radius_px > 0),
    )
    for treatment, applies in rules:
        if applies:
            return treatment
    return BackgroundTreatment.KEEP


def classify_subject(
    buf: PixelBuffer,
    seg: SegmentationConfig,
    mask: Optional[SegmentationMask] = None,
) -> Tuple[np.ndarray, SubjectRule]:
    """
    Boolean (H, W) subject map plus the rule that produced it.
    """
    mask = usable_mask(buf, mask)
    rule = select_subject_rule(seg, mask)
    if rule is SubjectRule.MASK:
        return mask.subject(), rule
    if rule is SubjectRule.COLOR_DISTANCE:
        target = np.asarray(seg.background_color_removal.rgb, dtype=np.float64)
        diff = buf.rgb.astype(np.float64) - target
        dist = np.sqrt((diff * diff).sum(axis=2))
        return dist > seg.background_color_removal.tolerance, rule
    return np.ones((buf.height, buf.width), dtype=bool), rule


def find_outline(subject: np.ndarray, thickness: int) -> np.ndarray:
    """
    Subject pixels with at least one non-subject (or out-of-bounds) pixel in
    the (2t+1)x(2t+1) window around them.

    Works on the subject map only, so painting never feeds back into the
    classification.
    """
    t = int(thickness)
    if t <= 0 or not subject.any():
        return np.zeros_like(subject, dtype=bool)
    padded = np.pad(subject.astype(np.uint8), t, mode="constant", constant_values=0)
    kernel = np.ones((2 * t + 1, 2 * t + 1), np.uint8)
    interior = cv2.erode(padded, kernel, iterations=1)[t:-t, t:-t].astype(bool)
    return subject & ~interior


def _unweighted_gray(rgb: np.ndarray) -> np.ndarray:
    avg = to_bytes(rgb.astype(np.float64).sum(axis=2) / 3.0)
    return np.repeat(avg[..., None], 3, axis=2)


def subject_pixels(buf: PixelBuffer, seg: SegmentationConfig) -> np.ndarray:
    rgb = buf.rgb
    if seg.grayscale_mode == "subject_gray":
        rgb = _unweighted_gray(rgb)
    tint = seg.highlight_subject
    if tint.enabled and tint.intensity > 0:
        color = np.asarray(tint.rgb, dtype=np.float64)
        rgb = to_bytes(rgb.astype(np.float64) * (1.0 - tint.intensity) + color * tint.intensity)
    return np.dstack([rgb, buf.alpha])


def background_pixels(buf: PixelBuffer, seg: SegmentationConfig, treatment: BackgroundTreatment) -> np.ndarray:
    if treatment is BackgroundTreatment.REMOVE:
        return np.zeros_like(buf.pixels)
    if treatment is BackgroundTreatment.GRAYSCALE:
        return np.dstack([_unweighted_gray(buf.rgb), buf.alpha])
    if treatment is BackgroundTreatment.DIM:
        factor = 1.0 - seg.dim_background.intensity
        return np.dstack([to_bytes(buf.rgb.astype(np.float64) * factor), buf.alpha])
    if treatment is BackgroundTreatment.BLUR:
        return blur_buffer(buf, seg.blur_background.radius_px).copy()
    return buf.copy()


def apply_segmentation(
    buf: PixelBuffer,
    seg: SegmentationConfig,
    mask: Optional[SegmentationMask] = None,
) -> PixelBuffer:
    """
    Split pixels into subject/background, treat each side, then paint the
    subject outline.

    Expects post-transform, pre-adjustment pixels. Every output pixel is
    written exactly once by either the subject or the background path; the
    outline pass overwrites border pixels afterwards.
    """
    subject, rule = classify_subject(buf, seg, mask)
    treatment = select_background_treatment(seg)
    logger.debug("segmentation: rule=%s background=%s subject_px=%d", rule.value, treatment.value, int(subject.sum()))

    fg = subject_pixels(buf, seg)
    bg = background_pixels(buf, seg, treatment) if not subject.all() else fg
    out = np.where(subject[..., None], fg, bg).astype(np.uint8)

    outline = seg.outline_subject
    if outline.enabled and outline.thickness_px > 0 and subject.any():
        border = find_outline(subject, outline.thickness_px)
        out[border] = (*outline.rgb, 255)

    return PixelBuffer(out)
