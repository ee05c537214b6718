from __future__ import annotations

import math
import re
from typing import Any, Dict, Literal, Mapping, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .config import ROTATIONS
from .errors import InvalidConfig

_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def hex_to_rgb(color: str) -> Tuple[int, int, int]:
    """'#RRGGBB' -> (r, g, b)."""
    m = _HEX_RE.match(color.strip())
    if not m:
        raise ValueError(f"Invalid hex color: {color!r}")
    digits = m.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def _clamp(v: float, lo: float, hi: float = math.inf) -> float:
    return max(lo, min(hi, v))


class _Snapshot(BaseModel):
    """
    Frozen config block.

    Fields accept both snake_case names and camelCase aliases
    (`blur_radius` / `blurRadius`). Out-of-range numbers are clamped,
    not rejected.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
    )


class _Colored(_Snapshot):
    color: str

    @field_validator("color")
    @classmethod
    def _normalize_color(cls, v: str) -> str:
        r, g, b = hex_to_rgb(v)
        return f"#{r:02X}{g:02X}{b:02X}"

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return hex_to_rgb(self.color)


class Adjustments(_Snapshot):
    brightness: float = 100.0
    contrast: float = 100.0
    saturation: float = 100.0
    hue: float = 0.0  # degrees
    blur_radius: float = 0.0

    @field_validator("brightness", "contrast", "saturation", "blur_radius")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        return _clamp(v, 0.0)


class ColorOverlay(_Colored):
    enabled: bool = False
    color: str = "#000000"
    intensity: float = 0.0

    @field_validator("intensity")
    @classmethod
    def _unit(cls, v: float) -> float:
        return _clamp(v, 0.0, 1.0)


class BackgroundColorRemoval(_Colored):
    enabled: bool = False
    color: str = "#FFFFFF"
    tolerance: float = 50.0

    @field_validator("tolerance")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        return _clamp(v, 0.0)


class HighlightSubject(_Colored):
    enabled: bool = False
    intensity: float = 0.5
    color: str = "#4F46E5"

    @field_validator("intensity")
    @classmethod
    def _unit(cls, v: float) -> float:
        return _clamp(v, 0.0, 1.0)


class OutlineSubject(_Colored):
    enabled: bool = False
    thickness_px: int = 3
    color: str = "#FFFFFF"

    @field_validator("thickness_px")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, v)


class DimBackground(_Snapshot):
    enabled: bool = False
    intensity: float = 0.5

    @field_validator("intensity")
    @classmethod
    def _unit(cls, v: float) -> float:
        return _clamp(v, 0.0, 1.0)


class BlurBackground(_Snapshot):
    enabled: bool = False
    radius_px: float = 5.0

    @field_validator("radius_px")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        return _clamp(v, 0.0)


class SegmentationConfig(_Snapshot):
    remove_background: bool = False
    background_color_removal: BackgroundColorRemoval = Field(default_factory=BackgroundColorRemoval)
    grayscale_mode: Literal["none", "bg_gray", "subject_gray"] = "none"
    highlight_subject: HighlightSubject = Field(default_factory=HighlightSubject)
    outline_subject: OutlineSubject = Field(default_factory=OutlineSubject)
    dim_background: DimBackground = Field(default_factory=DimBackground)
    blur_background: BlurBackground = Field(default_factory=BlurBackground)

    def is_active(self) -> bool:
        """True if any segmentation effect is switched on."""
        return (
            self.remove_background
            or self.background_color_removal.enabled
            or self.grayscale_mode != "none"
            or self.highlight_subject.enabled
            or self.outline_subject.enabled
            or self.dim_background.enabled
            or self.blur_background.enabled
        )


class TransformConfig(_Snapshot):
    flip_h: bool = False
    flip_v: bool = False
    rotate_deg: int = 0

    @field_validator("rotate_deg")
    @classmethod
    def _quarter_turn(cls, v: int) -> int:
        v = v % 360
        if v not in ROTATIONS:
            raise ValueError(f"rotate_deg must be a multiple of 90, got {v}")
        return v

    def is_identity(self) -> bool:
        return not self.flip_h and not self.flip_v and self.rotate_deg == 0


class EffectConfig(_Snapshot):
    """Immutable per-render snapshot of every user-controlled parameter."""

    adjustments: Adjustments = Field(default_factory=Adjustments)
    filter: Literal["none", "grayscale", "invert", "sepia", "glow"] = "none"
    opacity: float = 100.0
    color_overlay: ColorOverlay = Field(default_factory=ColorOverlay)
    segmentation: SegmentationConfig = Field(default_factory=SegmentationConfig)
    transform: TransformConfig = Field(default_factory=TransformConfig)

    @field_validator("opacity")
    @classmethod
    def _percent(cls, v: float) -> float:
        return _clamp(v, 0.0, 100.0)

    def merged(self, partial: Mapping[str, Any]) -> "EffectConfig":
        """
        Return a new snapshot with `partial` deep-merged over this one.

        Raises InvalidConfig for unknown keys, unknown enum values or
        malformed colors; the current snapshot is never modified.
        """
        base = self.model_dump()
        try:
            _deep_merge(base, _normalize_keys(type(self), partial))
            return type(self).model_validate(base)
        except (ValidationError, ValueError, TypeError) as e:
            raise InvalidConfig(str(e)) from e


def _field_lookup(model: Type[BaseModel]) -> Dict[str, str]:
    lookup: Dict[str, str] = {}
    for name, info in model.model_fields.items():
        lookup[name] = name
        if info.alias:
            lookup[info.alias] = name
    return lookup


def _normalize_keys(model: Type[BaseModel], data: Mapping[str, Any]) -> Dict[str, Any]:
    """Rewrite camelCase aliases to field names, recursing into nested blocks."""
    if not isinstance(data, Mapping):
        raise TypeError(f"Expected a mapping for {model.__name__}, got {type(data).__name__}")
    lookup = _field_lookup(model)
    out: Dict[str, Any] = {}
    for key, value in data.items():
        name = lookup.get(key)
        if name is None:
            raise ValueError(f"Unknown {model.__name__} field: {key!r}")
        sub = model.model_fields[name].annotation
        if isinstance(value, Mapping) and isinstance(sub, type) and issubclass(sub, BaseModel):
            value = _normalize_keys(sub, value)
        out[name] = value
    return out


def _deep_merge(base: Dict[str, Any], partial: Mapping[str, Any]) -> None:
    for key, value in partial.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
