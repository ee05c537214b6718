from __future__ import annotations


class InvalidConfig(ValueError):
    """Config update that cannot be clamped into range (unknown enum, bad color)."""


class DecodeFailure(ValueError):
    """Uploaded bytes are not a decodable image."""


class MaskUnavailable(RuntimeError):
    """Segmentation model failed, or its mask does not fit the image."""
