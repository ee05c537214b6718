from __future__ import annotations

from typing import Any, Iterator, Mapping

import numpy as np
import torch
import torch.nn.functional as F

from .model import forward_model

_PREFERRED_KEYS = ("logits", "pred", "alpha", "mask")


def _tensors_by_preference(output: Any) -> Iterator[torch.Tensor]:
    """
    Candidate matte tensors, best first.

    Sequences are multi-stage outputs, so the final stage comes first.
    Mappings (including transformers' ModelOutput) prefer well-known keys.
    """
    if isinstance(output, torch.Tensor):
        yield output
    elif isinstance(output, Mapping):
        for key in _PREFERRED_KEYS:
            if isinstance(output.get(key), torch.Tensor):
                yield output[key]
        yield from (v for v in output.values() if isinstance(v, torch.Tensor))
    elif isinstance(output, (list, tuple)):
        for item in reversed(output):
            yield from _tensors_by_preference(item)


def primary_output(output: Any) -> torch.Tensor:
    for tensor in _tensors_by_preference(output):
        return tensor
    raise RuntimeError(f"Model output has no tensor payload: {type(output).__name__}")


def _to_plane(y: torch.Tensor) -> torch.Tensor:
    """(1,C,H,W) / (1,H,W) / (H,W) -> (H,W), keeping the first channel."""
    while y.ndim > 2:
        y = y[0]
    if y.ndim != 2:
        raise RuntimeError(f"Unexpected output tensor shape: {tuple(y.shape)}")
    return y


def predict_matte(model: torch.nn.Module, x: torch.Tensor, device: torch.device) -> np.ndarray:
    """
    Logits -> float32 probability matte in [0, 1], same spatial size as `x`.
    """
    if x.ndim != 4 or x.shape[0] != 1:
        raise ValueError(f"Expected input tensor (1,3,H,W), got {tuple(x.shape)}")
    size = tuple(x.shape[-2:])

    logits = _to_plane(primary_output(forward_model(model, x.float().to(device)))).float()
    if tuple(logits.shape) != size:
        logits = F.interpolate(logits[None, None], size=size, mode="bilinear", align_corners=False)[0, 0]

    matte = torch.sigmoid(logits)
    if torch.isnan(matte).any():
        raise RuntimeError("NaNs detected in predicted matte.")
    return matte.clamp(0.0, 1.0).cpu().numpy().astype(np.float32, copy=False)
