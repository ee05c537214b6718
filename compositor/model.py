from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Tuple

import torch

from .config import MODEL_SPEC

# Checked in order; CPU always works.
_DEVICE_PREFERENCE = ("mps", "cuda")
_HUB_PREFIX = "hf:"
_SHORTHANDS = {"birefnet": MODEL_SPEC}


@dataclass(frozen=True)
class ModelSpec:
    """Where the matting network comes from: a Hub repo or a TorchScript file."""

    kind: str  # "hub" | "torchscript"
    source: str


def parse_model_spec(spec: str) -> ModelSpec:
    """
    Accepted forms:
      - "hf:<owner>/<repo>"  Hugging Face BiRefNet-class repo
      - "birefnet"           shorthand for the default repo
      - anything else        path to a TorchScript archive
    """
    spec = _SHORTHANDS.get(spec.strip().lower(), spec.strip())
    if not spec:
        raise ValueError("Empty model spec")
    if spec.startswith(_HUB_PREFIX):
        return ModelSpec("hub", spec[len(_HUB_PREFIX) :])
    return ModelSpec("torchscript", spec)


def get_device() -> torch.device:
    for name in _DEVICE_PREFERENCE:
        backend = torch.backends.mps if name == "mps" else torch.cuda
        if backend.is_available():
            return torch.device(name)
    return torch.device("cpu")


def _prepare_for_inference(model: torch.nn.Module, device: torch.device) -> torch.nn.Module:
    """eval mode, frozen float32 weights, moved to `device`."""
    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)
    return model.to(dtype=torch.float32).to(device)


def load_torchscript_matting_model(model_path: str, device: torch.device | None = None) -> torch.nn.Module:
    """
    Load a matting network saved with torch.jit.save (any extension).

    Plain state_dict checkpoints carry no architecture and are rejected.
    """
    device = device or get_device()
    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    try:
        # Registers torchvision::deform_conv2d and friends for jit.load.
        import torchvision  # noqa: F401

        # CPU first: float64 attributes in some archives cannot go to MPS directly.
        model = torch.jit.load(model_path, map_location="cpu")
    except Exception as e:  # noqa: BLE001 - re-raised with a usable message
        raise RuntimeError(
            f"Could not load {model_path} as TorchScript. "
            "Export state_dict checkpoints with torch.jit.save() first."
        ) from e
    return _prepare_for_inference(model, device)


def load_birefnet_hf(hf_repo: str, device: torch.device | None = None) -> torch.nn.Module:
    """
    BiRefNet (or a compatible repo) through transformers' remote code.

    low_cpu_mem_usage stays off: the remote model calls `.item()` while
    building, which fails on meta tensors.
    """
    device = device or get_device()
    try:
        from transformers import AutoModelForImageSegmentation
    except ImportError as e:
        raise RuntimeError("Loading Hub models requires transformers: pip install transformers") from e

    model = AutoModelForImageSegmentation.from_pretrained(
        hf_repo,
        trust_remote_code=True,
        low_cpu_mem_usage=False,
        device_map=None,
    )
    return _prepare_for_inference(model, device)


def load_model(spec: str) -> Tuple[torch.nn.Module, torch.device]:
    parsed = parse_model_spec(spec)
    device = get_device()
    if parsed.kind == "hub":
        model = load_birefnet_hf(parsed.source, device=device)
    else:
        model = load_torchscript_matting_model(parsed.source, device=device)
    return model, device


def forward_model(model: torch.nn.Module, x: torch.Tensor) -> Any:
    with torch.inference_mode():
        return model(x)
