from __future__ import annotations

import argparse
import json
import logging
import mimetypes
from pathlib import Path

from dotenv import load_dotenv

from compositor.config import DEFAULT_EXPORT_MIME, EXPORT_BASENAME, EXPORT_FORMATS
from compositor.contracts import EffectConfig
from compositor.pipeline import Compositor


def _parse_size(value: str):
    w, _, h = value.lower().partition("x")
    return w.strip() or None, h.strip() or None


def _output_path(output: Path, mime_type: str) -> Path:
    if output.suffix:
        return output
    ext = mime_type.split("/")[1]
    return output / f"{EXPORT_BASENAME}.{ext}"


def _guess_mime(output: Path, requested: str | None) -> str:
    if requested:
        return requested
    guessed, _ = mimetypes.guess_type(output.name)
    return guessed if guessed in EXPORT_FORMATS else DEFAULT_EXPORT_MIME


def main() -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Render an image through the compositing pipeline.")
    parser.add_argument("--input", required=True, type=str, help="Input image.")
    parser.add_argument("--output", required=True, type=str, help="Output file, or directory for the default name.")
    parser.add_argument("--config", type=str, default=None, help="JSON file with a (partial) effect config.")
    parser.add_argument(
        "--format",
        type=str,
        default=None,
        choices=sorted(EXPORT_FORMATS),
        help="Export MIME type (default: from --output suffix, else image/png).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Segmentation model spec: 'hf:ZhengPeng7/BiRefNet' or a TorchScript file path. "
        "Only loaded when the config enables removeBackground.",
    )
    parser.add_argument("--crop-square", action="store_true", help="Center-crop the input to a square first.")
    parser.add_argument("--resize", type=str, default=None, help="Resize the input first: WxH, Wx or xH.")
    args = parser.parse_args()

    input_path = Path(args.input)
    if not input_path.exists():
        raise FileNotFoundError(f"Input image not found: {input_path}")

    partial_config = {}
    if args.config:
        partial_config = json.loads(Path(args.config).read_text(encoding="utf-8"))

    config = EffectConfig().merged(partial_config)

    segmenter = None
    if config.segmentation.remove_background:
        from compositor.segmenter import MattingSegmenter

        segmenter = MattingSegmenter(args.model)

    compositor = Compositor(segmenter)
    compositor.load_image(input_path.read_bytes())
    if args.crop_square:
        compositor.crop_to_square()
    if args.resize:
        compositor.resize(*_parse_size(args.resize))
    if partial_config:
        compositor.update_config(partial_config)

    out_arg = Path(args.output)
    mime_type = _guess_mime(out_arg, args.format)
    out_path = _output_path(out_arg, mime_type)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(compositor.export_current(mime_type))

    timings = compositor.last_timings
    print(
        f"{input_path.name} -> {out_path}: {compositor.current.width}x{compositor.current.height} "
        f"total={timings.total_s:.3f}s (tr={timings.transform_s:.3f}s seg={timings.segmentation_s:.3f}s "
        f"adj={timings.adjustments_s:.3f}s fil={timings.filters_s:.3f}s)"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
