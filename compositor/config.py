"""
Centralized configuration constants for the compositing pipeline.

Ground rules:
- Pixel buffers are RGBA uint8, (H, W, 4), row-major, origin top-left.
- Every stage returns a new buffer.
"""

# Rec. 709 luma weights, shared by saturation, hue rotation and the grayscale filter.
LUMA_R = 0.2126
LUMA_G = 0.7152
LUMA_B = 0.0722

# Value a segmentation mask uses for "subject".
MASK_SENTINEL = 1

# Contrast pivot in byte space.
CONTRAST_PIVOT = 128.0

SEPIA_MATRIX = [
    [0.393, 0.769, 0.189],
    [0.349, 0.686, 0.168],
    [0.272, 0.534, 0.131],
]

# Glow = brightness(150%) contrast(120%) + white drop-shadow bloom.
GLOW_BRIGHTNESS = 1.5
GLOW_CONTRAST = 1.2
# CSS contrast() pivots on 0.5, i.e. 127.5 in byte space; the adjustment stage uses CONTRAST_PIVOT.
GLOW_CONTRAST_PIVOT = 127.5
GLOW_BLOOM_RADIUS = 8
GLOW_BLOOM_OPACITY = 0.7
GLOW_BLOOM_COLOR = (255, 255, 255)

FILTER_NAMES = ("none", "grayscale", "invert", "sepia", "glow")
GRAYSCALE_MODES = ("none", "bg_gray", "subject_gray")
ROTATIONS = (0, 90, 180, 270)

DEFAULT_EXPORT_MIME = "image/png"
EXPORT_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/webp": "WEBP",
}
EXPORT_BASENAME = "nebula_edited_image"
# JPEG has no alpha; transparent pixels are flattened onto this color.
FLATTEN_COLOR = (255, 255, 255)

# Segmentation model (BiRefNet-class matting network).
# NOTE: BiRefNet internally splits into patches; this size must be divisible by
# its patching grid.
MODEL_SPEC = "hf:ZhengPeng7/BiRefNet"
TARGET_SIZE = 1024
PAD_COLOR = 127
MASK_THRESHOLD = 0.5

IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]

# Drop mask blobs that are not the dominant subject. Set to False to keep all.
KEEP_LARGEST_COMPONENT = True
