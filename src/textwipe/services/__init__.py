"""Services for the text removal engine."""

from textwipe.services.detector import (
    BaseDetector,
    DetectionError,
    GeminiDetector,
    StaticDetector,
    create_detector,
)
from textwipe.services.imaging import decode_image, encode_png
from textwipe.services.inpainter import AdaptiveInpainter, InpaintError, adaptive_inpaint
from textwipe.services.mask import dilate_mask, rasterize_regions
from textwipe.services.merger import build_text_boxes, merge_regions

__all__ = [
    "BaseDetector",
    "DetectionError",
    "GeminiDetector",
    "StaticDetector",
    "create_detector",
    "decode_image",
    "encode_png",
    "AdaptiveInpainter",
    "InpaintError",
    "adaptive_inpaint",
    "dilate_mask",
    "rasterize_regions",
    "build_text_boxes",
    "merge_regions",
]
