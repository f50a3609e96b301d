"""Local text removal: model-based text detection and adaptive inpainting."""

__version__ = "0.1.0"
