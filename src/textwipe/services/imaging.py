"""Image decoding and encoding.

Images travel across the public API as base64 strings and are handled
internally as ``(H, W, 3)`` uint8 numpy arrays.
"""

from __future__ import annotations

import base64
import binascii
import io

from loguru import logger
from PIL import Image, UnidentifiedImageError
import numpy as np


class DecodeError(Exception):
    """Raised when input image data cannot be decoded."""
    pass


class EncodeError(Exception):
    """Raised when an image cannot be encoded."""
    pass


def decode_image(data: str | bytes) -> np.ndarray:
    """Decode an image into an RGB array.

    Args:
        data: Base64 string (optionally a ``data:`` URL) or raw image bytes

    Returns:
        Array of shape (height, width, 3), dtype uint8

    Raises:
        DecodeError: If the data is not valid base64 or not a readable image
    """
    if isinstance(data, str):
        payload = data.split(",", 1)[1] if data.startswith("data:") else data
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Base64 decoding failed: {e}") from e
    else:
        raw = data

    try:
        with Image.open(io.BytesIO(raw)) as image:
            rgb = image.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Image parsing failed: {e}") from e

    array = np.array(rgb, dtype=np.uint8)
    logger.debug(f"Decoded image: {array.shape[1]}x{array.shape[0]}")
    return array


def encode_png(array: np.ndarray) -> str:
    """Encode an RGB array as base64 PNG.

    Raises:
        EncodeError: If Pillow fails to write the image
    """
    buffer = io.BytesIO()
    try:
        Image.fromarray(np.ascontiguousarray(array, dtype=np.uint8)).save(buffer, format="PNG")
    except (ValueError, OSError) as e:
        raise EncodeError(f"Image encoding failed: {e}") from e
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def to_base64(data: str | bytes) -> str:
    """Return image data as a base64 string, encoding raw bytes if needed."""
    if isinstance(data, bytes):
        return base64.b64encode(data).decode("ascii")
    return data
