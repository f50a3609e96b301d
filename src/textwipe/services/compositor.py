"""Blend compositing.

Feathers binary masks into soft alpha maps with a separable Gaussian blur
and alpha-blends a fill image into the running result.
"""

from __future__ import annotations

import math

import numpy as np


def choose_dilation_radius(mask_height: int, area: int) -> int:
    """Pick the dilation radius for a region from its mask geometry.

    Short masks (single text lines) get a fixed radius from their height;
    taller masks are sized by pixel area.
    """
    if mask_height <= 18:
        return 4
    if mask_height <= 28:
        return 3
    if area < 1000:
        return 3
    if area < 5000:
        return 4
    return 6


def feather_radius(dilation: int) -> int:
    return max(1, dilation // 2)


def gaussian_kernel(radius: int) -> np.ndarray:
    """1-D Gaussian kernel with ``2 * radius + 1`` taps, normalized to sum 1."""
    sigma = max(radius / 2.0, 0.5)
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    kernel = np.exp(-(offsets * offsets) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def feather_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """Blur a binary mask into a continuous alpha map in [0, 1].

    The blur runs horizontally then vertically; pixels beyond the image
    edge take the value of the nearest edge pixel. Radius 0 returns the
    mask as 0.0/1.0 without softening.
    """
    alpha = mask.astype(np.float64)
    if radius <= 0:
        return alpha

    height, width = alpha.shape
    kernel = gaussian_kernel(radius)

    padded = np.pad(alpha, ((0, 0), (radius, radius)), mode="edge")
    horizontal = np.zeros_like(alpha)
    for k, weight in enumerate(kernel):
        horizontal += weight * padded[:, k:k + width]

    padded = np.pad(horizontal, ((radius, radius), (0, 0)), mode="edge")
    vertical = np.zeros_like(alpha)
    for k, weight in enumerate(kernel):
        vertical += weight * padded[k:k + height, :]

    return np.clip(vertical, 0.0, 1.0)


def blend_into(
    current: np.ndarray,
    fill: np.ndarray,
    alpha: np.ndarray,
    epsilon: float = 0.001,
) -> np.ndarray:
    """Composite ``fill`` over ``current`` with a per-pixel alpha.

    Computes ``fill * a + current * (1 - a)`` per channel, rounded half up
    and clamped to 0-255. Pixels with alpha at or below ``epsilon`` keep
    their current value.

    Returns:
        New uint8 array; ``current`` is left untouched
    """
    a = np.clip(alpha, 0.0, 1.0)[..., np.newaxis]
    blended = fill.astype(np.float64) * a + current.astype(np.float64) * (1.0 - a)
    blended = np.clip(np.floor(blended + 0.5), 0, 255).astype(np.uint8)

    active = (a > epsilon)
    return np.where(active, blended, current)


def round_color(values) -> tuple[int, int, int]:
    """Round an RGB triple half up and clamp it to 0-255."""
    return tuple(min(255, max(0, int(math.floor(v + 0.5)))) for v in values)
