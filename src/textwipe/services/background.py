"""Background analysis.

Samples a ring of pixels around a mask and decides whether the hidden
background is a solid color or needs a synthesized gradient.
"""

from __future__ import annotations

from loguru import logger
import numpy as np

from textwipe.config import InpaintConfig, get_config
from textwipe.domain.models import BackgroundStrategy, GradientBackground, SolidBackground
from textwipe.services.mask import dilate_mask

WHITE = (255, 255, 255)


def collect_border_samples(
    image: np.ndarray,
    mask: np.ndarray,
    border_width: int = 8,
) -> np.ndarray:
    """Collect the colors of the ring around a mask.

    Args:
        image: RGB array (H, W, 3)
        mask: Boolean mask (H, W)
        border_width: Ring width in pixels

    Returns:
        Array of shape (N, 3) with the ring pixel colors
    """
    if not mask.any():
        return np.empty((0, 3), dtype=np.uint8)

    ring = dilate_mask(mask, border_width) & ~mask
    return image[ring]


def median_color(samples: np.ndarray) -> tuple[int, int, int]:
    """Per-channel upper median of the samples."""
    ordered = np.sort(samples, axis=0)
    mid = ordered[len(ordered) // 2]
    return int(mid[0]), int(mid[1]), int(mid[2])


def analyze_background(
    samples: np.ndarray,
    config: InpaintConfig | None = None,
) -> BackgroundStrategy:
    """Classify border samples as a solid or gradient background.

    Args:
        samples: Border colors of shape (N, 3)
        config: Inpaint configuration

    Returns:
        SolidBackground or GradientBackground
    """
    config = config or get_config().inpaint

    if len(samples) == 0:
        return SolidBackground(color=WHITE)

    median = median_color(samples)
    if len(samples) < config.min_samples:
        return SolidBackground(color=median)

    variance = float(samples.astype(np.float64).var(axis=0).mean())
    logger.debug(f"Border samples: {len(samples)}, average variance {variance:.1f}")

    if variance < config.solid_variance_threshold:
        return SolidBackground(color=median)
    return GradientBackground(fallback_color=median)


def analyze(
    image: np.ndarray,
    mask: np.ndarray,
    config: InpaintConfig | None = None,
) -> BackgroundStrategy:
    """Sample the border of ``mask`` in ``image`` and classify it."""
    config = config or get_config().inpaint
    samples = collect_border_samples(image, mask, config.border_width)
    return analyze_background(samples, config)
