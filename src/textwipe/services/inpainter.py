"""Adaptive region inpainting.

Each region is rasterized, its background analyzed, a replacement fill
synthesized, and the fill feathered into the running result. Regions are
processed one after another in input order, so later regions sample the
border pixels already rewritten by earlier ones.
"""

from __future__ import annotations

from loguru import logger
import numpy as np

from textwipe.config import InpaintConfig, get_config
from textwipe.domain.models import SolidBackground, TextRegion
from textwipe.services.background import analyze
from textwipe.services.compositor import (
    blend_into,
    choose_dilation_radius,
    feather_mask,
    feather_radius,
)
from textwipe.services.mask import dilate_mask, mask_bbox, rasterize_regions


class InpaintError(Exception):
    """Raised when inpainting fails."""
    pass


def fill_solid(
    base: np.ndarray,
    mask: np.ndarray,
    color: tuple[int, int, int],
) -> np.ndarray:
    """Return a copy of ``base`` with every masked pixel set to ``color``."""
    filled = base.copy()
    filled[mask] = color
    return filled


def _mean_color(
    image: np.ndarray, x0: int, x1: int, y0: int, y1: int
) -> np.ndarray | None:
    """Mean color of the inclusive rectangle, or None when it is empty."""
    if x0 > x1 or y0 > y1:
        return None
    height, width = image.shape[:2]
    x0, x1 = max(x0, 0), min(x1, width - 1)
    y0, y1 = max(y0, 0), min(y1, height - 1)
    if x0 > x1 or y0 > y1:
        return None
    return image[y0:y1 + 1, x0:x1 + 1].reshape(-1, 3).astype(np.float64).mean(axis=0)


def _color_distance(a: np.ndarray | None, b: np.ndarray | None) -> float:
    if a is None or b is None:
        return 0.0
    return float(((a - b) ** 2).sum())


def _interpolate(
    start: np.ndarray, end: np.ndarray, steps: int
) -> np.ndarray:
    """Linear ramps from ``start`` to ``end`` along the last spatial axis.

    Args:
        start: (N, 3) colors at t=0
        end: (N, 3) colors at t=1
        steps: Number of samples per ramp

    Returns:
        uint8 array of shape (N, steps, 3)
    """
    t = np.arange(steps, dtype=np.float64) / max(steps - 1, 1)
    t = np.clip(t, 0.0, 1.0)[np.newaxis, :, np.newaxis]
    ramp = start[:, np.newaxis, :] * (1.0 - t) + end[:, np.newaxis, :] * t
    return np.clip(np.floor(ramp + 0.5), 0, 255).astype(np.uint8)


def fill_gradient(
    base: np.ndarray,
    mask: np.ndarray,
    fallback_color: tuple[int, int, int],
    pad: int = 5,
    threshold: float = 100.0,
) -> np.ndarray:
    """Synthesize a gradient fill for the masked area.

    The average colors of four strips just outside the mask's bounding box
    decide the direction: left/right differences interpolate each row,
    top/bottom differences interpolate each column, and otherwise the
    fallback color is used uniformly.

    Args:
        base: Current RGB image
        mask: Boolean mask of pixels to fill
        fallback_color: Color used when a strip has no pixels
        pad: Strip width in pixels
        threshold: Minimum squared color distance to interpolate

    Returns:
        Copy of ``base`` with the masked pixels replaced
    """
    filled = base.copy()
    bbox = mask_bbox(mask)
    if bbox is None:
        return filled

    height, width = base.shape[:2]
    x_min, x_max, y_min, y_max = bbox
    x_min_ext = max(x_min - pad, 0)
    x_max_ext = min(x_max + pad, width - 1)
    y_min_ext = max(y_min - pad, 0)
    y_max_ext = min(y_max + pad, height - 1)

    left_avg = _mean_color(base, x_min_ext, x_min - 1, y_min, y_max)
    right_avg = _mean_color(base, x_max + 1, x_max_ext, y_min, y_max)
    top_avg = _mean_color(base, x_min, x_max, y_min_ext, y_min - 1)
    bottom_avg = _mean_color(base, x_min, x_max, y_max + 1, y_max_ext)

    h_variance = _color_distance(left_avg, right_avg)
    v_variance = _color_distance(top_avg, bottom_avg)
    fallback = np.array(fallback_color, dtype=np.float64)

    rows = slice(y_min, y_max + 1)
    cols = slice(x_min, x_max + 1)
    region_mask = mask[rows, cols]

    if h_variance > v_variance and h_variance > threshold:
        starts, ends = [], []
        for y in range(y_min, y_max + 1):
            left = _mean_color(base, x_min_ext, x_min - 1, y, y)
            right = _mean_color(base, x_max + 1, x_max_ext, y, y)
            starts.append(left if left is not None else (left_avg if left_avg is not None else fallback))
            ends.append(right if right is not None else (right_avg if right_avg is not None else fallback))
        ramp = _interpolate(np.array(starts), np.array(ends), x_max - x_min + 1)
        logger.debug(f"Horizontal gradient fill, variance {h_variance:.1f}")
    elif v_variance > threshold:
        starts, ends = [], []
        for x in range(x_min, x_max + 1):
            top = _mean_color(base, x, x, y_min_ext, y_min - 1)
            bottom = _mean_color(base, x, x, y_max + 1, y_max_ext)
            starts.append(top if top is not None else (top_avg if top_avg is not None else fallback))
            ends.append(bottom if bottom is not None else (bottom_avg if bottom_avg is not None else fallback))
        # Ramps run down each column; transpose to (rows, cols, 3).
        ramp = _interpolate(np.array(starts), np.array(ends), y_max - y_min + 1).transpose(1, 0, 2)
        logger.debug(f"Vertical gradient fill, variance {v_variance:.1f}")
    else:
        filled[mask] = fallback_color
        return filled

    window = filled[rows, cols]
    window[region_mask] = ramp[region_mask]
    return filled


class AdaptiveInpainter:
    """Removes text regions by compositing synthesized background fills.

    The running image is threaded explicitly through :meth:`inpaint_region`;
    the input array is never modified.
    """

    def __init__(self, config: InpaintConfig | None = None):
        """Initialize the inpainter.

        Args:
            config: Inpaint configuration
        """
        self.config = config or get_config().inpaint

    def inpaint(self, image: np.ndarray, regions: list[TextRegion]) -> np.ndarray:
        """Inpaint all regions in order.

        Args:
            image: RGB array (H, W, 3), uint8
            regions: Regions to remove

        Returns:
            New RGB array with the regions filled

        Raises:
            InpaintError: If the image is malformed or a region step fails
        """
        if image.ndim != 3 or image.shape[2] != 3:
            raise InpaintError(f"Expected an RGB image, got shape {image.shape}")

        result = image.copy()
        for index, region in enumerate(regions):
            try:
                result = self.inpaint_region(result, region)
            except Exception as e:
                raise InpaintError(f"Failed to inpaint region {index} ({region.label!r}): {e}") from e

        logger.debug(f"Inpainted {len(regions)} text regions")
        return result

    def inpaint_region(self, current: np.ndarray, region: TextRegion) -> np.ndarray:
        """Composite one region's fill onto ``current`` and return the result."""
        height, width = current.shape[:2]
        base_mask = rasterize_regions([region], width, height, 0)
        bbox = mask_bbox(base_mask)
        if bbox is None:
            logger.debug(f"Region {region.label!r} covers no pixels, skipping")
            return current

        _, _, min_y, max_y = bbox
        area = int(base_mask.sum())
        mask_height = max_y - min_y + 1

        strategy = analyze(current, base_mask, self.config)
        dilation = choose_dilation_radius(mask_height, area)
        region_mask = dilate_mask(base_mask, dilation)
        alpha = feather_mask(region_mask, feather_radius(dilation))

        if isinstance(strategy, SolidBackground):
            filled = fill_solid(current, region_mask, strategy.color)
        else:
            filled = fill_gradient(
                current,
                region_mask,
                strategy.fallback_color,
                pad=self.config.gradient_pad,
                threshold=self.config.gradient_threshold,
            )

        logger.debug(
            f"Region {region.label!r}: {strategy.kind} background, "
            f"area {area}, dilation {dilation}"
        )
        return blend_into(current, filled, alpha, self.config.alpha_epsilon)


def adaptive_inpaint(
    image: np.ndarray,
    regions: list[TextRegion],
    config: InpaintConfig | None = None,
) -> np.ndarray:
    """Inpaint ``regions`` in ``image`` with a default-configured inpainter."""
    return AdaptiveInpainter(config).inpaint(image, regions)
