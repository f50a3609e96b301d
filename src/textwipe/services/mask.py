"""Mask rasterization.

Turns normalized text regions into pixel-accurate boolean masks and grows
masks with a disk-shaped structuring element.
"""

from __future__ import annotations

import numpy as np

from textwipe.domain.models import NORMALIZED_SCALE, TextRegion


def to_pixel(value: int, size: int) -> int:
    """Scale a 0-1000 normalized coordinate to pixels."""
    return value * size // NORMALIZED_SCALE


def rasterize_regions(
    regions: list[TextRegion],
    width: int,
    height: int,
    dilation: int = 0,
) -> np.ndarray:
    """Rasterize regions into one mask.

    Regions with a usable polygon are scanline-filled; the others fall back
    to their box. Masks of all regions are combined by union.

    Args:
        regions: Regions to rasterize
        width: Image width in pixels
        height: Image height in pixels
        dilation: Disk dilation radius applied to the combined mask

    Returns:
        Boolean array of shape (height, width)
    """
    mask = np.zeros((height, width), dtype=bool)

    for region in regions:
        if region.has_polygon():
            points = [
                (to_pixel(x, width), to_pixel(y, height))
                for y, x in region.usable_polygon()
            ]
            fill_polygon(mask, points)
            continue

        ymin, xmin, ymax, xmax = region.box
        x0 = max(to_pixel(xmin, width), 0)
        y0 = max(to_pixel(ymin, height), 0)
        x1 = min(to_pixel(xmax, width), width)
        y1 = min(to_pixel(ymax, height), height)
        if x1 > x0 and y1 > y0:
            mask[y0:y1, x0:x1] = True

    if dilation > 0:
        return dilate_mask(mask, dilation)
    return mask


def fill_polygon(mask: np.ndarray, points: list[tuple[int, int]]) -> None:
    """Fill a polygon given as (x, y) pixel vertices into ``mask`` in place.

    A horizontal scanline fill is followed by drawing every edge, so thin
    shapes that fall between scanlines are still marked.
    """
    if not points:
        return

    height, width = mask.shape
    min_y = max(min(p[1] for p in points), 0)
    max_y = min(max(p[1] for p in points), height - 1)
    count = len(points)

    for y in range(min_y, max_y + 1):
        intersections = []
        for i in range(count):
            x1, y1 = points[i]
            x2, y2 = points[(i + 1) % count]
            if (y1 <= y < y2) or (y2 <= y < y1):
                intersections.append(edge_intersection(x1, y1, x2, y2, y))

        intersections.sort()
        for start, end in zip(intersections[0::2], intersections[1::2]):
            x_start = max(start, 0)
            x_end = min(end, width - 1)
            if x_start <= x_end:
                mask[y, x_start:x_end + 1] = True

    for i in range(count):
        x1, y1 = points[i]
        x2, y2 = points[(i + 1) % count]
        draw_line(mask, x1, y1, x2, y2)


def edge_intersection(x1: int, y1: int, x2: int, y2: int, y: int) -> int:
    """Column where the edge (x1, y1)-(x2, y2) crosses scanline ``y``.

    Only the slope offset is truncated toward zero, never the sum.
    """
    return x1 + int((y - y1) * (x2 - x1) / (y2 - y1))


def draw_line(mask: np.ndarray, x1: int, y1: int, x2: int, y2: int) -> None:
    """Draw a line with Bresenham's algorithm, skipping out-of-bounds pixels."""
    height, width = mask.shape

    dx = abs(x2 - x1)
    dy = -abs(y2 - y1)
    sx = 1 if x1 < x2 else -1
    sy = 1 if y1 < y2 else -1
    err = dx + dy

    x, y = x1, y1
    while True:
        if 0 <= x < width and 0 <= y < height:
            mask[y, x] = True

        if x == x2 and y == y2:
            break

        e2 = 2 * err
        if e2 >= dy:
            err += dy
            x += sx
        if e2 <= dx:
            err += dx
            y += sy


def disk_offsets(radius: int) -> list[tuple[int, int]]:
    """All integer (dx, dy) offsets with dx² + dy² <= radius²."""
    r2 = radius * radius
    return [
        (dx, dy)
        for dy in range(-radius, radius + 1)
        for dx in range(-radius, radius + 1)
        if dx * dx + dy * dy <= r2
    ]


def dilate_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """Grow a mask by a disk of the given radius.

    Every set pixel marks all of its in-bounds disk neighbours. Radius 0
    returns a copy of the input.
    """
    if radius <= 0:
        return mask.copy()

    height, width = mask.shape
    out = np.zeros_like(mask, dtype=bool)

    # Shifting the whole mask once per offset marks the same pixels as
    # visiting each set pixel.
    for dx, dy in disk_offsets(radius):
        if abs(dx) >= width or abs(dy) >= height:
            continue
        out[max(dy, 0):height + min(dy, 0), max(dx, 0):width + min(dx, 0)] |= mask[
            max(-dy, 0):height - max(dy, 0), max(-dx, 0):width - max(dx, 0)
        ]

    return out


def mask_bbox(mask: np.ndarray) -> tuple[int, int, int, int] | None:
    """Inclusive bounding box ``(min_x, max_x, min_y, max_y)`` of a mask."""
    ys, xs = np.nonzero(mask)
    if ys.size == 0:
        return None
    return int(xs.min()), int(xs.max()), int(ys.min()), int(ys.max())
