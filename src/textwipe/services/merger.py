"""Region merging and style assignment.

Groups raw line-level detections into multi-line text blocks and lays them
out as editable text boxes with a font size, color and weight.
"""

from __future__ import annotations

import math
import re

from loguru import logger
import numpy as np

from textwipe.config import MergeConfig, get_config
from textwipe.domain.models import (
    NORMALIZED_SCALE,
    MergedTextBlock,
    TextBox,
    TextRegion,
    TextStyle,
)
from textwipe.services.compositor import round_color

HEX_PATTERN = re.compile(r"^#?([0-9a-fA-F]{6})$")
POINTS_TO_PIXELS = 96.0 / 72.0


class UnionFind:
    """Disjoint-set forest with path compression and union by size."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.size = [1] * size

    def find(self, item: int) -> int:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        # Compress the path walked above.
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: int, b: int) -> bool:
        """Join the sets of ``a`` and ``b``; returns False if already joined."""
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.size[root_a] < self.size[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        self.size[root_a] += self.size[root_b]
        return True

    def groups(self) -> dict[int, list[int]]:
        """Members of every set keyed by root, each list in ascending order."""
        result: dict[int, list[int]] = {}
        for item in range(len(self.parent)):
            result.setdefault(self.find(item), []).append(item)
        return result


def horizontal_iou(a: TextRegion, b: TextRegion) -> float:
    """Intersection over union of the two regions' x-spans."""
    intersection = min(a.xmax, b.xmax) - max(a.xmin, b.xmin)
    union = max(a.xmax, b.xmax) - min(a.xmin, b.xmin)
    if intersection <= 0 or union <= 0:
        return 0.0
    return intersection / union


def regions_adjacent(
    a: TextRegion,
    b: TextRegion,
    config: MergeConfig | None = None,
) -> bool:
    """Whether two regions read as consecutive lines of the same block.

    The regions must overlap horizontally (or share a left edge) and the
    lower one must start within one line height below the upper one. A
    small overlap is tolerated.
    """
    config = config or get_config().merge

    aligned = (
        horizontal_iou(a, b) >= config.iou_threshold
        or abs(a.xmin - b.xmin) <= config.left_align_tolerance
    )
    if not aligned:
        return False

    upper, lower = (a, b) if a.ymin <= b.ymin else (b, a)
    gap = lower.ymin - upper.ymax
    max_height = max(a.height, b.height)
    return config.min_gap_ratio * max_height <= gap <= config.max_gap_ratio * max_height


def merge_regions(
    regions: list[TextRegion],
    config: MergeConfig | None = None,
) -> list[MergedTextBlock]:
    """Group regions into text blocks.

    Every region lands in exactly one block. Blocks are ordered top to
    bottom, then left to right.
    """
    config = config or get_config().merge
    forest = UnionFind(len(regions))

    for i in range(len(regions)):
        for j in range(i + 1, len(regions)):
            if regions_adjacent(regions[i], regions[j], config):
                forest.union(i, j)

    blocks = []
    for members in forest.groups().values():
        ordered = sorted(members, key=lambda idx: (regions[idx].ymin, idx))
        box = (
            min(regions[idx].ymin for idx in members),
            min(regions[idx].xmin for idx in members),
            max(regions[idx].ymax for idx in members),
            max(regions[idx].xmax for idx in members),
        )
        blocks.append(
            MergedTextBlock(
                indices=ordered,
                lines=[regions[idx].label for idx in ordered],
                box=box,
                primary_index=ordered[0],
            )
        )

    blocks.sort(key=lambda block: (block.box[0], block.box[1]))
    logger.debug(f"Merged {len(regions)} regions into {len(blocks)} blocks")
    return blocks


def normalize_hex(value: str | None) -> str | None:
    """Return ``#RRGGBB`` in upper case, or None if ``value`` is not 6-digit hex."""
    if not value:
        return None
    match = HEX_PATTERN.match(value.strip())
    if match is None:
        return None
    return f"#{match.group(1).upper()}"


def sample_text_color(
    image: np.ndarray,
    x0: int,
    y0: int,
    x1: int,
    y1: int,
    target_samples: int = 2000,
    default: str = "#333333",
) -> str:
    """Estimate text color as the average of the darkest tenth of pixels.

    Pixels are sampled on a regular grid inside ``[x0, x1) × [y0, y1)``
    with a step chosen so that about ``target_samples`` pixels are read.

    Returns:
        Uppercase ``#RRGGBB`` color
    """
    height, width = image.shape[:2]
    x0, x1 = max(x0, 0), min(x1, width)
    y0, y1 = max(y0, 0), min(y1, height)
    if x1 <= x0 or y1 <= y0:
        return default

    area = (x1 - x0) * (y1 - y0)
    step = max(1, round(math.sqrt(area / target_samples)))
    pixels = image[y0:y1:step, x0:x1:step].reshape(-1, 3).astype(np.float64)

    brightness = pixels @ np.array([0.299, 0.587, 0.114])
    darkest = pixels[np.argsort(brightness, kind="stable")[:max(1, len(pixels) // 10)]]
    r, g, b = round_color(darkest.mean(axis=0))
    return f"#{r:02X}{g:02X}{b:02X}"


def _font_size(style: TextStyle | None, box_height: float, config: MergeConfig) -> float:
    if style is not None and style.font_size > 0:
        size = style.font_size * POINTS_TO_PIXELS
    else:
        size = box_height * config.font_height_ratio
    return min(max(size, config.min_font_size), config.max_font_size)


def build_text_boxes(
    regions: list[TextRegion],
    image: np.ndarray,
    styles: list[TextStyle] | None = None,
    config: MergeConfig | None = None,
) -> list[TextBox]:
    """Merge regions into blocks and lay them out as pixel-space text boxes.

    Args:
        regions: Detected regions
        image: Source RGB image, used to sample text color
        styles: Optional style hints keyed by region index
        config: Merge configuration

    Returns:
        One TextBox per merged block
    """
    config = config or get_config().merge
    height, width = image.shape[:2]
    style_map = {style.index: style for style in styles or []}

    boxes = []
    for block in merge_regions(regions, config):
        ymin, xmin, ymax, xmax = block.box
        x = xmin / NORMALIZED_SCALE * width
        y = ymin / NORMALIZED_SCALE * height
        box_width = (xmax - xmin) / NORMALIZED_SCALE * width
        box_height = (ymax - ymin) / NORMALIZED_SCALE * height

        style = style_map.get(block.primary_index)
        color = normalize_hex(style.color_hex) if style else None
        if color is None:
            color = sample_text_color(
                image,
                int(x),
                int(y),
                int(math.ceil(x + box_width)),
                int(math.ceil(y + box_height)),
                target_samples=config.color_sample_target,
                default=config.default_color,
            )

        boxes.append(
            TextBox(
                x=x,
                y=y,
                width=box_width,
                height=box_height,
                text=block.text,
                font_size=_font_size(style, box_height, config),
                color=color,
                bold=style.is_bold if style else False,
            )
        )

    return boxes
