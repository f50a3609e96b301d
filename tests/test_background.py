"""Test background sampling and classification."""
from __future__ import annotations

import numpy as np

from textwipe.config import InpaintConfig
from textwipe.domain.models import GradientBackground, SolidBackground
from textwipe.services.background import (
    WHITE,
    analyze,
    analyze_background,
    collect_border_samples,
    median_color,
)


class TestBorderSamples:
    """Test the ring collected around a mask."""

    def test_ring_excludes_mask(self):
        image = np.zeros((40, 40, 3), dtype=np.uint8)
        image[15:25, 15:25] = (255, 0, 0)
        mask = np.zeros((40, 40), dtype=bool)
        mask[15:25, 15:25] = True

        samples = collect_border_samples(image, mask, border_width=3)

        assert len(samples) > 0
        assert not (samples == (255, 0, 0)).all(axis=1).any()

    def test_empty_mask_has_no_samples(self):
        image = np.zeros((10, 10, 3), dtype=np.uint8)
        samples = collect_border_samples(image, np.zeros((10, 10), dtype=bool))
        assert samples.shape == (0, 3)

    def test_mask_covering_image_has_no_ring(self):
        image = np.zeros((10, 10, 3), dtype=np.uint8)
        samples = collect_border_samples(image, np.ones((10, 10), dtype=bool))
        assert len(samples) == 0


class TestClassification:
    """Test solid versus gradient decisions."""

    def test_no_samples_is_white(self):
        strategy = analyze_background(np.empty((0, 3), dtype=np.uint8), InpaintConfig())
        assert strategy == SolidBackground(color=WHITE)

    def test_few_samples_are_solid_even_if_noisy(self):
        samples = np.array([[0, 0, 0], [255, 255, 255]] * 4, dtype=np.uint8)

        strategy = analyze_background(samples, InpaintConfig())

        assert isinstance(strategy, SolidBackground)
        assert strategy.color == (255, 255, 255)

    def test_low_variance_is_solid_median(self):
        samples = np.array(
            [[100, 150, 200]] * 20 + [[110, 160, 210]] * 21,
            dtype=np.uint8,
        )

        strategy = analyze_background(samples, InpaintConfig())

        assert strategy == SolidBackground(color=(110, 160, 210))

    def test_high_variance_is_gradient(self):
        samples = np.array([[0, 0, 0], [255, 255, 255]] * 10, dtype=np.uint8)

        strategy = analyze_background(samples, InpaintConfig())

        assert isinstance(strategy, GradientBackground)
        assert strategy.fallback_color == (255, 255, 255)

    def test_threshold_is_configurable(self):
        samples = np.array([[0, 0, 0], [100, 100, 100]] * 10, dtype=np.uint8)

        assert isinstance(analyze_background(samples, InpaintConfig()), SolidBackground)
        assert isinstance(
            analyze_background(samples, InpaintConfig(solid_variance_threshold=1000)),
            GradientBackground,
        )

    def test_median_is_upper_median(self):
        samples = np.array([[1, 10, 100], [2, 20, 200], [3, 30, 30], [4, 40, 40]], dtype=np.uint8)
        assert median_color(samples) == (3, 30, 100)


def test_analyze_solid_page(white_page):
    mask = np.zeros(white_page.shape[:2], dtype=bool)
    mask[40:60, 50:150] = True

    strategy = analyze(white_page, mask, InpaintConfig())

    assert strategy == SolidBackground(color=(255, 255, 255))
