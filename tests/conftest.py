"""Shared fixtures for the textwipe test suite."""
from __future__ import annotations

import base64
import io

import numpy as np
import pytest
from PIL import Image

from textwipe.config import AppConfig, DetectionConfig, reset_config


def png_base64(array: np.ndarray) -> str:
    """Encode an RGB array as base64 PNG."""
    buffer = io.BytesIO()
    Image.fromarray(array.astype(np.uint8)).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def solid_image(width: int, height: int, color=(255, 255, 255)) -> np.ndarray:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :] = color
    return image


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Isolate tests from the environment and the global config."""
    for name in ("TEXTWIPE_DETECT_API_KEY", "TEXTWIPE_LOG_LEVEL", "TEXTWIPE_DEBUG"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def app_config() -> AppConfig:
    """Configuration with instant retries and a dummy API key."""
    config = AppConfig()
    config.detection = DetectionConfig(
        api_key="test-key",
        retry_delay_seconds=0.0,
        base_url="https://gemini.test",
    )
    return config


@pytest.fixture
def white_page() -> np.ndarray:
    """200x100 white page with a black text bar."""
    image = solid_image(200, 100)
    image[40:60, 50:150] = (0, 0, 0)
    return image
