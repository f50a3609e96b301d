"""Configuration management using pydantic-settings.

All thresholds of the detection protocol, the inpainter and the region
merger are centralized here. Configuration can be loaded from environment
variables or .env files.
"""

import sys
from typing import Literal

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DetectionConfig(BaseSettings):
    """Configuration for the Gemini text detector."""

    model_config = SettingsConfigDict(env_prefix="TEXTWIPE_DETECT_")

    base_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Base URL of the Gemini API",
    )
    api_key: str | None = Field(
        default=None,
        description="Gemini API key",
    )
    model: str = Field(
        default="gemini-2.5-flash",
        description="Gemini model used for detection and style extraction",
    )
    timeout_seconds: float = Field(
        default=120.0,
        ge=1.0,
        description="Timeout for a single API call",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        description="Number of attempts for the free-form detection round",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Fixed backoff between detection attempts",
    )
    thinking_level: Literal["low", "high"] | None = Field(
        default="high",
        description="Thinking level requested for the free-form round",
    )
    style_label_chars: int = Field(
        default=40,
        ge=1,
        description="Characters of each label listed in the style prompt",
    )


class InpaintConfig(BaseSettings):
    """Configuration for background analysis and inpainting."""

    model_config = SettingsConfigDict(env_prefix="TEXTWIPE_INPAINT_")

    border_width: int = Field(
        default=8,
        ge=1,
        description="Width of the ring sampled around each mask",
    )
    min_samples: int = Field(
        default=10,
        ge=1,
        description="Below this many border samples the median is used as-is",
    )
    solid_variance_threshold: float = Field(
        default=5000.0,
        ge=0.0,
        description="Average channel variance below which the background is solid",
    )
    gradient_pad: int = Field(
        default=5,
        ge=1,
        description="Width of the border strips used for gradient synthesis",
    )
    gradient_threshold: float = Field(
        default=100.0,
        ge=0.0,
        description="Squared color distance needed to interpolate along an axis",
    )
    alpha_epsilon: float = Field(
        default=0.001,
        ge=0.0,
        le=1.0,
        description="Alpha values at or below this leave the pixel untouched",
    )


class MergeConfig(BaseSettings):
    """Configuration for merging regions into editable text boxes."""

    model_config = SettingsConfigDict(env_prefix="TEXTWIPE_MERGE_")

    iou_threshold: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Minimum horizontal IoU for two lines to be adjacent",
    )
    left_align_tolerance: int = Field(
        default=30,
        ge=0,
        description="Maximum left-edge difference (normalized units) for aligned lines",
    )
    min_gap_ratio: float = Field(
        default=-0.3,
        le=0.0,
        description="Smallest vertical gap allowed, as a ratio of line height",
    )
    max_gap_ratio: float = Field(
        default=1.0,
        ge=0.0,
        description="Largest vertical gap allowed, as a ratio of line height",
    )
    font_height_ratio: float = Field(
        default=0.7,
        gt=0.0,
        description="Font size estimate as a ratio of box height",
    )
    min_font_size: float = Field(
        default=8.0,
        ge=1.0,
        description="Minimum font size in pixels",
    )
    max_font_size: float = Field(
        default=160.0,
        ge=8.0,
        description="Maximum font size in pixels",
    )
    color_sample_target: int = Field(
        default=2000,
        ge=1,
        description="Approximate number of pixels sampled for text color",
    )
    default_color: str = Field(
        default="#333333",
        description="Text color used when nothing can be sampled",
    )


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TEXTWIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Nested configurations
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    inpaint: InpaintConfig = Field(default_factory=InpaintConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)


# Global configuration instance
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get the global configuration instance.

    Returns:
        AppConfig instance (creates one if not exists)
    """
    global _config
    if _config is None:
        _config = AppConfig()
    return _config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config
    _config = None


def configure_logging(config: AppConfig | None = None) -> None:
    """Route loguru output to stderr at the configured level."""
    config = config or get_config()
    level = "DEBUG" if config.debug else config.log_level
    logger.remove()
    logger.add(sys.stderr, level=level)
