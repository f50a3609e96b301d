"""Domain models for the text removal engine."""

from textwipe.domain.models import (
    BackgroundStrategy,
    BatchAccepted,
    BatchCompleteEvent,
    BatchEvent,
    DetectionResult,
    GradientBackground,
    InpaintResult,
    InvalidTransitionError,
    MergedTextBlock,
    PageInput,
    PageProgressEvent,
    PageState,
    PageStatus,
    PageTask,
    SolidBackground,
    TextBox,
    TextRegion,
    TextRemovalResult,
    TextStyle,
)

__all__ = [
    "TextRegion",
    "TextStyle",
    "SolidBackground",
    "GradientBackground",
    "BackgroundStrategy",
    "MergedTextBlock",
    "TextBox",
    "PageInput",
    "PageStatus",
    "PageState",
    "PageTask",
    "InvalidTransitionError",
    "PageProgressEvent",
    "BatchCompleteEvent",
    "BatchEvent",
    "DetectionResult",
    "InpaintResult",
    "TextRemovalResult",
    "BatchAccepted",
]
