"""Domain models for the text removal engine.

Region coordinates use the integer 0-1000 normalized space for resolution
independence; they are only converted to pixels when a mask is rasterized
or a text box is laid out.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NORMALIZED_SCALE = 1000


class InvalidTransitionError(Exception):
    """Raised when a page task is moved to a state it cannot reach."""
    pass


class TextRegion(BaseModel):
    """A detected text region.

    The box is ``[ymin, xmin, ymax, xmax]`` and the polygon a list of
    ``[y, x]`` vertices, both normalized to 0-1000.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    box: tuple[int, int, int, int] = Field(..., alias="box_2d")
    label: str = Field(default="", description="Detected text or a description")
    polygon: list[list[int]] = Field(default_factory=list)

    @property
    def ymin(self) -> int:
        return self.box[0]

    @property
    def xmin(self) -> int:
        return self.box[1]

    @property
    def ymax(self) -> int:
        return self.box[2]

    @property
    def xmax(self) -> int:
        return self.box[3]

    @property
    def height(self) -> int:
        return self.ymax - self.ymin

    def usable_polygon(self) -> list[tuple[int, int]]:
        """Return the ``(y, x)`` vertices that carry both coordinates."""
        return [(p[0], p[1]) for p in self.polygon if len(p) >= 2]

    def has_polygon(self) -> bool:
        """Whether the polygon has enough vertices to be rasterized."""
        return len(self.usable_polygon()) >= 3


class TextStyle(BaseModel):
    """Style hints for one region, keyed by its index in the region list."""

    index: int = Field(..., ge=0)
    color_hex: str = Field(default="#333333")
    font_size: float = Field(default=24, description="Font size in points")
    is_bold: bool = False


class SolidBackground(BaseModel):
    """Background that is filled with a single color."""

    kind: Literal["solid"] = "solid"
    color: tuple[int, int, int]


class GradientBackground(BaseModel):
    """Background that is synthesized from its border strips."""

    kind: Literal["gradient"] = "gradient"
    fallback_color: tuple[int, int, int]


BackgroundStrategy = Annotated[
    Union[SolidBackground, GradientBackground], Field(discriminator="kind")
]


class MergedTextBlock(BaseModel):
    """A group of adjacent regions forming one multi-line text block."""

    indices: list[int]
    lines: list[str]
    box: tuple[int, int, int, int]
    primary_index: int

    @property
    def text(self) -> str:
        """Member labels joined top to bottom."""
        return "\n".join(self.lines)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        """Serialize with camelCase keys for the UI."""
        return self.model_dump(by_alias=True)


class TextBox(_CamelModel):
    """Editable text-box metadata in pixel space."""

    x: float
    y: float
    width: float
    height: float
    text: str
    font_size: float
    color: str
    bold: bool = False


class PageInput(_CamelModel):
    """One page of a batch."""

    page_index: int = Field(..., ge=0)
    image_data: str = Field(..., description="Base64 encoded image")


class PageStatus(str, Enum):
    """Status reported in progress events."""

    DETECTING = "detecting"
    INPAINTING = "inpainting"
    COMPLETED = "completed"
    ERROR = "error"


class PageState(str, Enum):
    """Lifecycle state of a page task."""

    QUEUED = "queued"
    DETECTING = "detecting"
    INPAINTING = "inpainting"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[PageState, frozenset[PageState]] = {
    PageState.QUEUED: frozenset({PageState.DETECTING, PageState.CANCELLED}),
    PageState.DETECTING: frozenset({
        PageState.INPAINTING,
        PageState.COMPLETED,
        PageState.ERRORED,
        PageState.CANCELLED,
    }),
    PageState.INPAINTING: frozenset({
        PageState.COMPLETED,
        PageState.ERRORED,
        PageState.CANCELLED,
    }),
    PageState.COMPLETED: frozenset(),
    PageState.ERRORED: frozenset(),
    PageState.CANCELLED: frozenset(),
}


class PageTask(BaseModel):
    """State machine for one page within one batch run."""

    page_index: int
    state: PageState = PageState.QUEUED
    region_count: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def can_advance(self, state: PageState) -> bool:
        return state in _TRANSITIONS[self.state]

    def advance(self, state: PageState) -> None:
        """Move to ``state``.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if not self.can_advance(state):
            raise InvalidTransitionError(
                f"Page {self.page_index}: cannot go from {self.state.value} to {state.value}"
            )
        self.state = state


class PageProgressEvent(_CamelModel):
    """Per-page progress event."""

    page_index: int
    status: PageStatus
    error: str | None = None
    background_image: str | None = None
    region_count: int | None = None


class BatchCompleteEvent(_CamelModel):
    """Summary emitted once every page task has terminated."""

    success: bool
    total_processed: int
    total_success: int
    total_errors: int


BatchEvent = Union[PageProgressEvent, BatchCompleteEvent]


class DetectionResult(_CamelModel):
    """Result of the detection-only entry point."""

    success: bool
    regions: list[TextRegion] = Field(default_factory=list)
    raw_text: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, regions: list[TextRegion], raw_text: str | None = None) -> DetectionResult:
        """Create a successful result."""
        return cls(success=True, regions=regions, raw_text=raw_text)

    @classmethod
    def fail(cls, error: str) -> DetectionResult:
        """Create a failed result."""
        return cls(success=False, error=error)


class InpaintResult(_CamelModel):
    """Result of the inpainting-only entry point."""

    success: bool
    background_image: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, background_image: str) -> InpaintResult:
        """Create a successful result."""
        return cls(success=True, background_image=background_image)

    @classmethod
    def fail(cls, error: str) -> InpaintResult:
        """Create a failed result."""
        return cls(success=False, error=error)


class TextRemovalResult(_CamelModel):
    """Result of the full single-image pipeline."""

    success: bool
    background_image: str | None = None
    text_boxes: list[TextBox] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def ok(cls, background_image: str, text_boxes: list[TextBox] | None = None) -> TextRemovalResult:
        """Create a successful result."""
        return cls(success=True, background_image=background_image, text_boxes=text_boxes or [])

    @classmethod
    def fail(cls, error: str, text_boxes: list[TextBox] | None = None) -> TextRemovalResult:
        """Create a failed result."""
        return cls(success=False, error=error, text_boxes=text_boxes or [])


class BatchAccepted(BaseModel):
    """Soft acknowledgement returned by batch commands."""

    success: bool = True
    message: str = ""
