"""Text detection through a vision-language model.

Detection runs in two rounds against the Gemini ``generateContent`` API:

1. A free-form round where the model reasons about the image and reports
   text regions in whatever shape it likes (retried on failure).
2. A structured round that feeds the round-1 text back with a response
   schema, producing the authoritative region list.
"""

from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from textwipe.config import DetectionConfig, get_config
from textwipe.domain.models import TextRegion, TextStyle
from textwipe.services.imaging import to_base64

REGION_MARKER = "box_2d"

ROUND1_PROMPT = """
Analyze every text region in this image.

Use Python code to compute the bounding box of each text region precisely.

Requirements:
1. Find all visible text (any script, digits, symbols).
2. Compute a tight bounding box for each text region.
3. Box format: [ymin, xmin, ymax, xmax], normalized to the 0-1000 range.
4. Boxes should hug the text without extra background.
5. Finish with a JSON result.
6. Do not skip very small, blurry or partial text or strokes; mark the region even if it cannot be read.
7. Pay attention to text next to icons and arrows, in corners, and vertical or rotated text.

Example output:
```json
[
  {"box_2d": [100, 200, 150, 400], "label": "first text"},
  {"box_2d": [300, 100, 350, 500], "label": "second text"}
]
```

Think step by step: analyze the image with code first, then output the final JSON.
"""

NORMALIZE_PROMPT = """
Convert the following text detection result into the normalized format.

Raw detection result:
{raw}

Requirements:
1. Extract box_2d for every text region (bounding box [ymin, xmin, ymax, xmax]).
2. Extract label (the text content or a description).
3. If mask or polygon data is present, convert it to polygon format (vertex list [[y1,x1], [y2,x2], ...]).
4. Keep all coordinates in the 0-1000 normalized range.
5. Make sure boxes tightly enclose the text.
6. Keep regions of tiny or unreadable glyph remnants as well.
"""

STYLE_PROMPT = """
Analyze the style of the following text regions in this image:

{regions}

For each region report:
1. Color as hex, e.g. #FFFFFF / #333333
2. Estimated font size in points
3. Whether it is bold

Requirements:
- index is the region number from the list above (0-based)
- If unsure, use the defaults: color_hex="#333333", font_size=24, is_bold=false
"""

REGION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "regions": {
            "type": "array",
            "description": "All detected text regions",
            "items": {
                "type": "object",
                "properties": {
                    "box_2d": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "description": "Bounding box [ymin, xmin, ymax, xmax], normalized to 0-1000",
                    },
                    "label": {
                        "type": "string",
                        "description": "Text content or description",
                    },
                    "polygon": {
                        "type": "array",
                        "items": {"type": "array", "items": {"type": "integer"}},
                        "description": "Polygon vertices [[y1,x1], [y2,x2], ...], normalized to 0-1000",
                    },
                },
                "required": ["box_2d", "label", "polygon"],
            },
        }
    },
    "required": ["regions"],
}

STYLE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "styles": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "index": {"type": "integer"},
                    "color_hex": {"type": "string"},
                    "font_size": {"type": "integer"},
                    "is_bold": {"type": "boolean"},
                },
                "required": ["index", "color_hex", "font_size", "is_bold"],
            },
        }
    },
    "required": ["styles"],
}

_JSON_FENCE_PATTERN = re.compile(r"^```json[ \t]*\n(.*?)```", re.DOTALL | re.MULTILINE)
_FENCE_PATTERN = re.compile(r"^```[ \t]*\n(.*?)```", re.DOTALL | re.MULTILINE)


class DetectionError(Exception):
    """Base exception for detection-related errors."""

    @classmethod
    def from_exception(cls, exc: Exception) -> DetectionError:
        """Convert a transport or parsing failure into a detection error."""
        if isinstance(exc, DetectionError):
            return exc
        if isinstance(exc, httpx.TimeoutException):
            return DetectionTransportError(f"Request timed out: {exc}")
        if isinstance(exc, httpx.HTTPError):
            return DetectionTransportError(f"Request failed: {exc}")
        if isinstance(exc, (json.JSONDecodeError, ValidationError)):
            return DetectionParseError(f"Unparsable response: {exc}")
        return cls(str(exc))


class DetectionTransportError(DetectionError):
    """Raised when the API cannot be reached or times out."""
    pass


class DetectionAPIError(DetectionError):
    """Raised when the API answers with an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DetectionParseError(DetectionError):
    """Raised when a structured response cannot be parsed."""
    pass


class RawDetection(BaseModel):
    """Free-form output of the first detection round."""

    model_config = ConfigDict(frozen=True)

    text: str
    is_valid: bool


class DetectionOutcome(BaseModel):
    """Normalized output of a full detection."""

    regions: list[TextRegion]
    raw_text: str = ""


def strip_code_fence(text: str) -> str:
    """Return the body of the first markdown code fence, or the trimmed text.

    A ```json fence wins over any other block, so a reply that shows its
    analysis code before the result still yields the JSON.
    """
    match = _JSON_FENCE_PATTERN.search(text) or _FENCE_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def is_valid_detection_text(text: str) -> bool:
    """Heuristic check that free-form output carries region boxes.

    The text must mention the region marker and, once any code fence is
    stripped, parse as JSON holding at least one object with that field.
    """
    if REGION_MARKER not in text:
        return False

    try:
        data = json.loads(strip_code_fence(text))
    except json.JSONDecodeError:
        return False

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return False
    return any(isinstance(item, dict) and REGION_MARKER in item for item in data)


def extract_response_text(payload: dict[str, Any], join_parts: bool = False) -> str | None:
    """Pull the text out of a ``generateContent`` response.

    Args:
        payload: Decoded response body
        join_parts: Join every text part of the first candidate with newlines
            instead of returning only the first one

    Returns:
        The text, or None if the response has no text part
    """
    candidates = payload.get("candidates") or []
    if not candidates:
        return None
    content = candidates[0].get("content") or {}
    texts = [
        part["text"]
        for part in content.get("parts") or []
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    ]
    if not texts:
        return None
    return "\n".join(texts) if join_parts else texts[0]


def parse_structured_regions(text: str) -> list[TextRegion]:
    """Parse the structured round output ``{"regions": [...]}``.

    Raises:
        DetectionParseError: If the text is not valid JSON of that shape
    """
    try:
        data = json.loads(strip_code_fence(text))
        items = data["regions"]
        if not isinstance(items, list):
            raise TypeError("'regions' is not a list")
        return [TextRegion.model_validate(item) for item in items]
    except (json.JSONDecodeError, ValidationError, KeyError, TypeError) as e:
        raise DetectionParseError(f"Failed to parse structured result: {e} - {text[:200]}") from e


def parse_structured_styles(text: str) -> list[TextStyle]:
    """Parse the style output ``{"styles": [...]}``.

    Raises:
        DetectionParseError: If the text is not valid JSON of that shape
    """
    try:
        data = json.loads(strip_code_fence(text))
        items = data["styles"]
        if not isinstance(items, list):
            raise TypeError("'styles' is not a list")
        return [TextStyle.model_validate(item) for item in items]
    except (json.JSONDecodeError, ValidationError, KeyError, TypeError) as e:
        raise DetectionParseError(f"Failed to parse style result: {e} - {text[:200]}") from e


def _image_part(image_data: str | bytes) -> dict[str, Any]:
    return {"inlineData": {"mimeType": "image/png", "data": to_base64(image_data)}}


class BaseDetector(ABC):
    """Abstract base class for text detectors.

    Implementations return regions normalized to the 0-1000 space.
    """

    @abstractmethod
    async def detect(self, image_data: str | bytes) -> DetectionOutcome:
        """Detect text regions in an image.

        Args:
            image_data: Base64 encoded image or raw image bytes

        Returns:
            DetectionOutcome with the region list

        Raises:
            DetectionError: If detection fails
        """
        pass

    async def extract_styles(
        self, image_data: str | bytes, regions: list[TextRegion]
    ) -> list[TextStyle]:
        """Estimate color, font size and weight for each region.

        The default implementation knows nothing about styles.
        """
        return []


class StaticDetector(BaseDetector):
    """Detector returning a fixed set of regions.

    Useful offline, in tests, or when regions were detected earlier.
    """

    def __init__(
        self,
        regions: list[TextRegion] | None = None,
        styles: list[TextStyle] | None = None,
    ):
        self.regions = list(regions or [])
        self.styles = list(styles or [])

    async def detect(self, image_data: str | bytes) -> DetectionOutcome:
        logger.debug(f"Static detector returning {len(self.regions)} regions")
        return DetectionOutcome(regions=list(self.regions), raw_text="")

    async def extract_styles(
        self, image_data: str | bytes, regions: list[TextRegion]
    ) -> list[TextStyle]:
        return list(self.styles)


class GeminiDetector(BaseDetector):
    """Detector backed by the Gemini ``generateContent`` REST API.

    Requires TEXTWIPE_DETECT_API_KEY (or an explicit config).
    """

    def __init__(
        self,
        config: DetectionConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the detector.

        Args:
            config: Detection configuration
            client: Shared HTTP client; a short-lived one is opened per
                call when omitted
        """
        self.config = config or get_config().detection
        self._client = client

    @property
    def endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        return f"{base}/v1beta/models/{self.config.model}:generateContent"

    @asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            yield client

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """Send one request and return the decoded response body.

        Raises:
            DetectionTransportError: On network failure or timeout
            DetectionAPIError: On a non-success status or an error body
            DetectionParseError: If the body is not JSON
        """
        params = {"key": self.config.api_key} if self.config.api_key else None
        async with self._client_scope() as client:
            try:
                response = await client.post(self.endpoint, params=params, json=body)
            except httpx.HTTPError as e:
                raise DetectionError.from_exception(e) from e

        if not response.is_success:
            raise DetectionAPIError(
                f"API returned error ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise DetectionParseError(f"Failed to parse response: {e}") from e

        if not isinstance(payload, dict):
            raise DetectionParseError("Response body is not a JSON object")

        error = payload.get("error")
        if error:
            message = error.get("message", error) if isinstance(error, dict) else error
            raise DetectionAPIError(f"Gemini API error: {message}", status_code=response.status_code)

        return payload

    async def detect(self, image_data: str | bytes) -> DetectionOutcome:
        """Run both detection rounds.

        Raises:
            DetectionError: If round 1 never answers or round 2 fails
        """
        logger.info("Gemini detection round 1...")
        raw = await self.detect_freeform(image_data)
        logger.info(f"Round 1 result: {len(raw.text)} chars, valid: {raw.is_valid}")

        logger.info("Gemini detection round 2...")
        regions = await self.normalize(raw.text)
        logger.info(f"Detected {len(regions)} text regions")

        return DetectionOutcome(regions=regions, raw_text=raw.text)

    async def detect_freeform(self, image_data: str | bytes) -> RawDetection:
        """Round 1: free-form detection with retries.

        A response without region boxes is retried, but its text is kept
        and returned once attempts run out.

        Raises:
            DetectionError: If no attempt produced any text
        """
        generation_config: dict[str, Any] = {}
        if self.config.thinking_level:
            generation_config["thinkingConfig"] = {"thinkingLevel": self.config.thinking_level}

        body = {
            "contents": [{"parts": [{"text": ROUND1_PROMPT}, _image_part(image_data)]}],
            "tools": [{"codeExecution": {}}],
            "generationConfig": generation_config,
        }

        attempts = self.config.max_retries
        last_text: str | None = None
        last_error: DetectionError | None = None

        for attempt in range(1, attempts + 1):
            try:
                payload = await self._post(body)
            except DetectionError as e:
                last_error = e
                logger.warning(f"Round 1 attempt {attempt}/{attempts} failed: {e}")
            else:
                text = extract_response_text(payload, join_parts=True)
                if not text:
                    logger.warning(f"Round 1 attempt {attempt}/{attempts}: empty response")
                else:
                    last_text = text
                    if is_valid_detection_text(text):
                        logger.debug(f"Round 1 attempt {attempt}/{attempts}: found region boxes")
                        return RawDetection(text=text, is_valid=True)
                    logger.warning(
                        f"Round 1 attempt {attempt}/{attempts}: no {REGION_MARKER} in response, "
                        "keeping it for round 2"
                    )

            if attempt < attempts:
                await asyncio.sleep(self.config.retry_delay_seconds)

        if last_text is not None:
            logger.info(f"Round 1 gave no {REGION_MARKER} result, forwarding raw response to round 2")
            return RawDetection(text=last_text, is_valid=False)

        if last_error is not None:
            raise last_error
        raise DetectionError("Round 1 failed: no usable response")

    async def normalize(self, raw_text: str) -> list[TextRegion]:
        """Round 2: convert free-form output into the region schema.

        Raises:
            DetectionError: If the call fails or the reply cannot be parsed
        """
        body = {
            "contents": [{"parts": [{"text": NORMALIZE_PROMPT.format(raw=raw_text)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": REGION_SCHEMA,
            },
        }
        payload = await self._post(body)
        text = extract_response_text(payload)
        if text is None:
            raise DetectionAPIError("Round 2 returned no content")
        return parse_structured_regions(text)

    async def extract_styles(
        self, image_data: str | bytes, regions: list[TextRegion]
    ) -> list[TextStyle]:
        """Ask the model for color, font size and weight of each region.

        Raises:
            DetectionError: If the call fails or the reply cannot be parsed
        """
        if not regions:
            return []

        listing = "\n".join(
            f"{i}. {region.label[:self.config.style_label_chars]}"
            for i, region in enumerate(regions)
        )
        body = {
            "contents": [{
                "parts": [
                    {"text": STYLE_PROMPT.format(regions=listing)},
                    _image_part(image_data),
                ]
            }],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": STYLE_SCHEMA,
            },
        }
        payload = await self._post(body)
        text = extract_response_text(payload)
        if text is None:
            raise DetectionAPIError("Style extraction returned no content")
        styles = parse_structured_styles(text)
        logger.debug(f"Extracted {len(styles)} styles")
        return styles


def create_detector(
    config: DetectionConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> BaseDetector:
    """Factory function to create the detector for a configuration.

    Args:
        config: Detection configuration
        client: Optional shared HTTP client

    Returns:
        GeminiDetector instance
    """
    config = config or get_config().detection
    if not config.api_key:
        logger.warning("No Gemini API key configured; detection requests will be rejected")
    return GeminiDetector(config, client=client)
