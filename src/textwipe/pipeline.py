"""Single-image text removal pipeline.

Orchestrates the flow:
1. Decode image
2. Detect text regions (two-round model protocol)
3. Inpaint regions (worker thread)
4. Extract styles (best effort, concurrently with inpainting)
5. Merge regions into editable text boxes
6. Encode the cleaned background

The public entry points never raise for pipeline failures; they return a
result object whose ``success`` flag callers must check.
"""

from __future__ import annotations

import asyncio

import httpx
from loguru import logger

from textwipe.config import AppConfig, DetectionConfig, get_config
from textwipe.domain.models import (
    DetectionResult,
    InpaintResult,
    TextRegion,
    TextRemovalResult,
    TextStyle,
)
from textwipe.services.detector import BaseDetector, DetectionError, create_detector
from textwipe.services.imaging import DecodeError, EncodeError, decode_image, encode_png, to_base64
from textwipe.services.inpainter import AdaptiveInpainter, InpaintError
from textwipe.services.merger import build_text_boxes


class TextRemovalService:
    """Entry points for detecting and removing text from single images.

    Coordinates detection, inpainting and text-box layout while turning
    failures into result objects.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        detector: BaseDetector | None = None,
        inpainter: AdaptiveInpainter | None = None,
    ):
        """Initialize the service.

        Args:
            config: Application configuration
            detector: Detector to use for every call (a Gemini detector is
                created per call from the detection config if not provided)
            inpainter: Inpainter (created with config if not provided)
        """
        self.config = config or get_config()
        self.detector = detector
        self.inpainter = inpainter or AdaptiveInpainter(self.config.inpaint)

    def detector_for(
        self,
        detection: DetectionConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> BaseDetector:
        """Return the injected detector or build one for ``detection``."""
        if self.detector is not None:
            return self.detector
        return create_detector(detection or self.config.detection, client=client)

    async def detect_regions(
        self,
        image_data: str | bytes,
        detection: DetectionConfig | None = None,
    ) -> DetectionResult:
        """Detect text regions only.

        Safe to call concurrently for pre-fetching detections of many pages.

        Args:
            image_data: Base64 encoded image or raw image bytes
            detection: Per-call detection configuration

        Returns:
            DetectionResult with the regions or an error message
        """
        try:
            outcome = await self.detector_for(detection).detect(image_data)
        except DetectionError as e:
            error = f"Text detection failed: {e}"
            logger.error(error)
            return DetectionResult.fail(error)

        logger.info(f"Detected {len(outcome.regions)} text regions")
        return DetectionResult.ok(outcome.regions, outcome.raw_text)

    async def inpaint(
        self,
        image_data: str | bytes,
        regions: list[TextRegion],
    ) -> InpaintResult:
        """Remove the given regions from an image.

        An empty region list returns the input image unchanged.

        Args:
            image_data: Base64 encoded image or raw image bytes
            regions: Regions to remove

        Returns:
            InpaintResult with the base64 PNG background or an error message
        """
        if not regions:
            return InpaintResult.ok(to_base64(image_data))

        try:
            background = await self.render_background(image_data, regions)
        except InpaintError as e:
            error = f"Background inpainting failed: {e}"
            logger.error(error)
            return InpaintResult.fail(error)

        return InpaintResult.ok(background)

    async def render_background(
        self,
        image_data: str | bytes,
        regions: list[TextRegion],
    ) -> str:
        """Decode, inpaint in a worker thread and encode as base64 PNG.

        Raises:
            InpaintError: If decoding, inpainting or encoding fails
        """
        try:
            image = decode_image(image_data)
        except DecodeError as e:
            raise InpaintError(str(e)) from e

        logger.debug(f"Inpainting {len(regions)} regions on {image.shape[1]}x{image.shape[0]} image")
        result = await asyncio.to_thread(self.inpainter.inpaint, image, regions)

        try:
            return encode_png(result)
        except EncodeError as e:
            raise InpaintError(str(e)) from e

    async def fetch_styles(
        self,
        detector: BaseDetector,
        image_data: str | bytes,
        regions: list[TextRegion],
    ) -> list[TextStyle]:
        """Extract styles, returning an empty list on any failure."""
        try:
            return await detector.extract_styles(image_data, regions)
        except Exception as e:
            logger.warning(f"Style extraction failed, using computed defaults: {e}")
            return []

    async def remove_text(
        self,
        image_data: str | bytes,
        detection: DetectionConfig | None = None,
    ) -> TextRemovalResult:
        """Run the full pipeline on one image.

        Args:
            image_data: Base64 encoded image or raw image bytes
            detection: Per-call detection configuration

        Returns:
            TextRemovalResult with the cleaned background and merged text
            boxes, or an error message
        """
        logger.info("Removing text from image")

        # 1. Decode
        try:
            image = decode_image(image_data)
        except DecodeError as e:
            error = str(e)
            logger.error(error)
            return TextRemovalResult.fail(error)

        height, width = image.shape[:2]
        logger.debug(f"Image size: {width}x{height}")

        # 2. Detect
        detector = self.detector_for(detection)
        try:
            outcome = await detector.detect(image_data)
        except DetectionError as e:
            error = f"Text detection failed: {e}"
            logger.error(error)
            return TextRemovalResult.fail(error)

        regions = outcome.regions
        logger.info(f"Detected {len(regions)} text regions")

        if not regions:
            return TextRemovalResult.ok(to_base64(image_data))

        # 3-4. Inpaint while styles are fetched
        styles_task = asyncio.create_task(self.fetch_styles(detector, image_data, regions))
        try:
            inpainted = await asyncio.to_thread(self.inpainter.inpaint, image, regions)
        except InpaintError as e:
            inpainted = None
            inpaint_error = f"Background inpainting failed: {e}"
            logger.error(inpaint_error)
        except BaseException:
            styles_task.cancel()
            raise
        styles = await styles_task

        # 5. Layout
        text_boxes = build_text_boxes(regions, image, styles, self.config.merge)
        if inpainted is None:
            return TextRemovalResult.fail(inpaint_error, text_boxes)

        # 6. Encode
        try:
            background = encode_png(inpainted)
        except EncodeError as e:
            error = str(e)
            logger.error(error)
            return TextRemovalResult.fail(error, text_boxes)

        logger.info(f"Text removal complete: {len(text_boxes)} text boxes")
        return TextRemovalResult.ok(background, text_boxes)
