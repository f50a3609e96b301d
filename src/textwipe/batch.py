"""Concurrent batch processing of pages.

Every page runs detection and inpainting as its own asyncio task. Pages
are independent: a failure on one page never aborts the others, and the
batch always ends with a single summary event.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable

import httpx
from loguru import logger

from textwipe.config import AppConfig, DetectionConfig, get_config
from textwipe.domain.models import (
    BatchAccepted,
    BatchCompleteEvent,
    BatchEvent,
    PageInput,
    PageProgressEvent,
    PageState,
    PageStatus,
    PageTask,
)
from textwipe.pipeline import TextRemovalService
from textwipe.services.detector import BaseDetector, DetectionError
from textwipe.services.inpainter import InpaintError

EventSink = Callable[[BatchEvent], None]


class OrchestrationError(Exception):
    """Raised when a page task terminates outside the normal page flow."""
    pass


class CancellationToken:
    """Cooperative cancellation flag scoped to one batch run.

    Setting and reading the flag is thread-safe. Work already in flight is
    never interrupted; page tasks only look at the flag at checkpoints.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class BatchRun:
    """Shared state of one batch invocation."""

    def __init__(self, pages: list[PageInput], token: CancellationToken):
        self.token = token
        self.tasks = [PageTask(page_index=page.page_index) for page in pages]
        self.total = len(pages)
        self.success_count = 0
        self.error_count = 0

    def record_success(self) -> None:
        self.success_count += 1

    def record_error(self) -> None:
        self.error_count += 1

    def summary(self) -> BatchCompleteEvent:
        return BatchCompleteEvent(
            success=self.error_count == 0,
            total_processed=self.total,
            total_success=self.success_count,
            total_errors=self.error_count,
        )


class BatchProcessor:
    """Runs the text removal pipeline over many pages concurrently.

    Progress is reported through an event sink: per-page
    :class:`PageProgressEvent` objects in ``detecting`` -> ``inpainting`` ->
    ``completed``/``error`` order, then one :class:`BatchCompleteEvent`.
    """

    def __init__(
        self,
        service: TextRemovalService | None = None,
        config: AppConfig | None = None,
    ):
        """Initialize the batch processor.

        Args:
            service: Single-image service providing detection and inpainting
            config: Application configuration
        """
        self.config = config or (service.config if service else get_config())
        self.service = service or TextRemovalService(self.config)
        self._active: BatchRun | None = None
        self.last_run: BatchRun | None = None

    async def process_batch(
        self,
        pages: list[PageInput],
        on_event: EventSink | None = None,
        detection: DetectionConfig | None = None,
        token: CancellationToken | None = None,
    ) -> BatchAccepted:
        """Process all pages and wait for every page task to finish.

        Args:
            pages: Pages to process
            on_event: Callback receiving progress and completion events
            detection: Per-batch detection configuration
            token: Cancellation token for this run (a fresh one by default)

        Returns:
            BatchAccepted; failures are reported only through events
        """
        run = BatchRun(pages, token or CancellationToken())
        self._active = run
        detection = detection or self.config.detection

        logger.info(f"Batch processing {len(pages)} pages")

        async with httpx.AsyncClient(timeout=detection.timeout_seconds) as client:
            detector = self.service.detector_for(detection, client=client)
            results = await asyncio.gather(
                *(
                    self._run_page(run, page, task, detector, on_event)
                    for page, task in zip(pages, run.tasks)
                ),
                return_exceptions=True,
            )

        for task, result in zip(run.tasks, results):
            if isinstance(result, BaseException):
                self._fail_page(run, task, OrchestrationError(f"Page task failed: {result}"), on_event)

        summary = run.summary()
        self._emit(on_event, summary)
        logger.info(
            f"Batch complete: {summary.total_success} succeeded, {summary.total_errors} failed"
        )

        if self._active is run:
            self._active = None
        self.last_run = run

        return BatchAccepted(
            success=True,
            message=f"Processing complete: {summary.total_success} succeeded, "
            f"{summary.total_errors} failed",
        )

    def stop_batch(self) -> BatchAccepted:
        """Request the active batch to stop at its next checkpoints."""
        logger.info("Stop requested for batch processing")
        if self._active is not None:
            self._active.token.cancel()
        return BatchAccepted(success=True, message="Stop signal sent")

    async def _run_page(
        self,
        run: BatchRun,
        page: PageInput,
        task: PageTask,
        detector: BaseDetector,
        on_event: EventSink | None,
    ) -> None:
        """Run one page through detection and inpainting."""
        if self._cancelled(run, task):
            return

        task.advance(PageState.DETECTING)
        self._emit(on_event, PageProgressEvent(page_index=task.page_index, status=PageStatus.DETECTING))

        try:
            outcome = await detector.detect(page.image_data)
        except DetectionError as e:
            self._fail_page(run, task, f"Text detection failed: {e}", on_event)
            return

        if self._cancelled(run, task):
            return

        regions = outcome.regions
        task.region_count = len(regions)
        logger.debug(f"Page {task.page_index}: {len(regions)} text regions")

        if not regions:
            task.advance(PageState.COMPLETED)
            run.record_success()
            self._emit(
                on_event,
                PageProgressEvent(
                    page_index=task.page_index,
                    status=PageStatus.COMPLETED,
                    background_image=page.image_data,
                    region_count=0,
                ),
            )
            return

        task.advance(PageState.INPAINTING)
        self._emit(
            on_event,
            PageProgressEvent(
                page_index=task.page_index,
                status=PageStatus.INPAINTING,
                region_count=len(regions),
            ),
        )

        if self._cancelled(run, task):
            return

        try:
            background = await self.service.render_background(page.image_data, regions)
        except InpaintError as e:
            self._fail_page(run, task, f"Background inpainting failed: {e}", on_event)
            return

        task.advance(PageState.COMPLETED)
        run.record_success()
        self._emit(
            on_event,
            PageProgressEvent(
                page_index=task.page_index,
                status=PageStatus.COMPLETED,
                background_image=background,
                region_count=len(regions),
            ),
        )

    def _cancelled(self, run: BatchRun, task: PageTask) -> bool:
        """Checkpoint: mark the task cancelled if the run was stopped."""
        if not run.token.is_cancelled:
            return False
        logger.debug(f"Page {task.page_index}: cancelled while {task.state.value}")
        task.advance(PageState.CANCELLED)
        return True

    def _fail_page(
        self,
        run: BatchRun,
        task: PageTask,
        error: str | Exception,
        on_event: EventSink | None,
    ) -> None:
        message = str(error)
        logger.error(f"Page {task.page_index}: {message}")
        task.error = message
        if task.can_advance(PageState.ERRORED):
            task.advance(PageState.ERRORED)
        run.record_error()
        self._emit(
            on_event,
            PageProgressEvent(page_index=task.page_index, status=PageStatus.ERROR, error=message),
        )

    @staticmethod
    def _emit(on_event: EventSink | None, event: BatchEvent) -> None:
        if on_event is None:
            return
        try:
            on_event(event)
        except Exception as e:
            logger.warning(f"Event sink failed for {type(event).__name__}: {e}")
