from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from datetime import datetime
from typing import Dict, List, Optional

from .base import BaseExtractor
from .channel import ProgressChannel
from .config import Settings
from .detection import DetectionMonitor
from .environment import ExecutionEnvironment
from .errors import DetectionError, ExecutionEnvironmentError, ExtractionError, NavigationError, PersistenceError
from .metrics import MetricsCollector
from .models import NavigationResult, PageContent, ProgressEvent, Record
from .storage import StorageBase
from .tasks import Task, TaskState, advance

logger = logging.getLogger(__name__)

PERSISTENT_DETECTION = "persistent detection"
STOPPED_BY_USER = "stopped by user"


def compute_total_pages(total_results: Optional[int], page_size: int, max_pages: int, fallback: int) -> int:
    """Pages to visit: ceil(total / page_size) capped by `max_pages` (0 = no cap).

    When the target exposes no count, the finite `fallback` budget is used
    instead; the empty-page streak still ends the loop early.
    """
    if total_results is None:
        pages = fallback
    else:
        pages = math.ceil(max(total_results, 0) / max(page_size, 1))
    if max_pages > 0:
        pages = min(pages, max_pages)
    return max(pages, 0)


def _capture_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class SessionController:
    """Drives the page-iteration loop for one task.

    Owns one execution environment for its whole life. Suspension points
    (navigation, pacing, backoff, pause, enrichment delays) all sample the
    cooperative cancellation flag; an in-flight navigation is never
    interrupted. Whatever happens, the loop exit persists the collected
    records exactly once and moves the task to exactly one terminal state.
    """

    def __init__(
        self,
        task: Task,
        *,
        environment: ExecutionEnvironment,
        extractor: BaseExtractor,
        detector: DetectionMonitor,
        exporter: StorageBase,
        channel: ProgressChannel,
        settings: Settings,
        metrics: Optional[MetricsCollector] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.task = task
        self._environment = environment
        self._extractor = extractor
        self._detector = detector
        self._exporter = exporter
        self._channel = channel
        self._settings = settings
        self._metrics = metrics
        self._rng = rng or random.Random()

        self._cancel = asyncio.Event()
        self._wake = asyncio.Event()
        self._pause_requested = False
        self._last_latency_ms = 0

    # ---- commands (called by the Scheduler) ----

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    def cancel(self) -> None:
        self._cancel.set()
        self._wake.set()

    def pause(self) -> None:
        self._pause_requested = True
        self._wake.clear()

    def resume(self) -> None:
        self._pause_requested = False
        self._wake.set()

    # ---- lifecycle ----

    async def run(self) -> TaskState:
        fatal: Optional[str] = None
        try:
            await self._acquire()
            if not self.cancelled:
                advance(self.task, TaskState.RUNNING, self._channel)
                await self._crawl()
                if self.task.options.wants_enrichment and not self.cancelled:
                    await self._enrich()
        except DetectionError as exc:
            self.task.stop_reason = PERSISTENT_DETECTION
            logger.warning("task %s: %s at %s", self.task.task_id, PERSISTENT_DETECTION, exc.url)
        except ExecutionEnvironmentError as exc:
            fatal = str(exc)
            logger.error("task %s: execution environment failed: %s", self.task.task_id, exc)
        except Exception as exc:  # noqa: BLE001
            fatal = f"{type(exc).__name__}: {exc}"
            logger.exception("task %s: unexpected failure", self.task.task_id)
        finally:
            await self._environment.close()

        await self._finalize(fatal)
        return self.task.state

    async def _acquire(self) -> None:
        attempts = self._settings.acquire_attempts
        for attempt in range(1, attempts + 1):
            if self.cancelled:
                return
            try:
                await self._environment.start()
                return
            except ExecutionEnvironmentError as exc:
                logger.warning(
                    "task %s: environment acquisition %d/%d failed: %s",
                    self.task.task_id, attempt, attempts, exc,
                )
                await self._environment.close()
                if attempt >= attempts:
                    raise ExecutionEnvironmentError(
                        f"could not acquire execution environment after {attempts} attempts: {exc}",
                        task_id=self.task.task_id,
                    ) from exc
                if not await self._sleep(self._settings.acquire_delay):
                    return

    # ---- page loop ----

    async def _crawl(self) -> None:
        task = self.task
        search_url = self._extractor.search_url(task.target, task.options)
        first = await self._load(search_url)
        if self.cancelled:
            return

        total_results = self._extractor.parse_total(first) if first is not None else None
        task.total_pages = compute_total_pages(
            total_results,
            task.options.page_size,
            task.options.max_pages,
            self._settings.fallback_page_budget,
        )
        logger.info(
            "task %s: %s results -> %d pages",
            task.task_id,
            total_results if total_results is not None else "unknown",
            task.total_pages,
        )

        empty_streak = 0
        for page in range(1, task.total_pages + 1):
            if not await self._checkpoint():
                break
            task.current_page = page

            if page == 1:
                content = first
            else:
                content = await self._load(self._extractor.page_url(search_url, page))
                if self.cancelled:
                    break
            if content is None:
                continue

            candidates = self._extract(content, page)
            new = task.add_records(candidates, _capture_stamp())
            self._channel.publish(
                ProgressEvent.progress(
                    task.task_id,
                    page=page,
                    total_pages=task.total_pages,
                    page_records=len(candidates),
                    new_records=len(new),
                    total_records=len(task.records),
                    throughput=task.throughput(),
                )
            )

            if candidates:
                empty_streak = 0
            else:
                empty_streak += 1
                if empty_streak >= self._settings.empty_page_threshold:
                    logger.info("task %s: %d empty pages in a row, no more data", task.task_id, empty_streak)
                    break
            if not self._extractor.has_more(content, page):
                logger.info("task %s: last page reached at %d", task.task_id, page)
                break

    def _extract(self, content: PageContent, page: int) -> List[Record]:
        try:
            return self._extractor.run(content, page, self.task.options)
        except ExtractionError as exc:
            logger.warning("task %s: extraction failed on page %d: %s", self.task.task_id, page, exc)
            return []

    async def _load(self, url: str) -> Optional[PageContent]:
        """Navigate with detection backoff. None means the page is skipped."""
        task = self.task
        content = await self._navigate(url)
        while content is not None:
            inspection = self._detector.inspect(content)
            if not inspection.blocked:
                self._record(url, "ok")
                task.detection_retries = 0
                return content

            self._record(url, "blocked", inspection.indicator)
            if self._detector.exhausted(task.detection_retries):
                raise DetectionError(
                    f"blocked by {inspection.indicator}",
                    retry_count=task.detection_retries,
                    task_id=task.task_id,
                    url=url,
                )

            wait = self._detector.backoff_window(task.detection_retries)
            task.detection_retries += 1
            logger.warning(
                "task %s: blocked (%s), backing off %.1fs (retry %d)",
                task.task_id, inspection.indicator, wait, task.detection_retries,
            )
            self._channel.publish(ProgressEvent.rate_limited(task.task_id, wait, task.detection_retries))
            if task.state is TaskState.RUNNING:
                advance(task, TaskState.AWAITING_BACKOFF, self._channel, f"blocked by {inspection.indicator}")
            if not await self._sleep(wait):
                return None
            advance(task, TaskState.RUNNING, self._channel, "retrying after backoff")
            content = await self._navigate(url)
        return None

    async def _navigate(self, url: str) -> Optional[PageContent]:
        """One navigation plus one retry after a short delay."""
        for attempt in (1, 2):
            start = time.monotonic()
            try:
                content = await self._environment.goto(url)
                self._last_latency_ms = int((time.monotonic() - start) * 1000)
                return content
            except NavigationError as exc:
                self._last_latency_ms = int((time.monotonic() - start) * 1000)
                self._record(url, "failed", type(exc).__name__)
                if attempt == 2:
                    self.task.skipped_pages += 1
                    logger.warning("task %s: skipping %s after retry: %s", self.task.task_id, url, exc)
                    return None
                self.task.navigation_retries += 1
                logger.info("task %s: navigation failed, retrying %s: %s", self.task.task_id, url, exc)
                if not await self._sleep(self._settings.navigation_retry_delay):
                    return None
        return None

    # ---- enrichment ----

    def _needs_details(self, record: Record) -> bool:
        opts = self.task.options
        return (opts.fetch_ean and not record.ean) or (opts.fetch_description and not record.description)

    async def _enrich(self) -> None:
        task = self.task
        pending = [r for r in task.records if self._needs_details(r)]
        if not pending:
            return

        total = len(pending)
        every = self._settings.detail_progress_every
        limit = self._settings.enrichment_failure_limit
        last_signature: Optional[str] = None
        streak = 0
        logger.info("task %s: fetching details for %d records", task.task_id, total)

        for i, record in enumerate(pending, 1):
            if not await self._checkpoint():
                break
            if i > 1:
                delay = self._rng.uniform(self._settings.detail_delay_min, self._settings.detail_delay_max)
                if not await self._sleep(delay):
                    break

            try:
                details = await self._fetch_details(record)
            except (NavigationError, ExtractionError, DetectionError, ExecutionEnvironmentError) as exc:
                signature = type(exc).__name__
                streak = streak + 1 if signature == last_signature else 1
                last_signature = signature
                logger.warning("task %s: details for %s failed: %s", task.task_id, record.item_id, exc)
                if limit and streak >= limit:
                    logger.warning(
                        "task %s: %d consecutive %s failures, abandoning enrichment at %d/%d",
                        task.task_id, streak, signature, i, total,
                    )
                    self._channel.publish(ProgressEvent.detail_progress(task.task_id, i, total))
                    break
            else:
                streak = 0
                last_signature = None
                self._apply_details(record, details)

            if i % every == 0 or i == total:
                self._channel.publish(ProgressEvent.detail_progress(task.task_id, i, total))

    async def _fetch_details(self, record: Record) -> Dict[str, str]:
        url = self._extractor.detail_url(record)
        async with self._environment.isolated() as loader:
            content = await loader.goto(url)
        inspection = self._detector.inspect(content)
        if inspection.blocked:
            self._record(url, "blocked", inspection.indicator)
            raise DetectionError(f"detail page blocked by {inspection.indicator}", task_id=self.task.task_id, url=url)
        return self._extractor.run_details(content)

    def _apply_details(self, record: Record, details: Dict[str, str]) -> None:
        opts = self.task.options
        if opts.fetch_ean and details.get("ean"):
            record.ean = details["ean"]
        if opts.fetch_description and details.get("description"):
            record.description = details["description"]

    # ---- suspension points ----

    async def _checkpoint(self) -> bool:
        """Honor pause/cancel at a loop boundary. False means stop the loop."""
        if self.cancelled:
            return False
        if self._pause_requested and self.task.state is TaskState.RUNNING:
            advance(self.task, TaskState.PAUSED, self._channel)
            while self._pause_requested and not self.cancelled:
                await self._wake.wait()
            if self.cancelled:
                return False
            advance(self.task, TaskState.RUNNING, self._channel, "resumed")
        return not self.cancelled

    async def _sleep(self, seconds: float) -> bool:
        """Cancellable sleep. False when cancelled before the time elapsed."""
        if self.cancelled:
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self.cancelled
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    def _record(self, url: str, outcome: str, error_type: Optional[str] = None) -> None:
        if self._metrics is not None:
            self._metrics.record(
                NavigationResult(
                    task_id=self.task.task_id,
                    url=url,
                    outcome=outcome,
                    latency_ms=self._last_latency_ms,
                    error_type=error_type,
                )
            )

    # ---- finalization ----

    async def _finalize(self, fatal: Optional[str]) -> None:
        task = self.task
        persist_error: Optional[str] = None
        try:
            task.output_paths = await self._exporter.write(task)
            self._channel.publish(ProgressEvent.files_saved(task.task_id, task.output_paths))
        except PersistenceError as exc:
            persist_error = str(exc)
            logger.error("task %s: %s", task.task_id, exc)

        if fatal is not None:
            message = fatal if persist_error is None else f"{fatal}; {persist_error}"
            task.error = message
            advance(task, TaskState.FAILED, self._channel, message)
            self._channel.publish(ProgressEvent.error(task.task_id, message, len(task.records)))
            return

        if task.stop_reason == PERSISTENT_DETECTION:
            message = PERSISTENT_DETECTION if persist_error is None else f"{PERSISTENT_DETECTION}; {persist_error}"
            task.error = message
            advance(task, TaskState.STOPPED, self._channel, PERSISTENT_DETECTION)
            self._channel.publish(ProgressEvent.error(task.task_id, message, len(task.records)))
            return

        if self.cancelled:
            task.stop_reason = STOPPED_BY_USER
            advance(task, TaskState.STOPPED, self._channel, STOPPED_BY_USER)
        else:
            advance(task, TaskState.COMPLETED, self._channel)
        if persist_error is not None:
            task.error = persist_error
            self._channel.publish(ProgressEvent.error(task.task_id, persist_error, len(task.records)))
        self._channel.publish(
            ProgressEvent.complete(
                task.task_id,
                total_records=len(task.records),
                duration_ms=int(task.elapsed() * 1000),
                output_ref=task.output_ref,
            )
        )
