from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Set

from .channel import ProgressChannel
from .config import Settings
from .detection import DetectionMonitor
from .errors import HarvestError, PersistenceError
from .factory import ComponentFactory
from .metrics import MetricsCollector
from .models import ProgressEvent, QueueEntry, TaskOptions
from .session import SessionController
from .storage import StorageBase
from .tasks import Task, TaskRegistry, TaskState, advance

logger = logging.getLogger(__name__)


class Scheduler:
    """Admits queued tasks into SessionControllers under a concurrency cap.

    The Scheduler is the only owner of the task registry, the FIFO queue and
    the active-session counter; everything else reaches tasks through its
    operations. All methods run on the event loop thread.

    A running task is never preempted: admission only happens when a
    session slot frees up, and the oldest queued entry always goes first.
    """

    def __init__(
        self,
        settings: Settings,
        channel: ProgressChannel,
        factory: ComponentFactory,
        detector: DetectionMonitor,
        exporter: StorageBase,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._settings = settings
        self._channel = channel
        self._factory = factory
        self._detector = detector
        self._exporter = exporter
        self._metrics = metrics

        self._max_concurrency = max(1, settings.max_concurrency)
        self._registry = TaskRegistry()
        self._queue: Deque[QueueEntry] = deque()
        self._controllers: Dict[str, SessionController] = {}
        self._runners: Set[asyncio.Task] = set()
        self._active = 0
        self._peak_active = 0
        self._finalizing = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self.default_options = TaskOptions(
            page_size=settings.default_page_size,
            image_quality=settings.image_quality,
            concurrency_class=settings.environment_kind,
        )

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def peak_active(self) -> int:
        return self._peak_active

    def queued_ids(self) -> List[str]:
        return [e.task_id for e in self._queue]

    def get(self, task_id: str) -> Task:
        return self._registry.get(task_id)

    def tasks(self) -> List[Task]:
        return list(self._registry)

    # ---- submission ----

    def submit(self, target: str, options: Optional[TaskOptions] = None) -> Task:
        """Create a task for `target`, announce it and enqueue it."""
        options = options or self.default_options
        extractor = self._factory.create_extractor(target)
        extractor.validate(target)
        task = Task(
            task_id=self._registry.new_id(),
            target=target.strip(),
            label=extractor.label(target),
            options=options,
        )
        self._registry.add(task)
        self._channel.publish(ProgressEvent.task_created(task.task_id, task.target, task.label))
        self.enqueue(task)
        return task

    def enqueue(self, task: Task) -> None:
        if task.state is not TaskState.QUEUED:
            raise HarvestError(f"cannot enqueue a {task.state.value} task", task_id=task.task_id)
        if task.task_id not in self._registry:
            self._registry.add(task)
        self._queue.append(QueueEntry(task_id=task.task_id, enqueued_at=time.time()))
        self._idle.clear()
        self._channel.publish(ProgressEvent.status(task.task_id, TaskState.QUEUED.value))
        logger.info("task %s queued (%d waiting, %d active)", task.task_id, len(self._queue), self._active)
        self.admit()

    def admit(self) -> None:
        """Start sessions for queued tasks while capacity allows."""
        while self._active < self._max_concurrency and self._queue:
            entry = self._queue.popleft()
            task = self._registry.get(entry.task_id)
            try:
                controller = self._build_controller(task)
            except ValueError as exc:
                self._fail_at_admission(task, str(exc))
                continue
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
            self._controllers[task.task_id] = controller
            advance(task, TaskState.INITIALIZING, self._channel)
            runner = asyncio.get_running_loop().create_task(self._run_session(controller))
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)
        self._update_idle()

    def _build_controller(self, task: Task) -> SessionController:
        return SessionController(
            task,
            environment=self._factory.create_environment(task.options.concurrency_class),
            extractor=self._factory.create_extractor(task.target),
            detector=self._detector,
            exporter=self._exporter,
            channel=self._channel,
            settings=self._settings,
            metrics=self._metrics,
        )

    def _fail_at_admission(self, task: Task, message: str) -> None:
        # No session slot is taken, but join() still waits for the export.
        logger.error("task %s cannot start: %s", task.task_id, message)
        advance(task, TaskState.INITIALIZING, self._channel)
        self._finalizing += 1
        runner = asyncio.get_running_loop().create_task(self._persist_failure(task, message))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    async def _persist_failure(self, task: Task, message: str) -> None:
        try:
            try:
                task.output_paths = await self._exporter.write(task)
                self._channel.publish(ProgressEvent.files_saved(task.task_id, task.output_paths))
            except PersistenceError as exc:
                logger.error("task %s: %s", task.task_id, exc)
                message = f"{message}; {exc}"
            task.error = message
            advance(task, TaskState.FAILED, self._channel, message)
            self._channel.publish(ProgressEvent.error(task.task_id, message, 0))
        finally:
            self._finalizing -= 1
            self._update_idle()

    async def _run_session(self, controller: SessionController) -> None:
        task_id = controller.task.task_id
        try:
            state = await controller.run()
            logger.info("task %s finished: %s (%d records)", task_id, state.value, len(controller.task.records))
        finally:
            self._controllers.pop(task_id, None)
            self._active -= 1
            self.admit()

    def _update_idle(self) -> None:
        if self._active == 0 and not self._queue and not self._finalizing:
            self._idle.set()
        else:
            self._idle.clear()

    async def join(self) -> None:
        """Wait until no task is queued or running."""
        await self._idle.wait()

    # ---- control ----

    def stop(self, task_id: str) -> bool:
        """Stop one task. Queued tasks never start; running ones are cancelled cooperatively."""
        task = self._registry.get(task_id)
        if task.is_terminal:
            return False
        for entry in list(self._queue):
            if entry.task_id == task_id:
                self._queue.remove(entry)
                task.stop_reason = "stopped before start"
                advance(task, TaskState.STOPPED, self._channel, task.stop_reason)
                self._update_idle()
                return True
        controller = self._controllers.get(task_id)
        if controller is None:
            return False
        logger.info("task %s: stop requested", task_id)
        controller.cancel()
        return True

    def stop_all(self) -> int:
        """Drain the queue and cancel every running session."""
        stopped = 0
        while self._queue:
            entry = self._queue.popleft()
            task = self._registry.get(entry.task_id)
            task.stop_reason = "stopped before start"
            advance(task, TaskState.STOPPED, self._channel, task.stop_reason)
            stopped += 1
        for controller in list(self._controllers.values()):
            controller.cancel()
            stopped += 1
        self._update_idle()
        logger.info("stop_all: %d tasks stopped", stopped)
        return stopped

    def pause(self, task_id: str) -> bool:
        task = self._registry.get(task_id)
        controller = self._controllers.get(task_id)
        if controller is None or task.is_terminal:
            return False
        controller.pause()
        return True

    def resume(self, task_id: str) -> bool:
        task = self._registry.get(task_id)
        controller = self._controllers.get(task_id)
        if controller is None or task.is_terminal:
            return False
        controller.resume()
        return True

    def purge(self, task_id: str) -> Task:
        task = self._registry.purge(task_id)
        self._channel.forget(task_id)
        return task

    # ---- inspection ----

    def snapshot(self) -> List[Dict]:
        return self._registry.snapshot()

    def state_snapshot(self) -> Dict:
        """Everything the operator snapshot file records."""
        payload: Dict = {
            "maxConcurrency": self._max_concurrency,
            "active": self._active,
            "queued": self.queued_ids(),
            "tasks": self.snapshot(),
        }
        if self._metrics is not None:
            m = self._metrics.snapshot(window_secs=300)
            payload["navigation"] = {
                "windowSecs": m.window_secs,
                "total": m.total_navigations,
                "ok": m.ok_count,
                "failed": m.failed_count,
                "blocked": m.blocked_count,
                "avgLatencyMs": round(m.avg_latency_ms, 1),
            }
        return payload

    async def shutdown(self) -> None:
        """Stop everything and wait for sessions to persist and finalize."""
        self.stop_all()
        if self._runners:
            await asyncio.gather(*list(self._runners), return_exceptions=True)
