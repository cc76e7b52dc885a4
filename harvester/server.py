from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse

from .backoff import BackoffStrategy
from .channel import CommandHandler, ProgressChannel, Subscription
from .config import Settings
from .detection import DetectionMonitor
from .factory import ComponentFactory
from .metrics import MetricsCollector
from .rate_limiter import RateLimiter
from .scheduler import Scheduler
from .storage import JsonCsvExporter, SnapshotWriter

logger = logging.getLogger(__name__)


class Engine:
    """Wires the Scheduler and its collaborators from one Settings object."""

    def __init__(self, settings: Settings, factory: Optional[ComponentFactory] = None) -> None:
        self.settings = settings
        self.channel = ProgressChannel()
        self.metrics = MetricsCollector()
        self.rate_limiter = RateLimiter(qps=settings.navigation_qps)
        self.exporter = JsonCsvExporter(settings.results_dir)
        self.detector = DetectionMonitor(
            BackoffStrategy(
                base_seconds=settings.backoff_base,
                increment_seconds=settings.backoff_increment,
                max_seconds=settings.backoff_max,
                max_retries=settings.max_detection_retries,
            )
        )
        self.factory = factory or ComponentFactory(settings, rate_limiter=self.rate_limiter)
        self.scheduler = Scheduler(
            settings,
            self.channel,
            self.factory,
            self.detector,
            self.exporter,
            metrics=self.metrics,
        )
        self.commands = CommandHandler(self.scheduler, self.channel)
        self.snapshots = SnapshotWriter(settings.state_path, self.scheduler.state_snapshot, settings.snapshot_interval)


async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    while True:
        event = await sub.get()
        await websocket.send_json(event.to_message())


def create_app(settings: Settings, factory: Optional[ComponentFactory] = None) -> FastAPI:
    engine = Engine(settings, factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        snapshot_loop = asyncio.create_task(engine.snapshots.run(stop))
        logger.info("Harvester ready (max_concurrency=%d)", settings.max_concurrency)
        try:
            yield
        finally:
            stop.set()
            await engine.scheduler.shutdown()
            await snapshot_loop
            engine.snapshots.write_now()

    app = FastAPI(title="Listing Harvester", lifespan=lifespan)
    app.state.engine = engine

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        return "ok"

    @app.get("/api/results")
    def results() -> list:
        return engine.exporter.list_files()

    @app.get("/api/tasks")
    def tasks() -> list:
        return engine.scheduler.snapshot()

    @app.get("/api/navigations")
    def navigations(task_id: Optional[str] = Query(None, alias="taskId")) -> list:
        """Recorded navigation outcomes, optionally for a single task."""
        if task_id is None:
            return engine.metrics.export_json()
        return [asdict(r) for r in engine.metrics.for_task(task_id)]

    @app.websocket("/ws")
    async def progress_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        sub = engine.channel.subscribe()
        sender = asyncio.create_task(_pump(websocket, sub))
        logger.info("Client connected (%d subscribers)", engine.channel.subscriber_count)
        try:
            while True:
                raw = await websocket.receive_text()
                engine.commands.handle(sub, raw)
        except WebSocketDisconnect:
            logger.info("Client disconnected; tasks keep running")
        finally:
            sub.close()
            sender.cancel()
            try:
                await sender
            except (asyncio.CancelledError, RuntimeError, OSError, WebSocketDisconnect):
                pass

    return app
