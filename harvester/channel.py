from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set, Union

from .errors import HarvestError
from .models import EventType, ProgressEvent, TaskOptions

if TYPE_CHECKING:
    from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class Subscription:
    """One subscriber's ordered event feed.

    Delivery is a synchronous `put_nowait` from the publishing call, so the
    queue order is exactly the publish order. `task_ids=None` means every
    task.
    """

    def __init__(self, channel: "ProgressChannel", task_ids: Optional[Iterable[str]] = None) -> None:
        self._channel = channel
        self.task_ids: Optional[Set[str]] = set(task_ids) if task_ids is not None else None
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()

    def wants(self, event: ProgressEvent) -> bool:
        return self.task_ids is None or event.task_id is None or event.task_id in self.task_ids

    def deliver(self, event: ProgressEvent) -> None:
        self.queue.put_nowait(event)

    async def get(self) -> ProgressEvent:
        return await self.queue.get()

    def drain(self) -> List[ProgressEvent]:
        events: List[ProgressEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._channel.unsubscribe(self)


class ProgressChannel:
    """Fan-out of task events to the current subscribers.

    Only touched from the event loop thread, so the subscriber list needs no
    locking. Each task's events carry a strictly increasing `seq`.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscription] = []
        self._seq: Dict[str, int] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, task_ids: Optional[Iterable[str]] = None) -> Subscription:
        sub = Subscription(self, task_ids)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, event: ProgressEvent) -> ProgressEvent:
        if event.task_id is not None:
            seq = self._seq.get(event.task_id, 0) + 1
            self._seq[event.task_id] = seq
            event = dataclasses.replace(event, seq=seq)
        for sub in list(self._subscribers):
            if sub.wants(event):
                sub.deliver(event)
        return event

    def reply(self, sub: Subscription, event: ProgressEvent) -> None:
        """Deliver a connection-scoped event to one subscriber only."""
        sub.deliver(event)

    def forget(self, task_id: str) -> None:
        self._seq.pop(task_id, None)


def parse_targets(raw: Any) -> List[str]:
    """Accept a list of targets or one newline-separated string."""
    if isinstance(raw, str):
        raw = raw.split("\n")
    if not isinstance(raw, (list, tuple)):
        return []
    return [str(t).strip() for t in raw if str(t).strip()]


class CommandHandler:
    """Applies inbound client commands to the Scheduler.

    Unknown or malformed commands are ignored (logged at DEBUG) and never
    affect the connection.
    """

    def __init__(self, scheduler: "Scheduler", channel: ProgressChannel) -> None:
        self._scheduler = scheduler
        self._channel = channel
        self._handlers = {
            "start": self._start,
            "start_multi": self._start,
            "pause": self._pause,
            "resume": self._resume,
            "stop": self._stop,
            "stop_task": self._stop,
            "stop_all": self._stop_all,
            "reconnect": self._reconnect,
            "purge": self._purge,
        }

    def handle(self, sub: Subscription, raw: Union[str, bytes, Dict[str, Any]]) -> bool:
        """Dispatch one command; returns False when it was ignored."""
        msg = raw
        if isinstance(raw, (str, bytes)):
            try:
                msg = json.loads(raw)
            except (TypeError, ValueError):
                logger.debug("Ignoring malformed command: %r", raw[:200])
                return False
        if not isinstance(msg, dict):
            return False

        handler = self._handlers.get(str(msg.get("type", "")))
        if handler is None:
            logger.debug("Ignoring unknown command type: %r", msg.get("type"))
            return False

        try:
            handler(sub, msg)
        except HarvestError as exc:
            self._channel.reply(sub, ProgressEvent.error(exc.task_id, str(exc), 0))
        except ValueError as exc:
            self._channel.reply(sub, ProgressEvent.error(None, str(exc), 0))
        return True

    @staticmethod
    def _task_id(msg: Dict[str, Any]) -> str:
        return str(msg.get("taskId") or msg.get("task_id") or "")

    def _start(self, sub: Subscription, msg: Dict[str, Any]) -> None:
        targets = parse_targets(msg.get("targets", msg.get("urls")))
        options = TaskOptions.from_wire(msg.get("options"), self._scheduler.default_options)
        task_ids: List[str] = []
        for target in targets:
            try:
                task = self._scheduler.submit(target, options)
            except ValueError as exc:
                self._channel.reply(sub, ProgressEvent.error(None, f"{target}: {exc}", 0))
                continue
            task_ids.append(task.task_id)
        self._channel.reply(
            sub,
            ProgressEvent(EventType.BATCH_STARTED, None, {"totalTasks": len(task_ids), "taskIds": task_ids}),
        )

    def _pause(self, sub: Subscription, msg: Dict[str, Any]) -> None:
        self._scheduler.pause(self._task_id(msg))

    def _resume(self, sub: Subscription, msg: Dict[str, Any]) -> None:
        self._scheduler.resume(self._task_id(msg))

    def _stop(self, sub: Subscription, msg: Dict[str, Any]) -> None:
        self._scheduler.stop(self._task_id(msg))

    def _stop_all(self, sub: Subscription, msg: Dict[str, Any]) -> None:
        self._scheduler.stop_all()

    def _purge(self, sub: Subscription, msg: Dict[str, Any]) -> None:
        self._scheduler.purge(self._task_id(msg))

    def _reconnect(self, sub: Subscription, msg: Dict[str, Any]) -> None:
        self._channel.reply(sub, ProgressEvent(EventType.SNAPSHOT, None, {"tasks": self._scheduler.snapshot()}))
