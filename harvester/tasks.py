from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .errors import HarvestError, InvalidTransition, UnknownTaskError
from .models import ProgressEvent, Record, TaskOptions

if TYPE_CHECKING:
    from .channel import ProgressChannel

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    QUEUED = "queued"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_BACKOFF = "awaiting_backoff"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_STATES: FrozenSet[TaskState] = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.STOPPED})

_ABORT = {TaskState.FAILED, TaskState.STOPPED}

TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.QUEUED: frozenset({TaskState.INITIALIZING} | _ABORT),
    TaskState.INITIALIZING: frozenset({TaskState.RUNNING} | _ABORT),
    TaskState.RUNNING: frozenset({TaskState.PAUSED, TaskState.AWAITING_BACKOFF, TaskState.COMPLETED} | _ABORT),
    TaskState.PAUSED: frozenset({TaskState.RUNNING} | _ABORT),
    TaskState.AWAITING_BACKOFF: frozenset({TaskState.RUNNING} | _ABORT),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.STOPPED: frozenset(),
}


def can_transition(current: TaskState, new: TaskState) -> bool:
    return new in TRANSITIONS[current]


@dataclass(eq=False)
class Task:
    """One tracked scrape request against one target.

    Only the Scheduler and the task's SessionController mutate a Task. Once
    it reaches a terminal state its state and record list are frozen; the
    object stays inspectable until the Scheduler purges it.
    """

    task_id: str
    target: str
    label: str
    options: TaskOptions = field(default_factory=TaskOptions)
    state: TaskState = TaskState.QUEUED
    records: List[Record] = field(default_factory=list)
    seen_keys: Set[str] = field(default_factory=set)
    current_page: int = 0
    total_pages: int = 0
    detection_retries: int = 0
    navigation_retries: int = 0
    skipped_pages: int = 0
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    stop_reason: Optional[str] = None
    output_paths: List[str] = field(default_factory=list)
    history: List[Tuple[TaskState, float]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, self.created_at))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def output_ref(self) -> Optional[str]:
        return self.output_paths[0] if self.output_paths else None

    def transition(self, new_state: TaskState) -> None:
        """Move to `new_state`, raising InvalidTransition for edges the machine lacks."""
        if not can_transition(self.state, new_state):
            raise InvalidTransition(
                f"{self.state.value} -> {new_state.value} is not allowed",
                task_id=self.task_id,
            )
        now = time.time()
        if new_state is TaskState.INITIALIZING:
            self.started_at = now
        if new_state in TERMINAL_STATES:
            self.finished_at = now
        self.state = new_state
        self.history.append((new_state, now))

    def add_records(self, candidates: Iterable[Record], captured_at: str) -> List[Record]:
        """Append the new subset of `candidates` and return it.

        With dedupe enabled, candidates whose key was already seen on this
        task (or earlier in the same batch) are dropped.
        """
        if self.is_terminal:
            raise HarvestError("records of a finalized task are immutable", task_id=self.task_id)

        new: List[Record] = []
        for record in candidates:
            if self.options.dedupe:
                if record.key in self.seen_keys:
                    continue
                self.seen_keys.add(record.key)
            record.scraped_at = captured_at
            new.append(record)
        self.records.extend(new)
        return new

    def elapsed(self, now: Optional[float] = None) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or now or time.time()
        return max(0.0, end - self.started_at)

    def throughput(self, now: Optional[float] = None) -> float:
        """Records per second since the task started."""
        elapsed = self.elapsed(now)
        return len(self.records) / elapsed if elapsed > 0 else 0.0

    def snapshot(self) -> Dict:
        return {
            "taskId": self.task_id,
            "target": self.target,
            "label": self.label,
            "state": self.state.value,
            "options": self.options.to_wire(),
            "page": self.current_page,
            "totalPages": self.total_pages,
            "totalRecords": len(self.records),
            "detectionRetries": self.detection_retries,
            "navigationRetries": self.navigation_retries,
            "skippedPages": self.skipped_pages,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": self.error,
            "stopReason": self.stop_reason,
            "outputRef": self.output_ref,
        }


def advance(task: Task, new_state: TaskState, channel: "ProgressChannel", message: Optional[str] = None) -> None:
    """Transition `task` and publish exactly one status event for it."""
    old_state = task.state
    task.transition(new_state)
    logger.info("task %s: %s -> %s%s", task.task_id, old_state.value, new_state.value, f" ({message})" if message else "")
    channel.publish(ProgressEvent.status(task.task_id, new_state.value, message))


class TaskRegistry:
    """Insertion-ordered map of live tasks, owned by the Scheduler."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._counter = 0

    def new_id(self) -> str:
        self._counter += 1
        task_id = f"task_{int(time.time() * 1000)}_{self._counter}"
        while task_id in self._tasks:
            self._counter += 1
            task_id = f"task_{int(time.time() * 1000)}_{self._counter}"
        return task_id

    def add(self, task: Task) -> None:
        if task.task_id in self._tasks:
            raise HarvestError(f"duplicate task id {task.task_id}", task_id=task.task_id)
        self._tasks[task.task_id] = task

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise UnknownTaskError(f"unknown task {task_id}", task_id=task_id) from None

    def find(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def purge(self, task_id: str) -> Task:
        task = self.get(task_id)
        if not task.is_terminal:
            raise HarvestError(f"task {task_id} is still {task.state.value}", task_id=task_id)
        return self._tasks.pop(task_id)

    def __iter__(self):
        return iter(list(self._tasks.values()))

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def snapshot(self) -> List[Dict]:
        return [t.snapshot() for t in self._tasks.values()]
