from __future__ import annotations

from typing import Optional


class HarvestError(Exception):
    """Base class for every error raised by the orchestration engine.

    Carries the owning task id and the URL involved (when known) so the
    session loop can log and report failures uniformly."""

    def __init__(self, message: str = "", task_id: Optional[str] = None, url: Optional[str] = None) -> None:
        self.task_id = task_id
        self.url = url
        super().__init__(message or self.__class__.__name__)


class ExecutionEnvironmentError(HarvestError):
    """The execution environment could not be acquired or has crashed. Fatal to the task."""


class NavigationError(HarvestError):
    """A single page load failed. Retried once, then the page is skipped."""


class DetectionError(HarvestError):
    """The target served a blocking interstitial."""

    def __init__(self, message: str = "", retry_count: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_count = retry_count


class ExtractionError(HarvestError):
    """The extractor failed on malformed content. The page is treated as empty."""


class PersistenceError(HarvestError):
    """Writing the export artifact failed."""


class InvalidTransition(HarvestError):
    """A task was asked to move along an edge the state machine does not have."""


class UnknownTaskError(HarvestError):
    """A command referenced a task id that is not in the registry."""
