from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

from .backoff import BackoffStrategy
from .models import PageContent

logger = logging.getLogger(__name__)

DEFAULT_URL_MARKERS: Tuple[str, ...] = (
    "/splashui/captcha",
    "/splashui/challenge",
    "/captcha/",
)

DEFAULT_TITLE_MARKERS: Tuple[str, ...] = (
    "pardon our interruption",
    "security measure",
    "access denied",
    "just a moment",
)

DEFAULT_TEXT_MARKERS: Tuple[str, ...] = (
    "please verify yourself to continue",
    "checking your browser before accessing",
    "to continue, please verify that you are not a robot",
)

DEFAULT_BLOCK_STATUSES: Tuple[int, ...] = (403, 429)


class Verdict(str, Enum):
    CLEAR = "clear"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class Inspection:
    verdict: Verdict
    indicator: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.verdict is Verdict.BLOCKED


class DetectionMonitor:
    """Decides whether loaded content is a blocking interstitial.

    The predicate is pure: it only looks at the final URL, the title, the
    HTTP status and a bounded prefix of the body. Backoff windows come from
    the wrapped BackoffStrategy; the consecutive-detection counter itself
    lives on the task, which resets it on every Clear result.
    """

    def __init__(
        self,
        backoff: Optional[BackoffStrategy] = None,
        url_markers: Iterable[str] = DEFAULT_URL_MARKERS,
        title_markers: Iterable[str] = DEFAULT_TITLE_MARKERS,
        text_markers: Iterable[str] = DEFAULT_TEXT_MARKERS,
        block_statuses: Iterable[int] = DEFAULT_BLOCK_STATUSES,
        scan_chars: int = 20000,
    ) -> None:
        self._backoff = backoff or BackoffStrategy()
        self._url_markers = tuple(m.lower() for m in url_markers)
        self._title_markers = tuple(m.lower() for m in title_markers)
        self._text_markers = tuple(m.lower() for m in text_markers)
        self._block_statuses = frozenset(block_statuses)
        self._scan_chars = scan_chars

    @property
    def backoff(self) -> BackoffStrategy:
        return self._backoff

    def inspect(self, content: PageContent) -> Inspection:
        url = (content.url or "").lower()
        for marker in self._url_markers:
            if marker in url:
                return Inspection(Verdict.BLOCKED, f"url:{marker}")

        title = (content.title or "").lower()
        for marker in self._title_markers:
            if marker in title:
                return Inspection(Verdict.BLOCKED, f"title:{marker}")

        if content.status is not None and content.status in self._block_statuses:
            return Inspection(Verdict.BLOCKED, f"status:{content.status}")

        body = (content.html or "")[: self._scan_chars].lower()
        for marker in self._text_markers:
            if marker in body:
                return Inspection(Verdict.BLOCKED, f"text:{marker}")

        return Inspection(Verdict.CLEAR)

    def backoff_window(self, retry_count: int) -> float:
        return self._backoff.get_sleep(retry_count)

    def exhausted(self, retry_count: int) -> bool:
        return self._backoff.exhausted(retry_count)
