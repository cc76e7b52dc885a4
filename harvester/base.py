from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .errors import ExtractionError
from .models import PageContent, Record, TaskOptions


class BaseExtractor(ABC):
    """Abstract base class for site-specific content extraction.

    The orchestration core only talks to extractors through this narrow
    contract: build URLs for a target, and map loaded content to candidate
    records. `run()` and `run_details()` normalize any failure into an
    ExtractionError so the session loop can treat the page as empty.
    """

    name = "base"

    def run(self, content: PageContent, page: int, options: TaskOptions) -> List[Record]:
        try:
            return list(self.extract(content, page, options))
        except ExtractionError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExtractionError(f"{type(exc).__name__}: {exc}", url=content.url) from exc

    def run_details(self, content: PageContent) -> Dict[str, str]:
        try:
            return dict(self.extract_details(content))
        except ExtractionError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExtractionError(f"{type(exc).__name__}: {exc}", url=content.url) from exc

    def validate(self, target: str) -> None:
        if not target or not target.strip():
            raise ValueError("target is required")

    def label(self, target: str) -> str:
        """Filesystem-safe label used to name export artifacts."""
        label = re.sub(r"[^a-z0-9]+", "_", target.strip().lower()).strip("_")
        return label or self.name

    def parse_total(self, content: PageContent) -> Optional[int]:
        """Total result count announced by the target, or None when absent."""
        return None

    def has_more(self, content: PageContent, page: int) -> bool:
        """False when the content says there is no further page."""
        return True

    def detail_url(self, record: Record) -> str:
        return record.url

    def extract_details(self, content: PageContent) -> Dict[str, str]:
        """Secondary fields (e.g. `ean`, `description`) found on a detail page."""
        return {}

    @abstractmethod
    def search_url(self, target: str, options: TaskOptions) -> str:
        ...

    @abstractmethod
    def page_url(self, search_url: str, page: int) -> str:
        ...

    @abstractmethod
    def extract(self, content: PageContent, page: int, options: TaskOptions) -> List[Record]:
        ...
