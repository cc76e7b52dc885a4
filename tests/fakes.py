"""In-memory stand-ins for the execution environment, extractor and exporter."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Sequence, Union

from harvester.base import BaseExtractor
from harvester.config import Settings
from harvester.environment import ExecutionEnvironment, PageLoader
from harvester.errors import ExecutionEnvironmentError, PersistenceError
from harvester.models import PageContent, Record, TaskOptions
from harvester.storage import StorageBase
from harvester.tasks import Task

SEARCH_BASE = "https://shop.test/search"

Response = Union[PageContent, Exception]


def fast_settings(**overrides) -> Settings:
    """Settings with every real-time delay switched off."""
    base = Settings(
        settle_delay=0,
        navigation_qps=0,
        acquire_delay=0,
        navigation_retry_delay=0,
        backoff_base=0.01,
        backoff_increment=0.01,
        backoff_max=1.0,
        detail_delay_min=0,
        detail_delay_max=0,
        snapshot_interval=0.05,
    )
    return base.replace(**overrides)


def listing(url: str, item_ids: Sequence[str], total: Optional[int] = None, last: bool = False) -> PageContent:
    """A result page understood by FakeExtractor."""
    body = {"items": list(item_ids), "total": total, "last": last}
    return PageContent(url=url, html=json.dumps(body), title="Results", status=200)


def blocked(url: str) -> PageContent:
    return PageContent(url=url, html="<html></html>", title="Pardon Our Interruption...", status=200)


def detail(url: str, ean: str = "", description: str = "") -> PageContent:
    return PageContent(url=url, html=json.dumps({"ean": ean, "description": description}), title="Item", status=200)


class FakeExtractor(BaseExtractor):
    """Reads the JSON bodies produced by `listing()` and `detail()`."""

    name = "fake"

    def search_url(self, target: str, options: TaskOptions) -> str:
        self.validate(target)
        return f"{SEARCH_BASE}?q={target.strip()}"

    def page_url(self, search_url: str, page: int) -> str:
        return search_url if page <= 1 else f"{search_url}&page={page}"

    @staticmethod
    def _body(content: PageContent) -> dict:
        try:
            return json.loads(content.html)
        except ValueError:
            return {}

    def parse_total(self, content: PageContent) -> Optional[int]:
        return self._body(content).get("total")

    def has_more(self, content: PageContent, page: int) -> bool:
        return not self._body(content).get("last")

    def detail_url(self, record: Record) -> str:
        return f"https://shop.test/item/{record.item_id}"

    def extract(self, content: PageContent, page: int, options: TaskOptions) -> List[Record]:
        data = json.loads(content.html)
        return [Record(item_id=i, title=f"Item {i}", page=page) for i in data["items"]]

    def extract_details(self, content: PageContent) -> Dict[str, str]:
        data = json.loads(content.html)
        return {k: v for k, v in data.items() if v}


def search_url(target: str, page: int = 1) -> str:
    return FakeExtractor().page_url(f"{SEARCH_BASE}?q={target}", page)


class _Loader(PageLoader):
    def __init__(self, env: "FakeEnvironment") -> None:
        self._env = env

    async def goto(self, url: str) -> PageContent:
        self._env.detail_visits.append(url)
        return self._env._next(url)


class FakeEnvironment(ExecutionEnvironment):
    """Scripted environment.

    `script` maps a URL to a list of responses consumed in order; the last
    one repeats. A response that is an Exception instance is raised. Unknown
    URLs load as an empty result page.
    """

    def __init__(
        self,
        script: Optional[Dict[str, List[Response]]] = None,
        start_failures: int = 0,
        settings: Optional[Settings] = None,
        hook=None,
    ) -> None:
        super().__init__(settings or fast_settings())
        self._script = {url: list(responses) for url, responses in (script or {}).items()}
        self._start_failures = start_failures
        self._hook = hook
        self.started = False
        self.start_calls = 0
        self.close_calls = 0
        self.visits: List[str] = []
        self.detail_visits: List[str] = []

    @property
    def alive(self) -> bool:
        return self.started

    async def start(self) -> None:
        self.start_calls += 1
        if self.start_calls <= self._start_failures:
            raise ExecutionEnvironmentError("browser launch failed")
        self.started = True

    async def close(self) -> None:
        self.close_calls += 1
        self.started = False

    async def goto(self, url: str) -> PageContent:
        self.visits.append(url)
        if self._hook is not None:
            await self._hook(url)
        return self._next(url)

    def _next(self, url: str) -> PageContent:
        responses = self._script.get(url)
        if not responses:
            return listing(url, [])
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    @asynccontextmanager
    async def isolated(self):
        yield _Loader(self)


class FakeExporter(StorageBase):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.writes: List[Task] = []
        self.snapshots: List[List[str]] = []

    async def write(self, task: Task) -> List[str]:
        self.writes.append(task)
        self.snapshots.append([r.item_id for r in task.records])
        if self.fail:
            raise PersistenceError("disk full", task_id=task.task_id)
        return [f"/results/{task.label}.json", f"/results/{task.label}.csv"]
