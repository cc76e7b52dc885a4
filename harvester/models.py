from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


FILTER_KEYS = ("uk_only", "buy_it_now", "free_shipping", "new_condition", "min_price", "max_price")

_WIRE_FILTER_KEYS = {
    "ukOnly": "uk_only",
    "buyItNow": "buy_it_now",
    "freeShipping": "free_shipping",
    "newCondition": "new_condition",
    "minPrice": "min_price",
    "maxPrice": "max_price",
}


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


@dataclass(frozen=True)
class TaskOptions:
    page_size: int = 60
    max_pages: int = 0
    dedupe: bool = True
    fetch_ean: bool = False
    fetch_description: bool = False
    image_quality: int = 800
    concurrency_class: str = "browser"
    filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def wants_enrichment(self) -> bool:
        return self.fetch_ean or self.fetch_description

    @classmethod
    def from_wire(cls, raw: Optional[Dict[str, Any]], defaults: Optional["TaskOptions"] = None) -> "TaskOptions":
        """Build options from the camelCase dictionary sent by clients.

        Unknown keys are ignored; missing or malformed values take the defaults.
        """
        base = defaults or cls()
        if not isinstance(raw, dict):
            raw = {}
        wire_filters = raw.get("filters")
        if not isinstance(wire_filters, dict):
            wire_filters = {}
        filters: Dict[str, Any] = dict(base.filters)
        for wire_key, value in wire_filters.items():
            key = _WIRE_FILTER_KEYS.get(wire_key, wire_key)
            if key in FILTER_KEYS and value not in (None, "", False):
                filters[key] = value

        concurrency_class = str(raw.get("concurrencyClass") or base.concurrency_class).lower()
        if concurrency_class not in ("browser", "http"):
            concurrency_class = base.concurrency_class

        return cls(
            page_size=max(1, _as_int(raw.get("itemsPerPage", base.page_size), base.page_size)),
            max_pages=max(0, _as_int(raw.get("maxPages", base.max_pages), base.max_pages)),
            dedupe=bool(raw.get("removeDuplicates", base.dedupe)),
            fetch_ean=bool(raw.get("extractEAN", base.fetch_ean)),
            fetch_description=bool(raw.get("extractDescription", base.fetch_description)),
            image_quality=_as_int(raw.get("imageQuality", base.image_quality), base.image_quality),
            concurrency_class=concurrency_class,
            filters=filters,
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "itemsPerPage": self.page_size,
            "maxPages": self.max_pages,
            "removeDuplicates": self.dedupe,
            "extractEAN": self.fetch_ean,
            "extractDescription": self.fetch_description,
            "imageQuality": self.image_quality,
            "concurrencyClass": self.concurrency_class,
            "filters": dict(self.filters),
        }


@dataclass
class Record:
    """One extracted listing. `item_id` is the target-assigned natural key."""

    item_id: str
    title: str = ""
    price: str = ""
    ean: str = ""
    description: str = ""
    images: List[str] = field(default_factory=list)
    condition: str = ""
    shipping: str = ""
    url: str = ""
    page: int = 0
    scraped_at: str = ""

    @property
    def key(self) -> str:
        return self.item_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PageContent:
    url: str
    html: str
    title: str = ""
    status: Optional[int] = None


@dataclass(frozen=True)
class QueueEntry:
    task_id: str
    enqueued_at: float


@dataclass(frozen=True)
class NavigationResult:
    task_id: str
    url: str
    outcome: str  # ok | failed | blocked
    latency_ms: int
    error_type: Optional[str] = None


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_navigations: int
    ok_count: int
    failed_count: int
    blocked_count: int
    avg_latency_ms: float
    timestamp: float


class EventType(str, Enum):
    TASK_CREATED = "task_created"
    STATUS = "status"
    PROGRESS = "progress"
    DETAIL_PROGRESS = "detail_progress"
    RATE_LIMITED = "rate_limited"
    FILES_SAVED = "files_saved"
    COMPLETE = "complete"
    ERROR = "error"
    # Connection-scoped replies, never broadcast
    SNAPSHOT = "snapshot"
    BATCH_STARTED = "batch_started"


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    task_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"type": self.type.value}
        if self.task_id is not None:
            msg["taskId"] = self.task_id
            msg["seq"] = self.seq
        msg.update(self.payload)
        return msg

    @classmethod
    def task_created(cls, task_id: str, target: str, label: str) -> "ProgressEvent":
        return cls(EventType.TASK_CREATED, task_id, {"target": target, "label": label})

    @classmethod
    def status(cls, task_id: str, state: str, message: Optional[str] = None) -> "ProgressEvent":
        payload: Dict[str, Any] = {"state": state}
        if message:
            payload["message"] = message
        return cls(EventType.STATUS, task_id, payload)

    @classmethod
    def progress(
        cls,
        task_id: str,
        page: int,
        total_pages: int,
        page_records: int,
        new_records: int,
        total_records: int,
        throughput: float,
    ) -> "ProgressEvent":
        return cls(
            EventType.PROGRESS,
            task_id,
            {
                "page": page,
                "totalPages": total_pages,
                "pageRecords": page_records,
                "newRecords": new_records,
                "totalRecords": total_records,
                "throughput": round(throughput, 2),
            },
        )

    @classmethod
    def detail_progress(cls, task_id: str, current: int, total: int) -> "ProgressEvent":
        return cls(EventType.DETAIL_PROGRESS, task_id, {"current": current, "total": total})

    @classmethod
    def rate_limited(cls, task_id: str, wait_seconds: float, retry_count: int) -> "ProgressEvent":
        return cls(EventType.RATE_LIMITED, task_id, {"waitSeconds": wait_seconds, "retryCount": retry_count})

    @classmethod
    def files_saved(cls, task_id: str, paths: List[str]) -> "ProgressEvent":
        return cls(EventType.FILES_SAVED, task_id, {"paths": list(paths)})

    @classmethod
    def complete(cls, task_id: str, total_records: int, duration_ms: int, output_ref: Optional[str]) -> "ProgressEvent":
        return cls(
            EventType.COMPLETE,
            task_id,
            {"totalRecords": total_records, "durationMs": duration_ms, "outputRef": output_ref},
        )

    @classmethod
    def error(cls, task_id: Optional[str], message: str, partial_count: int) -> "ProgressEvent":
        return cls(EventType.ERROR, task_id, {"message": message, "partialCount": partial_count})
