from __future__ import annotations

import asyncio
import csv
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import PersistenceError
from .models import Record
from .tasks import Task

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "Item_Number",
    "Title",
    "Price",
    "EAN",
    "Description",
    "Image_URL_1",
    "Image_URL_2",
    "Image_URL_3",
    "Image_URL_4",
    "Condition",
    "Shipping",
    "URL",
    "Scraped_At",
]


def export_row(record: Record) -> Dict[str, str]:
    """Flatten a record into the fixed export column set."""
    images = list(record.images[:4]) + [""] * (4 - min(len(record.images), 4))
    return {
        "Item_Number": record.item_id,
        "Title": record.title,
        "Price": record.price,
        "EAN": record.ean,
        "Description": record.description,
        "Image_URL_1": images[0],
        "Image_URL_2": images[1],
        "Image_URL_3": images[2],
        "Image_URL_4": images[3],
        "Condition": record.condition,
        "Shipping": record.shipping,
        "URL": record.url,
        "Scraped_At": record.scraped_at,
    }


class StorageBase(ABC):
    """Abstract base class for export backends.

    Subclasses persist a task's finalized record set and return the paths
    they wrote. Any failure is raised as PersistenceError.
    """

    @abstractmethod
    async def write(self, task: Task) -> List[str]:
        """Persist the task's records and return the artifact paths."""


class JsonCsvExporter(StorageBase):
    """Writes `<label>_<timestamp>.json` and `.csv` into the results directory.

    File I/O runs in a worker thread so the event loop keeps serving other
    sessions while a large export is written.
    """

    def __init__(self, results_dir: str | Path, clock: Callable[[], datetime] = datetime.now) -> None:
        self._dir = Path(results_dir)
        self._clock = clock

    @property
    def results_dir(self) -> Path:
        return self._dir

    async def write(self, task: Task) -> List[str]:
        rows = [export_row(r) for r in task.records]
        raw = [r.to_dict() for r in task.records]
        stamp = self._clock().strftime("%Y-%m-%dT%H-%M-%S")
        try:
            return await asyncio.to_thread(self._write_files, task.label, stamp, raw, rows)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"export failed: {exc}", task_id=task.task_id) from exc

    def _write_files(self, label: str, stamp: str, raw: List[Dict[str, Any]], rows: List[Dict[str, str]]) -> List[str]:
        self._dir.mkdir(parents=True, exist_ok=True)
        stem = self._unique_stem(f"{label}_{stamp}")

        json_path = self._dir / f"{stem}.json"
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(raw, f, ensure_ascii=False, indent=2)

        csv_path = self._dir / f"{stem}.csv"
        with open(csv_path, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            writer.writerows(rows)

        logger.info("Exported %d records to %s", len(rows), json_path)
        return [str(json_path), str(csv_path)]

    def _unique_stem(self, stem: str) -> str:
        candidate, n = stem, 1
        while (self._dir / f"{candidate}.json").exists() or (self._dir / f"{candidate}.csv").exists():
            n += 1
            candidate = f"{stem}_{n}"
        return candidate

    def list_files(self) -> List[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.name for p in self._dir.iterdir() if p.suffix in (".json", ".csv"))


class SnapshotWriter:
    """Periodically serializes live task state to a JSON file for operators.

    Best-effort: write failures are logged and the loop keeps going. The
    file is never read back to resume work.
    """

    def __init__(self, path: str | Path, source: Callable[[], Dict[str, Any]], interval: float = 10.0) -> None:
        self._path = Path(path)
        self._source = source
        self._interval = interval

    @property
    def path(self) -> Path:
        return self._path

    def write_now(self) -> bool:
        return self._write(self._build())

    def _build(self) -> Dict[str, Any]:
        return {"generatedAt": time.time(), **self._source()}

    def _write(self, payload: Dict[str, Any]) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
            os.replace(tmp, self._path)
            return True
        except OSError as exc:
            logger.warning("Task snapshot write failed: %s", exc)
            return False

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Write a snapshot every `interval` seconds until `stop` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            await asyncio.to_thread(self._write, self._build())
