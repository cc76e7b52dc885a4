from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict
from typing import Deque, Dict, List

from .models import MetricsSnapshot, NavigationResult


class MetricsCollector:
    """Collector for navigation outcomes across all sessions.

    Records NavigationResult events and produces aggregated MetricsSnapshot
    objects over sliding time windows. Only touched from the event loop."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._events: Deque[tuple[float, NavigationResult]] = deque(maxlen=maxlen)

    def record(self, result: NavigationResult) -> None:
        """Record a navigation outcome with the current timestamp."""
        self._events.append((time.time(), result))

    def snapshot(self, window_secs: int) -> MetricsSnapshot:
        """Return aggregated metrics for navigations within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs
        events: List[NavigationResult] = [e for ts, e in self._events if ts >= cutoff]
        total = len(events)
        ok_count = sum(1 for e in events if e.outcome == "ok")
        failed_count = sum(1 for e in events if e.outcome == "failed")
        blocked_count = sum(1 for e in events if e.outcome == "blocked")
        avg_latency_ms = (sum(e.latency_ms for e in events) / total) if total else 0.0

        return MetricsSnapshot(
            window_secs=window_secs,
            total_navigations=total,
            ok_count=ok_count,
            failed_count=failed_count,
            blocked_count=blocked_count,
            avg_latency_ms=avg_latency_ms,
            timestamp=now,
        )

    def for_task(self, task_id: str) -> List[NavigationResult]:
        return [e for _, e in self._events if e.task_id == task_id]

    def export_json(self) -> List[Dict]:
        """Export all recorded events as a list of dictionaries."""
        return [{"timestamp": ts, **asdict(e)} for ts, e in self._events]
