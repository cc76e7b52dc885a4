"""Tests for the SessionController page-iteration loop."""

import asyncio
import random
import unittest

from harvester.backoff import BackoffStrategy
from harvester.channel import ProgressChannel
from harvester.detection import DetectionMonitor
from harvester.errors import ExecutionEnvironmentError, HarvestError, NavigationError
from harvester.metrics import MetricsCollector
from harvester.models import EventType, PageContent, TaskOptions
from harvester.session import PERSISTENT_DETECTION, STOPPED_BY_USER, SessionController, compute_total_pages
from harvester.tasks import Task, TaskState

from tests.fakes import FakeEnvironment, FakeExporter, FakeExtractor, blocked, detail, fast_settings, listing, search_url


def ids(prefix, n):
    return [f"{prefix}{i}" for i in range(n)]


def url(page):
    return search_url("widgets", page)


class TestComputeTotalPages(unittest.TestCase):
    def test_rounds_up(self):
        """185 results at 60 per page is 4 pages."""
        self.assertEqual(compute_total_pages(185, 60, 0, 10), 4)

    def test_cap(self):
        self.assertEqual(compute_total_pages(185, 60, 2, 10), 2)
        self.assertEqual(compute_total_pages(185, 60, 9, 10), 4)

    def test_unknown_total_uses_finite_fallback(self):
        self.assertEqual(compute_total_pages(None, 60, 0, 10), 10)
        self.assertEqual(compute_total_pages(None, 60, 3, 10), 3)

    def test_zero_results(self):
        self.assertEqual(compute_total_pages(0, 60, 0, 10), 0)


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    """Builds a controller around scripted fakes."""

    def build(self, script=None, options=None, settings=None, exporter=None, start_failures=0, hook=None):
        self.settings = settings or fast_settings()
        s = self.settings
        self.channel = ProgressChannel()
        self.sub = self.channel.subscribe()
        self.metrics = MetricsCollector()
        self.env = FakeEnvironment(script, start_failures=start_failures, settings=s, hook=hook)
        self.exporter = exporter or FakeExporter()
        self.task = Task(task_id="t1", target="widgets", label="widgets", options=options or TaskOptions())
        self.task.transition(TaskState.INITIALIZING)
        detector = DetectionMonitor(
            BackoffStrategy(s.backoff_base, s.backoff_increment, s.backoff_max, s.max_detection_retries)
        )
        self.controller = SessionController(
            self.task,
            environment=self.env,
            extractor=FakeExtractor(),
            detector=detector,
            exporter=self.exporter,
            channel=self.channel,
            settings=s,
            metrics=self.metrics,
            rng=random.Random(0),
        )
        return self.controller

    async def run_task(self, timeout=5):
        state = await asyncio.wait_for(self.controller.run(), timeout=timeout)
        self.events = self.sub.drain()
        return state

    def of_type(self, event_type):
        return [e for e in self.events if e.type is event_type]

    def states(self):
        return [e.payload["state"] for e in self.of_type(EventType.STATUS)]


class TestPaging(SessionTestCase):
    """Verify page count, dedupe and termination of the page loop."""

    async def test_visits_every_computed_page(self):
        self.build({
            url(1): [listing(url(1), ids("a", 60), total=185)],
            url(2): [listing(url(2), ids("b", 60))],
            url(3): [listing(url(3), ids("c", 60))],
            url(4): [listing(url(4), ids("d", 5))],
        })
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.env.visits, [url(1), url(2), url(3), url(4)])
        self.assertEqual(self.task.total_pages, 4)
        self.assertEqual(len(self.task.records), 185)
        self.assertEqual(self.states(), ["running", "completed"])
        self.assertEqual(self.env.close_calls, 1)
        self.assertEqual(self.metrics.snapshot(60).ok_count, 4)

        progress = self.of_type(EventType.PROGRESS)
        self.assertEqual([e.payload["page"] for e in progress], [1, 2, 3, 4])
        self.assertEqual(progress[-1].payload["totalRecords"], 185)

        self.assertEqual(len(self.exporter.writes), 1)
        self.assertEqual(self.events[-1].type, EventType.COMPLETE)
        self.assertEqual(self.events[-1].payload["totalRecords"], 185)
        self.assertEqual(self.events[-1].payload["outputRef"], "/results/widgets.json")
        self.assertEqual([e.seq for e in self.events], list(range(1, len(self.events) + 1)))

    async def test_duplicates_across_pages_are_dropped(self):
        self.build({
            url(1): [listing(url(1), ["x", "y"], total=4)],
            url(2): [listing(url(2), ["y", "z"])],
        }, options=TaskOptions(page_size=2))
        await self.run_task()
        self.assertEqual([r.item_id for r in self.task.records], ["x", "y", "z"])
        second = self.of_type(EventType.PROGRESS)[1].payload
        self.assertEqual((second["pageRecords"], second["newRecords"]), (2, 1))

    async def test_page_cap(self):
        self.build({url(1): [listing(url(1), ids("a", 60), total=6000)]}, options=TaskOptions(max_pages=2))
        await self.run_task()
        self.assertEqual(self.env.visits, [url(1), url(2)])

    async def test_empty_streak_ends_the_task(self):
        """Three empty pages after page 5 complete the task; page 9 is never attempted."""
        script = {url(p): [listing(url(p), ids(f"p{p}-", 60), total=600 if p == 1 else None)] for p in range(1, 6)}
        self.build(script)
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.env.visits, [url(p) for p in range(1, 9)])
        self.assertEqual(len(self.task.records), 300)
        self.assertEqual(self.events[-1].payload["totalRecords"], 300)

    async def test_non_empty_page_resets_streak(self):
        script = {
            url(1): [listing(url(1), ["a"], total=6)],
            url(4): [listing(url(4), ["b"])],
        }
        self.build(script, options=TaskOptions(page_size=1))
        await self.run_task()
        # 2,3 empty, 4 resets, 5,6 empty: never three in a row
        self.assertEqual(len(self.env.visits), 6)

    async def test_last_page_marker(self):
        self.build({
            url(1): [listing(url(1), ["a"], total=None)],
            url(2): [listing(url(2), ["b"], last=True)],
        })
        await self.run_task()
        self.assertEqual(self.env.visits, [url(1), url(2)])
        self.assertEqual(self.task.total_pages, 10)

    async def test_malformed_page_counts_as_empty(self):
        self.build({
            url(1): [listing(url(1), ["a"], total=120)],
            url(2): [PageContent(url=url(2), html="<html>not json</html>", status=200)],
        })
        state = await self.run_task()
        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.of_type(EventType.PROGRESS)[1].payload["pageRecords"], 0)


class TestNavigationFailures(SessionTestCase):
    """Verify retry-once-then-skip navigation and environment failures."""

    async def test_retry_then_skip(self):
        """A page failing twice is skipped without counting as empty."""
        self.build({
            url(1): [listing(url(1), ["a"], total=3)],
            url(2): [NavigationError("timeout")],
            url(3): [listing(url(3), ["c"])],
        }, options=TaskOptions(page_size=1), settings=fast_settings(empty_page_threshold=1))
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.env.visits, [url(1), url(2), url(2), url(3)])
        self.assertEqual(self.task.skipped_pages, 1)
        self.assertEqual(self.task.navigation_retries, 1)
        self.assertEqual([r.item_id for r in self.task.records], ["a", "c"])
        self.assertEqual(self.metrics.snapshot(60).failed_count, 2)

    async def test_retry_recovers(self):
        self.build({
            url(1): [listing(url(1), ["a"], total=2)],
            url(2): [NavigationError("reset"), listing(url(2), ["b"])],
        }, options=TaskOptions(page_size=1))
        await self.run_task()
        self.assertEqual([r.item_id for r in self.task.records], ["a", "b"])
        self.assertEqual(self.task.skipped_pages, 0)

    async def test_environment_acquisition_exhausted(self):
        """Three failed launches fail the task and still persist once."""
        self.build(start_failures=3, settings=fast_settings(acquire_attempts=3))
        state = await self.run_task()

        self.assertIs(state, TaskState.FAILED)
        self.assertEqual(self.env.start_calls, 3)
        self.assertEqual(self.env.visits, [])
        self.assertEqual(len(self.exporter.writes), 1)
        self.assertEqual(self.states(), ["failed"])
        error = self.events[-1]
        self.assertEqual(error.type, EventType.ERROR)
        self.assertIn("3 attempts", error.payload["message"])
        self.assertEqual(error.payload["partialCount"], 0)
        self.assertEqual(self.of_type(EventType.COMPLETE), [])

    async def test_environment_acquisition_recovers(self):
        self.build({url(1): [listing(url(1), ["a"], total=1)]}, start_failures=2)
        state = await self.run_task()
        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.env.start_calls, 3)

    async def test_environment_crash_mid_run(self):
        self.build({
            url(1): [listing(url(1), ids("a", 60), total=240)],
            url(2): [ExecutionEnvironmentError("browser crashed")],
        })
        state = await self.run_task()

        self.assertIs(state, TaskState.FAILED)
        self.assertEqual(self.exporter.snapshots, [ids("a", 60)])
        self.assertEqual(self.events[-1].payload["partialCount"], 60)
        self.assertIn("browser crashed", self.task.error)


class TestDetection(SessionTestCase):
    """Verify backoff and persistent-detection stops."""

    async def test_persistent_detection_on_page_three(self):
        """Blocked on page 3: wait the base window, retry once, then stop with pages 1-2 persisted."""
        self.build({
            url(1): [listing(url(1), ids("a", 60), total=300)],
            url(2): [listing(url(2), ids("b", 60))],
            url(3): [blocked(url(3))],
        }, settings=fast_settings(backoff_base=0.02, backoff_increment=0.5, max_detection_retries=1))
        state = await self.run_task()

        self.assertIs(state, TaskState.STOPPED)
        self.assertEqual(self.task.stop_reason, PERSISTENT_DETECTION)
        self.assertEqual(self.env.visits, [url(1), url(2), url(3), url(3)])

        limited = self.of_type(EventType.RATE_LIMITED)
        self.assertEqual(len(limited), 1)
        self.assertEqual(limited[0].payload, {"waitSeconds": 0.02, "retryCount": 1})

        self.assertEqual(self.states(), ["running", "awaiting_backoff", "running", "stopped"])
        self.assertEqual(self.exporter.snapshots, [ids("a", 60) + ids("b", 60)])
        self.assertEqual(self.events[-1].type, EventType.ERROR)
        self.assertEqual(self.events[-1].payload["partialCount"], 120)
        self.assertEqual(self.metrics.snapshot(60).blocked_count, 2)

        with self.assertRaises(HarvestError):
            self.task.add_records([], "late")

    async def test_recovers_after_backoff(self):
        self.build({
            url(1): [listing(url(1), ["a"], total=2)],
            url(2): [blocked(url(2)), listing(url(2), ["b"])],
        }, options=TaskOptions(page_size=1))
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.task.detection_retries, 0)
        self.assertEqual([r.item_id for r in self.task.records], ["a", "b"])

    async def test_waits_grow_without_clear_result(self):
        self.build({
            url(1): [blocked(url(1)), blocked(url(1)), blocked(url(1)), listing(url(1), ["a"], total=1)],
        }, settings=fast_settings(max_detection_retries=3, backoff_base=0.01, backoff_increment=0.01))
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        waits = [e.payload["waitSeconds"] for e in self.of_type(EventType.RATE_LIMITED)]
        self.assertEqual(len(waits), 3)
        self.assertEqual(waits, sorted(waits))
        self.assertEqual([e.payload["retryCount"] for e in self.of_type(EventType.RATE_LIMITED)], [1, 2, 3])

    async def test_stop_during_backoff(self):
        loop = asyncio.get_running_loop()

        async def hook(visited):
            if visited == url(2):
                loop.call_later(0.05, self.controller.cancel)

        self.build({
            url(1): [listing(url(1), ["a"], total=3)],
            url(2): [blocked(url(2))],
        }, options=TaskOptions(page_size=1), settings=fast_settings(backoff_base=30), hook=hook)
        state = await self.run_task(timeout=2)

        self.assertIs(state, TaskState.STOPPED)
        self.assertEqual(self.task.stop_reason, STOPPED_BY_USER)
        self.assertEqual(self.env.visits, [url(1), url(2)])
        self.assertEqual(self.events[-1].type, EventType.COMPLETE)


class TestControl(SessionTestCase):
    """Verify pause, resume and cooperative cancellation."""

    async def test_pause_and_resume(self):
        loop = asyncio.get_running_loop()

        async def hook(visited):
            if visited == url(2):
                self.controller.pause()
                loop.call_later(0.05, self.controller.resume)

        self.build({
            url(1): [listing(url(1), ["a"], total=3)],
            url(2): [listing(url(2), ["b"])],
            url(3): [listing(url(3), ["c"])],
        }, options=TaskOptions(page_size=1), hook=hook)
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.states(), ["running", "paused", "running", "completed"])
        self.assertEqual(len(self.task.records), 3)

    async def test_cancel_between_pages(self):
        """Cancellation is observed after the in-flight navigation; collected records are persisted."""
        async def hook(visited):
            if visited == url(2):
                self.controller.cancel()

        self.build({
            url(1): [listing(url(1), ["a"], total=5)],
            url(2): [listing(url(2), ["b"])],
        }, options=TaskOptions(page_size=1), hook=hook)
        state = await self.run_task()

        self.assertIs(state, TaskState.STOPPED)
        self.assertEqual(self.env.visits, [url(1), url(2)])
        self.assertEqual(self.exporter.snapshots, [["a"]])
        self.assertEqual(self.states()[-1], "stopped")
        self.assertEqual(self.events[-1].type, EventType.COMPLETE)

    async def test_cancel_while_paused(self):
        async def hook(visited):
            if visited == url(1):
                self.controller.pause()
                asyncio.get_running_loop().call_later(0.05, self.controller.cancel)

        self.build({url(1): [listing(url(1), ["a"], total=3)]}, options=TaskOptions(page_size=1), hook=hook)
        state = await self.run_task()
        self.assertIs(state, TaskState.STOPPED)
        self.assertEqual(self.states(), ["running", "paused", "stopped"])

    async def test_cancel_before_start(self):
        self.build()
        self.controller.cancel()
        state = await self.run_task()
        self.assertIs(state, TaskState.STOPPED)
        self.assertEqual(self.env.start_calls, 0)
        self.assertEqual(len(self.exporter.writes), 1)


class TestEnrichment(SessionTestCase):
    """Verify the detail pass and its circuit breaker."""

    async def test_fills_missing_fields(self):
        self.build({
            url(1): [listing(url(1), ["a", "b", "c"], total=3)],
            "https://shop.test/item/a": [detail("https://shop.test/item/a", ean="5012345678900", description="Oak")],
            "https://shop.test/item/b": [NavigationError("timeout")],
            "https://shop.test/item/c": [detail("https://shop.test/item/c", ean="4006381333931")],
        }, options=TaskOptions(fetch_ean=True))
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        by_id = {r.item_id: r for r in self.task.records}
        self.assertEqual(by_id["a"].ean, "5012345678900")
        self.assertEqual(by_id["a"].description, "")
        self.assertEqual(by_id["b"].ean, "")
        self.assertEqual(by_id["c"].ean, "4006381333931")
        self.assertEqual(self.env.visits, [url(1)])
        self.assertEqual(len(self.env.detail_visits), 3)

        details = self.of_type(EventType.DETAIL_PROGRESS)
        self.assertEqual(details[-1].payload, {"current": 3, "total": 3})

    async def test_periodic_detail_progress(self):
        self.build(
            {url(1): [listing(url(1), ids("i", 7), total=7)]},
            options=TaskOptions(fetch_description=True),
            settings=fast_settings(detail_progress_every=3),
        )
        await self.run_task()
        self.assertEqual([e.payload["current"] for e in self.of_type(EventType.DETAIL_PROGRESS)], [3, 6, 7])

    async def test_circuit_breaker_abandons_pass(self):
        item_ids = ids("i", 6)
        script = {url(1): [listing(url(1), item_ids, total=6)]}
        for item_id in item_ids:
            script[f"https://shop.test/item/{item_id}"] = [ExecutionEnvironmentError("target closed")]
        self.build(script, options=TaskOptions(fetch_ean=True), settings=fast_settings(enrichment_failure_limit=2))
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(len(self.env.detail_visits), 2)
        self.assertEqual(self.of_type(EventType.DETAIL_PROGRESS)[-1].payload, {"current": 2, "total": 6})
        self.assertEqual(len(self.task.records), 6)

    async def test_blocked_detail_page_is_a_record_failure(self):
        self.build({
            url(1): [listing(url(1), ["a", "b"], total=2)],
            "https://shop.test/item/a": [blocked("https://shop.test/item/a")],
            "https://shop.test/item/b": [detail("https://shop.test/item/b", ean="5012345678900")],
        }, options=TaskOptions(fetch_ean=True))
        state = await self.run_task()
        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual([r.ean for r in self.task.records], ["", "5012345678900"])


class TestPersistence(SessionTestCase):
    async def test_persistence_failure_still_reaches_terminal_state(self):
        self.build({url(1): [listing(url(1), ["a"], total=1)]}, exporter=FakeExporter(fail=True))
        state = await self.run_task()

        self.assertIs(state, TaskState.COMPLETED)
        self.assertEqual(self.task.error, "disk full")
        types = [e.type for e in self.events]
        self.assertEqual(types[-2:], [EventType.ERROR, EventType.COMPLETE])
        self.assertEqual(self.of_type(EventType.FILES_SAVED), [])
        self.assertIsNone(self.events[-1].payload["outputRef"])

    async def test_failed_task_folds_persistence_error_into_one_event(self):
        self.build(start_failures=5, settings=fast_settings(acquire_attempts=1), exporter=FakeExporter(fail=True))
        state = await self.run_task()

        self.assertIs(state, TaskState.FAILED)
        errors = self.of_type(EventType.ERROR)
        self.assertEqual(len(errors), 1)
        self.assertIn("disk full", errors[0].payload["message"])


if __name__ == "__main__":
    unittest.main()
