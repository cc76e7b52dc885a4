from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import uvicorn

from harvester.channel import Subscription
from harvester.config import Settings, load_settings
from harvester.logging_setup import setup_logging
from harvester.models import TaskOptions
from harvester.server import Engine, create_app
from harvester.tasks import TaskState

logger = logging.getLogger(__name__)


def _load_targets(path: str) -> List[str]:
    targets: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            target = line.strip()
            if target and not target.startswith("#"):
                targets.append(target)
    if not targets:
        raise ValueError(f"No targets found in {path}")
    return targets


def _build_options(args: argparse.Namespace, defaults: TaskOptions) -> TaskOptions:
    filters = {
        "uk_only": args.uk_only,
        "buy_it_now": args.buy_it_now,
        "free_shipping": args.free_shipping,
        "new_condition": args.new_condition,
        "min_price": args.min_price,
        "max_price": args.max_price,
    }
    return TaskOptions(
        page_size=args.page_size or defaults.page_size,
        max_pages=args.max_pages,
        dedupe=not args.keep_duplicates,
        fetch_ean=args.ean,
        fetch_description=args.description,
        image_quality=defaults.image_quality,
        concurrency_class=args.environment or defaults.concurrency_class,
        filters={k: v for k, v in filters.items() if v},
    )


async def _print_events(sub: Subscription) -> None:
    while True:
        event = await sub.get()
        print(json.dumps(event.to_message(), ensure_ascii=False))


async def run_once(settings: Settings, targets: List[str], args: argparse.Namespace) -> int:
    """Scrape `targets` without a server and print every event as one JSON line."""
    engine = Engine(settings)
    sub = engine.channel.subscribe()
    printer = asyncio.create_task(_print_events(sub))

    options = _build_options(args, engine.scheduler.default_options)
    for target in targets:
        try:
            engine.scheduler.submit(target, options)
        except ValueError as exc:
            logger.error("Skipping %s: %s", target, exc)

    try:
        await engine.scheduler.join()
    except asyncio.CancelledError:
        await engine.scheduler.shutdown()
        raise
    finally:
        printer.cancel()
        for event in sub.drain():
            print(json.dumps(event.to_message(), ensure_ascii=False))
        sub.close()
        engine.snapshots.write_now()

    tasks = engine.scheduler.tasks()
    failed = [t for t in tasks if t.state is TaskState.FAILED]
    total = sum(len(t.records) for t in tasks)
    print(f"\nDONE: tasks={len(tasks)} records={total} failed={len(failed)}")
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Listing harvester")
    parser.add_argument("--serve", action="store_true", help="Run the WebSocket progress server")
    parser.add_argument("--scrape", nargs="*", metavar="TARGET", help="Scrape keywords or search URLs and exit")
    parser.add_argument("--targets-file", help="File with one target per line (for --scrape)")

    parser.add_argument("--host", help="Server host (HARVEST_HOST)")
    parser.add_argument("--port", type=int, help="Server port (HARVEST_PORT)")
    parser.add_argument("--max-concurrency", type=int, help="Concurrent sessions (HARVEST_MAX_CONCURRENCY)")
    parser.add_argument("--environment", choices=["browser", "http"], help="Execution environment kind")
    parser.add_argument("--results", help="Results directory (HARVEST_RESULTS_DIR)")
    parser.add_argument("--qps", type=float, help="Global navigation rate limit (HARVEST_NAV_QPS)")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")

    parser.add_argument("--page-size", type=int, default=0, help="Results per page")
    parser.add_argument("--max-pages", type=int, default=0, help="Page cap, 0 = no cap")
    parser.add_argument("--keep-duplicates", action="store_true", help="Disable per-task dedupe")
    parser.add_argument("--ean", action="store_true", help="Visit item pages to extract EANs")
    parser.add_argument("--description", action="store_true", help="Visit item pages to extract descriptions")
    parser.add_argument("--uk-only", action="store_true")
    parser.add_argument("--buy-it-now", action="store_true")
    parser.add_argument("--free-shipping", action="store_true")
    parser.add_argument("--new-condition", action="store_true")
    parser.add_argument("--min-price", type=float)
    parser.add_argument("--max-price", type=float)

    args = parser.parse_args(argv)

    settings = load_settings().replace(
        host=args.host,
        port=args.port,
        max_concurrency=args.max_concurrency,
        environment_kind=args.environment,
        results_dir=Path(args.results) if args.results else None,
        navigation_qps=args.qps,
        headless=False if args.headed else None,
    )
    setup_logging(log_dir=settings.log_dir, console_level=settings.log_level)

    if args.serve:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="warning")
        return 0

    if args.scrape is not None or args.targets_file:
        targets = list(args.scrape or [])
        if args.targets_file:
            targets.extend(_load_targets(args.targets_file))
        if not targets:
            parser.error("--scrape needs at least one TARGET")
        return asyncio.run(run_once(settings, targets, args))

    print("Nothing to do. Use --serve or --scrape TARGET.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
