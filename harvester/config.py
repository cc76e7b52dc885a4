"""Settings loaded from environment variables (+ optional .env).

One frozen Settings object is built at startup and passed down explicitly;
nothing reads the environment after that.
"""
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "HARVEST"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str) -> str:
    v = os.getenv(_k(name))
    return default if v is None or v.strip() == "" else v.strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(_k(name))
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(_k(name))
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(_k(name))
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(_k(name))
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True)
class Settings:
    # ---- Server / logging ----
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"
    log_dir: Path = Path(".local/harvester")

    # ---- Output ----
    results_dir: Path = Path("results")
    state_path: Path = Path(".local/harvester/tasks.json")
    snapshot_interval: float = 10.0

    # ---- Scheduling ----
    max_concurrency: int = 1

    # ---- Execution environment ----
    environment_kind: str = "browser"
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    navigation_timeout: float = 60.0
    settle_delay: float = 3.0
    navigation_qps: float = 0.5
    acquire_attempts: int = 3
    acquire_delay: float = 5.0
    navigation_retry_delay: float = 2.0

    # ---- Paging ----
    default_page_size: int = 60
    fallback_page_budget: int = 10
    empty_page_threshold: int = 3

    # ---- Detection backoff ----
    backoff_base: float = 30.0
    backoff_increment: float = 30.0
    backoff_max: float = 300.0
    max_detection_retries: int = 1

    # ---- Enrichment ----
    detail_delay_min: float = 1.0
    detail_delay_max: float = 3.0
    detail_progress_every: int = 5
    enrichment_failure_limit: int = 5
    image_quality: int = 800

    def replace(self, **overrides) -> "Settings":
        """Return a copy with the given fields overridden (None values are ignored)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)


def load_settings(dotenv: bool = True) -> Settings:
    """Build Settings from HARVEST_* environment variables."""
    if dotenv:
        load_dotenv(override=False)

    d = Settings()
    return Settings(
        host=_env("HOST", d.host),
        port=_env_int("PORT", d.port),
        log_level=_env("LOG_LEVEL", d.log_level).upper(),
        log_dir=_env_path("LOG_DIR", d.log_dir),
        results_dir=_env_path("RESULTS_DIR", d.results_dir),
        state_path=_env_path("STATE_PATH", d.state_path),
        snapshot_interval=_env_float("SNAPSHOT_INTERVAL", d.snapshot_interval),
        max_concurrency=max(1, _env_int("MAX_CONCURRENCY", d.max_concurrency)),
        environment_kind=_env("ENVIRONMENT", d.environment_kind).lower(),
        headless=_env_bool("HEADLESS", d.headless),
        user_agent=_env("USER_AGENT", d.user_agent),
        navigation_timeout=_env_float("NAV_TIMEOUT", d.navigation_timeout),
        settle_delay=_env_float("SETTLE_DELAY", d.settle_delay),
        navigation_qps=_env_float("NAV_QPS", d.navigation_qps),
        acquire_attempts=max(1, _env_int("ACQUIRE_ATTEMPTS", d.acquire_attempts)),
        acquire_delay=_env_float("ACQUIRE_DELAY", d.acquire_delay),
        navigation_retry_delay=_env_float("NAV_RETRY_DELAY", d.navigation_retry_delay),
        default_page_size=max(1, _env_int("PAGE_SIZE", d.default_page_size)),
        fallback_page_budget=max(1, _env_int("FALLBACK_PAGES", d.fallback_page_budget)),
        empty_page_threshold=max(1, _env_int("EMPTY_PAGES", d.empty_page_threshold)),
        backoff_base=_env_float("BACKOFF_BASE", d.backoff_base),
        backoff_increment=_env_float("BACKOFF_INCREMENT", d.backoff_increment),
        backoff_max=_env_float("BACKOFF_MAX", d.backoff_max),
        max_detection_retries=max(0, _env_int("MAX_DETECTION_RETRIES", d.max_detection_retries)),
        detail_delay_min=_env_float("DETAIL_DELAY_MIN", d.detail_delay_min),
        detail_delay_max=_env_float("DETAIL_DELAY_MAX", d.detail_delay_max),
        detail_progress_every=max(1, _env_int("DETAIL_PROGRESS_EVERY", d.detail_progress_every)),
        enrichment_failure_limit=max(0, _env_int("ENRICH_FAILURE_LIMIT", d.enrichment_failure_limit)),
        image_quality=_env_int("IMAGE_QUALITY", d.image_quality),
    )
