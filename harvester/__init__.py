"""Listing harvester package.

Orchestrates long-running, paginated scrape tasks against listing sites,
with a bounded number of concurrent browser sessions, bot-detection
backoff, and a push channel that streams task progress to clients.

Key modules:
    base            -- BaseExtractor abstract class
    extractors      -- EbayExtractor concrete implementation
    environment     -- PlaywrightEnvironment, HttpEnvironment execution environments
    factory         -- ComponentFactory for extractors and environments
    tasks           -- Task, TaskState state machine and TaskRegistry
    session         -- SessionController page-iteration loop
    scheduler       -- Scheduler admission control and task commands
    detection       -- DetectionMonitor for blocking interstitials
    backoff         -- BackoffStrategy for linear detection backoff
    rate_limiter    -- RateLimiter for global navigation pacing
    channel         -- ProgressChannel fan-out and CommandHandler
    storage         -- JSON/CSV exporter and task snapshot writer
    metrics         -- MetricsCollector for navigation statistics
    models          -- TaskOptions, Record, ProgressEvent and other dataclasses
    server          -- FastAPI app exposing the WebSocket channel
    config          -- Settings from HARVEST_* environment variables
    errors          -- HarvestError hierarchy
"""
