"""Execution environments: isolated navigation contexts used to load target pages.

A session owns exactly one environment. Two kinds exist:

    PlaywrightEnvironment -- headless Chromium; renders scripts, expensive, crash-prone
    HttpEnvironment       -- curl_cffi session impersonating Chrome's TLS fingerprint

Both raise NavigationError for a failed single load and
ExecutionEnvironmentError when the environment itself is gone.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from curl_cffi.requests import AsyncSession
from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, Playwright, Route
from playwright.async_api import async_playwright

from .config import Settings
from .errors import ExecutionEnvironmentError, NavigationError
from .models import PageContent
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1920,1080",
    "--disable-blink-features=AutomationControlled",
]

VIEWPORT = {"width": 1920, "height": 1080}

BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "media"})

HIDE_WEBDRIVER_SCRIPT = "Object.defineProperty(navigator, 'webdriver', { get: () => false });"

IMPERSONATE = "chrome120"

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


class PageLoader(ABC):
    """Anything that can load a URL into PageContent."""

    @abstractmethod
    async def goto(self, url: str) -> PageContent:
        ...


class ExecutionEnvironment(PageLoader):
    """One isolated rendering/navigation context owned by a single session."""

    def __init__(self, settings: Settings, rate_limiter: Optional[RateLimiter] = None) -> None:
        self._settings = settings
        self._rate_limiter = rate_limiter

    @abstractmethod
    async def start(self) -> None:
        """Acquire the underlying resources. Raises ExecutionEnvironmentError."""

    @abstractmethod
    async def close(self) -> None:
        """Release everything. Never raises."""

    @property
    @abstractmethod
    def alive(self) -> bool:
        ...

    @abstractmethod
    def isolated(self):
        """Async context manager yielding a PageLoader that shares nothing with the main context."""

    async def _pace(self) -> None:
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

    async def _settle(self) -> None:
        if self._settings.settle_delay > 0:
            await asyncio.sleep(self._settings.settle_delay)


class _PlaywrightPage(PageLoader):
    def __init__(self, env: "PlaywrightEnvironment", page: Page) -> None:
        self._env = env
        self._page = page

    async def goto(self, url: str) -> PageContent:
        return await self._env._load(self._page, url)


class PlaywrightEnvironment(ExecutionEnvironment):
    """Headless Chromium driven through Playwright's async API."""

    def __init__(self, settings: Settings, rate_limiter: Optional[RateLimiter] = None) -> None:
        super().__init__(settings, rate_limiter)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def alive(self) -> bool:
        return self._browser is not None and self._browser.is_connected() and self._page is not None

    async def start(self) -> None:
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._settings.headless,
                args=LAUNCH_ARGS,
            )
            self._context = await self._new_context()
            self._page = await self._context.new_page()
        except PlaywrightError as exc:
            await self.close()
            raise ExecutionEnvironmentError(f"browser launch failed: {exc}") from exc
        logger.info("Browser started (headless=%s)", self._settings.headless)

    async def _new_context(self) -> BrowserContext:
        assert self._browser is not None
        context = await self._browser.new_context(user_agent=self._settings.user_agent, viewport=VIEWPORT)
        await context.add_init_script(HIDE_WEBDRIVER_SCRIPT)
        await context.route("**/*", self._block_heavy_resources)
        return context

    @staticmethod
    async def _block_heavy_resources(route: Route) -> None:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    async def goto(self, url: str) -> PageContent:
        if not self.alive:
            raise ExecutionEnvironmentError("browser is not running", url=url)
        assert self._page is not None
        return await self._load(self._page, url)

    async def _load(self, page: Page, url: str) -> PageContent:
        await self._pace()
        try:
            response = await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self._settings.navigation_timeout * 1000,
            )
            await self._settle()
            html = await page.content()
            title = await page.title()
        except PlaywrightError as exc:
            if self._browser is None or not self._browser.is_connected():
                raise ExecutionEnvironmentError(f"browser crashed: {exc}", url=url) from exc
            raise NavigationError(str(exc), url=url) from exc
        return PageContent(
            url=page.url,
            html=html,
            title=title,
            status=response.status if response is not None else None,
        )

    @asynccontextmanager
    async def isolated(self) -> AsyncIterator[PageLoader]:
        if not self.alive:
            raise ExecutionEnvironmentError("browser is not running")
        try:
            context = await self._new_context()
            page = await context.new_page()
        except PlaywrightError as exc:
            raise ExecutionEnvironmentError(f"could not open detail context: {exc}") from exc
        try:
            yield _PlaywrightPage(self, page)
        finally:
            try:
                await context.close()
            except PlaywrightError as exc:
                logger.debug("Detail context close failed: %s", exc)

    async def close(self) -> None:
        for name, closer in (
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Closing %s failed: %s", name, exc)
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None


class _HttpPage(PageLoader):
    def __init__(self, env: "HttpEnvironment", session: AsyncSession) -> None:
        self._env = env
        self._session = session

    async def goto(self, url: str) -> PageContent:
        return await self._env._load(self._session, url)


class HttpEnvironment(ExecutionEnvironment):
    """Script-less environment: plain GETs with a browser TLS fingerprint."""

    def __init__(self, settings: Settings, rate_limiter: Optional[RateLimiter] = None) -> None:
        super().__init__(settings, rate_limiter)
        self._session: Optional[AsyncSession] = None

    @property
    def alive(self) -> bool:
        return self._session is not None

    async def start(self) -> None:
        try:
            self._session = AsyncSession(impersonate=IMPERSONATE)
        except Exception as exc:  # noqa: BLE001
            raise ExecutionEnvironmentError(f"http session failed: {exc}") from exc
        logger.info("HTTP session started (impersonate=%s)", IMPERSONATE)

    async def goto(self, url: str) -> PageContent:
        if self._session is None:
            raise ExecutionEnvironmentError("http session is closed", url=url)
        return await self._load(self._session, url)

    async def _load(self, session: AsyncSession, url: str) -> PageContent:
        await self._pace()
        start = time.monotonic()
        try:
            response = await session.get(url, timeout=self._settings.navigation_timeout, allow_redirects=True)
        except Exception as exc:  # noqa: BLE001
            raise NavigationError(f"{type(exc).__name__}: {exc}", url=url) from exc
        logger.debug("GET %s -> %s in %.0f ms", url, response.status_code, (time.monotonic() - start) * 1000)
        await self._settle()
        html = response.text
        match = _TITLE_RE.search(html)
        return PageContent(
            url=str(response.url),
            html=html,
            title=match.group(1).strip() if match else "",
            status=response.status_code,
        )

    @asynccontextmanager
    async def isolated(self) -> AsyncIterator[PageLoader]:
        if self._session is None:
            raise ExecutionEnvironmentError("http session is closed")
        session = AsyncSession(impersonate=IMPERSONATE)
        try:
            yield _HttpPage(self, session)
        finally:
            await session.close()

    async def close(self) -> None:
        if self._session is not None:
            try:
                await self._session.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Closing http session failed: %s", exc)
            self._session = None
