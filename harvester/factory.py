from __future__ import annotations

from typing import Callable, Dict, Optional
from urllib.parse import urlsplit

from .base import BaseExtractor
from .config import Settings
from .environment import ExecutionEnvironment, HttpEnvironment, PlaywrightEnvironment
from .extractors import EbayExtractor
from .rate_limiter import RateLimiter

EnvironmentBuilder = Callable[[Settings, Optional[RateLimiter]], ExecutionEnvironment]


class ComponentFactory:
    """Creates the per-task collaborators a SessionController needs.

    - Extractors are stateless and shared: one cached instance per site.
    - Environments are never shared; every session gets a fresh one, since
      each holds its own browser or HTTP session.
    """

    def __init__(
        self,
        settings: Settings,
        rate_limiter: Optional[RateLimiter] = None,
        default_site: str = "ebay",
    ) -> None:
        self._settings = settings
        self._rate_limiter = rate_limiter
        self._default_site = default_site
        self._extractors: Dict[str, BaseExtractor] = {"ebay": EbayExtractor()}
        self._hosts: Dict[str, str] = {"ebay.": "ebay"}
        self._environments: Dict[str, EnvironmentBuilder] = {
            "browser": PlaywrightEnvironment,
            "http": HttpEnvironment,
        }

    def register_extractor(self, site: str, extractor: BaseExtractor, host_marker: Optional[str] = None) -> None:
        self._extractors[site] = extractor
        if host_marker:
            self._hosts[host_marker] = site

    def register_environment(self, kind: str, builder: EnvironmentBuilder) -> None:
        self._environments[kind] = builder

    def site_for(self, target: str) -> str:
        target = target.strip()
        if not (target.startswith("http://") or target.startswith("https://")):
            return self._default_site
        host = urlsplit(target).netloc.lower()
        for marker, site in self._hosts.items():
            if marker in host:
                return site
        raise ValueError(f"Unknown target host: {host}")

    def create_extractor(self, target: str) -> BaseExtractor:
        return self._extractors[self.site_for(target)]

    def create_environment(self, kind: Optional[str] = None) -> ExecutionEnvironment:
        kind = kind or self._settings.environment_kind
        try:
            builder = self._environments[kind]
        except KeyError:
            raise ValueError(f"Unknown environment kind: {kind}") from None
        return builder(self._settings, self._rate_limiter)
