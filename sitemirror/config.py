"""Configuration objects and constants for the crawler."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_CRAWL_DIR = "raw_download"
DEFAULT_BUILD_DIR = "built_site"
MANIFEST_FILENAME = "manifest.json"
ASSETS_DIRNAME = "assets"
PAGES_DIRNAME = "pages"

DelayRange = Tuple[float, float]


class ConfigError(Exception):
    """Raised for invalid settings; fatal at the process boundary."""


@dataclass
class RetryPolicy:
    """Attempt count and randomized backoff bounds for asset downloads."""

    attempts: int = 3
    backoff_min: float = 2.0
    backoff_max: float = 5.0

    def backoff_range(self, attempt: int) -> DelayRange:
        """Delay bounds that widen with the attempt number."""
        return self.backoff_min * attempt, self.backoff_max * attempt


@dataclass
class CrawlConfig:
    """Top-level settings that control crawling and asset capture."""

    start_urls: List[str]
    output_root: Path = Path(DEFAULT_CRAWL_DIR)
    allowed_domains: List[str] = field(default_factory=list)
    asset_domains: List[str] = field(default_factory=list)
    match_mode: str = "strict"
    follow_links: bool = False
    max_pages: int = 500
    max_depth: int = 10
    wait_after_load: float = 2.0
    navigation_timeout: float = 30.0
    crawl_timeout: Optional[float] = None
    page_concurrency: int = 1
    download_concurrency: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    polite_delay: Optional[DelayRange] = (0.5, 1.5)
    page_delay: Optional[DelayRange] = (3.0, 7.0)
    request_timeout: float = 30.0
    max_asset_bytes: int = 50_000_000
    user_agent: str = DEFAULT_USER_AGENT
    referer: Optional[str] = None
    follow_css: bool = True
    clean: bool = False

    @property
    def manifest_path(self) -> Path:
        return self.output_root / MANIFEST_FILENAME

    def validate(self) -> None:
        """Check values that would otherwise fail deep inside the crawl."""
        if not self.start_urls:
            raise ConfigError("At least one start URL is required")
        for url in self.start_urls:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.hostname:
                raise ConfigError(f"Invalid start URL: {url!r}")
        if self.match_mode not in ("strict", "contains"):
            raise ConfigError(f"Unknown domain match mode: {self.match_mode!r}")
        if self.page_concurrency < 1 or self.download_concurrency < 1:
            raise ConfigError("Concurrency limits must be at least 1")
        if self.retry.attempts < 1:
            raise ConfigError("Retry attempts must be at least 1")
        if self.max_pages < 1 or self.max_depth < 0:
            raise ConfigError("max_pages must be >= 1 and max_depth >= 0")
        for name in ("polite_delay", "page_delay"):
            bounds = getattr(self, name)
            if bounds is not None and not 0 <= bounds[0] <= bounds[1]:
                raise ConfigError(f"{name} must be a (min, max) pair with 0 <= min <= max")

    def page_domains(self) -> List[str]:
        """Domains pages may be followed on; defaults to the start URL hosts."""
        if self.allowed_domains:
            return list(self.allowed_domains)
        hosts: List[str] = []
        for url in self.start_urls:
            host = (urlparse(url).hostname or "").lower()
            if host and host not in hosts:
                hosts.append(host)
        return hosts

    def download_domains(self) -> List[str]:
        """Domains assets may be fetched from; defaults to the page domains."""
        if self.asset_domains:
            return list(self.asset_domains)
        return self.page_domains()


@dataclass
class BuildConfig:
    """Settings for assembling the static site from a crawl directory."""

    input_root: Path = Path(DEFAULT_CRAWL_DIR)
    output_root: Path = Path(DEFAULT_BUILD_DIR)
    page_layout: str = "flat"
    rewrite_links: bool = True
    clean: bool = True

    @property
    def manifest_path(self) -> Path:
        return self.input_root / MANIFEST_FILENAME

    def validate(self) -> None:
        if self.page_layout not in ("flat", "directory"):
            raise ConfigError(f"Unknown page layout: {self.page_layout!r}")
        source = self.input_root.resolve()
        target = self.output_root.resolve()
        if source == target:
            raise ConfigError("Build output must differ from the crawl directory")
        if source.is_relative_to(target):
            raise ConfigError(f"Build output {target} contains the crawl directory {source}")


def _as_delay(name: str, value: Any) -> Optional[DelayRange]:
    if value is None or value is False:
        return None
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return float(value[0]), float(value[1])
    raise ConfigError(f"{name} must be a two-element array or false")


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read the ``[crawl]`` table of a TOML file into CrawlConfig keyword arguments."""
    try:
        with open(path, "rb") as handle:
            data = tomllib.load(handle)
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    table = data.get("crawl", data)
    if not isinstance(table, Mapping):
        raise ConfigError("[crawl] must be a table")
    return config_kwargs(table)


def config_kwargs(table: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate raw keys and coerce them to CrawlConfig field types."""
    known = {f.name for f in fields(CrawlConfig)}
    unknown = sorted(set(table) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    kwargs: Dict[str, Any] = dict(table)
    if "output_root" in kwargs:
        kwargs["output_root"] = Path(kwargs["output_root"])
    for name in ("polite_delay", "page_delay"):
        if name in kwargs:
            kwargs[name] = _as_delay(name, kwargs[name])
    if "retry" in kwargs:
        retry = kwargs["retry"]
        if not isinstance(retry, Mapping):
            raise ConfigError("retry must be a table")
        try:
            kwargs["retry"] = RetryPolicy(**retry)
        except TypeError as exc:
            raise ConfigError(f"Invalid retry settings: {exc}") from exc
    return kwargs
