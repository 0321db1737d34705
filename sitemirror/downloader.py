"""Asset downloading with per-URL dedup, retries and deterministic storage."""

from __future__ import annotations

import asyncio
import logging
import random
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, Union

import requests
from filetype import guess

from .config import CrawlConfig, DelayRange, RetryPolicy
from .models import AssetRef, DownloadFailure
from .state import CrawlState
from .utils import asset_local_path, url_extension, url_hash

logger = logging.getLogger("sitemirror")

Sleeper = Callable[[float], Awaitable[None]]
DownloadResult = Union[AssetRef, DownloadFailure]


class AssetTooLarge(Exception):
    """Response body exceeds the configured size cap; not retried."""


def detect_mime_type(content_type: Optional[str], data: bytes) -> Optional[str]:
    """Sniff a MIME type from the file signature, falling back to the header."""
    kind = guess(data)
    if kind:
        return kind.mime
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        return mime or None
    return None


def build_session(config: CrawlConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": config.user_agent,
            "Accept": "*/*",
            "Accept-Encoding": "gzip, deflate",
            "Connection": "keep-alive",
        }
    )
    referer = config.referer or (config.start_urls[0] if config.start_urls else None)
    if referer:
        session.headers["Referer"] = referer
    return session


class AssetDownloader:
    """Fetch assets at most once per URL and persist them under ``output_root``."""

    def __init__(
        self,
        state: CrawlState,
        output_root: Path,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        polite_delay: Optional[DelayRange] = None,
        concurrency: int = 4,
        timeout: float = 30.0,
        max_bytes: int = 50_000_000,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.state = state
        self.output_root = output_root
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy()
        self.polite_delay = polite_delay
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(concurrency)

    @classmethod
    def from_config(
        cls,
        state: CrawlState,
        config: CrawlConfig,
        session: Optional[requests.Session] = None,
    ) -> "AssetDownloader":
        return cls(
            state,
            config.output_root,
            session=session or build_session(config),
            retry=config.retry,
            polite_delay=config.polite_delay,
            concurrency=config.download_concurrency,
            timeout=config.request_timeout,
            max_bytes=config.max_asset_bytes,
        )

    def _get(self, url: str) -> Tuple[bytes, Optional[str]]:
        resp = self.session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.content
        if len(data) > self.max_bytes:
            raise AssetTooLarge(f"{len(data)} bytes exceeds limit of {self.max_bytes}")
        return data, resp.headers.get("Content-Type")

    def _write(self, destination: Path, data: bytes) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)

    async def _attempt(self, url: str, local_path: str) -> AssetRef:
        async with self._semaphore:
            data, content_type = await asyncio.to_thread(self._get, url)
            await asyncio.to_thread(self._write, self.output_root / local_path, data)
        return AssetRef(
            original_url=url,
            local_path=local_path,
            hash=url_hash(url),
            extension=url_extension(url),
            mime_type=detect_mime_type(content_type, data),
        )

    async def _download(self, url: str) -> DownloadResult:
        local_path = asset_local_path(url)
        last_error = "no attempt made"
        attempts = self.retry.attempts
        for attempt in range(1, attempts + 1):
            try:
                asset = await self._attempt(url, local_path)
            except AssetTooLarge as exc:
                last_error = str(exc)
                logger.warning("Skipping %s: %s", url, exc)
                return DownloadFailure(url=url, error=last_error, attempts=attempt)
            except (requests.RequestException, OSError) as exc:
                last_error = str(exc) or exc.__class__.__name__
                if attempt == attempts:
                    logger.error(
                        "Failed to download %s after %d attempts: %s", url, attempts, last_error
                    )
                    return DownloadFailure(url=url, error=last_error, attempts=attempt)
                low, high = self.retry.backoff_range(attempt)
                logger.info("Attempt %d/%d failed for %s, retrying: %s", attempt, attempts, url, last_error)
                await self._sleep(random.uniform(low, high))
                continue
            logger.info("Downloaded %s -> %s", url, local_path)
            if self.polite_delay:
                await self._sleep(random.uniform(*self.polite_delay))
            return asset
        return DownloadFailure(url=url, error=last_error, attempts=attempts)

    async def fetch(self, url: str) -> DownloadResult:
        """Return the asset for ``url``, downloading it only on first request."""
        async with self.state.asset_lock(url):
            cached = self.state.cached_asset(url)
            if cached is not None:
                return cached
            failure = self.state.cached_failure(url)
            if failure is not None:
                return failure

            result = await self._download(url)
            if isinstance(result, AssetRef):
                await self.state.record_asset(result)
            else:
                await self.state.record_asset_failure(result)
            return result
