"""Shared mutable state of a crawl run."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set

from .models import AssetRef, DownloadFailure, Manifest, PageRecord


class CrawlState:
    """Frontier bookkeeping plus the manifest under construction.

    The visited set, failed map and manifest are only touched through these
    coroutines so concurrent workers never interleave a check with its
    update. Asset downloads serialise per URL via :meth:`asset_lock`.
    """

    def __init__(self, manifest: Optional[Manifest] = None) -> None:
        self.manifest = manifest or Manifest()
        self.visited: Set[str] = set()
        self.failed: Dict[str, str] = {}
        self.asset_failures: Dict[str, DownloadFailure] = {}
        self._lock = asyncio.Lock()
        self._asset_locks: Dict[str, asyncio.Lock] = {}

    async def claim(self, url: str, depth: int = 0) -> Optional[PageRecord]:
        """Mark ``url`` visited and create its record; ``None`` if already claimed."""
        async with self._lock:
            if url in self.visited:
                return None
            self.visited.add(url)
            record = PageRecord(url=url, depth=depth)
            self.manifest.pages[url] = record
            return record

    def is_visited(self, url: str) -> bool:
        return url in self.visited

    async def fail_page(self, record: PageRecord, error: str) -> None:
        async with self._lock:
            record.fail(error)
            self.failed[record.url] = error
            self.manifest.failures[record.url] = error

    def asset_lock(self, url: str) -> asyncio.Lock:
        # No await between lookup and insert, so this is atomic on the loop.
        lock = self._asset_locks.get(url)
        if lock is None:
            lock = self._asset_locks[url] = asyncio.Lock()
        return lock

    def cached_asset(self, url: str) -> Optional[AssetRef]:
        return self.manifest.assets.get(url)

    def cached_failure(self, url: str) -> Optional[DownloadFailure]:
        return self.asset_failures.get(url)

    async def record_asset(self, asset: AssetRef) -> None:
        async with self._lock:
            self.manifest.assets[asset.original_url] = asset

    async def record_asset_failure(self, failure: DownloadFailure) -> None:
        async with self._lock:
            self.asset_failures[failure.url] = failure
            self.failed[failure.url] = failure.error
            self.manifest.failures[failure.url] = failure.error

    @property
    def page_count(self) -> int:
        return len(self.visited)
