"""High-level orchestration for rendering pages and capturing their assets."""

from __future__ import annotations

import asyncio
import logging
import random
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

import requests

from .config import CrawlConfig
from .domains import DomainFilter
from .downloader import AssetDownloader, Sleeper
from .extract import extract_asset_urls, extract_links, parse_css_urls, resolve_reference
from .models import AssetRef, Manifest, PageRecord, PageStatus, utc_now
from .render import PlaywrightRenderer, RenderError, Renderer
from .state import CrawlState
from .utils import atomic_write_json, normalize_url, raw_html_path

logger = logging.getLogger("sitemirror")

# Hard ceiling on a render on top of the browser's own navigation timeout.
RENDER_GRACE_SECONDS = 15.0


@dataclass
class CrawlSummary:
    """Counts reported at the end of a crawl."""

    visited: int
    persisted: int
    assets_downloaded: int
    failed_urls: Dict[str, str]
    manifest_path: Path
    elapsed: float
    stopped_early: bool = False
    failed_pages: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_urls)


@dataclass
class _Job:
    url: str
    depth: int


@dataclass
class Crawler:
    """Drain a page worklist with a fixed pool of workers."""

    config: CrawlConfig
    renderer: Renderer
    downloader: Optional[AssetDownloader] = None
    state: CrawlState = field(default_factory=CrawlState)
    sleep: Sleeper = asyncio.sleep
    render_grace: float = RENDER_GRACE_SECONDS

    def __post_init__(self) -> None:
        if self.downloader is None:
            self.downloader = AssetDownloader.from_config(self.state, self.config)
        self.page_filter = DomainFilter(self.config.page_domains(), self.config.match_mode)
        self.asset_filter = DomainFilter(self.config.download_domains(), self.config.match_mode)
        self.stopped_early = False
        self._queue: "asyncio.Queue[_Job]" = asyncio.Queue()
        self._queued: Set[str] = set()

    def _enqueue(self, url: str, depth: int) -> bool:
        try:
            url = normalize_url(url)
        except ValueError:
            logger.debug("Not queueing malformed URL %r", url)
            return False
        if url in self._queued or self.state.is_visited(url):
            return False
        if depth > self.config.max_depth or len(self._queued) >= self.config.max_pages:
            return False
        self._queued.add(url)
        self._queue.put_nowait(_Job(url, depth))
        return True

    def _persist_html(self, record: PageRecord, html: str) -> None:
        relative = raw_html_path(record.url)
        destination = self.config.output_root / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(html, encoding="utf-8")
        record.raw_html = relative

    async def _render(self, url: str):
        deadline = self.config.navigation_timeout * 2 + self.config.wait_after_load + self.render_grace
        try:
            return await asyncio.wait_for(self.renderer.render(url), timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise RenderError(f"Render of {url} exceeded {deadline:.1f}s") from exc

    async def _fetch_stylesheet_dependencies(self, assets: List[AssetRef]) -> None:
        """Download what captured stylesheets reference (fonts, images, @import)."""
        pending = [asset for asset in assets if asset.is_stylesheet]
        seen: Set[str] = set()
        while pending:
            sheet = pending.pop()
            if sheet.original_url in seen:
                continue
            seen.add(sheet.original_url)
            path = self.config.output_root / sheet.local_path
            try:
                css = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.warning("Cannot read stylesheet %s: %s", path, exc)
                continue
            refs = {resolve_reference(sheet.original_url, ref) for ref in parse_css_urls(css)}
            refs.discard(None)
            wanted = sorted(self.asset_filter.filter(refs))
            results = await asyncio.gather(*(self.downloader.fetch(url) for url in wanted))
            pending.extend(r for r in results if isinstance(r, AssetRef) and r.is_stylesheet)

    async def process_page(self, url: str, depth: int = 0) -> List[str]:
        """Render, capture and persist one page; return in-scope links to follow."""
        record = await self.state.claim(url, depth)
        if record is None:
            logger.debug("Already processed: %s", url)
            return []

        logger.info("Processing page: %s", url)
        try:
            record.status = PageStatus.RENDERING
            try:
                rendered = await self._render(url)
            except RenderError as exc:
                logger.error("Error rendering %s: %s", url, exc)
                await self.state.fail_page(record, str(exc))
                return []
            record.final_url = rendered.final_url

            record.status = PageStatus.EXTRACTING
            candidates = extract_asset_urls(rendered.html, rendered.final_url, rendered.resource_urls)
            wanted = sorted(
                asset_url
                for asset_url in self.asset_filter.filter(candidates)
                if asset_url not in (url, rendered.final_url)
            )
            logger.info("Found %d assets on %s (%d allowed)", len(candidates), url, len(wanted))

            record.status = PageStatus.DOWNLOADING
            results = await asyncio.gather(*(self.downloader.fetch(asset_url) for asset_url in wanted))
            for result in results:
                if isinstance(result, AssetRef):
                    record.add_asset(result)
            if self.config.follow_css:
                await self._fetch_stylesheet_dependencies(
                    [result for result in results if isinstance(result, AssetRef)]
                )

            await asyncio.to_thread(self._persist_html, record, rendered.html)
            record.status = PageStatus.PERSISTED

            if not self.config.follow_links:
                return []
            return self.page_filter.filter(extract_links(rendered.html, rendered.final_url))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error processing %s", url)
            await self.state.fail_page(record, str(exc) or exc.__class__.__name__)
            return []

    async def _worker(self, name: str) -> None:
        while True:
            job = await self._queue.get()
            logger.debug("%s took %s (depth %d)", name, job.url, job.depth)
            try:
                links = await self.process_page(job.url, job.depth)
                for link in links:
                    self._enqueue(link, job.depth + 1)
                if self.config.page_delay and not self._queue.empty():
                    await self.sleep(random.uniform(*self.config.page_delay))
            finally:
                self._queue.task_done()

    async def _cancel_unfinished(self) -> None:
        for record in list(self.state.manifest.pages.values()):
            if not record.status.terminal:
                await self.state.fail_page(record, "cancelled")

    def write_manifest(self) -> Path:
        manifest = self.state.manifest
        manifest.end_time = utc_now()
        atomic_write_json(self.config.manifest_path, manifest.to_dict())
        logger.info("Saved manifest to %s", self.config.manifest_path)
        return self.config.manifest_path

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> Manifest:
        """Crawl until the frontier drains, the time budget ends or ``stop_event`` fires."""
        for url in self.config.start_urls:
            self._enqueue(url, 0)

        workers = [
            asyncio.create_task(self._worker(f"worker-{index}"))
            for index in range(self.config.page_concurrency)
        ]
        drained = asyncio.create_task(self._queue.join())
        waiters = {drained}
        if stop_event is not None:
            waiters.add(asyncio.create_task(stop_event.wait()))
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.config.crawl_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if drained not in done:
                self.stopped_early = True
                logger.warning("Crawl stopped before the frontier drained")
        finally:
            for task in [*waiters, *workers]:
                task.cancel()
            await asyncio.gather(*waiters, *workers, return_exceptions=True)
            await self._cancel_unfinished()
            self.write_manifest()
        return self.state.manifest


def summarize(crawler: Crawler, elapsed: float) -> CrawlSummary:
    manifest = crawler.state.manifest
    persisted = sum(1 for page in manifest.pages.values() if page.status is PageStatus.PERSISTED)
    return CrawlSummary(
        visited=crawler.state.page_count,
        persisted=persisted,
        assets_downloaded=len(manifest.assets),
        failed_urls=dict(manifest.failures),
        manifest_path=crawler.config.manifest_path,
        elapsed=elapsed,
        stopped_early=crawler.stopped_early,
        failed_pages=manifest.failed_pages(),
    )


async def run_crawl(
    config: CrawlConfig,
    renderer: Optional[Renderer] = None,
    session: Optional[requests.Session] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> CrawlSummary:
    """Validate settings, crawl every reachable page and write the manifest."""
    config.validate()
    if config.clean and config.output_root.exists():
        shutil.rmtree(config.output_root)
    config.output_root.mkdir(parents=True, exist_ok=True)

    start = time.perf_counter()
    state = CrawlState()
    downloader = AssetDownloader.from_config(state, config, session=session)
    if renderer is not None:
        crawler = Crawler(config, renderer, downloader=downloader, state=state)
        await crawler.run(stop_event)
    else:
        async with PlaywrightRenderer(
            navigation_timeout=config.navigation_timeout,
            wait_after_load=config.wait_after_load,
            user_agent=config.user_agent,
        ) as browser:
            crawler = Crawler(config, browser, downloader=downloader, state=state)
            await crawler.run(stop_event)
    return summarize(crawler, time.perf_counter() - start)
