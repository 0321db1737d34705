"""Browser rendering capability backed by Playwright."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Playwright,
    Response,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .extract import BROWSER_ASSET_SCRIPT

logger = logging.getLogger("sitemirror")

BLOCKED_REQUEST_MARKERS = (
    "google-analytics",
    "googletagmanager",
    "analytics",
    "tracking",
    "matomo",
    "piwik",
)

ASSET_RESOURCE_TYPES = {"stylesheet", "image", "font", "script", "media"}

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1920,1080",
]


class RenderError(Exception):
    """Navigation or rendering failed for a page."""


@dataclass
class RenderedPage:
    """Post-render DOM of a page and the resources the browser saw."""

    url: str
    final_url: str
    html: str
    resource_urls: List[str] = field(default_factory=list)


class Renderer(Protocol):
    async def render(self, url: str) -> RenderedPage:
        ...


def is_tracking_request(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in BLOCKED_REQUEST_MARKERS)


def _record_response(response: Response, observed: List[str]) -> None:
    if response.request.resource_type in ASSET_RESOURCE_TYPES:
        observed.append(response.url)


async def _route_request(route: Route) -> None:
    if is_tracking_request(route.request.url):
        await route.abort()
    else:
        await route.continue_()


class PlaywrightRenderer:
    """Render pages in headless Chromium, one isolated context per page."""

    def __init__(
        self,
        navigation_timeout: float = 30.0,
        wait_after_load: float = 2.0,
        user_agent: Optional[str] = None,
        block_tracking: bool = True,
    ) -> None:
        self.navigation_timeout = navigation_timeout
        self.wait_after_load = wait_after_load
        self.user_agent = user_agent
        self.block_tracking = block_tracking
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "PlaywrightRenderer":
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def render(self, url: str) -> RenderedPage:
        if self._browser is None:
            raise RuntimeError("PlaywrightRenderer used outside of 'async with'")
        context = await self._browser.new_context(
            viewport={"width": 1920, "height": 1080},
            user_agent=self.user_agent,
            extra_http_headers=BROWSER_HEADERS,
            ignore_https_errors=True,
        )
        observed: List[str] = []
        try:
            page = await context.new_page()
            page.set_default_navigation_timeout(self.navigation_timeout * 1000)
            page.set_default_timeout(self.navigation_timeout * 1000)
            if self.block_tracking:
                await page.route("**/*", _route_request)
            page.on("response", lambda response: _record_response(response, observed))
            page.on("pageerror", lambda error: logger.debug("Page error on %s: %s", url, error))

            logger.info("Loading %s", url)
            await page.goto(url, wait_until="networkidle")
            await page.wait_for_load_state("domcontentloaded")
            if self.wait_after_load:
                await page.wait_for_timeout(int(self.wait_after_load * 1000))

            dom_urls = await page.evaluate(BROWSER_ASSET_SCRIPT)
            html = await page.content()
            final_url = page.url
        except PlaywrightTimeoutError as exc:
            raise RenderError(f"Timeout while loading {url}: {exc}") from exc
        except PlaywrightError as exc:
            raise RenderError(f"Failed to render {url}: {exc}") from exc
        finally:
            await context.close()

        resources = list(dict.fromkeys([*dom_urls, *observed]))
        return RenderedPage(url=url, final_url=final_url, html=html, resource_urls=resources)
