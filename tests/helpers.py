"""Shared fakes for the test suite."""

from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from typing import Dict, List, Union

import requests

from sitemirror.render import RenderedPage, RenderError

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 32


def make_response(status: int = 200, body: bytes = b"", content_type: str = "", url: str = "") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = body
    resp.url = url
    resp.reason = "OK" if status < 400 else "Error"
    if content_type:
        resp.headers["Content-Type"] = content_type
    return resp


Outcome = Union[requests.Response, Exception]


class FakeSession:
    """Stands in for requests.Session; each URL maps to a queue of outcomes."""

    def __init__(self, routes: Dict[str, Union[Outcome, List[Outcome]]] | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: List[str] = []
        self.headers: Dict[str, str] = {}

    def get(self, url: str, timeout: float | None = None, **kwargs) -> requests.Response:
        self.calls.append(url)
        outcome = self.routes.get(url)
        if outcome is None:
            return make_response(404, url=url)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeRenderer:
    """Serves canned HTML per URL; an exception value makes the render fail.

    ``delay`` holds every render that long before answering.
    """

    def __init__(
        self,
        pages: Dict[str, Union[str, Exception]],
        resources: Dict[str, List[str]] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.pages = pages
        self.resources = resources or {}
        self.delay = delay
        self.rendered: List[str] = []

    async def render(self, url: str) -> RenderedPage:
        self.rendered.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        page = self.pages.get(url)
        if page is None:
            raise RenderError(f"Failed to render {url}: net::ERR_NAME_NOT_RESOLVED")
        if isinstance(page, Exception):
            raise page
        return RenderedPage(url=url, final_url=url, html=page, resource_urls=self.resources.get(url, []))


class TempDirTestCase(unittest.TestCase):
    """Gives each test a fresh scratch directory at ``self.tmp``."""

    def setUp(self):
        scratch = tempfile.TemporaryDirectory()
        self.addCleanup(scratch.cleanup)
        self.tmp = Path(scratch.name)
