"""Assemble a relocatable static site from a crawl manifest."""

from __future__ import annotations

import html as html_lib
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set, Tuple
from urllib.parse import urldefrag, urljoin

from .config import ASSETS_DIRNAME, BuildConfig
from .models import Manifest, PageRecord, PageStatus
from .utils import page_output_path, relative_prefix

logger = logging.getLogger("sitemirror")

BASE_TAG_RE = re.compile(r"<base\b[^>]*>", re.IGNORECASE)
BASE_HREF_RE = re.compile(r"<base\b[^>]*\bhref\s*=\s*([\"'])(.*?)\1", re.IGNORECASE)
URL_ATTR_RE = re.compile(
    r"(?P<attr>\b(?:src|href|poster|data-src)\s*=\s*)(?P<q>[\"'])(?P<value>.*?)(?P=q)",
    re.IGNORECASE,
)
SRCSET_ATTR_RE = re.compile(
    r"(?P<attr>\b(?:srcset|data-srcset)\s*=\s*)(?P<q>[\"'])(?P<value>.*?)(?P=q)",
    re.IGNORECASE,
)
CSS_URL_RE = re.compile(
    r"url\(\s*(?P<q>&quot;|&#39;|[\"']?)(?P<value>[^)\"']*?)(?P=q)\s*\)",
    re.IGNORECASE,
)
SRCSET_CANDIDATE_RE = re.compile(r"(?P<lead>^|,)(?P<space>\s*)(?P<url>[^\s,]+)")


@dataclass
class BuildReport:
    """Outcome of assembling the static tree."""

    output_root: Path
    pages_built: List[str] = field(default_factory=list)
    pages_skipped: Dict[str, str] = field(default_factory=dict)
    assets_copied: int = 0
    assets_missing: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class PageRewriter:
    """Rewrite asset and page references in one page's HTML.

    Rewriting is pattern based: only quoted ``src``/``href``/``poster``/
    ``data-src`` values, ``srcset`` candidates and CSS ``url(...)`` tokens are
    touched. Each value is resolved against the page URL so absolute,
    scheme-relative and root-relative spellings of an asset all match.
    """

    def __init__(
        self,
        page_url: str,
        output_path: str,
        assets: Mapping[str, str],
        pages: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.page_url = page_url
        self.output_path = output_path
        self.prefix = relative_prefix(output_path)
        self.assets = assets
        self.pages = pages or {}
        self.matched: Set[str] = set()
        self._base = page_url

    def _resolve(self, value: str) -> Optional[str]:
        raw = html_lib.unescape(value.strip())
        if not raw or raw.startswith(("data:", "#", "javascript:", "mailto:")):
            return None
        try:
            return urljoin(self._base, raw)
        except ValueError:
            return None

    def _asset_target(self, value: str) -> Optional[str]:
        absolute = self._resolve(value)
        if absolute is None or absolute not in self.assets:
            return None
        self.matched.add(absolute)
        return self.prefix + self.assets[absolute]

    def _page_target(self, value: str) -> Optional[str]:
        absolute = self._resolve(value)
        if absolute is None:
            return None
        target, fragment = urldefrag(absolute)
        output = self.pages.get(target)
        if output is None:
            return None
        link = self.prefix + output
        return f"{link}#{fragment}" if fragment else link

    def _replace_attr(self, match: re.Match) -> str:
        value = match.group("value")
        target = self._asset_target(value)
        if target is None and match.group("attr").lower().startswith("href"):
            target = self._page_target(value)
        if target is None:
            return match.group(0)
        quote = match.group("q")
        return f"{match.group('attr')}{quote}{html_lib.escape(target, quote=False)}{quote}"

    def _replace_srcset(self, match: re.Match) -> str:
        def candidate(inner: re.Match) -> str:
            target = self._asset_target(inner.group("url"))
            if target is None:
                return inner.group(0)
            return f"{inner.group('lead')}{inner.group('space')}{target}"

        value = SRCSET_CANDIDATE_RE.sub(candidate, match.group("value"))
        quote = match.group("q")
        return f"{match.group('attr')}{quote}{value}{quote}"

    def _replace_css_url(self, match: re.Match) -> str:
        target = self._asset_target(match.group("value"))
        if target is None:
            return match.group(0)
        quote = match.group("q")
        return f"url({quote}{target}{quote})"

    def rewrite(self, text: str) -> str:
        base = BASE_HREF_RE.search(text)
        if base:
            try:
                self._base = urljoin(self.page_url, html_lib.unescape(base.group(2)))
            except ValueError:
                logger.debug("Ignoring malformed <base> on %s", self.page_url)
        text = BASE_TAG_RE.sub("", text)
        text = SRCSET_ATTR_RE.sub(self._replace_srcset, text)
        text = URL_ATTR_RE.sub(self._replace_attr, text)
        text = CSS_URL_RE.sub(self._replace_css_url, text)
        return text

    def rewrite_css(self, text: str) -> str:
        return CSS_URL_RE.sub(self._replace_css_url, text)


def plan_pages(manifest: Manifest, layout: str) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Output path per buildable page, plus the link table that also covers final URLs."""
    planned: Dict[str, str] = {}
    links: Dict[str, str] = {}
    used: Dict[str, str] = {}
    for url, record in manifest.pages.items():
        if record.status is not PageStatus.PERSISTED or not record.raw_html:
            continue
        output = page_output_path(url, layout)
        if output in used:
            logger.warning("Pages %s and %s both map to %s; keeping the first", used[output], url, output)
            continue
        used[output] = url
        planned[url] = output
        links[url] = output
        if record.final_url:
            links.setdefault(record.final_url, output)
    return planned, links


def copy_assets(manifest: Manifest, input_root: Path, output_root: Path, report: BuildReport) -> None:
    """Copy every captured asset; stylesheets get their url(...) references localized."""
    table = {url: asset.local_path for url, asset in manifest.assets.items()}
    for url, asset in manifest.assets.items():
        source = input_root / asset.local_path
        target = output_root / asset.local_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if asset.is_stylesheet:
                css = source.read_text(encoding="utf-8", errors="replace")
                target.write_text(PageRewriter(url, asset.local_path, table).rewrite_css(css), encoding="utf-8")
            else:
                shutil.copyfile(source, target)
        except OSError as exc:
            logger.error("Failed to copy asset %s: %s", url, exc)
            report.assets_missing.append(url)
            continue
        report.assets_copied += 1


def build_page(
    record: PageRecord,
    output_path: str,
    config: BuildConfig,
    page_links: Mapping[str, str],
) -> Tuple[str, Set[str]]:
    """Rewrite one page and write it; return the written path and matched assets."""
    raw = (config.input_root / record.raw_html).read_text(encoding="utf-8")
    assets = {asset.original_url: asset.local_path for asset in record.assets}
    rewriter = PageRewriter(record.final_url or record.url, output_path, assets, page_links if config.rewrite_links else None)
    content = rewriter.rewrite(raw)

    for url in assets.keys() - rewriter.matched:
        logger.debug("No reference to %s found in %s", url, record.url)

    destination = config.output_root / output_path
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(content, encoding="utf-8")
    return output_path, rewriter.matched


def build_site(config: BuildConfig) -> BuildReport:
    """Copy assets and rewrite every crawled page into ``config.output_root``."""
    config.validate()
    manifest = Manifest.load(config.manifest_path)

    if config.clean and config.output_root.exists():
        shutil.rmtree(config.output_root)
    (config.output_root / ASSETS_DIRNAME).mkdir(parents=True, exist_ok=True)
    report = BuildReport(output_root=config.output_root)

    logger.info("Copying %d assets...", len(manifest.assets))
    copy_assets(manifest, config.input_root, config.output_root, report)

    logger.info("Processing %d pages...", len(manifest.pages))
    planned, links = plan_pages(manifest, config.page_layout)
    for url, record in manifest.pages.items():
        if url not in planned:
            reason = record.error or f"status {record.status.value}"
            logger.warning("Skipping page %s: %s", url, reason)
            report.pages_skipped[url] = reason
            continue
        try:
            output_path, _ = build_page(record, planned[url], config, links)
        except (OSError, ValueError) as exc:
            logger.error("Error processing page %s: %s", url, exc)
            report.errors[url] = str(exc)
            continue
        logger.info("Built page: %s", config.output_root / output_path)
        report.pages_built.append(output_path)
    return report
