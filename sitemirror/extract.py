"""Asset and link discovery in rendered pages."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Set
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .utils import strip_fragment

logger = logging.getLogger("sitemirror")

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(r"@import\s+([\"'])([^\"']+)\1", re.IGNORECASE)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")

SKIPPED_SCHEMES = ("data:", "blob:", "javascript:", "about:", "mailto:", "tel:")
LINK_RELS = {"stylesheet", "icon", "shortcut", "apple-touch-icon", "manifest", "mask-icon"}
PRELOAD_TYPES = {"font", "style", "image", "script"}

# Evaluated inside the page by the renderer. Every element is handled in its
# own try block so one broken node only drops its own reference.
BROWSER_ASSET_SCRIPT = """
() => {
  const results = new Set();
  const add = (value) => {
    try {
      if (value && typeof value === 'string') {
        results.add(new URL(value, document.baseURI).href);
      }
    } catch (e) {}
  };
  const addSrcset = (value) => {
    if (!value) return;
    for (const part of value.split(',')) {
      add(part.trim().split(/\\s+/)[0]);
    }
  };
  const addCssUrls = (value) => {
    if (!value || value === 'none') return;
    const re = /url\\(\\s*['"]?([^'")]+)['"]?\\s*\\)/g;
    let match;
    while ((match = re.exec(value)) !== null) add(match[1]);
  };
  for (const img of document.querySelectorAll('img')) {
    try { add(img.currentSrc); add(img.getAttribute('src') && img.src); addSrcset(img.getAttribute('srcset')); } catch (e) {}
  }
  for (const source of document.querySelectorAll('source')) {
    try { add(source.getAttribute('src') && source.src); addSrcset(source.getAttribute('srcset')); } catch (e) {}
  }
  for (const video of document.querySelectorAll('video[poster]')) {
    try { add(video.poster); } catch (e) {}
  }
  for (const link of document.querySelectorAll('link[href]')) {
    try {
      const rel = (link.getAttribute('rel') || '').toLowerCase();
      const as = (link.getAttribute('as') || '').toLowerCase();
      if (/stylesheet|icon|manifest/.test(rel) || (rel.includes('preload') && ['font', 'style', 'image', 'script'].includes(as))) {
        add(link.href);
      }
    } catch (e) {}
  }
  for (const script of document.querySelectorAll('script[src]')) {
    try { add(script.src); } catch (e) {}
  }
  for (const el of document.querySelectorAll('*')) {
    try {
      const style = window.getComputedStyle(el);
      addCssUrls(style.backgroundImage);
      addCssUrls(window.getComputedStyle(el, '::before').backgroundImage);
      addCssUrls(window.getComputedStyle(el, '::after').backgroundImage);
    } catch (e) {}
  }
  return Array.from(results);
}
"""


def is_fetchable(value: Optional[str]) -> bool:
    if not value:
        return False
    value = value.strip()
    if not value or value.startswith("#"):
        return False
    return not value.lower().startswith(SKIPPED_SCHEMES)


def parse_srcset(value: str) -> List[str]:
    """Return the URL part of each candidate in a responsive-image descriptor list."""
    urls: List[str] = []
    for candidate in SRCSET_SPLIT_RE.split((value or "").strip()):
        parts = WS_RE.split(candidate.strip())
        if parts and parts[0]:
            urls.append(parts[0])
    return urls


def parse_css_urls(text: str) -> Set[str]:
    """URLs referenced by ``url(...)`` and ``@import`` in a CSS fragment."""
    urls: Set[str] = set()
    for match in CSS_URL_RE.finditer(text or ""):
        url = match.group(2).strip()
        if is_fetchable(url):
            urls.add(url)
    for match in CSS_IMPORT_RE.finditer(text or ""):
        url = match.group(2).strip()
        if is_fetchable(url):
            urls.add(url)
    return urls


def resolve_reference(base: str, ref: str) -> Optional[str]:
    """Absolute form of ``ref``, or ``None`` when it cannot be parsed."""
    try:
        return urljoin(base, ref.strip())
    except ValueError:
        logger.debug("Skipping malformed reference %r on %s", ref, base)
        return None


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    base = soup.find("base", href=True)
    if base and is_fetchable(base["href"]):
        return resolve_reference(fallback, base["href"]) or fallback
    return fallback


def _attr(tag, name: str) -> Optional[str]:
    value = tag.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return value


def _tag_references(tag) -> List[str]:
    """Raw resource references carried by a single element."""
    refs: List[str] = []
    name = tag.name
    if name in ("img", "source", "video", "audio", "track", "script", "input", "embed"):
        refs.append(_attr(tag, "src"))
    if name in ("img", "source"):
        refs.extend(parse_srcset(_attr(tag, "srcset") or ""))
    if name == "video":
        refs.append(_attr(tag, "poster"))
    if name == "link":
        rels = {rel.lower() for rel in (tag.get("rel") or [])}
        as_type = (_attr(tag, "as") or "").lower()
        if rels & LINK_RELS or ("preload" in rels and as_type in PRELOAD_TYPES):
            refs.append(_attr(tag, "href"))
    style = _attr(tag, "style")
    if style:
        refs.extend(parse_css_urls(style))
    return refs


def extract_asset_urls(
    html: str,
    base_url: str,
    extra_urls: Iterable[str] = (),
) -> Set[str]:
    """Collect candidate resource URLs from rendered HTML plus browser-observed URLs."""
    soup = BeautifulSoup(html, "html.parser")
    base = effective_base_url(soup, base_url)
    urls: Set[str] = set()

    def add(raw: Optional[str]) -> None:
        if not is_fetchable(raw):
            return
        url = resolve_reference(base, raw)
        if url:
            urls.add(url)

    for tag in soup.find_all(True):
        try:
            refs = _tag_references(tag)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.debug("Skipping malformed <%s> on %s: %s", tag.name, base_url, exc)
            continue
        for ref in refs:
            add(ref)

    for style in soup.find_all("style"):
        for ref in parse_css_urls(style.get_text()):
            add(ref)

    for url in extra_urls:
        add(url)
    return urls


def extract_links(html: str, base_url: str) -> List[str]:
    """Absolute outbound ``<a href>`` targets in document order, fragments removed."""
    soup = BeautifulSoup(html, "html.parser")
    base = effective_base_url(soup, base_url)
    links: List[str] = []
    seen: Set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = _attr(anchor, "href")
        if not is_fetchable(href):
            continue
        link = resolve_reference(base, href)
        if link is None:
            continue
        link = strip_fragment(link)
        if link not in seen:
            seen.add(link)
            links.append(link)
    return links
