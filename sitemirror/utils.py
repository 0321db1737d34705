"""Utility helpers for URL identity and path handling."""

from __future__ import annotations

import hashlib
import json
import os
import posixpath
import re
from pathlib import Path, PurePosixPath
from typing import Any, Mapping
from urllib.parse import unquote, urldefrag, urlparse, urlsplit, urlunsplit

from .config import ASSETS_DIRNAME, PAGES_DIRNAME

EXTENSION_PATTERN = re.compile(r"^\.[A-Za-z0-9]{1,10}$")
DEFAULT_EXTENSION = ".bin"


def url_hash(url: str) -> str:
    """Stable identity digest of a URL string."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def url_extension(url: str) -> str:
    """File extension taken from the URL path, or ``.bin``."""
    path = unquote(urlparse(url).path)
    ext = posixpath.splitext(posixpath.basename(path))[1]
    if EXTENSION_PATTERN.match(ext):
        return ext.lower()
    return DEFAULT_EXTENSION


def asset_local_path(url: str) -> str:
    """Deterministic POSIX path of an asset relative to a crawl/build root."""
    return f"{ASSETS_DIRNAME}/{url_hash(url)}{url_extension(url)}"


def raw_html_path(url: str) -> str:
    return f"{PAGES_DIRNAME}/{url_hash(url)}.html"


def strip_fragment(url: str) -> str:
    return urldefrag(url)[0]


def normalize_url(url: str) -> str:
    """Frontier key for a page: fragment dropped, scheme and host lower-cased, empty path as ``/``."""
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", parts.query, ""))


def page_output_path(url: str, layout: str = "flat") -> str:
    """Location of a page's finished HTML relative to the output root."""
    raw_path = urlparse(url).path or "/"
    segments = [seg for seg in unquote(raw_path).split("/") if seg not in ("", ".", "..")]
    if not segments or raw_path.endswith("/"):
        return "/".join([*segments, "index.html"])
    if posixpath.splitext(segments[-1])[1]:
        return "/".join(segments)
    if layout == "directory":
        return "/".join([*segments, "index.html"])
    segments[-1] += ".html"
    return "/".join(segments)


def relative_prefix(output_path: str) -> str:
    """``../`` once per directory between ``output_path`` and the root."""
    return "../" * (len(PurePosixPath(output_path).parts) - 1)


def atomic_write_json(path: Path, data: Mapping[str, Any]) -> None:
    """Write JSON through a temporary file so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)
