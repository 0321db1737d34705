"""Data models shared by the crawl and build phases."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .config import ConfigError


class ManifestError(ConfigError):
    """The manifest file is missing, unreadable or malformed."""


class PageStatus(str, Enum):
    """Lifecycle of a page inside one crawl run."""

    PENDING = "pending"
    RENDERING = "rendering"
    EXTRACTING = "extracting"
    DOWNLOADING = "downloading"
    PERSISTED = "persisted"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PageStatus.PERSISTED, PageStatus.FAILED)


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass
class AssetRef:
    """Downloaded asset bound to its deterministic local path."""

    original_url: str
    local_path: str
    hash: str
    extension: str
    mime_type: Optional[str] = None

    @property
    def is_stylesheet(self) -> bool:
        return self.extension == ".css" or self.mime_type == "text/css"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalUrl": self.original_url,
            "localPath": self.local_path,
            "hash": self.hash,
            "extension": self.extension,
            "mimeType": self.mime_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssetRef":
        return cls(
            original_url=data["originalUrl"],
            local_path=data["localPath"],
            hash=data["hash"],
            extension=data["extension"],
            mime_type=data.get("mimeType"),
        )


@dataclass
class DownloadFailure:
    """Final outcome for an asset whose attempts were exhausted."""

    url: str
    error: str
    attempts: int = 0


@dataclass
class PageRecord:
    """Crawl outcome for a single page."""

    url: str
    raw_html: Optional[str] = None
    assets: List[AssetRef] = field(default_factory=list)
    status: PageStatus = PageStatus.PENDING
    error: Optional[str] = None
    final_url: Optional[str] = None
    depth: int = 0

    def add_asset(self, asset: AssetRef) -> None:
        if all(existing.original_url != asset.original_url for existing in self.assets):
            self.assets.append(asset)

    def fail(self, error: str) -> None:
        self.status = PageStatus.FAILED
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "rawHtml": self.raw_html,
            "assets": [asset.to_dict() for asset in self.assets],
            "status": self.status.value,
            "error": self.error,
            "finalUrl": self.final_url,
            "depth": self.depth,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PageRecord":
        status = data.get("status")
        if status is None:
            # Manifests without a status field: infer it from what was recorded.
            status = "failed" if data.get("error") else ("persisted" if data.get("rawHtml") else "pending")
        return cls(
            url=data["url"],
            raw_html=data.get("rawHtml"),
            assets=[AssetRef.from_dict(item) for item in data.get("assets", [])],
            status=PageStatus(status),
            error=data.get("error"),
            final_url=data.get("finalUrl"),
            depth=int(data.get("depth", 0)),
        )


@dataclass
class Manifest:
    """Everything the build phase needs to know about a crawl."""

    start_time: str = field(default_factory=utc_now)
    end_time: Optional[str] = None
    pages: Dict[str, PageRecord] = field(default_factory=dict)
    assets: Dict[str, AssetRef] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time,
            "endTime": self.end_time,
            "pages": {url: page.to_dict() for url, page in self.pages.items()},
            "assets": {url: asset.to_dict() for url, asset in self.assets.items()},
            "failures": dict(self.failures),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Manifest":
        pages = {}
        for url, page in data.get("pages", {}).items():
            page = dict(page)
            page.setdefault("url", url)
            pages[url] = PageRecord.from_dict(page)
        return cls(
            start_time=data.get("startTime") or utc_now(),
            end_time=data.get("endTime"),
            pages=pages,
            assets={url: AssetRef.from_dict(a) for url, a in data.get("assets", {}).items()},
            failures=dict(data.get("failures") or {}),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "Manifest":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ManifestError(f"Manifest is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")
        try:
            return cls.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ManifestError(f"Malformed manifest entry: {exc!r}") from exc

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ManifestError(f"Cannot read manifest {path}: {exc}") from exc
        return cls.from_json(text)

    def failed_pages(self) -> List[str]:
        return [url for url, page in self.pages.items() if page.status is PageStatus.FAILED]
