"""Allow-list predicate gating link-following and asset downloads."""

from __future__ import annotations

from typing import Iterable, List, Sequence
from urllib.parse import urlparse


class DomainFilter:
    """Decide whether a URL's host belongs to an allow-listed set of domains.

    ``strict`` matches a host equal to an entry or a subdomain of it;
    ``contains`` accepts any host containing an entry as a substring.
    """

    def __init__(self, domains: Sequence[str], mode: str = "strict") -> None:
        if mode not in ("strict", "contains"):
            raise ValueError(f"Unknown match mode: {mode!r}")
        self.mode = mode
        self.domains = [self._clean(domain) for domain in domains if self._clean(domain)]

    @staticmethod
    def _clean(host: str) -> str:
        return host.strip().lower().rstrip(".")

    def _host_matches(self, host: str) -> bool:
        if self.mode == "contains":
            return any(domain in host for domain in self.domains)
        return any(host == domain or host.endswith("." + domain) for domain in self.domains)

    def is_allowed(self, url: object) -> bool:
        if not isinstance(url, str) or not url.strip():
            return False
        try:
            parsed = urlparse(url.strip())
            host = parsed.hostname
        except ValueError:
            return False
        if parsed.scheme not in ("http", "https") or not host:
            return False
        return self._host_matches(self._clean(host))

    __call__ = is_allowed

    def filter(self, urls: Iterable[str]) -> List[str]:
        return [url for url in urls if self.is_allowed(url)]

    def __repr__(self) -> str:
        return f"DomainFilter({self.domains!r}, mode={self.mode!r})"
