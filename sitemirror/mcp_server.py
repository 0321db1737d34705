"""MCP server exposing sitemirror crawl/build tools."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from .builder import build_site
from .config import DEFAULT_BUILD_DIR, DEFAULT_CRAWL_DIR, BuildConfig, CrawlConfig
from .crawler import run_crawl

logger = logging.getLogger("sitemirror.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="sitemirror")


@mcp.tool()
async def crawl(
    urls: List[str],
    allowed_domains: Optional[List[str]] = None,
    asset_domains: Optional[List[str]] = None,
    follow_links: bool = False,
    output: str = DEFAULT_CRAWL_DIR,
) -> str:
    """Render pages with Playwright, download their assets and write a manifest."""

    config = CrawlConfig(
        start_urls=urls,
        output_root=Path(output).expanduser().resolve(),
        allowed_domains=allowed_domains or [],
        asset_domains=asset_domains or [],
        follow_links=follow_links,
    )
    summary = await run_crawl(config)
    lines = [
        f"Pages visited: {summary.visited}",
        f"Pages saved: {summary.persisted}",
        f"Assets downloaded: {summary.assets_downloaded}",
        f"Failed URLs: {summary.failed}",
        *(f"- {url}: {error}" for url, error in summary.failed_urls.items()),
        f"Manifest: {summary.manifest_path}",
    ]
    return "\n".join(lines)


@mcp.tool()
async def build(
    input_dir: str = DEFAULT_CRAWL_DIR,
    output: str = DEFAULT_BUILD_DIR,
    layout: str = "flat",
) -> str:
    """Assemble a static, relocatable site from a crawl directory."""

    config = BuildConfig(
        input_root=Path(input_dir).expanduser().resolve(),
        output_root=Path(output).expanduser().resolve(),
        page_layout=layout,
    )
    report = build_site(config)
    return (
        f"Built {len(report.pages_built)} pages and copied {report.assets_copied} assets "
        f"into {report.output_root} ({len(report.pages_skipped)} skipped, "
        f"{len(report.assets_missing)} assets missing)"
    )


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
