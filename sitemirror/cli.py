"""Command-line entry point for the site mirror."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Sequence

from .builder import BuildReport, build_site
from .config import (
    DEFAULT_BUILD_DIR,
    DEFAULT_CRAWL_DIR,
    BuildConfig,
    ConfigError,
    CrawlConfig,
    RetryPolicy,
    load_config_file,
)
from .crawler import CrawlSummary, run_crawl

logger = logging.getLogger("sitemirror.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return argv
    first = argv[0]
    if first in commands or first.startswith("-"):
        return argv
    return ("crawl", *argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _add_crawl_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("urls", nargs="*", help="Page URLs to capture (start points when following links)")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help=f"Directory for raw pages, assets and the manifest (default: {DEFAULT_CRAWL_DIR})",
    )
    parser.add_argument(
        "--follow-links",
        action="store_true",
        default=None,
        help="Discover pages by following in-scope links instead of using a fixed list",
    )
    parser.add_argument(
        "--allow-domain",
        dest="allowed_domains",
        action="append",
        default=None,
        help="Domain pages may be crawled on (repeatable; default: hosts of the given URLs)",
    )
    parser.add_argument(
        "--asset-domain",
        dest="asset_domains",
        action="append",
        default=None,
        help="Domain assets may be downloaded from (repeatable; default: the page domains)",
    )
    parser.add_argument(
        "--match",
        dest="match_mode",
        choices=("strict", "contains"),
        default=None,
        help="Domain matching: exact host or subdomain (strict), or substring (contains)",
    )
    parser.add_argument(
        "--wait",
        dest="wait_after_load",
        type=float,
        default=None,
        help="Seconds to wait after network idle before reading the DOM",
    )
    parser.add_argument(
        "--timeout",
        dest="navigation_timeout",
        type=float,
        default=None,
        help="Navigation timeout in seconds",
    )
    parser.add_argument(
        "--crawl-timeout",
        type=float,
        default=None,
        help="Stop taking new pages after this many seconds",
    )
    parser.add_argument("--max-pages", type=int, default=None, help="Upper bound on pages queued")
    parser.add_argument("--max-depth", type=int, default=None, help="Link depth limit when following links")
    parser.add_argument("--page-concurrency", type=int, default=None, help="Pages rendered in parallel")
    parser.add_argument(
        "--download-concurrency",
        type=int,
        default=None,
        help="Asset downloads in flight at once",
    )
    parser.add_argument("--retries", type=int, default=None, help="Download attempts per asset")
    parser.add_argument(
        "--no-delay",
        action="store_true",
        help="Disable the randomized politeness delays between requests",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        default=None,
        help="Remove the output directory before crawling",
    )
    parser.add_argument("--config", type=Path, default=None, help="TOML file with a [crawl] table")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")


def _add_build_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--input",
        type=Path,
        default=Path(DEFAULT_CRAWL_DIR),
        help="Crawl directory containing manifest.json",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path(DEFAULT_BUILD_DIR),
        help="Directory where the static site should be written",
    )
    parser.add_argument(
        "--layout",
        choices=("flat", "directory"),
        default="flat",
        help="Write /about as about.html (flat) or about/index.html (directory)",
    )
    parser.add_argument(
        "--no-link-rewrite",
        action="store_true",
        help="Leave links between crawled pages pointing at the live site",
    )
    parser.add_argument(
        "--keep",
        action="store_true",
        help="Do not remove the output directory before building",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Mirror a JavaScript-rendered website into a static, offline-browsable copy.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    crawl_parser = subparsers.add_parser(
        "crawl", help="Render pages, download their assets and write the manifest"
    )
    _add_crawl_arguments(crawl_parser)

    build_parser = subparsers.add_parser(
        "build", help="Rewrite crawled pages into a relocatable static site"
    )
    _add_build_arguments(build_parser)

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def crawl_config_from_args(args: argparse.Namespace) -> CrawlConfig:
    """Merge the optional config file with explicitly given flags."""
    settings: Dict[str, Any] = load_config_file(args.config) if args.config else {}
    if args.urls:
        settings["start_urls"] = list(args.urls)
    if args.output is not None:
        settings["output_root"] = args.output
    for name in (
        "follow_links",
        "allowed_domains",
        "asset_domains",
        "match_mode",
        "wait_after_load",
        "navigation_timeout",
        "crawl_timeout",
        "max_pages",
        "max_depth",
        "page_concurrency",
        "download_concurrency",
        "clean",
    ):
        value = getattr(args, name)
        if value is not None:
            settings[name] = value
    if args.retries is not None:
        retry = settings.get("retry") or RetryPolicy()
        settings["retry"] = dataclasses.replace(retry, attempts=args.retries)
    if args.no_delay:
        settings["polite_delay"] = None
        settings["page_delay"] = None
    settings.setdefault("start_urls", [])

    config = CrawlConfig(**settings)
    config.output_root = Path(config.output_root).resolve()
    config.validate()
    return config


def report_crawl(summary: CrawlSummary) -> None:
    logger.info("Crawl completed in %.2fs", summary.elapsed)
    logger.info("Total pages visited: %d", summary.visited)
    logger.info("Pages saved: %d", summary.persisted)
    logger.info("Total assets downloaded: %d", summary.assets_downloaded)
    logger.info("Pages failed: %d", len(summary.failed_pages))
    logger.info("Failed URLs: %d", summary.failed)
    if summary.stopped_early:
        logger.warning("Crawl was stopped before every queued page was processed")
    for url, error in summary.failed_urls.items():
        logger.info("  %s (%s)", url, error)
    logger.info("Manifest: %s", summary.manifest_path)


def report_build(report: BuildReport) -> None:
    logger.info("Build completed: %s", report.output_root)
    logger.info("Pages built: %d", len(report.pages_built))
    logger.info("Assets copied: %d", report.assets_copied)
    if report.pages_skipped:
        logger.info("Pages skipped: %d", len(report.pages_skipped))
        for url, reason in report.pages_skipped.items():
            logger.info("  %s (%s)", url, reason)
    if report.assets_missing:
        logger.info("Assets missing: %d", len(report.assets_missing))
    for url, error in report.errors.items():
        logger.info("  error in %s: %s", url, error)


def _run_crawl(args: argparse.Namespace) -> None:
    _configure_logging(args.verbose)
    config = crawl_config_from_args(args)
    summary = asyncio.run(run_crawl(config))
    report_crawl(summary)


def _run_build(args: argparse.Namespace) -> None:
    _configure_logging(args.verbose)
    config = BuildConfig(
        input_root=args.input.resolve(),
        output_root=args.output.resolve(),
        page_layout=args.layout,
        rewrite_links=not args.no_link_rewrite,
        clean=not args.keep,
    )
    report = build_site(config)
    report_build(report)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        if args.command == "crawl":
            _run_crawl(args)
        else:
            _run_build(args)
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
