import asyncio
import json

from helpers import PNG_BYTES, FakeRenderer, FakeSession, TempDirTestCase, make_response
from sitemirror.config import CrawlConfig, RetryPolicy
from sitemirror.crawler import Crawler, run_crawl
from sitemirror.models import Manifest, PageStatus
from sitemirror.state import CrawlState


class CrawlTestCase(TempDirTestCase):
    def config(self, urls, **overrides):
        settings = dict(
            start_urls=urls,
            output_root=self.tmp / "raw",
            retry=RetryPolicy(attempts=3, backoff_min=0.0, backoff_max=0.0),
            polite_delay=None,
            page_delay=None,
            wait_after_load=0.0,
        )
        settings.update(overrides)
        return CrawlConfig(**settings)

    def crawl(self, config, renderer, session=None):
        return asyncio.run(run_crawl(config, renderer=renderer, session=session or FakeSession()))


class TestFrontier(CrawlTestCase):
    def test_link_cycle_visits_each_page_once(self):
        renderer = FakeRenderer(
            {
                "https://a.com/": '<a href="/b">B</a><a href="https://evil.com/">x</a>',
                "https://a.com/b": '<a href="https://a.com/">home</a><a href="/b#top">self</a>',
            }
        )
        config = self.config(["https://a.com/"], follow_links=True)

        summary = self.crawl(config, renderer)
        self.assertEqual(sorted(renderer.rendered), ["https://a.com/", "https://a.com/b"])
        self.assertEqual(summary.visited, 2)
        self.assertEqual(summary.persisted, 2)
        self.assertEqual(summary.failed, 0)

        manifest = Manifest.load(config.manifest_path)
        self.assertEqual(set(manifest.pages), {"https://a.com/", "https://a.com/b"})
        self.assertIsNotNone(manifest.end_time)
        for page in manifest.pages.values():
            self.assertIs(page.status, PageStatus.PERSISTED)
            raw = (config.output_root / page.raw_html).read_text(encoding="utf-8")
            self.assertTrue(raw.startswith("<a"))

    def test_fixed_list_mode_does_not_follow_links(self):
        renderer = FakeRenderer({"https://a.com/": '<a href="/b">B</a>', "https://a.com/b": "<p>b</p>"})
        summary = self.crawl(self.config(["https://a.com/"]), renderer)
        self.assertEqual(renderer.rendered, ["https://a.com/"])
        self.assertEqual(summary.visited, 1)

    def test_max_pages_bounds_the_frontier(self):
        pages = {f"https://a.com/{i}": f'<a href="/{i + 1}">next</a>' for i in range(20)}
        config = self.config(["https://a.com/0"], follow_links=True, max_pages=5)
        summary = self.crawl(config, FakeRenderer(pages))
        self.assertEqual(summary.visited, 5)

    def test_max_depth_bounds_the_frontier(self):
        pages = {f"https://a.com/{i}": f'<a href="/{i + 1}">next</a>' for i in range(20)}
        renderer = FakeRenderer(pages)
        summary = self.crawl(self.config(["https://a.com/0"], follow_links=True, max_depth=2), renderer)
        self.assertEqual(renderer.rendered, ["https://a.com/0", "https://a.com/1", "https://a.com/2"])
        self.assertEqual(summary.visited, 3)

    def test_parallel_workers_share_one_frontier(self):
        pages = {"https://a.com/": "".join(f'<a href="/p{i}">p</a>' for i in range(6))}
        pages.update({f"https://a.com/p{i}": '<a href="/">home</a>' for i in range(6)})
        renderer = FakeRenderer(pages)
        config = self.config(["https://a.com/"], follow_links=True, page_concurrency=3)

        summary = self.crawl(config, renderer)
        self.assertEqual(len(renderer.rendered), 7)
        self.assertEqual(len(set(renderer.rendered)), 7)
        self.assertEqual(summary.visited, 7)

    def test_stop_signal_still_writes_a_valid_manifest(self):
        renderer = FakeRenderer({"https://a.com/": "<p/>"})
        config = self.config(["https://a.com/"])

        async def scenario():
            stop = asyncio.Event()
            stop.set()
            return await run_crawl(config, renderer=renderer, session=FakeSession(), stop_event=stop)

        summary = asyncio.run(scenario())
        self.assertTrue(summary.stopped_early)
        data = json.loads(config.manifest_path.read_text(encoding="utf-8"))
        for page in data["pages"].values():
            self.assertIn(page["status"], ("persisted", "failed"))

    def test_process_page_is_idempotent(self):
        renderer = FakeRenderer({"https://a.com/": "<p/>"})
        crawler = Crawler(self.config(["https://a.com/"]), renderer, state=CrawlState())

        async def scenario():
            await crawler.process_page("https://a.com/")
            await crawler.process_page("https://a.com/")

        asyncio.run(scenario())
        self.assertEqual(renderer.rendered, ["https://a.com/"])


class TestPageProcessing(CrawlTestCase):
    def test_assets_are_filtered_downloaded_and_shared_across_pages(self):
        logo = "https://cdn.a.com/logo.png"
        tracker = "https://tracker.example/pixel.gif"
        page = f'<img src="{logo}"><img src="{tracker}">'
        renderer = FakeRenderer({"https://a.com/": page, "https://a.com/cases": page})
        session = FakeSession({logo: make_response(body=PNG_BYTES), tracker: make_response(body=PNG_BYTES)})
        config = self.config(["https://a.com/", "https://a.com/cases"], asset_domains=["a.com"])

        summary = self.crawl(config, renderer, session)
        self.assertEqual(session.calls, [logo])
        self.assertEqual(summary.assets_downloaded, 1)

        manifest = Manifest.load(config.manifest_path)
        self.assertEqual(list(manifest.assets), [logo])
        for url in ("https://a.com/", "https://a.com/cases"):
            self.assertEqual([asset.original_url for asset in manifest.pages[url].assets], [logo])
        self.assertTrue((config.output_root / manifest.assets[logo].local_path).exists())

    def test_render_failure_is_recorded_and_crawl_continues(self):
        renderer = FakeRenderer({"https://a.com/ok": "<p>fine</p>"})
        config = self.config(["https://a.com/missing", "https://a.com/ok"])

        summary = self.crawl(config, renderer)
        self.assertEqual(summary.persisted, 1)
        self.assertIn("https://a.com/missing", summary.failed_urls)
        self.assertEqual(summary.failed_pages, ["https://a.com/missing"])

        failed = Manifest.load(config.manifest_path).pages["https://a.com/missing"]
        self.assertIs(failed.status, PageStatus.FAILED)
        self.assertIn("ERR_NAME_NOT_RESOLVED", failed.error)
        self.assertIsNone(failed.raw_html)
        self.assertEqual(failed.assets, [])

    def test_unexpected_error_is_page_scoped(self):
        renderer = FakeRenderer({"https://a.com/": RuntimeError("engine crashed"), "https://a.com/x": "<p/>"})
        with self.assertLogs("sitemirror", level="ERROR"):
            summary = self.crawl(self.config(["https://a.com/", "https://a.com/x"]), renderer)
        self.assertEqual(summary.failed_urls["https://a.com/"], "engine crashed")
        self.assertEqual(summary.persisted, 1)

    def test_failed_asset_does_not_fail_the_page(self):
        broken = "https://a.com/broken.png"
        renderer = FakeRenderer({"https://a.com/": f'<img src="{broken}">'})
        session = FakeSession({broken: make_response(500, url=broken)})
        config = self.config(["https://a.com/"])

        summary = self.crawl(config, renderer, session)
        self.assertEqual(len(session.calls), 3)
        self.assertEqual(summary.persisted, 1)
        self.assertIn(broken, summary.failed_urls)

        manifest = Manifest.load(config.manifest_path)
        self.assertEqual(manifest.pages["https://a.com/"].assets, [])
        self.assertNotIn(broken, manifest.assets)

    def test_stylesheet_dependencies_are_captured(self):
        css_url = "https://cdn.a.com/css/site.css"
        bg_url = "https://cdn.a.com/img/bg.png"
        renderer = FakeRenderer({"https://a.com/": f'<link rel="stylesheet" href="{css_url}">'})
        session = FakeSession(
            {
                css_url: make_response(body=b".x{background:url(../img/bg.png)}", content_type="text/css"),
                bg_url: make_response(body=PNG_BYTES),
            }
        )
        config = self.config(["https://a.com/"], asset_domains=["cdn.a.com"])

        self.crawl(config, renderer, session)
        manifest = Manifest.load(config.manifest_path)
        self.assertEqual(set(manifest.assets), {css_url, bg_url})
        self.assertEqual([a.original_url for a in manifest.pages["https://a.com/"].assets], [css_url])

    def test_malformed_stylesheet_reference_is_skipped(self):
        css_url = "https://cdn.a.com/css/site.css"
        ok_url = "https://cdn.a.com/css/ok.png"
        renderer = FakeRenderer({"https://a.com/": f'<link rel="stylesheet" href="{css_url}">'})
        session = FakeSession(
            {
                css_url: make_response(
                    body=b".x{background:url(http://[bad/x.png)} .y{background:url(ok.png)}",
                    content_type="text/css",
                ),
                ok_url: make_response(body=PNG_BYTES),
            }
        )
        config = self.config(["https://a.com/"], asset_domains=["cdn.a.com"])

        summary = self.crawl(config, renderer, session)
        self.assertEqual(summary.persisted, 1)
        manifest = Manifest.load(config.manifest_path)
        self.assertIs(manifest.pages["https://a.com/"].status, PageStatus.PERSISTED)
        self.assertEqual(set(manifest.assets), {css_url, ok_url})

    def test_malformed_base_href_falls_back_to_page_url(self):
        image = "https://a.com/x.png"
        renderer = FakeRenderer({"https://a.com/": '<base href="http://[bad/"><img src="x.png">'})
        session = FakeSession({image: make_response(body=PNG_BYTES)})
        config = self.config(["https://a.com/"])

        summary = self.crawl(config, renderer, session)
        self.assertEqual(summary.persisted, 1)
        page = Manifest.load(config.manifest_path).pages["https://a.com/"]
        self.assertIs(page.status, PageStatus.PERSISTED)
        self.assertEqual([asset.original_url for asset in page.assets], [image])


class TestFrontierKeys(CrawlTestCase):
    def test_equivalent_spellings_render_once(self):
        renderer = FakeRenderer({"https://a.com/": '<a href="https://A.com">home</a>'})
        config = self.config(["https://a.com", "https://A.com/#top"], follow_links=True)

        summary = self.crawl(config, renderer)
        self.assertEqual(renderer.rendered, ["https://a.com/"])
        self.assertEqual(summary.visited, 1)
        self.assertEqual(list(Manifest.load(config.manifest_path).pages), ["https://a.com/"])


class TestTimeouts(CrawlTestCase):
    def test_render_past_deadline_fails_the_page(self):
        renderer = FakeRenderer({"https://a.com/": "<p/>"}, delay=5.0)
        config = self.config(["https://a.com/"], navigation_timeout=0.05)
        crawler = Crawler(config, renderer, render_grace=0.05)

        with self.assertLogs("sitemirror", level="ERROR"):
            asyncio.run(crawler.run())
        page = crawler.state.manifest.pages["https://a.com/"]
        self.assertIs(page.status, PageStatus.FAILED)
        self.assertIn("exceeded", page.error)
        self.assertIsNone(page.raw_html)
        self.assertFalse(crawler.stopped_early)
        self.assertTrue(config.manifest_path.exists())

    def test_crawl_timeout_cancels_in_flight_pages(self):
        renderer = FakeRenderer({"https://a.com/": "<p/>"}, delay=30.0)
        config = self.config(["https://a.com/"], crawl_timeout=0.2)

        summary = self.crawl(config, renderer)
        self.assertTrue(summary.stopped_early)
        self.assertEqual(summary.failed_pages, ["https://a.com/"])
        self.assertEqual(summary.failed_urls, {"https://a.com/": "cancelled"})

        page = Manifest.load(config.manifest_path).pages["https://a.com/"]
        self.assertIs(page.status, PageStatus.FAILED)
        self.assertEqual(page.error, "cancelled")
