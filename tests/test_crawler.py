"""Tests for the crawler module."""

import pytest
from conftest import SITE, FakeSite, make_crawl_config, make_extraction_config

from visibility_scanner.crawler import CancelToken, WebCrawler, normalise_url, registrable_domain
from visibility_scanner.errors import DataError
from visibility_scanner.events import CollectingEventSink
from visibility_scanner.models import CrawlStatus, EventKind, PageStatus


def make_crawler(site: FakeSite, sink=None, **overrides) -> WebCrawler:
    return WebCrawler(make_crawl_config(**overrides), make_extraction_config(), sink=sink, transport=site.transport)


def make_large_site(pages: int) -> FakeSite:
    site = FakeSite()
    links = [f"/page-{i}" for i in range(1, pages)]
    site.add("/", "Index", "An index page linking to every article on the site.", links=links)
    for path in links:
        site.add(path, f"Article {path}", f"Article body for {path} with a handful of words.")
    return site


class TestUrlHelpers:
    def test_normalise_url(self) -> None:
        assert normalise_url("HTTPS://Example.COM:443/a/b/#frag") == "https://example.com/a/b"
        assert normalise_url("http://example.com") == "http://example.com/"
        assert normalise_url("http://example.com:8080/x?q=1") == "http://example.com:8080/x?q=1"

    def test_registrable_domain(self) -> None:
        assert registrable_domain("https://blog.example.com/post") == "example.com"
        assert registrable_domain("shop.example.co.uk") == "example.co.uk"
        assert registrable_domain("http://127.0.0.1:8000/") == "127.0.0.1"


class TestCrawlTraversal:
    @pytest.mark.asyncio
    async def test_breadth_first_with_depth_limit(self, three_page_site: FakeSite) -> None:
        run = await make_crawler(three_page_site).crawl(SITE)

        assert run.status == CrawlStatus.COMPLETED
        assert run.total_pages == 3
        assert run.successful_pages == 3
        assert [p.url for p in run.pages] == [
            f"{SITE}/",
            f"{SITE}/gardening",
            f"{SITE}/cooking",
        ]
        assert [p.crawl_depth for p in run.pages] == [0, 1, 1]
        assert run.pages[1].parent_url == f"{SITE}/"
        assert "/deeper" not in three_page_site.page_requests

    @pytest.mark.asyncio
    async def test_page_cap_is_exact(self) -> None:
        site = make_large_site(500)
        run = await make_crawler(site, max_pages=50).crawl(SITE)

        assert run.total_pages == 50
        assert run.successful_pages + run.failed_pages == 50
        assert len(site.page_requests) == 50

    @pytest.mark.asyncio
    async def test_links_classified_internal_and_outbound(self) -> None:
        site = FakeSite()
        site.add(
            "/",
            "Home",
            "Home page text with enough words to be extracted properly.",
            links=["/a", "https://docs.site.test/guide", "https://elsewhere.org/x"],
        )
        run = await make_crawler(site, max_depth=0).crawl(SITE)

        page = run.pages[0]
        assert page.internal_links == [f"{SITE}/a", "https://docs.site.test/guide"]
        assert page.outbound_links == ["https://elsewhere.org/x"]

    @pytest.mark.asyncio
    async def test_excluded_patterns_not_enqueued(self) -> None:
        site = FakeSite()
        site.add("/", "Home", "Home page text.", links=["/login", "/docs", "/files/report.pdf"])
        site.add("/docs", "Docs", "Documentation text.")
        run = await make_crawler(site).crawl(SITE)

        assert [p.url for p in run.pages] == [f"{SITE}/", f"{SITE}/docs"]

    @pytest.mark.asyncio
    async def test_invalid_seed_rejected(self, three_page_site: FakeSite) -> None:
        with pytest.raises(DataError):
            await make_crawler(three_page_site).crawl("not a url")
        assert three_page_site.requested == []


class TestRobots:
    @pytest.mark.asyncio
    async def test_disallowed_pages_are_skipped(self, three_page_site: FakeSite) -> None:
        three_page_site.robots = "User-agent: *\nDisallow: /cooking\n"
        run = await make_crawler(three_page_site).crawl(SITE)

        assert run.skipped_pages == 1
        assert run.total_pages == 2
        assert "/cooking" not in three_page_site.page_requests

    @pytest.mark.asyncio
    async def test_robots_ignored_when_disabled(self, three_page_site: FakeSite) -> None:
        three_page_site.robots = "User-agent: *\nDisallow: /\n"
        run = await make_crawler(three_page_site, respect_robots_txt=False).crawl(SITE)

        assert run.total_pages == 3
        assert "/robots.txt" not in three_page_site.requested


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_pages_recorded_not_retried(self) -> None:
        site = FakeSite()
        site.add("/", "Home", "Home page text.", links=["/broken", "/data.json", "/missing"])
        site.add_raw("/broken", 500, "text/html", "<html><body>oops</body></html>")
        site.add_raw("/data.json", 200, "application/json", '{"a": 1}')
        run = await make_crawler(site).crawl(SITE)

        assert run.status == CrawlStatus.COMPLETED
        assert run.total_pages == 4
        assert run.successful_pages == 1
        assert run.failed_pages == 3
        errors = {p.url: p.error_message for p in run.pages if p.status == PageStatus.FAILED}
        assert errors[f"{SITE}/broken"] == "HTTP 500"
        assert errors[f"{SITE}/missing"] == "HTTP 404"
        assert "Unparsable content" in errors[f"{SITE}/data.json"]
        assert site.page_requests.count("/broken") == 1

    @pytest.mark.asyncio
    async def test_malformed_links_are_skipped(self) -> None:
        site = FakeSite()
        site.add("/", "Home", "Home page text.", links=["/a", "http://site.test:99999/x", "http://[bad"])
        site.add("/a", "Page A", "Page A text.")
        run = await make_crawler(site).crawl(SITE)

        assert run.status == CrawlStatus.COMPLETED
        assert run.total_pages == 2
        assert run.successful_pages == 2
        assert run.pages[0].internal_links == [f"{SITE}/a"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_fetch(self, three_page_site: FakeSite) -> None:
        token = CancelToken()

        class CancelAfterFirstPage(CollectingEventSink):
            def emit(self, event) -> None:
                super().emit(event)
                if event.kind == EventKind.CRAWL_PROGRESS:
                    token.cancel()

        sink = CancelAfterFirstPage()
        run = await make_crawler(three_page_site, sink=sink).crawl(SITE, cancel=token)

        assert run.status == CrawlStatus.CANCELLED
        assert run.total_pages == 1
        assert run.is_active is False
        assert run.finished_at is not None
        assert sink.of_kind(EventKind.CRAWL_COMPLETED)[0].data["status"] == "cancelled"


class TestProgressEvents:
    @pytest.mark.asyncio
    async def test_progress_after_each_page(self, three_page_site: FakeSite) -> None:
        sink = CollectingEventSink()
        run = await make_crawler(three_page_site, sink=sink).crawl(SITE, project_id="p1")

        progress = sink.of_kind(EventKind.CRAWL_PROGRESS)
        assert [e.data["total"] for e in progress] == [1, 2, 3]
        assert all(e.project_id == "p1" for e in progress)
        assert run.current_url is None
        assert run.queue_size == 0
