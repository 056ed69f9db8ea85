"""Breadth-first site crawler with robots.txt, a global rate limit and cancellation."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx
from robotexclusionrulesparser import RobotExclusionRulesParser

from visibility_scanner.config import CrawlConfig, ExtractionConfig
from visibility_scanner.errors import DataError
from visibility_scanner.events import EventSink, emit
from visibility_scanner.extractor import ContentExtractor
from visibility_scanner.models import CrawledPage, CrawlRun, CrawlStatus, EventKind, PageStatus

logger = logging.getLogger(__name__)

_SECOND_LEVEL_SUFFIXES = {
    "co.uk", "org.uk", "ac.uk", "gov.uk", "me.uk",
    "com.au", "net.au", "org.au",
    "co.nz", "co.jp", "co.in", "co.za", "co.kr",
    "com.br", "com.mx", "com.ar", "com.tr", "com.cn", "com.sg",
}
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalise_url(url: str) -> str:
    """Lowercase scheme/host, drop default port and fragment, strip trailing slash."""
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    netloc = host
    if parsed.port and parsed.port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parsed.port}"
    path = parsed.path.rstrip("/") or "/"
    return urlunparse((scheme, netloc, path, "", parsed.query, ""))


def registrable_domain(url_or_host: str) -> str:
    """Approximate the registrable domain (eTLD+1) of a URL or host name."""
    host = urlparse(url_or_host).hostname if "://" in url_or_host else url_or_host
    host = (host or "").lower().rstrip(".")
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    labels = host.split(".")
    if len(labels) <= 2:
        return host
    if ".".join(labels[-2:]) in _SECOND_LEVEL_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


class CancelToken:
    """Cross-thread cancellation flag checked before every fetch."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class RobotsCache:
    """Cache and check robots.txt rules per origin."""

    def __init__(self, user_agent: str, timeout: float = 10.0) -> None:
        self._user_agent = user_agent
        self._timeout = timeout
        self._cache: dict[str, RobotExclusionRulesParser] = {}
        self._lock = asyncio.Lock()

    async def is_allowed(self, url: str, client: httpx.AsyncClient) -> bool:
        """Check if the URL is allowed by robots.txt."""
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"

        async with self._lock:
            if origin not in self._cache:
                parser = RobotExclusionRulesParser()
                try:
                    resp = await client.get(f"{origin}/robots.txt", timeout=self._timeout)
                    # Missing or erroring robots.txt allows everything
                    parser.parse(resp.text if resp.status_code == 200 else "")
                except httpx.HTTPError:
                    logger.debug("Could not fetch robots.txt for %s", origin)
                    parser.parse("")
                self._cache[origin] = parser

            return self._cache[origin].is_allowed(self._user_agent, url)


class CrawlThrottler:
    """Global minimum delay between fetches of one crawl."""

    def __init__(self, delay_ms: int) -> None:
        self._delay = delay_ms / 1000.0
        self._last_request: Optional[float] = None

    async def wait(self) -> None:
        if self._last_request is not None:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self._delay:
                await asyncio.sleep(self._delay - elapsed)
        self._last_request = time.monotonic()


class WebCrawler:
    """Single-worker breadth-first crawler.

    Live state (``current_url``, ``queue_size``, running totals) is kept on the
    ``CrawlRun`` passed in by the caller and published to the event sink after
    every page.
    """

    def __init__(
        self,
        config: CrawlConfig,
        extraction: Optional[ExtractionConfig] = None,
        *,
        sink: Optional[EventSink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._extractor = ContentExtractor(extraction)
        self._sink = sink
        self._transport = transport
        self._excluded_re = [re.compile(p, re.IGNORECASE) for p in config.excluded_patterns]

    def _is_excluded(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in self._excluded_re)

    async def crawl(
        self,
        seed_url: str,
        *,
        project_id: str = "default",
        run: Optional[CrawlRun] = None,
        cancel: Optional[CancelToken] = None,
    ) -> CrawlRun:
        """Crawl from ``seed_url`` and return the terminal run."""
        parsed = urlparse(seed_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise DataError(f"Seed URL must be an absolute http(s) URL: {seed_url!r}")

        seed = normalise_url(seed_url)
        site_domain = registrable_domain(seed)
        if run is None:
            run = CrawlRun(project_id=project_id, seed_url=seed)
        if cancel is None:
            cancel = CancelToken()

        run.status = CrawlStatus.RUNNING
        run.is_active = True
        logger.info(
            "Starting crawl of %s (max_pages=%d, max_depth=%d, delay=%dms)",
            seed,
            self.config.max_pages,
            self.config.max_depth,
            self.config.crawl_delay_ms,
        )

        queue: deque[tuple[str, int, Optional[str]]] = deque([(seed, 0, None)])
        enqueued: set[str] = {seed}
        robots = RobotsCache(self.config.user_agent, timeout=self.config.timeout_seconds)
        throttler = CrawlThrottler(self.config.crawl_delay_ms)
        headers = {"User-Agent": self.config.user_agent, **self.config.headers}

        try:
            async with httpx.AsyncClient(headers=headers, transport=self._transport) as client:
                while queue and run.total_pages < self.config.max_pages:
                    if cancel.cancelled:
                        logger.info("Crawl of %s cancelled with %d pages queued", seed, len(queue))
                        run.status = CrawlStatus.CANCELLED
                        break

                    url, depth, parent = queue.popleft()
                    run.queue_size = len(queue)

                    if self.config.respect_robots_txt and not await robots.is_allowed(url, client):
                        run.skipped_pages += 1
                        logger.debug("Blocked by robots.txt: %s", url)
                        continue

                    await throttler.wait()
                    run.current_url = url
                    page = await self._fetch_page(client, url, depth, parent, site_domain)
                    run.record(page)

                    if page.status == PageStatus.SUCCESS and depth < self.config.max_depth:
                        for link in page.internal_links:
                            if link not in enqueued and not self._is_excluded(link):
                                enqueued.add(link)
                                queue.append((link, depth + 1, url))

                    run.queue_size = len(queue)
                    logger.info(
                        "[%d/%d] %s %s (depth %d, queue %d)",
                        run.total_pages,
                        self.config.max_pages,
                        page.status.value,
                        url,
                        depth,
                        len(queue),
                    )
                    emit(
                        self._sink,
                        EventKind.CRAWL_PROGRESS,
                        run.project_id,
                        processed=run.successful_pages,
                        failed=run.failed_pages,
                        total=run.total_pages,
                        current_url=url,
                        queue_size=len(queue),
                    )
        except Exception as exc:
            run.status = CrawlStatus.FAILED
            run.error_message = str(exc)
            logger.exception("Crawl of %s failed", seed)
            raise
        finally:
            run.is_active = False
            run.current_url = None
            run.finished_at = datetime.now(timezone.utc)

        if run.status == CrawlStatus.RUNNING:
            run.status = CrawlStatus.COMPLETED
            run.queue_size = 0

        logger.info(
            "Crawl complete: %d pages (%d ok, %d failed, %d skipped by robots.txt)",
            run.total_pages,
            run.successful_pages,
            run.failed_pages,
            run.skipped_pages,
        )
        emit(
            self._sink,
            EventKind.CRAWL_COMPLETED,
            run.project_id,
            status=run.status.value,
            total_pages=run.total_pages,
            successful_pages=run.successful_pages,
            failed_pages=run.failed_pages,
        )
        return run

    async def _fetch_page(
        self,
        client: httpx.AsyncClient,
        url: str,
        depth: int,
        parent: Optional[str],
        site_domain: str,
    ) -> CrawledPage:
        """Fetch and extract one page. Fetch failures are recorded, never retried."""
        try:
            response = await client.get(url, timeout=self.config.timeout_seconds, follow_redirects=True)
            response.raise_for_status()
            content_type = response.headers.get("content-type", "")
            if "text/html" not in content_type and "application/xhtml" not in content_type:
                raise ValueError(f"Unsupported content type {content_type or 'unknown'!r}")
            content = self._extractor.extract(response.text, str(response.url))
        except httpx.HTTPStatusError as exc:
            return self._failed(url, depth, parent, f"HTTP {exc.response.status_code}")
        except httpx.TimeoutException:
            return self._failed(url, depth, parent, f"Timed out after {self.config.timeout_seconds}s")
        except httpx.HTTPError as exc:
            return self._failed(url, depth, parent, f"{type(exc).__name__}: {exc}")
        except ValueError as exc:
            return self._failed(url, depth, parent, f"Unparsable content: {exc}")

        internal: list[str] = []
        outbound: list[str] = []
        for link in content.links:
            try:
                normalised = normalise_url(link)
            except ValueError:
                logger.debug("Skipping malformed link %r on %s", link, url)
                continue
            target = internal if registrable_domain(normalised) == site_domain else outbound
            if normalised not in target and normalised != url:
                target.append(normalised)

        return CrawledPage(
            url=url,
            status=PageStatus.SUCCESS,
            title=content.title,
            h1=content.h1,
            meta_description=content.meta_description,
            canonical_url=content.canonical_url,
            text=content.text,
            headings=content.headings,
            word_count=content.word_count,
            crawl_depth=depth,
            parent_url=parent,
            internal_links=internal,
            outbound_links=outbound,
            metadata=content.metadata,
            content_hash=content.content_hash,
        )

    def _failed(self, url: str, depth: int, parent: Optional[str], message: str) -> CrawledPage:
        logger.warning("Failed to crawl %s: %s", url, message)
        return CrawledPage(
            url=url,
            status=PageStatus.FAILED,
            error_message=message,
            crawl_depth=depth,
            parent_url=parent,
        )
