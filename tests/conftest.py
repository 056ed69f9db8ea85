"""Shared fakes: an in-process website, a bag-of-words embedder and a stub LLM."""

from __future__ import annotations

import hashlib
from typing import Iterable, Optional

import httpx
import pytest

from visibility_scanner.config import CrawlConfig, ExtractionConfig, ScannerSettings
from visibility_scanner.errors import CollaboratorError
from visibility_scanner.text import tokenize

SITE = "https://site.test"


def make_html(title: str, body: str, links: Iterable[str] = (), lang: str = "en", extra_head: str = "") -> str:
    anchors = "".join(f'<li><a href="{href}">{href}</a></li>' for href in links)
    return (
        f'<!DOCTYPE html><html lang="{lang}"><head><title>{title}</title>{extra_head}</head>'
        f"<body><nav><ul>{anchors}</ul></nav><main><h1>{title}</h1><p>{body}</p></main></body></html>"
    )


class FakeSite:
    """Map of URL path to (status, content type, body) served through ``httpx.MockTransport``."""

    def __init__(self, base: str = SITE) -> None:
        self.base = base
        self.pages: dict[str, tuple[int, str, str]] = {}
        self.robots: Optional[str] = None
        self.requested: list[str] = []

    def add(self, path: str, title: str, body: str, links: Iterable[str] = ()) -> FakeSite:
        self.pages[path] = (200, "text/html; charset=utf-8", make_html(title, body, links))
        return self

    def add_raw(self, path: str, status: int, content_type: str, body: str) -> FakeSite:
        self.pages[path] = (status, content_type, body)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path or "/"
        self.requested.append(path)
        if path == "/robots.txt":
            if self.robots is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, text=self.robots, headers={"content-type": "text/plain"})
        if path not in self.pages:
            return httpx.Response(404, text="not found", headers={"content-type": "text/html"})
        status, content_type, body = self.pages[path]
        return httpx.Response(status, text=body, headers={"content-type": content_type})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def page_requests(self) -> list[str]:
        return [p for p in self.requested if p != "/robots.txt"]


def make_three_page_site() -> FakeSite:
    """Page A links to B and C; B links to a deeper page D."""
    site = FakeSite()
    site.add(
        "/",
        "Acme Telescopes",
        "Our refracting telescopes use apochromatic lenses ground by hand in our workshop, "
        "giving astronomers crisp views of planets and nebulae every clear night.",
        links=["/gardening", "/cooking"],
    )
    site.add(
        "/gardening",
        "Gardening Tips",
        "Water tomato plants deeply twice a week and mulch the beds so the soil keeps its "
        "moisture through the long summer afternoons.",
        links=["/deeper"],
    )
    site.add(
        "/cooking",
        "Cooking Basics",
        "Sear the steak in a hot cast iron pan, then rest the meat for five minutes before "
        "slicing it against the grain for tender results.",
    )
    site.add("/deeper", "Deeper Page", "This page sits two links away from the seed and must not be crawled.")
    return site


def make_crawl_config(**overrides) -> CrawlConfig:
    defaults = {"crawl_delay_ms": 0, "max_pages": 10, "max_depth": 1, "timeout_seconds": 5.0}
    defaults.update(overrides)
    return CrawlConfig(**defaults)


def make_extraction_config() -> ExtractionConfig:
    # BS4 extraction is deterministic for tiny fixture pages
    return ExtractionConfig(use_trafilatura=False, detect_language=False)


def make_settings(**crawl_overrides) -> ScannerSettings:
    return ScannerSettings(
        crawl=make_crawl_config(**crawl_overrides),
        extraction=make_extraction_config(),
    )


class BagOfWordsEmbedder:
    """Deterministic embedding: hashed term counts over the scanner's own tokenizer."""

    def __init__(self, dimension: int = 256, fail_on: Iterable[str] = ()) -> None:
        self.dimension = dimension
        self.fail_on = tuple(fail_on)
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if any(marker in text for marker in self.fail_on):
            raise RuntimeError("embedding service unavailable")
        vector = [0.0] * self.dimension
        for term in tokenize(text):
            bucket = int(hashlib.md5(term.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        return vector


class StubLLM:
    """Stands in for ``OpenAILLMClient``."""

    def __init__(
        self,
        queries: Iterable[str] = (),
        relevant_pairs: Iterable[tuple[str, str]] = (),
        fail: bool = False,
    ) -> None:
        self.queries = list(queries)
        self.relevant_titles = set(relevant_pairs)
        self.fail = fail
        self.judge_calls = 0
        self.rephrase_calls = 0

    async def generate_queries(self, profile, count, exclude=()) -> list[str]:
        if self.fail:
            raise CollaboratorError("query generation failed: boom")
        return self.queries[:count]

    async def judge_relevance(self, query: str, page_title: str, page_text: str) -> bool:
        self.judge_calls += 1
        if self.fail:
            raise CollaboratorError("relevance judgment failed: boom")
        return (query, page_title) in self.relevant_titles

    async def rephrase(self, title: str, description: str) -> str:
        self.rephrase_calls += 1
        if self.fail:
            raise CollaboratorError("action phrasing failed: boom")
        return f"Rephrased: {title}"


@pytest.fixture
def three_page_site() -> FakeSite:
    return make_three_page_site()


@pytest.fixture
def embedder() -> BagOfWordsEmbedder:
    return BagOfWordsEmbedder()
