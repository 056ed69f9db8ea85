"""Tests for the query generator."""

import pytest
from conftest import StubLLM

from visibility_scanner.config import LLMConfig, ProvidedQuery, QuerySource
from visibility_scanner.errors import CollaboratorError, DataError
from visibility_scanner.llm import TemplateQueryWriter, parse_query_list
from visibility_scanner.models import (
    CrawledPage,
    CrawlRun,
    PageMetadata,
    PageStatus,
    QueryIntent,
    SiteProfile,
)
from visibility_scanner.query_generator import QueryGenerator, build_site_profile, classify_intent


def make_crawl_run() -> CrawlRun:
    run = CrawlRun(project_id="p1", seed_url="https://acme-optics.com/")
    run.record(
        CrawledPage(
            url="https://acme-optics.com/",
            status=PageStatus.SUCCESS,
            title="Home",
            h1="Acme Optics",
            meta_description="Hand-made telescopes for amateur astronomers.",
            text="Telescopes and eyepieces for stargazing.",
            metadata=PageMetadata(keywords=["Telescopes", "Optics"], language="en"),
        )
    )
    run.record(
        CrawledPage(
            url="https://acme-optics.com/refractors",
            status=PageStatus.SUCCESS,
            title="Refractors | Acme Optics",
            h1="Refracting Telescopes",
            headings=["Refracting Telescopes", "Eyepieces"],
            text="Refracting telescopes use lenses. Telescopes need eyepieces.",
        )
    )
    run.record(CrawledPage(url="https://acme-optics.com/broken", status=PageStatus.FAILED, error_message="HTTP 500"))
    return run


class TestClassifyIntent:
    @pytest.mark.parametrize(
        "text, intent",
        [
            ("refractor vs reflector telescopes", QueryIntent.COMPARISON),
            ("best alternatives to acme", QueryIntent.COMPARISON),
            ("how to collimate a telescope", QueryIntent.HOW_TO),
            ("telescope buying guide for beginners", QueryIntent.HOW_TO),
            ("cheap telescope price list", QueryIntent.TRANSACTIONAL),
            ("acme optics", QueryIntent.NAVIGATIONAL),
            ("why do stars twinkle at night", QueryIntent.INFORMATIONAL),
        ],
    )
    def test_rules(self, text: str, intent: QueryIntent) -> None:
        assert classify_intent(text) == intent


class TestSiteProfile:
    def test_profile_from_successful_pages(self) -> None:
        profile = build_site_profile(make_crawl_run(), industry="optics", competitors=["Orion"])

        assert profile.site_url == "https://acme-optics.com/"
        assert profile.brand_name == "Acme Optics"
        assert profile.description == "Hand-made telescopes for amateur astronomers."
        assert profile.language == "en"
        assert profile.topics == ["refractors", "refracting telescopes", "eyepieces"]
        assert profile.keywords[:2] == ["telescopes", "optics"]
        assert "telescop" in profile.keywords
        assert profile.competitors == ["Orion"]

    def test_empty_crawl_gives_empty_profile(self) -> None:
        profile = build_site_profile(CrawlRun(project_id="p1", seed_url="https://acme-optics.com/"))
        assert profile.topics == []
        assert profile.description == ""


class TestProvidedQueries:
    @pytest.mark.asyncio
    async def test_dedupes_and_tags(self) -> None:
        provided = [
            ProvidedQuery(text="Telescope  prices"),
            ProvidedQuery(text="telescope prices"),
            ProvidedQuery(text="   "),
            ProvidedQuery(text="how to clean lenses", expected_urls=["HTTPS://Acme-Optics.com/care#top"]),
        ]
        batch = await QueryGenerator().generate(SiteProfile(), 50, QuerySource.PROVIDED, provided)

        assert [q.text for q in batch.queries] == ["Telescope prices", "how to clean lenses"]
        assert batch.queries[0].intent == QueryIntent.TRANSACTIONAL
        assert batch.queries[1].expected_urls == ["https://acme-optics.com/care"]
        assert all(q.source == QuerySource.PROVIDED for q in batch.queries)
        assert batch.warnings == []

    @pytest.mark.asyncio
    async def test_all_blank_rejected(self) -> None:
        with pytest.raises(DataError):
            await QueryGenerator().generate(SiteProfile(), 5, QuerySource.PROVIDED, [ProvidedQuery(text=" ")])


class TestGeneratedQueries:
    @pytest.mark.asyncio
    async def test_template_writer_fills_count(self) -> None:
        profile = SiteProfile(brand_name="Acme", topics=["telescopes", "eyepieces"], keywords=["optics"])
        batch = await QueryGenerator(TemplateQueryWriter()).generate(profile, 10, QuerySource.GENERATED)

        texts = [q.text for q in batch.queries]
        assert len(texts) == 10
        assert len({t.lower() for t in texts}) == 10
        assert texts[:3] == ["telescopes", "eyepieces", "optics"]
        assert all(q.source == QuerySource.GENERATED for q in batch.queries)
        assert batch.warnings == []

    @pytest.mark.asyncio
    async def test_shortfall_is_a_warning(self) -> None:
        profile = SiteProfile(topics=["telescopes"])
        batch = await QueryGenerator(TemplateQueryWriter()).generate(profile, 10, QuerySource.GENERATED)

        assert len(batch.queries) == 7
        assert batch.warnings == ["Generated 7 of 10 requested queries after deduplication"]

    @pytest.mark.asyncio
    async def test_llm_duplicates_removed(self) -> None:
        llm = StubLLM(queries=["Telescope prices", "telescope  prices", "how to collimate a telescope"])
        batch = await QueryGenerator(llm).generate(SiteProfile(), 3, QuerySource.GENERATED)

        assert [q.text for q in batch.queries] == ["Telescope prices", "how to collimate a telescope"]
        assert len(batch.warnings) == 1

    @pytest.mark.asyncio
    async def test_writer_failure_raises_after_retries(self) -> None:
        generator = QueryGenerator(StubLLM(fail=True), LLMConfig(max_generation_attempts=2))
        with pytest.raises(CollaboratorError) as excinfo:
            await generator.generate(SiteProfile(topics=["telescopes"]), 5, QuerySource.GENERATED)
        assert excinfo.value.details == {"requested": 5, "attempts": 2}

    @pytest.mark.asyncio
    async def test_empty_answers_are_a_data_error(self) -> None:
        generator = QueryGenerator(StubLLM(queries=["", "   "]), LLMConfig(max_generation_attempts=2))
        with pytest.raises(DataError) as excinfo:
            await generator.generate(SiteProfile(topics=["telescopes"]), 5, QuerySource.GENERATED)
        assert excinfo.value.details == {"requested": 5}


class TestParseQueryList:
    def test_json_array(self) -> None:
        assert parse_query_list('Here you go: ["a b", " c ", ""]') == ["a b", "c"]

    def test_numbered_lines(self) -> None:
        assert parse_query_list('1. first query\n- "second query"\n\n3) third') == [
            "first query",
            "second query",
            "third",
        ]
