"""Tests for relevance judgment."""

import pytest
from conftest import StubLLM

from visibility_scanner.config import RelevancePolicy
from visibility_scanner.errors import PreconditionError
from visibility_scanner.models import Chunk, SyntheticQuery
from visibility_scanner.relevance import PageText, RelevanceJudge, collect_page_texts

OPTICS = "https://site.test/optics"
GARDEN = "https://site.test/garden"


def make_pages() -> dict[str, PageText]:
    return {
        OPTICS: PageText("Acme Telescopes", "Apochromatic lenses for astronomers."),
        GARDEN: PageText("Gardening Tips", "Mulch tomato beds in summer."),
    }


def make_query(text: str, expected_urls: list[str] | None = None) -> SyntheticQuery:
    return SyntheticQuery(text=text, expected_urls=expected_urls or [])


class TestCollectPageTexts:
    def test_chunks_joined_in_position_order(self) -> None:
        chunks = [
            Chunk(chunk_id="2", source_page_url=OPTICS, page_title="Acme", text="second part", position=1),
            Chunk(chunk_id="1", source_page_url=OPTICS, page_title="Acme", text="first part", position=0),
            Chunk(chunk_id="3", source_page_url=GARDEN, page_title="Garden", text="only part", position=0),
        ]
        pages = collect_page_texts(chunks)
        assert pages[OPTICS].text == "first part\nsecond part"
        assert pages[OPTICS].title == "Acme"
        assert "garden" in pages[GARDEN].terms


class TestExpectedUrls:
    @pytest.mark.asyncio
    async def test_ground_truth_overrides_policy(self) -> None:
        judge = RelevanceJudge(make_pages())
        query = make_query("apochromatic lenses", expected_urls=[GARDEN])
        assert await judge.relevant_pages(query, [OPTICS, GARDEN]) == {GARDEN}


class TestKeywordPolicy:
    @pytest.mark.asyncio
    async def test_all_terms_present(self) -> None:
        judge = RelevanceJudge(make_pages())
        assert await judge.relevant_pages(make_query("apochromatic telescope lenses"), [OPTICS, GARDEN]) == {OPTICS}

    @pytest.mark.parametrize(
        "query, expected",
        [
            ("apochromatic gardening", True),
            ("apochromatic gardening cooking tips", False),
            ("the and of", False),
        ],
    )
    def test_threshold(self, query: str, expected: bool) -> None:
        judge = RelevanceJudge(make_pages(), threshold=0.5)
        assert judge.keyword_match(query, OPTICS) is expected

    def test_unknown_page_not_relevant(self) -> None:
        assert RelevanceJudge(make_pages()).keyword_match("telescopes", "https://site.test/nope") is False


class TestLLMPolicy:
    def test_requires_llm(self) -> None:
        with pytest.raises(PreconditionError):
            RelevanceJudge(make_pages(), RelevancePolicy.LLM)

    @pytest.mark.asyncio
    async def test_judgments_are_cached(self) -> None:
        llm = StubLLM(relevant_pairs=[("best garden mulch", "Gardening Tips")])
        judge = RelevanceJudge(make_pages(), RelevancePolicy.LLM, llm=llm)
        query = make_query("best garden mulch")

        assert await judge.relevant_pages(query, [OPTICS, GARDEN, GARDEN]) == {GARDEN}
        assert await judge.relevant_pages(query, [GARDEN]) == {GARDEN}
        assert llm.judge_calls == 2

    @pytest.mark.asyncio
    async def test_failed_judgment_is_not_relevant(self) -> None:
        judge = RelevanceJudge(make_pages(), RelevancePolicy.LLM, llm=StubLLM(fail=True))
        assert await judge.relevant_pages(make_query("telescopes"), [OPTICS]) == set()
