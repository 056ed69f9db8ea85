"""Tests for the scan orchestrator."""

import pytest
from conftest import BagOfWordsEmbedder

from visibility_scanner.config import ScanConfig
from visibility_scanner.errors import PreconditionError
from visibility_scanner.events import CollectingEventSink
from visibility_scanner.lexical_index import LexicalIndex
from visibility_scanner.models import Chunk, EventKind, Scan, ScanStatus, SyntheticQuery
from visibility_scanner.relevance import RelevanceJudge, collect_page_texts
from visibility_scanner.scanner import VisibilityScanner
from visibility_scanner.vector_index import VectorIndex

PAGES = {
    "https://site.test/": ("Acme Telescopes", "Refracting telescopes with apochromatic lenses for astronomers."),
    "https://site.test/garden": ("Gardening Tips", "Mulch tomato beds and water deeply in summer."),
    "https://site.test/kitchen": ("Cooking Basics", "Rest seared steak before slicing against the grain."),
}


class FlakyIndex:
    """Wraps an index and fails any query containing ``marker``."""

    def __init__(self, inner, marker: str = "BROKEN") -> None:
        self.inner = inner
        self.marker = marker
        self.generation = inner.generation

    async def search(self, query: str, k: int):
        if self.marker in query:
            raise RuntimeError("backend hiccup")
        return await self.inner.search(query, k)


def make_chunks() -> list[Chunk]:
    return [
        Chunk(chunk_id=f"c{i}", source_page_url=url, page_title=title, text=text, position=0, total_chunks=1)
        for i, (url, (title, text)) in enumerate(PAGES.items())
    ]


async def make_scanner(sink=None, flaky: bool = False) -> VisibilityScanner:
    chunks = make_chunks()
    lexical = LexicalIndex.build(chunks, generation=2)
    vector = await VectorIndex.build(chunks, BagOfWordsEmbedder(), generation=3)
    judge = RelevanceJudge(collect_page_texts(chunks))
    if flaky:
        lexical = FlakyIndex(lexical)
    return VisibilityScanner(lexical, vector, judge, sink=sink)


def make_scan(**config) -> Scan:
    return Scan(scan_id="s1", project_id="p1", config=ScanConfig(**config))


def make_queries(*texts: str) -> list[SyntheticQuery]:
    return [SyntheticQuery(text=t) for t in texts]


class TestRunScan:
    @pytest.mark.asyncio
    async def test_metrics_per_query(self) -> None:
        sink = CollectingEventSink()
        scanner = await make_scanner(sink=sink)
        scan = await scanner.run_scan(make_scan(max_results=3), make_queries("apochromatic lenses", "quantum cryptography"))

        assert scan.status == ScanStatus.COMPLETED
        assert scan.lexical_generation == 2
        assert scan.vector_generation == 3
        found, missed = scan.query_results
        assert found.mrr.bm25 == 1.0
        assert found.relevant_urls == ["https://site.test/"]
        assert missed.bm25_results == []
        assert missed.overlap == 0.0
        assert missed.mrr.vector == 0.0
        assert len(missed.vector_results) == 3
        assert scan.coverage_metrics.hybrid_coverage == 0.5
        assert scan.coverage_metrics.queries_with_no_results == ["quantum cryptography"]

        progress = sink.of_kind(EventKind.SCAN_PROGRESS)
        assert sorted(e.data["completed"] for e in progress) == [1, 2]
        assert sink.of_kind(EventKind.SCAN_COMPLETED)[0].data["scan_id"] == "s1"

    @pytest.mark.asyncio
    async def test_hybrid_results(self) -> None:
        scanner = await make_scanner()
        scan = await scanner.run_scan(make_scan(use_hybrid_search=True, max_results=2), make_queries("seared steak"))

        result = scan.query_results[0]
        assert result.hybrid_results is not None
        assert len(result.hybrid_results) == 2
        assert result.hybrid_results[0].page_url == "https://site.test/kitchen"
        assert result.mrr.hybrid == 1.0

    @pytest.mark.asyncio
    async def test_hybrid_off_by_default(self) -> None:
        scanner = await make_scanner()
        scan = await scanner.run_scan(make_scan(), make_queries("seared steak"))
        assert scan.query_results[0].hybrid_results is None
        assert scan.query_results[0].mrr.hybrid is None


class TestFailures:
    @pytest.mark.asyncio
    async def test_one_error_in_ten_still_completes(self) -> None:
        scanner = await make_scanner(flaky=True)
        queries = make_queries(*[f"apochromatic telescopes {i}" for i in range(9)], "BROKEN telescope")
        scan = await scanner.run_scan(make_scan(), queries)

        assert scan.status == ScanStatus.COMPLETED
        metrics = scan.coverage_metrics
        assert metrics.total_queries == 10
        assert metrics.valid_queries == 9
        assert metrics.errored_queries == 1
        assert metrics.bm25_coverage == 1.0
        assert scan.query_results[9].error == "RuntimeError: backend hiccup"
        assert [r.index for r in scan.query_results] == list(range(10))

    @pytest.mark.asyncio
    async def test_error_rate_over_threshold_fails(self) -> None:
        sink = CollectingEventSink()
        scanner = await make_scanner(sink=sink, flaky=True)
        queries = make_queries(*[f"BROKEN {i}" for i in range(6)], *[f"telescope {i}" for i in range(4)])
        scan = await scanner.run_scan(make_scan(failure_threshold=0.5), queries)

        assert scan.status == ScanStatus.FAILED
        assert "6 of 10 queries failed" in scan.error_message
        assert scan.coverage_metrics.errored_queries == 6
        assert sink.of_kind(EventKind.SCAN_FAILED)

    @pytest.mark.asyncio
    async def test_unavailable_index_fails_scan(self) -> None:
        scanner = await make_scanner()
        scanner.lexical.discard()
        scan = await scanner.run_scan(make_scan(), make_queries("telescopes", "steak"))

        assert scan.status == ScanStatus.FAILED
        assert "no longer available" in scan.error_message
        assert scan.completed_at is not None


class TestPreconditions:
    def test_missing_index(self) -> None:
        chunks = make_chunks()
        with pytest.raises(PreconditionError) as excinfo:
            VisibilityScanner(LexicalIndex.build(chunks), None, RelevanceJudge(collect_page_texts(chunks)))
        assert excinfo.value.details == {"missing": ["vector"]}

    @pytest.mark.asyncio
    async def test_scan_must_be_pending(self) -> None:
        scanner = await make_scanner()
        scan = make_scan()
        scan.status = ScanStatus.COMPLETED
        with pytest.raises(PreconditionError):
            await scanner.run_scan(scan, make_queries("telescopes"))
