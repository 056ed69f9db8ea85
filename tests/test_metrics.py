"""Tests for retrieval metrics."""

import pytest

from visibility_scanner.metrics import (
    aggregate_coverage,
    identify_patterns,
    overlap,
    pages_of,
    reciprocal_rank,
    reciprocal_rank_fusion,
)
from visibility_scanner.models import MRRScores, PatternType, QueryResult, RankedResult


def make_results(*pages: str, prefix: str = "c") -> list[RankedResult]:
    return [
        RankedResult(chunk_id=f"{prefix}{i}", page_url=page, rank=i, score=1.0 / i)
        for i, page in enumerate(pages, start=1)
    ]


def make_query_result(query: str, bm25: float, vector: float, overlap: float = 0.0, error: str | None = None) -> QueryResult:
    return QueryResult(index=0, query=query, mrr=MRRScores(bm25=bm25, vector=vector), overlap=overlap, error=error)


class TestReciprocalRank:
    def test_first_relevant_rank(self) -> None:
        results = make_results("/a", "/b", "/c")
        assert reciprocal_rank(results, {"/c"}) == pytest.approx(1 / 3)
        assert reciprocal_rank(results, {"/a", "/c"}) == 1.0

    def test_no_relevant_page(self) -> None:
        assert reciprocal_rank(make_results("/a", "/b"), {"/z"}) == 0.0
        assert reciprocal_rank([], {"/a"}) == 0.0

    def test_chunk_rank_used_not_page_rank(self) -> None:
        # two chunks of /a push /b to chunk rank 3
        assert reciprocal_rank(make_results("/a", "/a", "/b"), {"/b"}) == pytest.approx(1 / 3)


class TestOverlap:
    def test_divides_by_smaller_page_set(self) -> None:
        assert overlap(make_results("/a", "/b", "/c", "/d"), make_results("/b", "/z")) == 0.5

    def test_identical_page_sets(self) -> None:
        assert overlap(make_results("/a", "/a", "/b"), make_results("/b", "/a")) == 1.0

    def test_empty_side_is_zero(self) -> None:
        assert overlap([], make_results("/a")) == 0.0
        assert overlap(make_results("/a"), []) == 0.0

    def test_pages_of_keeps_rank_order(self) -> None:
        assert pages_of(make_results("/b", "/a", "/b")) == ["/b", "/a"]


class TestReciprocalRankFusion:
    def test_chunks_in_both_lists_rise(self) -> None:
        lexical = make_results("/a", "/b", "/c")
        vector = [
            RankedResult(chunk_id="c3", page_url="/c", rank=1, score=0.9),
            RankedResult(chunk_id="x1", page_url="/x", rank=2, score=0.8),
        ]
        fused = reciprocal_rank_fusion([lexical, vector], limit=3)

        assert [r.chunk_id for r in fused] == ["c3", "c1", "c2"]
        assert [r.rank for r in fused] == [1, 2, 3]
        assert fused[0].score == pytest.approx(1 / 63 + 1 / 61, abs=1e-6)

    def test_ties_keep_first_seen_order(self) -> None:
        fused = reciprocal_rank_fusion([make_results("/a", prefix="l"), make_results("/b", prefix="v")], limit=5)
        assert [r.chunk_id for r in fused] == ["l1", "v1"]


class TestAggregateCoverage:
    def test_ratios_use_valid_results_only(self) -> None:
        results = [
            make_query_result("found by both", 1.0, 0.5, overlap=1.0),
            make_query_result("missed", 0.0, 0.0),
            make_query_result("broken", 0.0, 0.0, error="timeout"),
        ]
        metrics = aggregate_coverage(results)

        assert metrics.total_queries == 3
        assert metrics.valid_queries == 2
        assert metrics.errored_queries == 1
        assert metrics.hybrid_coverage == 0.5
        assert metrics.bm25_coverage == 0.5
        assert metrics.average_mrr_bm25 == 0.5
        assert metrics.average_mrr_vector == 0.25
        assert metrics.average_overlap == 0.5
        assert metrics.queries_with_no_results == ["missed"]
        assert metrics.queries_with_perfect_overlap == ["found by both"]

    def test_no_valid_results(self) -> None:
        metrics = aggregate_coverage([make_query_result("broken", 0.0, 0.0, error="boom")])
        assert metrics.hybrid_coverage == 0.0
        assert metrics.valid_queries == 0


class TestPatterns:
    def test_grouped_by_outcome(self) -> None:
        results = [
            make_query_result("q1", 1.0, 1.0),
            make_query_result("q2", 1.0, 0.0),
            make_query_result("q3", 0.0, 0.0),
            make_query_result("q4", 0.0, 0.0),
            make_query_result("q5", 0.0, 0.0, error="boom"),
        ]
        patterns = {p.type: p for p in identify_patterns(results)}

        assert set(patterns) == {PatternType.BOTH_HIGH, PatternType.HIGH_BM25_LOW_VECTOR, PatternType.BOTH_LOW}
        assert patterns[PatternType.BOTH_LOW].affected_queries == ["q3", "q4"]
        assert patterns[PatternType.BOTH_LOW].percentage == 0.5
