"""Page-level retrieval metrics and scan aggregation."""

from __future__ import annotations

from typing import Iterable, Sequence

from visibility_scanner.models import (
    CoverageMetrics,
    PatternType,
    QueryResult,
    RankedResult,
    VisibilityPattern,
)

RRF_K = 60


def pages_of(results: Iterable[RankedResult]) -> list[str]:
    """Distinct source pages in rank order."""
    return list(dict.fromkeys(r.page_url for r in sorted(results, key=lambda r: r.rank)))


def reciprocal_rank(results: Sequence[RankedResult], relevant: set[str]) -> float:
    """1/rank of the first result whose page is relevant, 0 when none is."""
    for result in sorted(results, key=lambda r: r.rank):
        if result.page_url in relevant:
            return 1.0 / result.rank
    return 0.0


def overlap(left: Sequence[RankedResult], right: Sequence[RankedResult]) -> float:
    """Shared pages divided by the smaller page set; 0 when either side is empty."""
    left_pages = set(pages_of(left))
    right_pages = set(pages_of(right))
    if not left_pages or not right_pages:
        return 0.0
    return len(left_pages & right_pages) / min(len(left_pages), len(right_pages))


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[RankedResult]],
    limit: int,
    k: int = RRF_K,
) -> list[RankedResult]:
    """Fuse ranked lists by summing 1/(k + rank) per chunk."""
    scores: dict[str, float] = {}
    first_seen: dict[str, RankedResult] = {}
    for ranking in rankings:
        for result in ranking:
            scores[result.chunk_id] = scores.get(result.chunk_id, 0.0) + 1.0 / (k + result.rank)
            first_seen.setdefault(result.chunk_id, result)

    order = {chunk_id: i for i, chunk_id in enumerate(first_seen)}
    ranked = sorted(scores.items(), key=lambda item: (-item[1], order[item[0]]))[:limit]
    return [
        first_seen[chunk_id].model_copy(update={"rank": rank, "score": round(score, 6)})
        for rank, (chunk_id, score) in enumerate(ranked, start=1)
    ]


def aggregate_coverage(results: Sequence[QueryResult]) -> CoverageMetrics:
    """Scan-level metrics. Ratios and averages use valid (non-error) results only."""
    valid = [r for r in results if r.is_valid]
    metrics = CoverageMetrics(
        total_queries=len(results),
        valid_queries=len(valid),
        errored_queries=len(results) - len(valid),
    )
    if not valid:
        return metrics

    count = len(valid)
    metrics.hybrid_coverage = sum(1 for r in valid if r.covered) / count
    metrics.bm25_coverage = sum(1 for r in valid if r.bm25_found) / count
    metrics.vector_coverage = sum(1 for r in valid if r.vector_found) / count
    metrics.average_mrr_bm25 = sum(r.mrr.bm25 for r in valid) / count
    metrics.average_mrr_vector = sum(r.mrr.vector for r in valid) / count
    metrics.average_overlap = sum(r.overlap for r in valid) / count
    metrics.queries_with_no_results = [r.query for r in valid if not r.covered]
    metrics.queries_with_perfect_overlap = [r.query for r in valid if r.overlap == 1.0]
    return metrics


def classify_outcome(result: QueryResult) -> PatternType:
    if result.bm25_found and result.vector_found:
        return PatternType.BOTH_HIGH
    if result.bm25_found:
        return PatternType.HIGH_BM25_LOW_VECTOR
    if result.vector_found:
        return PatternType.HIGH_VECTOR_LOW_BM25
    return PatternType.BOTH_LOW


def identify_patterns(results: Sequence[QueryResult]) -> list[VisibilityPattern]:
    """Group valid results by which index found a relevant page."""
    valid = [r for r in results if r.is_valid]
    if not valid:
        return []
    grouped: dict[PatternType, list[str]] = {}
    for result in valid:
        grouped.setdefault(classify_outcome(result), []).append(result.query)
    return [
        VisibilityPattern(type=pattern, affected_queries=grouped[pattern], percentage=len(grouped[pattern]) / len(valid))
        for pattern in PatternType
        if pattern in grouped
    ]
