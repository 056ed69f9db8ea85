"""Scan orchestration: run the query battery against both indexes and aggregate metrics."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from visibility_scanner.errors import DataError, IndexUnavailableError, PreconditionError
from visibility_scanner.events import EventSink, emit
from visibility_scanner.metrics import (
    aggregate_coverage,
    identify_patterns,
    overlap,
    pages_of,
    reciprocal_rank,
    reciprocal_rank_fusion,
)
from visibility_scanner.models import (
    EventKind,
    MRRScores,
    QueryResult,
    RankedResult,
    Scan,
    ScanStatus,
    SyntheticQuery,
)
from visibility_scanner.relevance import RelevanceJudge

logger = logging.getLogger(__name__)


class RankedSearch(Protocol):
    """What the scanner needs from an index: ranked chunks with their source pages."""

    generation: int

    async def search(self, query: str, k: int) -> list[RankedResult]: ...


class VisibilityScanner:
    """Runs one scan against fixed snapshots of the lexical and vector indexes."""

    def __init__(
        self,
        lexical: Optional[RankedSearch],
        vector: Optional[RankedSearch],
        judge: RelevanceJudge,
        *,
        sink: Optional[EventSink] = None,
    ) -> None:
        if lexical is None or vector is None:
            missing = [name for name, index in (("lexical", lexical), ("vector", vector)) if index is None]
            raise PreconditionError(
                f"Scanning requires both indexes to be ready; not ready: {', '.join(missing)}",
                {"missing": missing},
            )
        self.lexical = lexical
        self.vector = vector
        self.judge = judge
        self._sink = sink

    async def run_scan(self, scan: Scan, queries: Sequence[SyntheticQuery]) -> Scan:
        """Drive ``scan`` from pending to completed or failed.

        Per-query search failures become error rows. The scan fails when the
        share of errored queries exceeds ``failure_threshold`` or an index
        becomes unavailable mid-scan.
        """
        if scan.status != ScanStatus.PENDING:
            raise PreconditionError(f"Scan {scan.scan_id} is {scan.status.value}, expected pending")
        if not queries:
            raise DataError("A scan needs at least one query")

        config = scan.config
        scan.queries = list(queries)
        scan.lexical_generation = self.lexical.generation
        scan.vector_generation = self.vector.generation
        scan.status = ScanStatus.RUNNING
        scan.started_at = datetime.now(timezone.utc)
        logger.info(
            "Scan %s started: %d queries, max_results=%d, concurrency=%d, hybrid=%s",
            scan.scan_id,
            len(queries),
            config.max_results,
            config.concurrency,
            config.use_hybrid_search,
        )

        semaphore = asyncio.Semaphore(config.concurrency)
        total = len(queries)
        completed = 0

        async def process(index: int, query: SyntheticQuery) -> QueryResult:
            nonlocal completed
            async with semaphore:
                result = await self._run_query(index, query, scan)
            completed += 1
            emit(
                self._sink,
                EventKind.SCAN_PROGRESS,
                scan.project_id,
                scan_id=scan.scan_id,
                completed=completed,
                total=total,
            )
            return result

        tasks = [asyncio.create_task(process(i, q)) for i, q in enumerate(queries)]
        try:
            results = await asyncio.gather(*tasks)
        except IndexUnavailableError as exc:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            partial = [
                t.result() for t in tasks if t.done() and not t.cancelled() and t.exception() is None
            ]
            return self._finish(scan, partial, failure=exc.message)

        return self._finish(scan, list(results))

    async def _run_query(self, index: int, query: SyntheticQuery, scan: Scan) -> QueryResult:
        config = scan.config
        k = config.max_results
        try:
            bm25_results, vector_results = await asyncio.wait_for(
                asyncio.gather(self.lexical.search(query.text, k), self.vector.search(query.text, k)),
                timeout=config.query_timeout_seconds,
            )
        except IndexUnavailableError:
            raise
        except asyncio.TimeoutError:
            return self._error_row(index, query, f"Timed out after {config.query_timeout_seconds}s")
        except Exception as exc:
            return self._error_row(index, query, f"{type(exc).__name__}: {exc}")

        hybrid_results = (
            reciprocal_rank_fusion([bm25_results, vector_results], limit=k) if config.use_hybrid_search else None
        )
        relevant = await self.judge.relevant_pages(query, pages_of([*bm25_results, *vector_results]))

        result = QueryResult(
            index=index,
            query=query.text,
            intent=query.intent,
            bm25_results=bm25_results,
            vector_results=vector_results,
            hybrid_results=hybrid_results,
            mrr=MRRScores(
                bm25=reciprocal_rank(bm25_results, relevant),
                vector=reciprocal_rank(vector_results, relevant),
                hybrid=reciprocal_rank(hybrid_results, relevant) if hybrid_results is not None else None,
            ),
            overlap=overlap(bm25_results, vector_results),
            relevant_urls=sorted(relevant),
        )
        logger.debug(
            "Query %d %r: mrr bm25=%.3f vector=%.3f overlap=%.2f",
            index,
            query.text,
            result.mrr.bm25,
            result.mrr.vector,
            result.overlap,
        )
        return result

    def _error_row(self, index: int, query: SyntheticQuery, message: str) -> QueryResult:
        logger.warning("Query %d %r failed: %s", index, query.text, message)
        return QueryResult(index=index, query=query.text, intent=query.intent, error=message)

    def _finish(self, scan: Scan, results: list[QueryResult], failure: Optional[str] = None) -> Scan:
        scan.query_results = sorted(results, key=lambda r: r.index)
        scan.coverage_metrics = aggregate_coverage(scan.query_results)
        scan.visibility_patterns = identify_patterns(scan.query_results)
        scan.completed_at = datetime.now(timezone.utc)

        metrics = scan.coverage_metrics
        if failure is None and metrics.total_queries:
            error_rate = metrics.errored_queries / metrics.total_queries
            if error_rate > scan.config.failure_threshold:
                failure = (
                    f"{metrics.errored_queries} of {metrics.total_queries} queries failed "
                    f"({error_rate:.0%} > {scan.config.failure_threshold:.0%})"
                )

        if failure is not None:
            scan.status = ScanStatus.FAILED
            scan.error_message = failure
            logger.error("Scan %s failed: %s", scan.scan_id, failure)
            emit(self._sink, EventKind.SCAN_FAILED, scan.project_id, scan_id=scan.scan_id, reason=failure)
            return scan

        scan.status = ScanStatus.COMPLETED
        logger.info(
            "Scan %s completed: hybridCoverage=%.2f over %d valid queries (%d errored)",
            scan.scan_id,
            metrics.hybrid_coverage,
            metrics.valid_queries,
            metrics.errored_queries,
        )
        emit(
            self._sink,
            EventKind.SCAN_COMPLETED,
            scan.project_id,
            scan_id=scan.scan_id,
            hybrid_coverage=metrics.hybrid_coverage,
        )
        return scan
