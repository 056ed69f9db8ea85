"""Rule-based recommendations and action plans derived from a scan.

Priority and effort always come from the rule tables below. An optional
phraser may rewrite item descriptions afterwards; it never changes
classification.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Optional, Protocol, Sequence

from visibility_scanner.errors import CollaboratorError, PreconditionError
from visibility_scanner.metrics import classify_outcome, pages_of
from visibility_scanner.models import (
    EFFORT_ORDER,
    PRIORITY_ORDER,
    ActionItem,
    ActionPhase,
    ActionPlan,
    Effort,
    PatternType,
    Priority,
    QueryIntent,
    QueryResult,
    Recommendation,
    Scan,
    ScanStatus,
    ScoreProjection,
)

logger = logging.getLogger(__name__)

INTENT_WEIGHTS = {
    QueryIntent.TRANSACTIONAL: 3.0,
    QueryIntent.COMPARISON: 2.5,
    QueryIntent.HOW_TO: 2.0,
    QueryIntent.INFORMATIONAL: 1.5,
    QueryIntent.NAVIGATIONAL: 1.0,
}

PATTERN_WEIGHTS = {
    PatternType.BOTH_LOW: 1.0,
    PatternType.HIGH_BM25_LOW_VECTOR: 0.6,
    PatternType.HIGH_VECTOR_LOW_BM25: 0.6,
}

PATTERN_CATEGORIES = {
    PatternType.BOTH_LOW: "content-gaps",
    PatternType.HIGH_BM25_LOW_VECTOR: "semantic-optimization",
    PatternType.HIGH_VECTOR_LOW_BM25: "keyword-optimization",
}

HIGH_PRIORITY_SCORE = 0.5
MEDIUM_PRIORITY_SCORE = 0.15

TIMELINES = {Effort.LOW: "1 week", Effort.MEDIUM: "1-2 weeks", Effort.HIGH: "2-3 weeks"}

QUICK_WINS = ("Phase 1: Immediate Quick Wins", "1-2 weeks")
TECHNICAL = ("Phase 2: Technical & Semantic Optimization", "2-3 weeks")
LONG_TERM = ("Phase 3: Long-term Content Development", "3-4 weeks")


def _valid(scan: Scan) -> list[QueryResult]:
    return [r for r in scan.query_results if r.is_valid]


def _urls_for(results: Sequence[QueryResult], queries: Sequence[str], limit: int = 5) -> list[str]:
    wanted = set(queries)
    urls: list[str] = []
    for result in results:
        if result.query in wanted:
            urls.extend(pages_of([*result.bm25_results, *result.vector_results]))
    return list(dict.fromkeys(urls))[:limit]


def _top_pages(results: Sequence[QueryResult], queries: Sequence[str], limit: int = 5) -> list[str]:
    wanted = set(queries)
    urls: list[str] = []
    for result in results:
        if result.query in wanted:
            for ranked in (result.bm25_results, result.vector_results):
                if ranked:
                    urls.append(ranked[0].page_url)
    return list(dict.fromkeys(urls))[:limit]


def _low_mrr_pages(results: Sequence[QueryResult], index: str, limit: int = 5) -> list[str]:
    urls: list[str] = []
    for result in results:
        mrr = result.mrr.bm25 if index == "bm25" else result.mrr.vector
        ranked = result.bm25_results if index == "bm25" else result.vector_results
        if 0 < mrr < 0.5 and ranked:
            urls.append(ranked[0].page_url)
    return list(dict.fromkeys(urls))[:limit]


def _unfound_pages(results: Sequence[QueryResult], index: str, limit: int = 5) -> list[str]:
    urls: list[str] = []
    for result in results:
        found = result.bm25_found if index == "bm25" else result.vector_found
        ranked = result.bm25_results if index == "bm25" else result.vector_results
        if not found:
            urls.extend(r.page_url for r in ranked)
    return list(dict.fromkeys(urls))[:limit]


def suggest_page_url(query: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", query.lower())
    slug = re.sub(r"\s+", "-", slug.strip())[:50].strip("-")
    return f"/{slug}"


def _require_completed(scan: Scan) -> None:
    if scan.status != ScanStatus.COMPLETED:
        raise PreconditionError(
            f"Scan {scan.scan_id} is {scan.status.value}; recommendations need a completed scan",
            {"scan_id": scan.scan_id, "status": scan.status.value},
        )


class RecommendationEngine:
    """Coverage, pattern, overlap and MRR rules producing a prioritised list."""

    def generate(self, scan: Scan) -> list[Recommendation]:
        _require_completed(scan)
        results = _valid(scan)
        metrics = scan.coverage_metrics
        recs: list[Recommendation] = []
        if not results:
            return recs

        if metrics.bm25_coverage < 0.7:
            recs.append(
                Recommendation(
                    priority=Priority.HIGH,
                    type="keyword_optimization",
                    title="Improve Keyword Coverage",
                    description=(
                        f"Only {round(metrics.bm25_coverage * 100)}% of queries find a relevant page in "
                        "keyword search. Add missing target keywords to your content."
                    ),
                    impact="High - Directly improves discoverability in traditional search",
                    effort=Effort.MEDIUM,
                    affected_pages=_unfound_pages(results, "bm25"),
                )
            )
        if metrics.vector_coverage < 0.7:
            recs.append(
                Recommendation(
                    priority=Priority.HIGH,
                    type="semantic_optimization",
                    title="Enhance Semantic Context",
                    description=(
                        f"Only {round(metrics.vector_coverage * 100)}% of queries find a relevant page in "
                        "semantic search. Enrich content with contextual information and related concepts."
                    ),
                    impact="High - Critical for AI system understanding",
                    effort=Effort.MEDIUM,
                    affected_pages=_unfound_pages(results, "vector"),
                )
            )

        for pattern in scan.visibility_patterns:
            if pattern.type == PatternType.HIGH_BM25_LOW_VECTOR and pattern.percentage > 0.2:
                recs.append(
                    Recommendation(
                        priority=Priority.HIGH,
                        type="context_enrichment",
                        title="Add Contextual Content",
                        description=(
                            "Your content has good keyword matches but lacks semantic richness. "
                            "Add explanations, use cases and related concepts."
                        ),
                        impact="High - Improves AI understanding without losing keyword strength",
                        effort=Effort.LOW,
                        affected_pages=_urls_for(results, pattern.affected_queries),
                    )
                )
            elif pattern.type == PatternType.HIGH_VECTOR_LOW_BM25 and pattern.percentage > 0.2:
                recs.append(
                    Recommendation(
                        priority=Priority.MEDIUM,
                        type="keyword_inclusion",
                        title="Include Target Keywords",
                        description=(
                            "Your content is semantically rich but missing exact keyword matches. "
                            "Add the specific terms users search for."
                        ),
                        impact="Medium - Improves traditional search visibility",
                        effort=Effort.LOW,
                        affected_pages=_urls_for(results, pattern.affected_queries),
                    )
                )
            elif pattern.type == PatternType.BOTH_LOW and pattern.percentage > 0.1:
                recs.append(
                    Recommendation(
                        priority=Priority.HIGH,
                        type="content_gaps",
                        title="Fill Content Gaps",
                        description=(
                            f"{len(pattern.affected_queries)} queries find no relevant page in either index. "
                            "Create new pages or sections addressing these topics."
                        ),
                        impact="Very High - Currently invisible for these queries",
                        effort=Effort.HIGH,
                    )
                )
            elif pattern.type == PatternType.BOTH_HIGH and pattern.percentage > 0.8:
                recs.append(
                    Recommendation(
                        priority=Priority.LOW,
                        type="performance_optimization",
                        title="Optimize High-Performing Content",
                        description=(
                            "Your content performs well in both search methods. Focus on maintaining "
                            "quality and improving specific rankings."
                        ),
                        impact="Low - Already performing well",
                        effort=Effort.LOW,
                        affected_pages=_top_pages(results, pattern.affected_queries),
                    )
                )

        if len(metrics.queries_with_no_results) > 5:
            recs.append(
                Recommendation(
                    priority=Priority.MEDIUM,
                    type="structured_data",
                    title="Add Structured Data",
                    description=(
                        "Implement Schema.org markup (FAQ, HowTo, Product) to help AI systems "
                        "understand your content structure."
                    ),
                    impact="Medium - Improves content parsing by AI",
                    effort=Effort.LOW,
                )
            )

        if metrics.average_overlap < 0.3:
            recs.append(
                Recommendation(
                    priority=Priority.MEDIUM,
                    type="content_structure",
                    title="Optimize Content Chunking",
                    description=(
                        "Low overlap between keyword and semantic search suggests content structure "
                        "issues. Reorganize content into focused sections of 50-100 words."
                    ),
                    impact="Medium - Better alignment between search methods",
                    effort=Effort.MEDIUM,
                )
            )

        if metrics.average_mrr_bm25 < 0.5:
            recs.append(
                Recommendation(
                    priority=Priority.MEDIUM,
                    type="keyword_placement",
                    title="Improve Keyword Placement",
                    description=(
                        "Keywords are found but not prominently placed. Move important keywords to "
                        "titles, headers and opening paragraphs."
                    ),
                    impact="Medium - Better ranking for keyword searches",
                    effort=Effort.LOW,
                    affected_pages=_low_mrr_pages(results, "bm25"),
                )
            )
        if metrics.average_mrr_vector < 0.5:
            recs.append(
                Recommendation(
                    priority=Priority.MEDIUM,
                    type="semantic_depth",
                    title="Enhance Semantic Depth",
                    description=(
                        "Relevant pages rank low in semantic search. Add more context, examples and "
                        "related concepts near the top of the page."
                    ),
                    impact="Medium - Better semantic search performance",
                    effort=Effort.MEDIUM,
                    affected_pages=_low_mrr_pages(results, "vector"),
                )
            )

        low_overlap = [r.query for r in results if r.overlap < 0.2]
        if len(low_overlap) > len(results) * 0.3:
            recs.append(
                Recommendation(
                    priority=Priority.HIGH,
                    type="search_alignment",
                    title="Align Search Methods",
                    description=(
                        f"{round(len(low_overlap) / len(results) * 100)}% of queries show low overlap "
                        "between search methods, which points to inconsistent content optimization."
                    ),
                    impact="High - Unified search performance",
                    effort=Effort.MEDIUM,
                    affected_pages=_urls_for(results, low_overlap),
                )
            )

        if all(r.mrr.bm25 == 1 and r.mrr.vector == 1 for r in results):
            recs.append(
                Recommendation(
                    priority=Priority.LOW,
                    type="competitive_analysis",
                    title="Consider Competitive Differentiation",
                    description=(
                        "All queries return your content first. Consider analysing competitor "
                        "strategies and expanding content scope."
                    ),
                    impact="Low - Maintain current performance",
                    effort=Effort.LOW,
                )
            )

        # sorted() is stable, so rule order breaks ties
        return sorted(recs, key=lambda r: PRIORITY_ORDER[r.priority])


class ActionPhraser(Protocol):
    async def rephrase(self, title: str, description: str) -> str: ...


class ActionPlanGenerator:
    """Deterministic action plan from per-query outcome patterns and intent weights."""

    def build(self, scan: Scan) -> ActionPlan:
        _require_completed(scan)
        results = _valid(scan)
        drafts = self._pattern_items(results) + self._structural_items(scan, results)
        drafts.sort(key=lambda d: d[0])

        items = [item.model_copy(update={"id": f"action-{n}"}) for n, (_, item) in enumerate(drafts, start=1)]
        plan = ActionPlan(
            scan_id=scan.scan_id,
            project_id=scan.project_id,
            phases=self._organise_into_phases(items),
            total_items=len(items),
            overall_score=self._project_score(scan, items),
            estimated_time_to_complete=self._time_to_complete(items),
        )
        logger.info(
            "Generated action plan for scan %s with %d items across %d phases",
            scan.scan_id,
            plan.total_items,
            len(plan.phases),
        )
        return plan

    async def generate(self, scan: Scan, phraser: Optional[ActionPhraser] = None) -> ActionPlan:
        """Build the plan, then optionally rewrite descriptions through ``phraser``."""
        plan = self.build(scan)
        if phraser is None:
            return plan
        for phase in plan.phases:
            for item in phase.items:
                try:
                    item.description = await phraser.rephrase(item.title, item.description)
                except CollaboratorError as exc:
                    logger.warning("Keeping rule-based text for %s: %s", item.id, exc)
        return plan

    def _pattern_items(self, results: Sequence[QueryResult]) -> list[tuple[tuple, ActionItem]]:
        if not results:
            return []
        groups: dict[tuple[PatternType, QueryIntent], list[QueryResult]] = {}
        for result in results:
            pattern = classify_outcome(result)
            if pattern != PatternType.BOTH_HIGH:
                groups.setdefault((pattern, result.intent), []).append(result)

        pattern_order = {p: i for i, p in enumerate(PATTERN_WEIGHTS)}
        drafts: list[tuple[tuple, ActionItem]] = []
        for (pattern, intent), group in groups.items():
            share = len(group) / len(results)
            score = PATTERN_WEIGHTS[pattern] * INTENT_WEIGHTS[intent] * share
            if score >= HIGH_PRIORITY_SCORE:
                priority = Priority.HIGH
            elif score >= MEDIUM_PRIORITY_SCORE:
                priority = Priority.MEDIUM
            else:
                priority = Priority.LOW
            effort = self._effort(pattern, group)
            item = self._describe(pattern, intent, group, priority, effort)
            sort_key = (
                PRIORITY_ORDER[priority],
                -round(score, 6),
                EFFORT_ORDER[effort],
                pattern_order[pattern],
                group[0].index,
            )
            drafts.append((sort_key, item))
        return drafts

    def _effort(self, pattern: PatternType, group: Sequence[QueryResult]) -> Effort:
        if pattern != PatternType.BOTH_LOW:
            return Effort.LOW
        # Content exists but is not judged relevant: fixing it is cheaper than writing new pages
        retrieved = [bool(r.bm25_results or r.vector_results) for r in group]
        if all(retrieved):
            return Effort.LOW
        if not any(retrieved):
            return Effort.HIGH
        return Effort.MEDIUM

    def _describe(
        self,
        pattern: PatternType,
        intent: QueryIntent,
        group: Sequence[QueryResult],
        priority: Priority,
        effort: Effort,
    ) -> ActionItem:
        queries = [r.query for r in group]
        label = intent.value.replace("_", "-")
        subject = f'"{queries[0]}"' if len(queries) == 1 else f"{len(queries)} {label} queries"
        top_page = next((ranked[0].page_url for r in group for ranked in (r.bm25_results, r.vector_results) if ranked), "")

        if pattern == PatternType.BOTH_LOW:
            if effort == Effort.LOW:
                title = f"Rework existing pages for {subject}"
                description = (
                    "Pages are retrieved for these queries but none answers them. Add a direct answer, "
                    "a descriptive heading and matching meta description to the closest page."
                )
                target = top_page or suggest_page_url(queries[0])
            else:
                title = f"Create content for {subject}"
                description = (
                    "Neither keyword nor semantic search finds a relevant page. Create a dedicated page "
                    "or section targeting these queries."
                )
                target = suggest_page_url(queries[0])
        elif pattern == PatternType.HIGH_BM25_LOW_VECTOR:
            title = f"Add semantic context for {subject}"
            description = (
                "Keyword search finds a relevant page but semantic search does not. Add explanations, "
                "use cases and related concepts around the matching terms."
            )
            target = top_page
        else:
            title = f"Add target keywords for {subject}"
            description = (
                "Semantic search finds a relevant page but keyword search does not. Use the exact terms "
                "from these queries in headings and opening paragraphs."
            )
            target = top_page

        return ActionItem(
            id="",
            title=title,
            description=description,
            priority=priority,
            effort=effort,
            category=PATTERN_CATEGORIES[pattern],
            affected_queries=queries,
            target_page=target,
            timeline=TIMELINES[effort],
        )

    def _structural_items(self, scan: Scan, results: Sequence[QueryResult]) -> list[tuple[tuple, ActionItem]]:
        metrics = scan.coverage_metrics
        drafts: list[tuple[tuple, ActionItem]] = []
        if results and metrics.average_overlap < 0.3:
            drafts.append(
                (
                    (PRIORITY_ORDER[Priority.MEDIUM], 0.0, EFFORT_ORDER[Effort.MEDIUM], 10, 0),
                    ActionItem(
                        id="",
                        title="Restructure pages into focused sections",
                        description=(
                            f"Average overlap between keyword and semantic results is "
                            f"{metrics.average_overlap:.2f}. Split long pages into focused sections "
                            "of 50-100 words, each under its own heading."
                        ),
                        priority=Priority.MEDIUM,
                        effort=Effort.MEDIUM,
                        category="technical-seo",
                        timeline=TIMELINES[Effort.MEDIUM],
                    ),
                )
            )
        if len(metrics.queries_with_no_results) > 5:
            drafts.append(
                (
                    (PRIORITY_ORDER[Priority.MEDIUM], 0.0, EFFORT_ORDER[Effort.LOW], 11, 0),
                    ActionItem(
                        id="",
                        title="Add structured data",
                        description=(
                            "Implement Schema.org markup (FAQ, HowTo, Product) so AI systems can parse "
                            "your content structure."
                        ),
                        priority=Priority.MEDIUM,
                        effort=Effort.LOW,
                        category="technical-seo",
                        affected_queries=list(metrics.queries_with_no_results),
                        timeline=TIMELINES[Effort.LOW],
                    ),
                )
            )
        return drafts

    def _organise_into_phases(self, items: Sequence[ActionItem]) -> list[ActionPhase]:
        quick, technical, long_term = [], [], []
        for item in items:
            if item.priority == Priority.HIGH and item.effort != Effort.HIGH:
                quick.append(item)
            elif item.category in ("technical-seo", "semantic-optimization", "keyword-optimization"):
                technical.append(item)
            else:
                long_term.append(item)
        phases = [
            ActionPhase(name=QUICK_WINS[0], duration=QUICK_WINS[1], items=quick),
            ActionPhase(name=TECHNICAL[0], duration=TECHNICAL[1], items=technical),
            ActionPhase(name=LONG_TERM[0], duration=LONG_TERM[1], items=long_term),
        ]
        return [phase for phase in phases if phase.items]

    def _project_score(self, scan: Scan, items: Sequence[ActionItem]) -> ScoreProjection:
        metrics = scan.coverage_metrics
        current = (metrics.bm25_coverage + metrics.vector_coverage) / 2
        high = sum(1 for item in items if item.priority == Priority.HIGH)
        medium = sum(1 for item in items if item.priority == Priority.MEDIUM)
        projected = max(current, min(current + high * 0.075 + medium * 0.04, 0.9))
        return ScoreProjection(current=round(current, 2), projected=round(projected, 2))

    def _time_to_complete(self, items: Sequence[ActionItem]) -> str:
        total_weeks = sum(int(re.match(r"\d+", item.timeline).group(0)) if item.timeline else 1 for item in items)
        if total_weeks <= 4:
            return f"{total_weeks} week" if total_weeks == 1 else f"{total_weeks} weeks"
        if total_weeks <= 8:
            return f"{math.ceil(total_weeks / 4)} months"
        return f"{math.ceil(total_weeks / 12)} quarters"
