"""Synthetic query generation and intent tagging."""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from visibility_scanner.config import LLMConfig, ProvidedQuery, QuerySource
from visibility_scanner.crawler import normalise_url, registrable_domain
from visibility_scanner.errors import CollaboratorError, DataError
from visibility_scanner.llm import QueryWriter, TemplateQueryWriter
from visibility_scanner.models import CrawlRun, QueryIntent, SiteProfile, SyntheticQuery
from visibility_scanner.text import tokenize

logger = logging.getLogger(__name__)

_COMPARISON_RE = re.compile(r"\b(vs\.?|versus|compare[ds]?|comparison|alternatives?|better than)\b", re.I)
_HOW_TO_RE = re.compile(r"^\s*how\s+(to|do|does|can|should)\b|\b(guide|tutorial|step[s]? to)\b", re.I)
_TRANSACTIONAL_RE = re.compile(r"\b(buy|price|prices|pricing|cost|costs|cheap|discount|deal|order|subscribe|purchase)\b", re.I)
_TITLE_SPLIT_RE = re.compile(r"\s+[|\-–—:·]\s+")
_GENERIC_TITLES = {"home", "homepage", "about", "about us", "contact", "contact us", "blog", "news", "index", "welcome"}


def classify_intent(text: str) -> QueryIntent:
    """Rule-based intent tag; the first matching rule wins."""
    if _COMPARISON_RE.search(text):
        return QueryIntent.COMPARISON
    if _HOW_TO_RE.search(text):
        return QueryIntent.HOW_TO
    if _TRANSACTIONAL_RE.search(text):
        return QueryIntent.TRANSACTIONAL
    if len(text.split()) <= 2:
        return QueryIntent.NAVIGATIONAL
    return QueryIntent.INFORMATIONAL


def build_site_profile(
    run: CrawlRun,
    *,
    industry: str = "",
    competitors: Sequence[str] = (),
    max_topics: int = 30,
    max_keywords: int = 20,
) -> SiteProfile:
    """Summarise a crawl into the profile used to seed query generation."""
    pages = run.successful()
    domain = registrable_domain(run.seed_url)
    brand = domain.split(".")[0].replace("-", " ").title() if domain else ""

    topics: list[str] = []
    seen: set[str] = set()
    for page in pages:
        for raw in (*_TITLE_SPLIT_RE.split(page.title), page.h1, *page.headings):
            topic = " ".join(raw.split()).lower()
            if not topic or topic in seen or topic in _GENERIC_TITLES or topic == brand.lower():
                continue
            seen.add(topic)
            topics.append(topic)

    term_counts: Counter[str] = Counter()
    meta_keywords: list[str] = []
    languages: Counter[str] = Counter()
    for page in pages:
        term_counts.update(tokenize(f"{page.title} {page.text}"))
        meta_keywords.extend(k.lower() for k in page.metadata.keywords)
        if page.metadata.language:
            languages[page.metadata.language] += 1

    keywords = list(dict.fromkeys([*meta_keywords, *(t for t, _ in term_counts.most_common(max_keywords))]))
    seed_page = next((p for p in pages if p.url == run.seed_url), pages[0] if pages else None)

    return SiteProfile(
        site_url=run.seed_url,
        brand_name=brand,
        industry=industry,
        description=seed_page.meta_description if seed_page else "",
        language=languages.most_common(1)[0][0] if languages else "en",
        topics=topics[:max_topics],
        keywords=keywords[:max_keywords],
        competitors=list(competitors),
    )


class QueryBatch(BaseModel):
    queries: list[SyntheticQuery] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class QueryGenerator:
    """Produce a deduplicated, intent-tagged query battery for a scan."""

    def __init__(self, writer: Optional[QueryWriter] = None, config: Optional[LLMConfig] = None) -> None:
        self.writer = writer or TemplateQueryWriter()
        self.config = config or LLMConfig()

    async def generate(
        self,
        profile: SiteProfile,
        count: int,
        source: QuerySource,
        provided: Sequence[ProvidedQuery] = (),
    ) -> QueryBatch:
        if source == QuerySource.PROVIDED:
            return self._from_provided(provided)
        return await self._generate(profile, count)

    def _from_provided(self, provided: Sequence[ProvidedQuery]) -> QueryBatch:
        queries: list[SyntheticQuery] = []
        seen: set[str] = set()
        for item in provided:
            text = " ".join(item.text.split())
            if not text or text.lower() in seen:
                continue
            seen.add(text.lower())
            queries.append(
                SyntheticQuery(
                    text=text,
                    intent=classify_intent(text),
                    source=QuerySource.PROVIDED,
                    expected_urls=[normalise_url(u) for u in item.expected_urls],
                )
            )
        if not queries:
            raise DataError("No non-empty queries were provided")
        if len(queries) < len(provided):
            logger.info("Dropped %d empty or duplicate provided queries", len(provided) - len(queries))
        return QueryBatch(queries=queries)

    async def _generate(self, profile: SiteProfile, count: int) -> QueryBatch:
        texts: list[str] = []
        seen: set[str] = set()
        warnings: list[str] = []
        last_error: Optional[CollaboratorError] = None
        answered = 0

        for attempt in range(1, self.config.max_generation_attempts + 1):
            missing = count - len(texts)
            if missing <= 0:
                break
            try:
                candidates = await self.writer.generate_queries(profile, missing, exclude=list(texts))
            except CollaboratorError as exc:
                logger.warning("Query generation attempt %d failed: %s", attempt, exc)
                warnings.append(f"Query generation attempt {attempt} failed: {exc.message}")
                last_error = exc
                continue

            answered += 1
            added = 0
            for candidate in candidates:
                text = " ".join(candidate.split())
                if not text or text.lower() in seen:
                    continue
                seen.add(text.lower())
                texts.append(text)
                added += 1
                if len(texts) >= count:
                    break
            logger.debug("Generation attempt %d added %d queries (%d/%d)", attempt, added, len(texts), count)
            if added == 0:
                break

        if not texts and answered == 0 and last_error is not None:
            raise CollaboratorError(
                f"Query generation failed on every attempt: {last_error.message}",
                {"requested": count, "attempts": self.config.max_generation_attempts},
            ) from last_error
        if not texts:
            raise DataError("Query generation produced no usable queries", {"requested": count})
        if len(texts) < count:
            message = f"Generated {len(texts)} of {count} requested queries after deduplication"
            logger.warning(message)
            warnings.append(message)

        queries = [
            SyntheticQuery(text=text, intent=classify_intent(text), source=QuerySource.GENERATED)
            for text in texts
        ]
        return QueryBatch(queries=queries, warnings=warnings)
