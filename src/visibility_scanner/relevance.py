"""Relevance judgment: decides which retrieved pages answer a query.

Policy, in order:

1. A query with ``expected_urls`` is judged against that ground truth only.
2. ``keyword``: a page is relevant when at least ``threshold`` of the query's
   distinct content terms occur in the page's indexed text (title plus all
   its chunks). Queries without content terms match nothing.
3. ``llm``: a yes/no judgment per (query, page), cached for the lifetime of
   the judge. A failed judgment counts as not relevant.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from visibility_scanner.config import RelevancePolicy
from visibility_scanner.errors import CollaboratorError, PreconditionError
from visibility_scanner.models import Chunk, SyntheticQuery
from visibility_scanner.text import tokenize

logger = logging.getLogger(__name__)


class RelevanceLLM(Protocol):
    async def judge_relevance(self, query: str, page_title: str, page_text: str) -> bool: ...


class PageText:
    __slots__ = ("title", "text", "terms")

    def __init__(self, title: str, text: str) -> None:
        self.title = title
        self.text = text
        self.terms = frozenset(tokenize(f"{title} {text}"))


def collect_page_texts(chunks: Sequence[Chunk]) -> dict[str, PageText]:
    """Reassemble each page's indexed text from its chunks, in chunk order."""
    grouped: dict[str, list[Chunk]] = {}
    for chunk in chunks:
        grouped.setdefault(chunk.source_page_url, []).append(chunk)
    return {
        url: PageText(parts[0].page_title, "\n".join(c.text for c in sorted(parts, key=lambda c: c.position)))
        for url, parts in grouped.items()
    }


class RelevanceJudge:
    def __init__(
        self,
        pages: Mapping[str, PageText],
        policy: RelevancePolicy = RelevancePolicy.KEYWORD,
        *,
        threshold: float = 0.5,
        llm: Optional[RelevanceLLM] = None,
    ) -> None:
        if policy == RelevancePolicy.LLM and llm is None:
            raise PreconditionError("relevance_policy=llm requires an LLM client")
        self.pages = pages
        self.policy = policy
        self.threshold = threshold
        self._llm = llm
        self._cache: dict[tuple[str, str], bool] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def relevant_pages(self, query: SyntheticQuery, urls: Iterable[str]) -> set[str]:
        """Subset of ``urls`` judged relevant to ``query``."""
        candidates = list(dict.fromkeys(urls))
        if query.expected_urls:
            expected = set(query.expected_urls)
            return {url for url in candidates if url in expected}
        if self.policy == RelevancePolicy.KEYWORD:
            return {url for url in candidates if self.keyword_match(query.text, url)}
        verdicts = await asyncio.gather(*(self._llm_judgment(query.text, url) for url in candidates))
        return {url for url, ok in zip(candidates, verdicts) if ok}

    def keyword_match(self, query: str, url: str) -> bool:
        page = self.pages.get(url)
        terms = set(tokenize(query))
        if page is None or not terms:
            return False
        return len(terms & page.terms) / len(terms) >= self.threshold

    async def _llm_judgment(self, query: str, url: str) -> bool:
        key = (query, url)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._cache:
                return self._cache[key]
            page = self.pages.get(url)
            verdict = False
            if page is not None:
                assert self._llm is not None
                try:
                    verdict = await self._llm.judge_relevance(query, page.title, page.text)
                except CollaboratorError as exc:
                    logger.warning("Relevance judgment failed for %r on %s: %s", query, url, exc)
            self._cache[key] = verdict
            return verdict
