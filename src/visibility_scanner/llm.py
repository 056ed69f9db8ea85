"""Query-generation and relevance-judgment collaborators."""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable, Optional, Protocol

from openai import AsyncOpenAI

from visibility_scanner.config import LLMConfig, LLMProviderName
from visibility_scanner.models import SiteProfile
from visibility_scanner.retry import OPENAI_TRANSIENT_ERRORS, call_external

logger = logging.getLogger(__name__)


class QueryWriter(Protocol):
    async def generate_queries(
        self, profile: SiteProfile, count: int, exclude: Iterable[str] = ()
    ) -> list[str]: ...


class TemplateQueryWriter:
    """Deterministic queries built from the site profile's topics and keywords."""

    TEMPLATES = (
        "{topic}",
        "what is {topic}",
        "how to choose {topic}",
        "best {topic}",
        "{topic} pricing",
        "{topic} vs alternatives",
        "how does {topic} work",
        "{brand} {topic}",
    )

    async def generate_queries(
        self, profile: SiteProfile, count: int, exclude: Iterable[str] = ()
    ) -> list[str]:
        seen = {q.strip().lower() for q in exclude}
        topics = _unique([*profile.topics, *profile.keywords])
        brand = profile.brand_name.strip()

        queries: list[str] = []
        for template in self.TEMPLATES:
            if "{brand}" in template and not brand:
                continue
            for topic in topics:
                query = " ".join(template.format(topic=topic, brand=brand).split())
                if query.lower() in seen:
                    continue
                seen.add(query.lower())
                queries.append(query)
                if len(queries) >= count:
                    return queries
        return queries


class OpenAILLMClient:
    """Query generation, relevance judgment and action phrasing over an OpenAI-compatible API."""

    def __init__(self, config: LLMConfig, client: Optional[AsyncOpenAI] = None) -> None:
        self.config = config
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    async def _chat(self, system: str, user: str, temperature: float, what: str) -> str:
        async def call() -> str:
            response = await self._client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
                temperature=temperature,
            )
            return response.choices[0].message.content or ""

        return await call_external(
            call,
            what=what,
            timeout=self.config.timeout_seconds,
            max_attempts=self.config.max_retries,
            retry_on=OPENAI_TRANSIENT_ERRORS,
        )

    async def generate_queries(
        self, profile: SiteProfile, count: int, exclude: Iterable[str] = ()
    ) -> list[str]:
        avoid = list(exclude)
        prompt = (
            f"Write {count} distinct questions a user might ask an AI assistant that this website "
            f"should be able to answer.\n"
            f"Website: {profile.site_url}\n"
            f"Brand: {profile.brand_name or 'unknown'}\n"
            f"Industry: {profile.industry or 'unknown'}\n"
            f"Description: {profile.description}\n"
            f"Topics: {', '.join(profile.topics[:20])}\n"
            f"Keywords: {', '.join(profile.keywords[:20])}\n"
            f"Language: {profile.language}\n"
        )
        if avoid:
            prompt += "Do not repeat any of these:\n" + "\n".join(f"- {q}" for q in avoid[:100]) + "\n"
        prompt += "Answer with a JSON array of strings only."

        content = await self._chat(
            "You generate realistic search queries for website visibility audits.",
            prompt,
            self.config.temperature,
            what="query generation",
        )
        return parse_query_list(content)

    async def judge_relevance(self, query: str, page_title: str, page_text: str) -> bool:
        content = await self._chat(
            "You judge whether a web page answers a search query. Reply with yes or no only.",
            f"Query: {query}\n\nPage title: {page_title}\n\nPage content:\n{page_text[:6000]}",
            0.0,
            what="relevance judgment",
        )
        return content.strip().lower().startswith("yes")

    async def rephrase(self, title: str, description: str) -> str:
        """Rewrite an action item description for a non-technical reader."""
        content = await self._chat(
            "You rewrite website improvement tasks in clear, concrete language. Keep it under 60 words.",
            f"Task: {title}\n\nDetails: {description}",
            self.config.temperature,
            what="action phrasing",
        )
        return content.strip() or description


def parse_query_list(content: str) -> list[str]:
    """Parse a JSON array of queries, falling back to one query per line."""
    match = re.search(r"\[.*\]", content, re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            return [str(q).strip() for q in data if str(q).strip()]

    queries = []
    for line in content.splitlines():
        line = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip().strip('"').strip()
        if line:
            queries.append(line)
    return queries


def create_query_writer(config: LLMConfig) -> QueryWriter:
    if config.provider == LLMProviderName.OPENAI:
        return OpenAILLMClient(config)
    return TemplateQueryWriter()


def _unique(values: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for value in values:
        cleaned = " ".join(value.split()).strip().lower()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            out.append(cleaned)
    return out
