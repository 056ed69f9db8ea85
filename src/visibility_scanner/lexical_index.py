"""Okapi BM25 lexical index over the shared chunk set."""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from visibility_scanner.config import LexicalConfig
from visibility_scanner.errors import DataError, IndexUnavailableError
from visibility_scanner.models import Chunk, IndexKind, RankedResult
from visibility_scanner.text import make_snippet, tokenize

logger = logging.getLogger(__name__)


class LexicalIndex:
    """Immutable BM25 index. Build a new one to reindex; never mutate in place."""

    kind = IndexKind.LEXICAL

    def __init__(
        self,
        chunks: Sequence[Chunk],
        config: Optional[LexicalConfig] = None,
        *,
        generation: int = 1,
        built_at: Optional[datetime] = None,
    ) -> None:
        self.config = config or LexicalConfig()
        self.generation = generation
        self.built_at = built_at or datetime.now(timezone.utc)
        self._chunks = list(chunks)
        self._term_freqs: list[Counter[str]] = []
        self._doc_lengths: list[int] = []
        self._postings: dict[str, list[int]] = {}
        self._discarded = False

        for position, chunk in enumerate(self._chunks):
            terms = tokenize(chunk.text)
            freqs = Counter(terms)
            self._term_freqs.append(freqs)
            self._doc_lengths.append(len(terms))
            for term in freqs:
                self._postings.setdefault(term, []).append(position)

        total = len(self._chunks)
        self._avg_length = sum(self._doc_lengths) / total if total else 0.0
        self._idf = {
            term: math.log((total - len(docs) + 0.5) / (len(docs) + 0.5) + 1.0)
            for term, docs in self._postings.items()
        }

    @classmethod
    def build(
        cls,
        chunks: Sequence[Chunk],
        config: Optional[LexicalConfig] = None,
        *,
        generation: int = 1,
    ) -> LexicalIndex:
        """Build an index over ``chunks``. Raises before anything is published."""
        if not chunks:
            raise DataError("Cannot build a lexical index over zero chunks")
        index = cls(chunks, config, generation=generation)
        logger.info(
            "Built lexical index generation %d: %d chunks, %d terms, avg length %.1f",
            generation,
            len(index._chunks),
            len(index._postings),
            index._avg_length,
        )
        return index

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def chunks(self) -> list[Chunk]:
        return list(self._chunks)

    def discard(self) -> None:
        """Mark this generation unusable; later searches raise IndexUnavailableError."""
        self._discarded = True

    def score(self, query: str) -> list[tuple[int, float]]:
        """BM25 score of every chunk containing at least one query term."""
        k1, b = self.config.k1, self.config.b
        scores: dict[int, float] = {}
        for term in set(tokenize(query)):
            docs = self._postings.get(term)
            if not docs:
                continue
            idf = self._idf[term]
            for position in docs:
                tf = self._term_freqs[position][term]
                length_norm = 1 - b + b * (self._doc_lengths[position] / self._avg_length if self._avg_length else 0)
                scores[position] = scores.get(position, 0.0) + idf * (tf * (k1 + 1)) / (tf + k1 * length_norm)
        # Ties fall back to chunk order
        return sorted(scores.items(), key=lambda item: (-item[1], item[0]))

    def rank(self, query: str, k: int) -> list[RankedResult]:
        if self._discarded:
            raise IndexUnavailableError(
                f"Lexical index generation {self.generation} is no longer available",
                {"generation": self.generation},
            )
        results: list[RankedResult] = []
        for rank, (position, score) in enumerate(self.score(query)[:k], start=1):
            chunk = self._chunks[position]
            results.append(
                RankedResult(
                    chunk_id=chunk.chunk_id,
                    page_url=chunk.source_page_url,
                    page_title=chunk.page_title,
                    rank=rank,
                    score=round(score, 6),
                    snippet=make_snippet(chunk.text, query),
                )
            )
        return results

    async def search(self, query: str, k: int) -> list[RankedResult]:
        """Top ``k`` chunks by descending BM25 score."""
        return self.rank(query, k)

    def to_document(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "generation": self.generation,
            "builtAt": self.built_at.isoformat(),
            "config": self.config.model_dump(mode="json"),
            "chunks": [chunk.to_document() for chunk in self._chunks],
        }

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> LexicalIndex:
        return cls(
            [Chunk.model_validate(c) for c in document["chunks"]],
            LexicalConfig.model_validate(document.get("config", {})),
            generation=document.get("generation", 1),
            built_at=datetime.fromisoformat(document["builtAt"]),
        )
