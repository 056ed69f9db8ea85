"""Dense vector index: cosine similarity over chunk embeddings."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import numpy as np

from visibility_scanner.config import EmbeddingConfig
from visibility_scanner.embedder import EmbeddingProvider
from visibility_scanner.errors import DataError, IndexUnavailableError, ThresholdExceededError
from visibility_scanner.events import EventSink, emit
from visibility_scanner.models import Chunk, EventKind, IndexKind, RankedResult
from visibility_scanner.text import make_snippet

logger = logging.getLogger(__name__)


def _normalise_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class VectorIndex:
    """Immutable embedding matrix with chunk back-references."""

    kind = IndexKind.VECTOR

    def __init__(
        self,
        chunks: Sequence[Chunk],
        vectors: np.ndarray,
        embedder: EmbeddingProvider,
        *,
        failed_chunks: Sequence[str] = (),
        generation: int = 1,
        built_at: Optional[datetime] = None,
    ) -> None:
        if len(chunks) != len(vectors):
            raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors")
        self._chunks = list(chunks)
        self._matrix = _normalise_rows(np.asarray(vectors, dtype=np.float32))
        self._embedder = embedder
        self.failed_chunks = list(failed_chunks)
        self.generation = generation
        self.built_at = built_at or datetime.now(timezone.utc)
        self._discarded = False

    @classmethod
    async def build(
        cls,
        chunks: Sequence[Chunk],
        embedder: EmbeddingProvider,
        config: Optional[EmbeddingConfig] = None,
        *,
        generation: int = 1,
        sink: Optional[EventSink] = None,
        project_id: str = "default",
    ) -> VectorIndex:
        """Embed every chunk with bounded concurrency.

        Chunks whose embedding fails are excluded and listed in
        ``failed_chunks``. Raises ThresholdExceededError when the failure rate
        is above ``config.max_failure_rate``.
        """
        config = config or EmbeddingConfig()
        if not chunks:
            raise DataError("Cannot build a vector index over zero chunks")

        semaphore = asyncio.Semaphore(config.concurrency)
        total = len(chunks)
        done = 0

        async def embed_one(chunk: Chunk) -> Optional[list[float]]:
            nonlocal done
            async with semaphore:
                try:
                    vector = await embedder.embed(chunk.text)
                except Exception as exc:
                    logger.warning("Embedding failed for chunk %s (%s): %s", chunk.chunk_id, chunk.source_page_url, exc)
                    vector = None
            done += 1
            if done % 25 == 0 or done == total:
                emit(sink, EventKind.INDEX_BUILD_PROGRESS, project_id, kind=cls.kind.value, embedded=done, total=total)
            return vector

        logger.info("Embedding %d chunks (concurrency=%d)", total, config.concurrency)
        vectors = await asyncio.gather(*(embed_one(chunk) for chunk in chunks))

        kept_chunks: list[Chunk] = []
        kept_vectors: list[list[float]] = []
        failed: list[str] = []
        dimension: Optional[int] = None
        for chunk, vector in zip(chunks, vectors):
            if vector is not None and dimension is None and len(vector) > 0:
                dimension = len(vector)
            if vector is None or len(vector) == 0 or len(vector) != dimension:
                failed.append(chunk.chunk_id)
                continue
            kept_chunks.append(chunk)
            kept_vectors.append(vector)

        failure_rate = len(failed) / total
        if failure_rate > config.max_failure_rate or not kept_chunks:
            raise ThresholdExceededError(
                f"{len(failed)} of {total} chunks could not be embedded "
                f"({failure_rate:.0%} > {config.max_failure_rate:.0%})",
                {"failed_chunks": len(failed), "total_chunks": total, "failure_rate": failure_rate},
            )
        if failed:
            logger.warning("Vector index excludes %d of %d chunks that failed to embed", len(failed), total)

        index = cls(
            kept_chunks,
            np.array(kept_vectors, dtype=np.float32),
            embedder,
            failed_chunks=failed,
            generation=generation,
        )
        logger.info("Built vector index generation %d: %d chunks, dim=%d", generation, index.chunk_count, dimension)
        return index

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def chunks(self) -> list[Chunk]:
        return list(self._chunks)

    @property
    def dimension(self) -> int:
        return int(self._matrix.shape[1]) if self._matrix.ndim == 2 and len(self._matrix) else 0

    def discard(self) -> None:
        self._discarded = True

    def rank_vector(self, query_vector: Sequence[float], k: int) -> list[tuple[int, float]]:
        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape != (self.dimension,):
            raise DataError(
                f"Query embedding has dimension {query.shape[0] if query.ndim else 0}, index has {self.dimension}"
            )
        norm = np.linalg.norm(query)
        if norm == 0:
            return []
        scores = self._matrix @ (query / norm)
        # Stable sort keeps chunk order among equal scores
        order = np.argsort(-scores, kind="stable")[:k]
        return [(int(i), float(scores[i])) for i in order]

    async def search(self, query: str, k: int) -> list[RankedResult]:
        """Top ``k`` chunks by descending cosine similarity to the query embedding."""
        if self._discarded:
            raise IndexUnavailableError(
                f"Vector index generation {self.generation} is no longer available",
                {"generation": self.generation},
            )
        query_vector = await self._embedder.embed(query)
        results: list[RankedResult] = []
        for rank, (position, score) in enumerate(self.rank_vector(query_vector, k), start=1):
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

    def to_document(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "generation": self.generation,
            "builtAt": self.built_at.isoformat(),
            "failedChunks": self.failed_chunks,
            "chunks": [chunk.to_document() for chunk in self._chunks],
            "vectors": self._matrix.tolist(),
        }

    @classmethod
    def from_document(cls, document: dict[str, Any], embedder: EmbeddingProvider) -> VectorIndex:
        return cls(
            [Chunk.model_validate(c) for c in document["chunks"]],
            np.array(document["vectors"], dtype=np.float32),
            embedder,
            failed_chunks=document.get("failedChunks", []),
            generation=document.get("generation", 1),
            built_at=datetime.fromisoformat(document["builtAt"]),
        )
