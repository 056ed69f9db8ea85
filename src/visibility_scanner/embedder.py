"""Embedding providers for the vector index."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol

from openai import AsyncOpenAI

from visibility_scanner.config import EmbeddingConfig, EmbeddingProviderName
from visibility_scanner.retry import OPENAI_TRANSIENT_ERRORS, call_external

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that turns one text into one dense vector."""

    async def embed(self, text: str) -> list[float]: ...


class SentenceTransformerEmbedder:
    """Local embeddings using sentence-transformers."""

    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config
        self._model: Any = None
        self._load_lock = threading.Lock()

    def _load_model(self) -> None:
        """Lazy-load the embedding model."""
        with self._load_lock:
            if self._model is not None:
                return
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model: %s (device=%s)", self.config.model_name, self.config.device)
            self._model = SentenceTransformer(self.config.model_name, device=self.config.device)
            logger.info("Embedding model loaded successfully")

    def _encode(self, text: str) -> list[float]:
        self._load_model()
        vector = self._model.encode(text, normalize_embeddings=self.config.normalize, show_progress_bar=False)
        return vector.tolist()

    async def embed(self, text: str) -> list[float]:
        return await call_external(
            lambda: asyncio.to_thread(self._encode, text),
            what="sentence-transformers embedding",
            timeout=self.config.timeout_seconds,
            max_attempts=self.config.max_retries,
            retry_on=(RuntimeError,),
        )

    @property
    def embedding_dim(self) -> int:
        self._load_model()
        return self._model.get_sentence_embedding_dimension()


class OpenAIEmbedder:
    """Remote embeddings through an OpenAI-compatible API."""

    def __init__(self, config: EmbeddingConfig, client: AsyncOpenAI | None = None) -> None:
        self.config = config
        # tenacity owns retries, so the SDK's own retry loop is disabled
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    async def _create(self, text: str) -> list[float]:
        response = await self._client.embeddings.create(input=[text], model=self.config.model_name)
        return list(response.data[0].embedding)

    async def embed(self, text: str) -> list[float]:
        vector = await call_external(
            lambda: self._create(text),
            what=f"OpenAI embedding ({self.config.model_name})",
            timeout=self.config.timeout_seconds,
            max_attempts=self.config.max_retries,
            retry_on=OPENAI_TRANSIENT_ERRORS,
        )
        logger.debug("Generated embedding (dim: %d)", len(vector))
        return vector


def create_embedder(config: EmbeddingConfig) -> EmbeddingProvider:
    if config.provider == EmbeddingProviderName.OPENAI:
        return OpenAIEmbedder(config)
    return SentenceTransformerEmbedder(config)
