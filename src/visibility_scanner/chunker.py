"""Content chunking: split crawled pages into the chunk set shared by both indexes."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Sequence

import tiktoken

from visibility_scanner.config import ChunkConfig, ChunkStrategy
from visibility_scanner.errors import DataError
from visibility_scanner.models import Chunk, CrawledPage, PageStatus

logger = logging.getLogger(__name__)


class ContentChunker:
    """Split page text into token-counted chunks using configurable strategies.

    Chunking is a pure function of the page URL, title and text, so the
    lexical and vector indexes always see identical chunk boundaries.
    """

    def __init__(self, config: ChunkConfig | None = None) -> None:
        self.config = config or ChunkConfig()
        self._encoder = tiktoken.get_encoding(self.config.tokenizer)

    def chunk(self, page: CrawledPage) -> list[Chunk]:
        """Chunk a single successfully crawled page."""
        if page.status != PageStatus.SUCCESS:
            raise DataError(f"Cannot chunk failed page {page.url}", {"url": page.url})

        text = page.text.strip()
        if not text:
            return []

        strategy = self.config.strategy
        if strategy == ChunkStrategy.SLIDING_WINDOW:
            pieces = self._sliding_window_chunk(text)
        elif strategy == ChunkStrategy.SENTENCE:
            pieces = self._sentence_chunk(text)
        else:
            pieces = self._recursive_chunk(text)

        if strategy != ChunkStrategy.SLIDING_WINDOW and self.config.chunk_overlap > 0 and len(pieces) > 1:
            pieces = self._apply_overlap(pieces)

        kept = [p for p in pieces if self._count_tokens(p) >= self.config.min_chunk_tokens]
        if len(kept) < len(pieces):
            logger.debug("Dropped %d short chunks from %s", len(pieces) - len(kept), page.url)

        total = len(kept)
        results: list[Chunk] = []
        for i, chunk_text in enumerate(kept):
            chunk_id = hashlib.sha256(f"{page.url}::{i}::{chunk_text[:100]}".encode()).hexdigest()[:16]
            results.append(
                Chunk(
                    chunk_id=chunk_id,
                    source_page_url=page.url,
                    page_title=page.title,
                    text=chunk_text,
                    token_count=self._count_tokens(chunk_text),
                    position=i,
                    total_chunks=total,
                    content_hash=hashlib.sha256(chunk_text.encode()).hexdigest(),
                )
            )
        return results

    def chunk_pages(self, pages: Sequence[CrawledPage]) -> list[Chunk]:
        """Chunk every successful page of a crawl, in crawl order."""
        all_chunks: list[Chunk] = []
        for page in pages:
            if page.status == PageStatus.SUCCESS:
                all_chunks.extend(self.chunk(page))
        logger.info("Chunked %d pages into %d chunks", len(pages), len(all_chunks))
        return all_chunks

    # --- Chunking Strategies ---

    def _count_tokens(self, text: str) -> int:
        return len(self._encoder.encode(text))

    def _recursive_chunk(self, text: str) -> list[str]:
        """Recursively split text by decreasing separator granularity."""
        separators = ["\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " "]
        return self._recursive_split(text, separators, 0)

    def _recursive_split(self, text: str, separators: list[str], depth: int) -> list[str]:
        if self._count_tokens(text) <= self.config.chunk_size:
            return [text.strip()] if text.strip() else []

        if depth >= len(separators):
            return self._force_split(text)

        sep = separators[depth]
        chunks: list[str] = []
        current = ""

        for part in text.split(sep):
            candidate = f"{current}{sep}{part}" if current else part
            if self._count_tokens(candidate) <= self.config.chunk_size:
                current = candidate
                continue
            if current.strip():
                chunks.extend(self._recursive_split(current, separators, depth + 1))
            current = part

        if current.strip():
            chunks.extend(self._recursive_split(current, separators, depth + 1))

        return chunks

    def _sliding_window_chunk(self, text: str) -> list[str]:
        """Fixed-size sliding window chunking at token level."""
        tokens = self._encoder.encode(text)
        chunk_size = self.config.chunk_size
        step = chunk_size - self.config.chunk_overlap

        chunks: list[str] = []
        for i in range(0, len(tokens), max(1, step)):
            chunk_text = self._encoder.decode(tokens[i : i + chunk_size]).strip()
            if chunk_text:
                chunks.append(chunk_text)
            if i + chunk_size >= len(tokens):
                break
        return chunks

    def _sentence_chunk(self, text: str) -> list[str]:
        """Pack whole sentences into chunks."""
        sentences = re.split(r"(?<=[.!?])\s+", text)
        chunks: list[str] = []
        current = ""

        for sentence in sentences:
            candidate = f"{current} {sentence}" if current else sentence
            if self._count_tokens(candidate) <= self.config.chunk_size:
                current = candidate
                continue
            if current.strip():
                chunks.append(current.strip())
            if self._count_tokens(sentence) > self.config.chunk_size:
                # Split long sentence
                chunks.extend(self._force_split(sentence))
                current = ""
            else:
                current = sentence

        if current.strip():
            chunks.append(current.strip())
        return chunks

    def _force_split(self, text: str) -> list[str]:
        """Force-split text at token boundaries when no separator works."""
        tokens = self._encoder.encode(text)
        chunks: list[str] = []
        for i in range(0, len(tokens), self.config.chunk_size):
            decoded = self._encoder.decode(tokens[i : i + self.config.chunk_size]).strip()
            if decoded:
                chunks.append(decoded)
        return chunks

    def _apply_overlap(self, chunks: list[str]) -> list[str]:
        """Prefix each chunk with the trailing overlap tokens of its predecessor."""
        overlap_tokens = self.config.chunk_overlap
        result = [chunks[0]]

        for i in range(1, len(chunks)):
            prev_tokens = self._encoder.encode(chunks[i - 1])
            if len(prev_tokens) > overlap_tokens:
                overlap_text = self._encoder.decode(prev_tokens[-overlap_tokens:])
            else:
                overlap_text = chunks[i - 1]
            result.append(f"{overlap_text} {chunks[i]}".strip())

        return result
