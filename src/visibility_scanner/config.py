"""Configuration models for the scanner."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChunkStrategy(str, Enum):
    """Chunking strategies available."""

    RECURSIVE = "recursive"
    SENTENCE = "sentence"
    SLIDING_WINDOW = "sliding_window"


class EmbeddingProviderName(str, Enum):
    SENTENCE_TRANSFORMERS = "sentence_transformers"
    OPENAI = "openai"


class LLMProviderName(str, Enum):
    TEMPLATE = "template"
    OPENAI = "openai"


class QuerySource(str, Enum):
    PROVIDED = "provided"
    GENERATED = "generated"


class RelevancePolicy(str, Enum):
    KEYWORD = "keyword"
    LLM = "llm"


class CrawlConfig(BaseModel):
    """Crawler configuration."""

    max_pages: int = Field(default=100, ge=1, le=100_000, description="Maximum pages to fetch")
    max_depth: int = Field(default=3, ge=0, le=20, description="Maximum link-follow depth (0 = seed only)")
    crawl_delay_ms: int = Field(default=1000, ge=0, le=60_000, description="Minimum delay between fetches")
    respect_robots_txt: bool = Field(default=True, description="Honour robots.txt rules")
    timeout_seconds: float = Field(default=30.0, gt=0.0, le=300.0, description="Per-fetch timeout")
    user_agent: str = Field(
        default="AIVisibilityScanner/0.1 (+https://github.com/ai-visibility-scanner)",
        description="User-Agent header",
    )
    excluded_patterns: list[str] = Field(
        default_factory=lambda: [
            r".*\.(png|jpg|jpeg|gif|svg|ico|css|js|woff|woff2|ttf|eot|mp4|mp3|pdf|zip|tar|gz)$",
            r".*/login.*",
            r".*/signup.*",
            r".*/cart.*",
        ],
        description="URL regex patterns never enqueued",
    )
    headers: dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")


class ExtractionConfig(BaseModel):
    """Content extraction configuration."""

    use_trafilatura: bool = Field(default=True, description="Use trafilatura for boilerplate removal")
    fallback_to_raw: bool = Field(default=True, description="If trafilatura yields nothing, fall back to BS4 extraction")
    detect_language: bool = Field(default=True, description="Detect language when <html lang> is missing")
    max_html_bytes: int = Field(default=5_000_000, ge=1024, description="Larger responses are treated as unparsable")


class ChunkConfig(BaseModel):
    """Chunking configuration, shared by both indexes."""

    strategy: ChunkStrategy = Field(default=ChunkStrategy.RECURSIVE, description="Chunking strategy")
    chunk_size: int = Field(default=256, ge=32, le=8192, description="Target chunk size in tokens")
    chunk_overlap: int = Field(default=32, ge=0, le=2048, description="Overlap between chunks in tokens")
    min_chunk_tokens: int = Field(default=12, ge=1, le=1024, description="Chunks shorter than this are dropped")
    tokenizer: str = Field(default="cl100k_base", description="Tiktoken encoding name for token counting")

    @field_validator("chunk_overlap")
    @classmethod
    def overlap_must_be_less_than_size(cls, v: int, info: Any) -> int:
        chunk_size = info.data.get("chunk_size", 256)
        if v >= chunk_size:
            msg = f"chunk_overlap ({v}) must be less than chunk_size ({chunk_size})"
            raise ValueError(msg)
        return v


class LexicalConfig(BaseModel):
    """BM25 parameters."""

    k1: float = Field(default=1.2, ge=0.0, le=5.0, description="Term-frequency saturation")
    b: float = Field(default=0.75, ge=0.0, le=1.0, description="Length normalisation")


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""

    provider: EmbeddingProviderName = Field(default=EmbeddingProviderName.SENTENCE_TRANSFORMERS)
    model_name: str = Field(default="all-MiniLM-L6-v2", description="Embedding model name")
    device: str = Field(default="cpu", description="Device for local models: cpu, cuda, mps")
    normalize: bool = Field(default=True, description="L2-normalize embeddings")
    api_key: Optional[str] = Field(default=None, description="API key for remote providers")
    base_url: Optional[str] = Field(default=None, description="Override API base URL")
    concurrency: int = Field(default=4, ge=1, le=64, description="Concurrent embedding calls during a build")
    timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0, description="Per-call timeout")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per call on transient errors")
    max_failure_rate: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Build fails when more than this fraction of chunks cannot be embedded",
    )


class LLMConfig(BaseModel):
    """Query-generation / relevance-judgment collaborator configuration."""

    provider: LLMProviderName = Field(default=LLMProviderName.TEMPLATE)
    model: str = Field(default="gpt-4o-mini", description="Chat model name")
    api_key: Optional[str] = Field(default=None, description="API key (falls back to OPENAI_API_KEY)")
    base_url: Optional[str] = Field(default=None, description="OpenAI-compatible base URL")
    temperature: float = Field(default=0.4, ge=0.0, le=2.0, description="Sampling temperature for generation")
    timeout_seconds: float = Field(default=60.0, gt=0.0, le=600.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    max_generation_attempts: int = Field(
        default=3, ge=1, le=10, description="Extra generation rounds when deduplication leaves a shortfall"
    )


class ProvidedQuery(BaseModel):
    """A caller-supplied query with optional ground-truth pages."""

    model_config = ConfigDict(extra="forbid")

    text: str
    expected_urls: list[str] = Field(default_factory=list)


class ScanConfig(BaseModel):
    """Configuration of a single visibility scan."""

    model_config = ConfigDict(extra="forbid")

    query_source: QuerySource = Field(default=QuerySource.GENERATED)
    queries: list[ProvidedQuery] = Field(default_factory=list, description="Queries for query_source=provided")
    generate_query_count: int = Field(default=50, ge=1, le=500)
    use_hybrid_search: bool = Field(default=False, description="Also compute reciprocal-rank fusion results")
    max_results: int = Field(default=10, ge=1, le=100, description="Top-K per index")
    concurrency: int = Field(default=5, ge=1, le=64, description="Queries processed concurrently")
    query_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    relevance_policy: RelevancePolicy = Field(default=RelevancePolicy.KEYWORD)
    keyword_relevance_threshold: float = Field(default=0.5, gt=0.0, le=1.0)
    failure_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Scan fails when more than this fraction of queries error out",
    )

    @field_validator("queries", mode="before")
    @classmethod
    def coerce_plain_strings(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"text": q} if isinstance(q, str) else q for q in v]
        return v

    @model_validator(mode="after")
    def check_query_source(self) -> ScanConfig:
        if self.query_source == QuerySource.PROVIDED:
            if not any(q.text.strip() for q in self.queries):
                raise ValueError("query_source=provided requires at least one non-empty query")
        elif self.queries:
            raise ValueError("queries may only be supplied with query_source=provided")
        return self


class ScannerSettings(BaseSettings):
    """Top-level scanner configuration."""

    model_config = SettingsConfigDict(env_prefix="VISIBILITY_", env_nested_delimiter="__")

    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    chunk: ChunkConfig = Field(default_factory=ChunkConfig)
    lexical: LexicalConfig = Field(default_factory=LexicalConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    log_level: str = Field(default="INFO", description="Logging level")

    @classmethod
    def from_yaml(cls, path: str | Path) -> ScannerSettings:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_env_and_file(cls, path: Optional[str | Path] = None) -> ScannerSettings:
        """Load from YAML file (if given), with env-var overrides."""
        if path and Path(path).exists():
            return cls.from_yaml(path)
        return cls()

    def to_yaml(self, path: str | Path) -> None:
        """Persist current config to YAML."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
