"""Shared data models used across scanner stages.

Every persisted entity serialises to a camelCase JSON document via
``to_document()`` and is rebuilt with ``model_validate(document)``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from visibility_scanner.config import QuerySource, ScanConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentModel(BaseModel):
    """Base model with camelCase document aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# --- Crawl ---


class PageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class PageMetadata(DocumentModel):
    keywords: list[str] = Field(default_factory=list)
    author: str = ""
    language: Optional[str] = None
    published_date: Optional[str] = None
    modified_date: Optional[str] = None


class CrawledPage(DocumentModel):
    """A single fetched page. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    url: str
    status: PageStatus
    title: str = ""
    h1: str = ""
    meta_description: str = ""
    canonical_url: str = ""
    text: str = ""
    headings: list[str] = Field(default_factory=list)
    crawled_at: datetime = Field(default_factory=utcnow)
    word_count: int = 0
    crawl_depth: int = 0
    parent_url: Optional[str] = None
    internal_links: list[str] = Field(default_factory=list)
    outbound_links: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    metadata: PageMetadata = Field(default_factory=PageMetadata)
    content_hash: str = ""

    @model_validator(mode="after")
    def error_iff_failed(self) -> CrawledPage:
        if self.status == PageStatus.FAILED and not self.error_message:
            raise ValueError("failed pages require an error_message")
        if self.status == PageStatus.SUCCESS and self.error_message:
            raise ValueError("successful pages cannot carry an error_message")
        return self


class CrawlStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CrawlRun(DocumentModel):
    """All pages fetched for one project at one point in time."""

    project_id: str
    seed_url: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: CrawlStatus = CrawlStatus.PENDING
    is_active: bool = False
    current_url: Optional[str] = None
    queue_size: int = 0
    total_pages: int = 0
    successful_pages: int = 0
    failed_pages: int = 0
    skipped_pages: int = 0
    error_message: Optional[str] = None
    pages: list[CrawledPage] = Field(default_factory=list)

    @property
    def run_id(self) -> str:
        return f"{self.project_id}:{self.started_at.isoformat()}"

    @property
    def is_terminal(self) -> bool:
        return self.status in (CrawlStatus.COMPLETED, CrawlStatus.FAILED, CrawlStatus.CANCELLED)

    def successful(self) -> list[CrawledPage]:
        return [p for p in self.pages if p.status == PageStatus.SUCCESS]

    def record(self, page: CrawledPage) -> None:
        self.pages.append(page)
        self.total_pages += 1
        if page.status == PageStatus.SUCCESS:
            self.successful_pages += 1
        else:
            self.failed_pages += 1

    def summary(self) -> dict[str, Any]:
        """Live state without the page list."""
        return self.model_dump(mode="json", by_alias=True, exclude={"pages"})


# --- Chunks and indexes ---


class Chunk(DocumentModel):
    """A bounded slice of one successfully crawled page."""

    chunk_id: str
    source_page_url: str
    page_title: str = ""
    text: str
    token_count: int = 0
    position: int = 0
    total_chunks: int = 0
    content_hash: str = ""


class IndexKind(str, Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"


class IndexStatus(str, Enum):
    NOT_BUILT = "not_built"
    BUILDING = "building"
    READY = "ready"
    ERROR = "error"


class IndexState(DocumentModel):
    """Build status of one index kind for a project.

    ``queryable`` stays true after a failed rebuild when a previous ready
    generation is still being served.
    """

    kind: IndexKind
    status: IndexStatus = IndexStatus.NOT_BUILT
    generation: int = 0
    chunk_count: int = 0
    failed_chunks: int = 0
    built_at: Optional[datetime] = None
    error_message: Optional[str] = None
    queryable: bool = False
    # fingerprint of the chunk set the served generation was built from
    source_id: str = ""


class RankedResult(DocumentModel):
    """One ranked hit: a chunk plus the page it cites."""

    chunk_id: str
    page_url: str
    page_title: str = ""
    rank: int
    score: float
    snippet: str = ""


# --- Queries and scans ---


class QueryIntent(str, Enum):
    INFORMATIONAL = "informational"
    NAVIGATIONAL = "navigational"
    TRANSACTIONAL = "transactional"
    COMPARISON = "comparison"
    HOW_TO = "how_to"


class SyntheticQuery(DocumentModel):
    text: str
    intent: QueryIntent = QueryIntent.INFORMATIONAL
    source: QuerySource = QuerySource.PROVIDED
    expected_urls: list[str] = Field(default_factory=list)


class MRRScores(DocumentModel):
    bm25: float = 0.0
    vector: float = 0.0
    hybrid: Optional[float] = None


class QueryResult(DocumentModel):
    """Outcome of one query within one scan."""

    index: int
    query: str
    intent: QueryIntent = QueryIntent.INFORMATIONAL
    bm25_results: list[RankedResult] = Field(default_factory=list)
    vector_results: list[RankedResult] = Field(default_factory=list)
    hybrid_results: Optional[list[RankedResult]] = None
    mrr: MRRScores = Field(default_factory=MRRScores)
    overlap: float = 0.0
    relevant_urls: list[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @property
    def bm25_found(self) -> bool:
        return self.mrr.bm25 > 0

    @property
    def vector_found(self) -> bool:
        return self.mrr.vector > 0

    @property
    def covered(self) -> bool:
        return self.bm25_found or self.vector_found


class CoverageMetrics(DocumentModel):
    """Scan-level aggregates. Ratios are computed over valid (non-error) results."""

    hybrid_coverage: float = 0.0
    bm25_coverage: float = 0.0
    vector_coverage: float = 0.0
    average_mrr_bm25: float = 0.0
    average_mrr_vector: float = 0.0
    average_overlap: float = 0.0
    queries_with_no_results: list[str] = Field(default_factory=list)
    queries_with_perfect_overlap: list[str] = Field(default_factory=list)
    total_queries: int = 0
    valid_queries: int = 0
    errored_queries: int = 0


class PatternType(str, Enum):
    BOTH_LOW = "both_low"
    HIGH_BM25_LOW_VECTOR = "high_bm25_low_vector"
    HIGH_VECTOR_LOW_BM25 = "high_vector_low_bm25"
    BOTH_HIGH = "both_high"


class VisibilityPattern(DocumentModel):
    type: PatternType
    affected_queries: list[str] = Field(default_factory=list)
    percentage: float = 0.0


class ScanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Scan(DocumentModel):
    scan_id: str
    project_id: str
    status: ScanStatus = ScanStatus.PENDING
    config: ScanConfig = Field(default_factory=ScanConfig)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lexical_generation: int = 0
    vector_generation: int = 0
    queries: list[SyntheticQuery] = Field(default_factory=list)
    query_results: list[QueryResult] = Field(default_factory=list)
    coverage_metrics: CoverageMetrics = Field(default_factory=CoverageMetrics)
    visibility_patterns: list[VisibilityPattern] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ScanStatus.COMPLETED, ScanStatus.FAILED)


# --- Recommendations and action plans ---


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Effort(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


PRIORITY_ORDER = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}
EFFORT_ORDER = {Effort.LOW: 0, Effort.MEDIUM: 1, Effort.HIGH: 2}


class Recommendation(DocumentModel):
    priority: Priority
    type: str
    title: str
    description: str
    impact: str = ""
    effort: Effort = Effort.MEDIUM
    affected_pages: list[str] = Field(default_factory=list)


class ActionItem(DocumentModel):
    id: str
    title: str
    description: str
    priority: Priority
    effort: Effort
    category: str
    completed: bool = False
    affected_queries: list[str] = Field(default_factory=list)
    target_page: str = ""
    timeline: str = ""


class ActionPhase(DocumentModel):
    name: str
    duration: str
    items: list[ActionItem] = Field(default_factory=list)


class ScoreProjection(DocumentModel):
    current: float = 0.0
    projected: float = 0.0


class ActionPlan(DocumentModel):
    scan_id: str
    project_id: str
    generated_at: datetime = Field(default_factory=utcnow)
    phases: list[ActionPhase] = Field(default_factory=list)
    total_items: int = 0
    overall_score: ScoreProjection = Field(default_factory=ScoreProjection)
    estimated_time_to_complete: str = ""

    def items(self) -> list[ActionItem]:
        return [item for phase in self.phases for item in phase.items]

    def find_item(self, action_id: str) -> Optional[ActionItem]:
        for item in self.items():
            if item.id == action_id:
                return item
        return None


# --- Events and profiles ---


class EventKind(str, Enum):
    CRAWL_PROGRESS = "crawl_progress"
    CRAWL_COMPLETED = "crawl_completed"
    INDEX_BUILD_PROGRESS = "index_build_progress"
    INDEX_BUILD_COMPLETED = "index_build_completed"
    INDEX_BUILD_FAILED = "index_build_failed"
    SCAN_PROGRESS = "scan_progress"
    SCAN_COMPLETED = "scan_completed"
    SCAN_FAILED = "scan_failed"


class ProgressEvent(DocumentModel):
    kind: EventKind
    project_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)


class SiteProfile(DocumentModel):
    """What the site is about, used to seed query generation."""

    site_url: str = ""
    brand_name: str = ""
    industry: str = ""
    description: str = ""
    language: str = "en"
    topics: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    competitors: list[str] = Field(default_factory=list)
