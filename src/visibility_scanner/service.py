"""Project-level operations behind the HTTP surface.

Each project gets a ``ProjectWorkspace`` holding its live crawl, its two
index slots and the number of scans reserved or running against them. All
workspace mutations happen under the workspace lock and never await while
holding it, so the service can be driven from several threads.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union
from urllib.parse import urlparse

from visibility_scanner.chunker import ContentChunker
from visibility_scanner.config import CrawlConfig, LLMProviderName, RelevancePolicy, ScanConfig, ScannerSettings
from visibility_scanner.crawler import CancelToken, WebCrawler, normalise_url
from visibility_scanner.embedder import EmbeddingProvider, create_embedder
from visibility_scanner.errors import DataError, NotFoundError, PreconditionError, ScannerError
from visibility_scanner.events import EventSink, FanOutEventSink, LoggingEventSink, emit
from visibility_scanner.lexical_index import LexicalIndex
from visibility_scanner.llm import OpenAILLMClient, QueryWriter, TemplateQueryWriter
from visibility_scanner.models import (
    ActionPlan,
    Chunk,
    CrawlRun,
    CrawlStatus,
    EventKind,
    IndexKind,
    IndexState,
    IndexStatus,
    Recommendation,
    Scan,
    ScanStatus,
    SiteProfile,
)
from visibility_scanner.query_generator import QueryGenerator, build_site_profile
from visibility_scanner.recommendations import ActionPlanGenerator, RecommendationEngine
from visibility_scanner.relevance import RelevanceJudge, collect_page_texts
from visibility_scanner.scanner import VisibilityScanner
from visibility_scanner.store import ACTION_PLANS, CRAWL_RUNS, INDEXES, SCANS, DocumentStore, InMemoryDocumentStore
from visibility_scanner.vector_index import VectorIndex

logger = logging.getLogger(__name__)

AnyIndex = Union[LexicalIndex, VectorIndex]

_INDEXABLE_CRAWLS = (CrawlStatus.COMPLETED, CrawlStatus.CANCELLED)


def chunk_set_id(chunks: list[Chunk]) -> str:
    """Stable fingerprint of the chunks an index generation was built from."""
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(f"{chunk.chunk_id}\0{chunk.text}\0".encode("utf-8"))
    return digest.hexdigest()[:16]


class IndexSlot:
    """Currently served generation of one index kind.

    A successful build swaps ``index`` atomically. A failed build keeps the
    previous index queryable and only records the error on ``state``; scans
    wait until both slots are ready again.
    """

    def __init__(self, kind: IndexKind) -> None:
        self.kind = kind
        self.index: Optional[AnyIndex] = None
        self.state = IndexState(kind=kind)

    def publish(self, index: AnyIndex, source_id: str, failed_chunks: int = 0) -> None:
        previous = self.index
        self.index = index
        self.state = IndexState(
            kind=self.kind,
            status=IndexStatus.READY,
            generation=index.generation,
            chunk_count=index.chunk_count,
            failed_chunks=failed_chunks,
            built_at=index.built_at,
            queryable=True,
            source_id=source_id,
        )
        if previous is not None and previous is not index:
            previous.discard()

    @property
    def ready(self) -> bool:
        return self.index is not None and self.state.status == IndexStatus.READY

    def fail(self, message: str) -> None:
        self.state = self.state.model_copy(
            update={"status": IndexStatus.ERROR, "error_message": message, "queryable": self.index is not None}
        )


class ProjectWorkspace:
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        self.lock = threading.Lock()
        self.crawl_run: Optional[CrawlRun] = None
        self.crawl_config: Optional[CrawlConfig] = None
        self.cancel_token: Optional[CancelToken] = None
        self.lexical = IndexSlot(IndexKind.LEXICAL)
        self.vector = IndexSlot(IndexKind.VECTOR)
        self.building = False
        self.reserved_scans = 0
        self.live_scans: dict[str, Scan] = {}
        self.loaded = False

    @property
    def crawling(self) -> bool:
        return self.crawl_run is not None and not self.crawl_run.is_terminal

    def slot(self, kind: IndexKind) -> IndexSlot:
        return self.lexical if kind == IndexKind.LEXICAL else self.vector

    def scan_blockers(self) -> dict[str, Any]:
        """Reasons a scan cannot run now; empty when both indexes serve the same ready chunk set."""
        not_ready = [slot.kind.value for slot in (self.lexical, self.vector) if not slot.ready]
        if not_ready:
            return {"not_ready": not_ready}
        if self.lexical.state.source_id != self.vector.state.source_id:
            return {
                "source_mismatch": {
                    "lexical": self.lexical.state.generation,
                    "vector": self.vector.state.generation,
                }
            }
        return {}


class VisibilityService:
    """Crawl, index, scan and plan operations for any number of projects."""

    def __init__(
        self,
        settings: Optional[ScannerSettings] = None,
        *,
        store: Optional[DocumentStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        query_writer: Optional[QueryWriter] = None,
        llm_client: Optional[OpenAILLMClient] = None,
        sink: Optional[EventSink] = None,
        transport: Any = None,
    ) -> None:
        self.settings = settings or ScannerSettings()
        self.store = store or InMemoryDocumentStore()
        self.embedder = embedder or create_embedder(self.settings.embedding)
        if llm_client is None and self.settings.llm.provider == LLMProviderName.OPENAI:
            llm_client = OpenAILLMClient(self.settings.llm)
        self.llm_client = llm_client
        self.query_writer = query_writer or llm_client or TemplateQueryWriter()
        self.sink: EventSink = FanOutEventSink([LoggingEventSink(), *([sink] if sink else [])])
        self._transport = transport
        self._chunker = ContentChunker(self.settings.chunk)
        self._workspaces: dict[str, ProjectWorkspace] = {}
        self._workspaces_lock = threading.Lock()

    def workspace(self, project_id: str) -> ProjectWorkspace:
        with self._workspaces_lock:
            if project_id not in self._workspaces:
                self._workspaces[project_id] = ProjectWorkspace(project_id)
            return self._workspaces[project_id]

    # --- Crawl ---

    def begin_crawl(self, project_id: str, seed_url: str, config: Optional[CrawlConfig] = None) -> CrawlRun:
        """Reserve the project's crawler and return the pending run."""
        parsed = urlparse(seed_url.strip()) if seed_url else None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise DataError(f"Seed URL must be an absolute http(s) URL: {seed_url!r}")
        ws = self.workspace(project_id)
        with ws.lock:
            if ws.crawling:
                raise PreconditionError(f"A crawl is already active for project {project_id}")
            if ws.building:
                raise PreconditionError(f"Indexes are being built for project {project_id}")
            ws.crawl_run = CrawlRun(project_id=project_id, seed_url=normalise_url(seed_url))
            ws.crawl_config = config or self.settings.crawl
            ws.cancel_token = CancelToken()
            return ws.crawl_run

    async def run_crawl(self, project_id: str) -> CrawlRun:
        ws = self.workspace(project_id)
        with ws.lock:
            run, config, cancel = ws.crawl_run, ws.crawl_config, ws.cancel_token
        if run is None or config is None or run.status != CrawlStatus.PENDING:
            raise PreconditionError(f"No pending crawl for project {project_id}")

        crawler = WebCrawler(config, self.settings.extraction, sink=self.sink, transport=self._transport)
        try:
            await crawler.crawl(run.seed_url, project_id=project_id, run=run, cancel=cancel)
        finally:
            if run.status == CrawlStatus.PENDING:
                run.status = CrawlStatus.FAILED
                run.error_message = run.error_message or "Crawl did not start"
            await self.store.put(CRAWL_RUNS, f"{project_id}:{run.started_at.isoformat()}", run.to_document())
        return run

    async def start_crawl(self, project_id: str, seed_url: str, config: Optional[CrawlConfig] = None) -> CrawlRun:
        """Crawl ``seed_url`` to completion and persist the run."""
        self.begin_crawl(project_id, seed_url, config)
        return await self.run_crawl(project_id)

    def cancel_crawl(self, project_id: str) -> bool:
        ws = self.workspace(project_id)
        with ws.lock:
            if not ws.crawling or ws.cancel_token is None:
                return False
            ws.cancel_token.cancel()
        logger.info("Cancellation requested for crawl of project %s", project_id)
        return True

    async def latest_crawl(self, project_id: str) -> Optional[CrawlRun]:
        ws = self.workspace(project_id)
        if ws.crawl_run is not None:
            return ws.crawl_run
        runs = await self.store.query(CRAWL_RUNS, {"projectId": project_id})
        if not runs:
            return None
        latest = max(runs, key=lambda d: d["startedAt"])
        run = CrawlRun.model_validate(latest)
        with ws.lock:
            if ws.crawl_run is None:
                ws.crawl_run = run
            return ws.crawl_run

    async def latest_indexable_crawl(self, project_id: str) -> Optional[CrawlRun]:
        """Newest completed or cancelled crawl; a failed or unfinished latest run falls back to an older one."""
        run = await self.latest_crawl(project_id)
        if run is None or run.status in _INDEXABLE_CRAWLS:
            return run
        runs = await self.store.query(CRAWL_RUNS, {"projectId": project_id})
        indexable = [d for d in runs if d.get("status") in {s.value for s in _INDEXABLE_CRAWLS}]
        if not indexable:
            return None
        logger.info("Latest crawl of project %s is %s; indexing the previous successful run", project_id, run.status.value)
        return CrawlRun.model_validate(max(indexable, key=lambda d: d["startedAt"]))

    # --- Status ---

    async def get_status(self, project_id: str) -> dict[str, Any]:
        ws = self.workspace(project_id)
        await self._ensure_loaded(ws)
        run = await self.latest_crawl(project_id)
        with ws.lock:
            return {
                "projectId": project_id,
                "crawl": run.summary() if run else None,
                "indexes": {
                    "lexical": ws.lexical.state.to_document(),
                    "vector": ws.vector.state.to_document(),
                },
                "runningScans": ws.reserved_scans,
            }

    # --- Indexes ---

    async def build_indexes(self, project_id: str) -> dict[str, Any]:
        """Chunk the latest crawl and build both indexes side by side.

        Each index is swapped in only if its own build succeeds; a failed
        build leaves the previous generation in place and records the error.
        """
        ws = self.workspace(project_id)
        await self._ensure_loaded(ws)
        latest = await self.latest_crawl(project_id)
        run = await self.latest_indexable_crawl(project_id)

        with ws.lock:
            if latest is None:
                raise PreconditionError(f"Project {project_id} has no crawl to index")
            if ws.crawling:
                raise PreconditionError(f"Crawl for project {project_id} is still active")
            if ws.reserved_scans:
                raise PreconditionError(
                    f"{ws.reserved_scans} scan(s) are running against the current indexes",
                    {"running_scans": ws.reserved_scans},
                )
            if ws.building:
                raise PreconditionError(f"Indexes are already being built for project {project_id}")
            if run is None:
                raise PreconditionError(
                    f"Project {project_id} has no completed crawl to index",
                    {"latest_status": latest.status.value},
                )
            if run.successful_pages == 0:
                raise DataError(f"Crawl for project {project_id} has zero successfully crawled pages")
            ws.building = True
            for slot in (ws.lexical, ws.vector):
                slot.state = slot.state.model_copy(
                    update={"status": IndexStatus.BUILDING, "error_message": None, "queryable": slot.index is not None}
                )

        try:
            chunks = self._chunker.chunk_pages(run.pages)
            if not chunks:
                raise DataError("Crawled pages produced no chunks", {"pages": run.successful_pages})
            source_id = chunk_set_id(chunks)

            lexical_result, vector_result = await asyncio.gather(
                self._build_lexical(ws, chunks),
                self._build_vector(ws, chunks),
                return_exceptions=True,
            )
            for slot, outcome in ((ws.lexical, lexical_result), (ws.vector, vector_result)):
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                await self._settle_build(ws, slot, outcome, source_id)
        except DataError as exc:
            with ws.lock:
                for slot in (ws.lexical, ws.vector):
                    slot.fail(exc.message)
            raise
        finally:
            with ws.lock:
                ws.building = False
                for slot in (ws.lexical, ws.vector):
                    if slot.state.status == IndexStatus.BUILDING:
                        slot.fail("Build aborted")

        with ws.lock:
            return {"lexical": ws.lexical.state.to_document(), "vector": ws.vector.state.to_document()}

    async def _build_lexical(self, ws: ProjectWorkspace, chunks: list[Chunk]) -> LexicalIndex:
        generation = ws.lexical.state.generation + 1
        # BM25 build is CPU-bound; keep the event loop free
        return await asyncio.to_thread(LexicalIndex.build, chunks, self.settings.lexical, generation=generation)

    async def _build_vector(self, ws: ProjectWorkspace, chunks: list[Chunk]) -> VectorIndex:
        return await VectorIndex.build(
            chunks,
            self.embedder,
            self.settings.embedding,
            generation=ws.vector.state.generation + 1,
            sink=self.sink,
            project_id=ws.project_id,
        )

    async def _settle_build(self, ws: ProjectWorkspace, slot: IndexSlot, outcome: Any, source_id: str) -> None:
        if isinstance(outcome, Exception):
            if not isinstance(outcome, ScannerError):
                logger.error("Unexpected %s index build failure", slot.kind.value, exc_info=outcome)
                raise outcome
            with ws.lock:
                slot.fail(outcome.message)
                state = slot.state
            logger.error("%s index build failed for project %s: %s", slot.kind.value, ws.project_id, outcome.message)
            emit(
                self.sink,
                EventKind.INDEX_BUILD_FAILED,
                ws.project_id,
                kind=slot.kind.value,
                reason=outcome.message,
                details=outcome.details,
            )
            await self.store.put(INDEXES, f"{ws.project_id}:{slot.kind.value}", await self._index_document(ws, slot, state))
            return

        failed = len(outcome.failed_chunks) if isinstance(outcome, VectorIndex) else 0
        with ws.lock:
            slot.publish(outcome, source_id, failed_chunks=failed)
            state = slot.state
        emit(
            self.sink,
            EventKind.INDEX_BUILD_COMPLETED,
            ws.project_id,
            kind=slot.kind.value,
            generation=state.generation,
            chunk_count=state.chunk_count,
            failed_chunks=state.failed_chunks,
        )
        await self.store.put(INDEXES, f"{ws.project_id}:{slot.kind.value}", await self._index_document(ws, slot, state))

    async def _index_document(self, ws: ProjectWorkspace, slot: IndexSlot, state: IndexState) -> dict[str, Any]:
        document: dict[str, Any] = {"projectId": ws.project_id, "kind": slot.kind.value, "state": state.to_document()}
        if slot.index is not None:
            document["snapshot"] = await asyncio.to_thread(slot.index.to_document)
        return document

    async def _ensure_loaded(self, ws: ProjectWorkspace) -> None:
        """Reload persisted index snapshots the first time a project is touched."""
        if ws.loaded:
            return
        documents = await self.store.query(INDEXES, {"projectId": ws.project_id})
        with ws.lock:
            if ws.loaded:
                return
            for document in documents:
                slot = ws.slot(IndexKind(document["kind"]))
                snapshot = document.get("snapshot")
                if snapshot is not None:
                    if slot.kind == IndexKind.LEXICAL:
                        slot.index = LexicalIndex.from_document(snapshot)
                    else:
                        slot.index = VectorIndex.from_document(snapshot, self.embedder)
                state = IndexState.model_validate(document["state"])
                if state.status == IndexStatus.BUILDING:
                    state = state.model_copy(update={"status": IndexStatus.ERROR, "error_message": "Build interrupted"})
                slot.state = state.model_copy(update={"queryable": slot.index is not None})
            ws.loaded = True

    # --- Scans ---

    async def create_scan(self, project_id: str, config: Union[ScanConfig, dict[str, Any], None] = None) -> Scan:
        """Validate ``config``, check both indexes are queryable and persist a pending scan."""
        if not isinstance(config, ScanConfig):
            try:
                config = ScanConfig.model_validate(config or {})
            except ValueError as exc:
                raise DataError(f"Invalid scan configuration: {exc}") from exc
        if config.relevance_policy == RelevancePolicy.LLM and self.llm_client is None:
            raise PreconditionError("relevance_policy=llm requires an OpenAI LLM provider to be configured")

        ws = self.workspace(project_id)
        await self._ensure_loaded(ws)
        scan = Scan(scan_id=uuid.uuid4().hex, project_id=project_id, config=config)
        with ws.lock:
            if ws.building:
                raise PreconditionError(f"Indexes are being rebuilt for project {project_id}")
            self._check_scannable(ws)
            ws.reserved_scans += 1
            ws.live_scans[scan.scan_id] = scan

        try:
            await self.store.put(SCANS, scan.scan_id, scan.to_document())
        except Exception:
            self._release_scan(ws, scan.scan_id)
            raise
        logger.info("Created scan %s for project %s", scan.scan_id, project_id)
        return scan

    async def run_scan(self, project_id: str, scan_id: str) -> Scan:
        """Generate queries and run a pending scan to completion or failure."""
        ws = self.workspace(project_id)
        with ws.lock:
            scan = ws.live_scans.get(scan_id)
            lexical, vector = ws.lexical.index, ws.vector.index
            blockers = ws.scan_blockers()
        if scan is None:
            raise NotFoundError(f"No pending scan {scan_id} for project {project_id}")

        try:
            if scan.status != ScanStatus.PENDING:
                raise PreconditionError(f"Scan {scan_id} is {scan.status.value}, expected pending")
            if blockers:
                raise PreconditionError(f"Indexes for project {project_id} are not ready to scan", blockers)
            config = scan.config
            run = await self.latest_indexable_crawl(project_id)
            profile = build_site_profile(run) if run else SiteProfile()
            generator = QueryGenerator(self.query_writer, self.settings.llm)
            batch = await generator.generate(profile, config.generate_query_count, config.query_source, config.queries)
            scan.warnings.extend(batch.warnings)

            judge = RelevanceJudge(
                collect_page_texts(self._union_chunks(lexical, vector)),
                config.relevance_policy,
                threshold=config.keyword_relevance_threshold,
                llm=self.llm_client,
            )
            scanner = VisibilityScanner(lexical, vector, judge, sink=self.sink)
            await scanner.run_scan(scan, batch.queries)
        except ScannerError as exc:
            if not scan.is_terminal:
                scan.status = ScanStatus.FAILED
                scan.error_message = exc.message
                scan.completed_at = datetime.now(timezone.utc)
                emit(self.sink, EventKind.SCAN_FAILED, project_id, scan_id=scan_id, reason=exc.message)
            raise
        finally:
            await self.store.put(SCANS, scan.scan_id, scan.to_document())
            self._release_scan(ws, scan_id)
        return scan

    async def execute_scan(self, project_id: str, config: Union[ScanConfig, dict[str, Any], None] = None) -> Scan:
        scan = await self.create_scan(project_id, config)
        return await self.run_scan(project_id, scan.scan_id)

    @staticmethod
    def _check_scannable(ws: ProjectWorkspace) -> None:
        blockers = ws.scan_blockers()
        if "not_ready" in blockers:
            raise PreconditionError(
                f"Indexes not ready for project {ws.project_id}: {', '.join(blockers['not_ready'])}", blockers
            )
        if blockers:
            raise PreconditionError(
                f"Lexical and vector indexes of project {ws.project_id} were built from different crawls", blockers
            )

    @staticmethod
    def _union_chunks(*indexes: Optional[AnyIndex]) -> list[Chunk]:
        seen: dict[str, Chunk] = {}
        for index in indexes:
            if index is None:
                continue
            for chunk in index.chunks:
                seen.setdefault(chunk.chunk_id, chunk)
        return list(seen.values())

    def _release_scan(self, ws: ProjectWorkspace, scan_id: str) -> None:
        with ws.lock:
            if ws.live_scans.pop(scan_id, None) is not None:
                ws.reserved_scans -= 1

    async def get_scan_results(self, project_id: str, scan_id: str) -> Scan:
        ws = self.workspace(project_id)
        with ws.lock:
            live = ws.live_scans.get(scan_id)
            if live is not None:
                return live.model_copy(deep=True)
        document = await self.store.get(SCANS, scan_id)
        if document is None or document.get("projectId") != project_id:
            raise NotFoundError(f"Scan {scan_id} not found for project {project_id}", {"scan_id": scan_id})
        return Scan.model_validate(document)

    async def list_scans(self, project_id: str, limit: int = 10) -> list[Scan]:
        documents = await self.store.query(SCANS, {"projectId": project_id})
        documents.sort(key=lambda d: d["createdAt"], reverse=True)
        return [Scan.model_validate(d) for d in documents[:limit]]

    # --- Recommendations and action plans ---

    async def get_recommendations(self, project_id: str, scan_id: str) -> list[Recommendation]:
        scan = await self.get_scan_results(project_id, scan_id)
        return RecommendationEngine().generate(scan)

    async def generate_action_plan(self, project_id: str, scan_id: str, *, phrase: bool = False) -> ActionPlan:
        """Build and persist the plan; ``phrase`` rewrites descriptions through the LLM client."""
        scan = await self.get_scan_results(project_id, scan_id)
        phraser = self.llm_client if phrase else None
        plan = await ActionPlanGenerator().generate(scan, phraser)
        await self.store.put(ACTION_PLANS, scan_id, plan.to_document())
        return plan

    async def get_action_plan(self, project_id: str, scan_id: str) -> ActionPlan:
        document = await self.store.get(ACTION_PLANS, scan_id)
        if document is None or document.get("projectId") != project_id:
            raise NotFoundError(f"No action plan for scan {scan_id}", {"scan_id": scan_id})
        return ActionPlan.model_validate(document)

    async def update_action_item(self, project_id: str, scan_id: str, action_id: str, completed: bool) -> ActionPlan:
        plan = await self.get_action_plan(project_id, scan_id)
        item = plan.find_item(action_id)
        if item is None:
            raise NotFoundError(f"Action item {action_id} not found in plan for scan {scan_id}", {"action_id": action_id})
        item.completed = completed
        await self.store.put(ACTION_PLANS, scan_id, plan.to_document())
        logger.info("Action item %s of scan %s marked %s", action_id, scan_id, "done" if completed else "open")
        return plan
