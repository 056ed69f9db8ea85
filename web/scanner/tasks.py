"""Background execution of crawls and scans.

All service coroutines run on one dedicated event-loop thread, so async
clients held by the service (httpx, OpenAI) are never shared across loops.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, Optional

from django.conf import settings

from visibility_scanner.config import CrawlConfig, ScannerSettings
from visibility_scanner.models import CrawlRun, Scan
from visibility_scanner.service import VisibilityService

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """An asyncio loop running forever in a daemon thread."""

    def __init__(self, name: str = "scanner-loop") -> None:
        self._name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                loop = asyncio.new_event_loop()
                thread = threading.Thread(target=loop.run_forever, name=self._name, daemon=True)
                thread.start()
                self._loop = loop
            return self._loop

    def submit(self, coro: Coroutine[Any, Any, Any], description: str = "task") -> Future:
        """Schedule ``coro`` and log it if it ends with an exception."""
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())

        def _report(done: Future) -> None:
            if not done.cancelled() and done.exception() is not None:
                logger.error("Background %s failed", description, exc_info=done.exception())

        future.add_done_callback(_report)
        return future

    def run(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        """Run ``coro`` on the loop and block for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self._ensure_loop()).result(timeout)


_loop = BackgroundLoop()
_service: Optional[VisibilityService] = None
_service_lock = threading.Lock()


def get_service() -> VisibilityService:
    """Return the process-wide service, creating it from settings on first use."""
    global _service
    with _service_lock:
        if _service is None:
            from web.scanner.store import DjangoDocumentStore

            scanner_settings = ScannerSettings.from_env_and_file(getattr(settings, "SCANNER_CONFIG_PATH", None))
            _service = VisibilityService(scanner_settings, store=DjangoDocumentStore())
        return _service


def set_service(service: Optional[VisibilityService]) -> None:
    """Replace the process-wide service (``None`` resets to lazy creation)."""
    global _service
    with _service_lock:
        _service = service


def run_sync(coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
    return _loop.run(coro, timeout)


def start_crawl_job(project_id: str, seed_url: str, config: Optional[CrawlConfig] = None) -> CrawlRun:
    """Reserve the crawler synchronously, then crawl in the background."""
    service = get_service()
    run = service.begin_crawl(project_id, seed_url, config)
    _loop.submit(service.run_crawl(project_id), f"crawl of {seed_url} for project {project_id}")
    logger.info("Started crawl of %s for project %s", seed_url, project_id)
    return run


def start_scan_job(project_id: str, config: Optional[dict[str, Any]]) -> Scan:
    """Create the scan synchronously (validation and readiness checks), then run it in the background."""
    service = get_service()
    scan = run_sync(service.create_scan(project_id, config))
    _loop.submit(service.run_scan(project_id, scan.scan_id), f"scan {scan.scan_id}")
    return scan
