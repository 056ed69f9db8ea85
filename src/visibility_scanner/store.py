"""Document persistence used by the service layer."""

from __future__ import annotations

import copy
import threading
from typing import Any, Optional, Protocol

CRAWL_RUNS = "crawl_runs"
INDEXES = "indexes"
SCANS = "scans"
ACTION_PLANS = "action_plans"


class DocumentStore(Protocol):
    """Key/value document store with equality filters. Each put is atomic per document."""

    async def get(self, collection: str, key: str) -> Optional[dict[str, Any]]: ...

    async def put(self, collection: str, key: str, document: dict[str, Any]) -> None: ...

    async def query(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]: ...

    async def delete(self, collection: str, key: str) -> bool: ...


def matches(document: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    return all(document.get(field) == value for field, value in (filters or {}).items())


class InMemoryDocumentStore:
    """Process-local store. Documents are copied in and out."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    async def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            document = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(document) if document is not None else None

    async def put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    async def query(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        with self._lock:
            documents = list(self._collections.get(collection, {}).values())
            return [copy.deepcopy(d) for d in documents if matches(d, filters)]

    async def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(key, None) is not None
