"""Document store persisted through the Django ORM."""

from __future__ import annotations

from typing import Any, Optional

from asgiref.sync import sync_to_async

from visibility_scanner.store import matches
from web.scanner.models import ScannerDocument


class DjangoDocumentStore:
    """``DocumentStore`` over ``ScannerDocument`` rows.

    ORM calls run through ``sync_to_async`` so the service can await them from
    the background event loop.
    """

    def _get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        row = ScannerDocument.objects.filter(collection=collection, key=key).first()
        return row.data if row is not None else None

    def _put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        ScannerDocument.objects.update_or_create(
            collection=collection,
            key=key,
            defaults={"data": document, "project_id": document.get("projectId") or ""},
        )

    def _query(self, collection: str, filters: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
        rows = ScannerDocument.objects.filter(collection=collection)
        if filters and "projectId" in filters:
            rows = rows.filter(project_id=filters["projectId"])
        return [row.data for row in rows if matches(row.data, filters)]

    def _delete(self, collection: str, key: str) -> bool:
        deleted, _ = ScannerDocument.objects.filter(collection=collection, key=key).delete()
        return deleted > 0

    async def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        return await sync_to_async(self._get)(collection, key)

    async def put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        await sync_to_async(self._put)(collection, key, document)

    async def query(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        return await sync_to_async(self._query)(collection, filters)

    async def delete(self, collection: str, key: str) -> bool:
        return await sync_to_async(self._delete)(collection, key)
