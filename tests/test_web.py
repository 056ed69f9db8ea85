"""Tests for the Django REST API and the ORM-backed document store."""

import time

import pytest
from asgiref.sync import async_to_sync
from conftest import SITE, BagOfWordsEmbedder, FakeSite, make_settings
from rest_framework.test import APIClient

from visibility_scanner.service import VisibilityService
from web.scanner import tasks
from web.scanner.models import ScannerDocument
from web.scanner.store import DjangoDocumentStore


def wait_for(fetch, done, timeout: float = 10.0):
    """Poll ``fetch`` until ``done(result)`` or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while True:
        result = fetch()
        if done(result) or time.monotonic() > deadline:
            return result
        time.sleep(0.05)


@pytest.fixture
def service(three_page_site: FakeSite):
    service = VisibilityService(make_settings(), embedder=BagOfWordsEmbedder(), transport=three_page_site.transport)
    tasks.set_service(service)
    yield service
    tasks.set_service(None)


@pytest.fixture
def client() -> APIClient:
    return APIClient()


@pytest.mark.django_db
class TestDjangoDocumentStore:
    def test_put_get_query_delete(self) -> None:
        store = DjangoDocumentStore()
        store._put("scans", "s1", {"projectId": "p1", "status": "completed"})
        store._put("scans", "s2", {"projectId": "p2", "status": "failed"})
        store._put("scans", "s1", {"projectId": "p1", "status": "running"})

        assert store._get("scans", "s1") == {"projectId": "p1", "status": "running"}
        assert store._get("scans", "missing") is None
        assert ScannerDocument.objects.filter(collection="scans").count() == 2
        assert store._query("scans", {"projectId": "p1"}) == [{"projectId": "p1", "status": "running"}]
        assert store._query("scans", {"status": "failed"}) == [{"projectId": "p2", "status": "failed"}]
        assert store._delete("scans", "s2") is True
        assert store._delete("scans", "s2") is False

    def test_async_interface(self) -> None:
        store = DjangoDocumentStore()
        async_to_sync(store.put)("runs", "r1", {"projectId": "p1"})
        assert async_to_sync(store.get)("runs", "r1") == {"projectId": "p1"}
        assert async_to_sync(store.query)("runs") == [{"projectId": "p1"}]
        row = ScannerDocument.objects.get(collection="runs", key="r1")
        assert row.project_id == "p1"


@pytest.mark.django_db
class TestErrorMapping:
    def test_invalid_seed_is_bad_request(self, service: VisibilityService, client: APIClient) -> None:
        response = client.post("/api/projects/p1/crawl/", {"seed_url": "not a url"}, format="json")
        assert response.status_code == 400

    def test_build_without_crawl_is_conflict(self, service: VisibilityService, client: APIClient) -> None:
        response = client.post("/api/projects/p1/indexes/")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "precondition_failed"

    def test_unknown_scan_is_not_found(self, service: VisibilityService, client: APIClient) -> None:
        response = client.get("/api/projects/p1/scans/missing/")
        assert response.status_code == 404
        assert response.json()["error"]["details"] == {"scan_id": "missing"}

    def test_bad_scan_config_is_bad_request(self, service: VisibilityService, client: APIClient) -> None:
        response = client.post("/api/projects/p1/scans/", {"query_source": "provided"}, format="json")
        assert response.status_code == 400

    def test_bad_limit(self, service: VisibilityService, client: APIClient) -> None:
        assert client.get("/api/projects/p1/scans/?limit=abc").status_code == 400


@pytest.mark.django_db
class TestApiFlow:
    def test_crawl_index_scan_plan(self, service: VisibilityService, client: APIClient) -> None:
        response = client.post("/api/projects/p1/crawl/", {"seed_url": f"{SITE}/", "max_depth": 1}, format="json")
        assert response.status_code == 202
        assert response.json()["seedUrl"] == f"{SITE}/"

        status = wait_for(
            lambda: client.get("/api/projects/p1/status/").json(),
            lambda body: body["crawl"]["status"] == "completed",
        )
        assert status["crawl"]["successfulPages"] == 3

        response = client.post("/api/projects/p1/indexes/")
        assert response.status_code == 200
        assert response.json()["lexical"]["status"] == "ready"

        response = client.post(
            "/api/projects/p1/scans/",
            {"query_source": "provided", "queries": ["apochromatic telescope lenses", "quantum cryptography"]},
            format="json",
        )
        assert response.status_code == 202
        scan_id = response.json()["scanId"]

        scan = wait_for(
            lambda: client.get(f"/api/projects/p1/scans/{scan_id}/").json(),
            lambda body: body["status"] in ("completed", "failed"),
        )
        assert scan["status"] == "completed"
        assert scan["coverageMetrics"]["hybridCoverage"] == 0.5

        listing = client.get("/api/projects/p1/scans/?limit=5").json()
        assert [s["scanId"] for s in listing] == [scan_id]

        response = client.get(f"/api/projects/p1/scans/{scan_id}/recommendations/")
        assert response.status_code == 200
        assert response.json()

        assert client.get(f"/api/projects/p1/scans/{scan_id}/action-plan/").status_code == 404
        response = client.post(f"/api/projects/p1/scans/{scan_id}/action-plan/")
        assert response.status_code == 201
        action_id = response.json()["phases"][0]["items"][0]["id"]

        response = client.patch(
            f"/api/projects/p1/scans/{scan_id}/action-plan/items/{action_id}/",
            {"completed": True},
            format="json",
        )
        assert response.status_code == 200
        items = [item for phase in response.json()["phases"] for item in phase["items"]]
        assert next(i for i in items if i["id"] == action_id)["completed"] is True

    def test_cancel_without_crawl(self, service: VisibilityService, client: APIClient) -> None:
        assert client.post("/api/projects/p1/crawl/cancel/").json() == {"cancelled": False}
