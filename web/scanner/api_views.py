"""REST API views over ``VisibilityService``.

    POST   /api/projects/{project}/crawl/                         start a crawl (background)
    POST   /api/projects/{project}/crawl/cancel/                  request cancellation
    GET    /api/projects/{project}/status/                        crawl + index status
    POST   /api/projects/{project}/indexes/                       build both indexes
    GET    /api/projects/{project}/scans/                         recent scans
    POST   /api/projects/{project}/scans/                         execute a scan (background)
    GET    /api/projects/{project}/scans/{scan}/                  scan results
    GET    /api/projects/{project}/scans/{scan}/recommendations/  recommendations
    GET    /api/projects/{project}/scans/{scan}/action-plan/      stored action plan
    POST   /api/projects/{project}/scans/{scan}/action-plan/      generate an action plan
    PATCH  /api/projects/{project}/scans/{scan}/action-plan/items/{item}/
"""

import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView, exception_handler

from visibility_scanner.errors import (
    DataError,
    IndexUnavailableError,
    NotFoundError,
    PreconditionError,
    ScannerError,
    ThresholdExceededError,
)
from web.scanner.serializers import ActionItemUpdateSerializer, StartCrawlSerializer
from web.scanner.tasks import get_service, run_sync, start_crawl_job, start_scan_job

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (PreconditionError, status.HTTP_409_CONFLICT),
    (IndexUnavailableError, status.HTTP_409_CONFLICT),
    (DataError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ThresholdExceededError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def scanner_exception_handler(exc, context):
    """Render ``ScannerError`` as ``{"error": {code, message, details}}``; defer everything else to DRF."""
    if isinstance(exc, ScannerError):
        code = next((c for cls, c in ERROR_STATUS if isinstance(exc, cls)), status.HTTP_502_BAD_GATEWAY)
        logger.warning("%s %s -> %s: %s", context["request"].method, context["request"].path, exc.code, exc.message)
        return Response({"error": exc.to_dict()}, status=code)
    return exception_handler(exc, context)


class CrawlView(APIView):
    def post(self, request, project_id):
        serializer = StartCrawlSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        service = get_service()
        config = service.settings.crawl.model_copy(update=serializer.crawl_overrides())
        run = start_crawl_job(project_id, serializer.validated_data["seed_url"], config)
        return Response(run.summary(), status=status.HTTP_202_ACCEPTED)


class CancelCrawlView(APIView):
    def post(self, request, project_id):
        return Response({"cancelled": get_service().cancel_crawl(project_id)})


class StatusView(APIView):
    def get(self, request, project_id):
        return Response(run_sync(get_service().get_status(project_id)))


class IndexBuildView(APIView):
    def post(self, request, project_id):
        return Response(run_sync(get_service().build_indexes(project_id)))


class ScanListView(APIView):
    def get(self, request, project_id):
        try:
            limit = int(request.query_params.get("limit", 10))
        except ValueError:
            raise DataError("limit must be an integer") from None
        scans = run_sync(get_service().list_scans(project_id, limit=max(1, limit)))
        return Response([scan.to_document() for scan in scans])

    def post(self, request, project_id):
        scan = start_scan_job(project_id, request.data or None)
        return Response({"scanId": scan.scan_id, "status": scan.status.value}, status=status.HTTP_202_ACCEPTED)


class ScanDetailView(APIView):
    def get(self, request, project_id, scan_id):
        return Response(run_sync(get_service().get_scan_results(project_id, scan_id)).to_document())


class RecommendationsView(APIView):
    def get(self, request, project_id, scan_id):
        recommendations = run_sync(get_service().get_recommendations(project_id, scan_id))
        return Response([r.to_document() for r in recommendations])


class ActionPlanView(APIView):
    def get(self, request, project_id, scan_id):
        return Response(run_sync(get_service().get_action_plan(project_id, scan_id)).to_document())

    def post(self, request, project_id, scan_id):
        phrase = str(request.query_params.get("phrase", "")).lower() in ("true", "1", "yes")
        plan = run_sync(get_service().generate_action_plan(project_id, scan_id, phrase=phrase))
        return Response(plan.to_document(), status=status.HTTP_201_CREATED)


class ActionItemView(APIView):
    def patch(self, request, project_id, scan_id, action_id):
        serializer = ActionItemUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        plan = run_sync(
            get_service().update_action_item(project_id, scan_id, action_id, serializer.validated_data["completed"])
        )
        return Response(plan.to_document())
