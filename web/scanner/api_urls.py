"""REST API URL configuration."""

from django.urls import path

from web.scanner import api_views

project = "projects/<str:project_id>/"
scan = project + "scans/<str:scan_id>/"

urlpatterns = [
    path(project + "crawl/", api_views.CrawlView.as_view(), name="api-crawl"),
    path(project + "crawl/cancel/", api_views.CancelCrawlView.as_view(), name="api-crawl-cancel"),
    path(project + "status/", api_views.StatusView.as_view(), name="api-status"),
    path(project + "indexes/", api_views.IndexBuildView.as_view(), name="api-indexes"),
    path(project + "scans/", api_views.ScanListView.as_view(), name="api-scans"),
    path(scan, api_views.ScanDetailView.as_view(), name="api-scan-detail"),
    path(scan + "recommendations/", api_views.RecommendationsView.as_view(), name="api-recommendations"),
    path(scan + "action-plan/", api_views.ActionPlanView.as_view(), name="api-action-plan"),
    path(scan + "action-plan/items/<str:action_id>/", api_views.ActionItemView.as_view(), name="api-action-item"),
]
