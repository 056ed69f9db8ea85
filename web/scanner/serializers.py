"""DRF serializers for request validation."""

from rest_framework import serializers


class StartCrawlSerializer(serializers.Serializer):
    seed_url = serializers.URLField(max_length=2000)
    max_pages = serializers.IntegerField(min_value=1, max_value=100000, required=False)
    max_depth = serializers.IntegerField(min_value=0, max_value=20, required=False)
    crawl_delay_ms = serializers.IntegerField(min_value=0, max_value=60000, required=False)
    respect_robots_txt = serializers.BooleanField(required=False)
    excluded_patterns = serializers.ListField(child=serializers.CharField(max_length=500), required=False)

    def crawl_overrides(self):
        return {k: v for k, v in self.validated_data.items() if k != "seed_url"}


class ActionItemUpdateSerializer(serializers.Serializer):
    completed = serializers.BooleanField()
