"""Django models backing the scanner's document store."""

from django.db import models


class ScannerDocument(models.Model):
    """One JSON document of a scanner collection (crawl runs, indexes, scans, action plans)."""

    collection = models.CharField(max_length=64, db_index=True)
    key = models.CharField(max_length=255)
    project_id = models.CharField(max_length=255, blank=True, default="", db_index=True)
    data = models.JSONField(default=dict)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["collection", "-updated_at"]
        verbose_name = "Scanner Document"
        verbose_name_plural = "Scanner Documents"
        constraints = [
            models.UniqueConstraint(fields=["collection", "key"], name="unique_document_per_collection"),
        ]

    def __str__(self):
        return f"{self.collection}/{self.key}"

    @property
    def status(self):
        return self.data.get("status") or self.data.get("state", {}).get("status", "")
