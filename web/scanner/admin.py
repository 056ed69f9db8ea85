from django.contrib import admin
from web.scanner.models import ScannerDocument


@admin.register(ScannerDocument)
class ScannerDocumentAdmin(admin.ModelAdmin):
    list_display = ["collection", "key", "project_id", "status", "updated_at"]
    list_filter = ["collection"]
    search_fields = ["key", "project_id"]
    readonly_fields = ["created_at", "updated_at"]
