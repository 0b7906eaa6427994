from django.contrib import admin
from .models import ProcessedWebhook

@admin.register(ProcessedWebhook)
class ProcessedWebhookAdmin(admin.ModelAdmin):
    list_display = ("key", "processed_at")
    search_fields = ("key",)
    readonly_fields = ("key", "processed_at")
