from django.db import models


class ProcessedWebhook(models.Model):
    """Inbound event key already handled; used to drop verbatim redeliveries."""

    key = models.CharField(max_length=191, unique=True)
    processed_at = models.DateTimeField(db_index=True)

    def __str__(self):
        return f"{self.key} @ {self.processed_at:%Y-%m-%d %H:%M}"
