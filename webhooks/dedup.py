import datetime
import logging

from django.conf import settings
from django.utils import timezone

from .models import ProcessedWebhook

logger = logging.getLogger(__name__)


def bkash_event_key(payment_id: str, transaction_status: str) -> str:
    return f"bkash_{payment_id}_{transaction_status}"


class WebhookDedupStore:
    """Presence set of handled webhook keys, bounded by a TTL.

    Keys older than the TTL count as unseen and are removed by ``purge_expired``
    (see the ``purge_webhook_keys`` command).
    """

    def __init__(self, ttl_seconds=None):
        if ttl_seconds is None:
            ttl_seconds = settings.BKASH.get("DEDUP_TTL_SECONDS", 24 * 60 * 60)
        self.ttl = datetime.timedelta(seconds=ttl_seconds)

    def _cutoff(self):
        return timezone.now() - self.ttl

    def is_processed(self, key: str) -> bool:
        return ProcessedWebhook.objects.filter(key=key, processed_at__gte=self._cutoff()).exists()

    def mark_processed(self, key: str) -> None:
        ProcessedWebhook.objects.update_or_create(key=key, defaults={"processed_at": timezone.now()})

    def purge_expired(self) -> int:
        deleted, _ = ProcessedWebhook.objects.filter(processed_at__lt=self._cutoff()).delete()
        if deleted:
            logger.info("Purged %s expired webhook keys", deleted)
        return deleted
