from django.core.management.base import BaseCommand

from webhooks.dedup import WebhookDedupStore


class Command(BaseCommand):
    help = "Delete processed-webhook keys older than the dedup TTL"

    def add_arguments(self, parser):
        parser.add_argument("--ttl-seconds", type=int, default=None, help="Override BKASH['DEDUP_TTL_SECONDS']")

    def handle(self, *args, **opts):
        deleted = WebhookDedupStore(ttl_seconds=opts["ttl_seconds"]).purge_expired()
        self.stdout.write(self.style.SUCCESS(f"Purged {deleted} webhook keys."))
