import datetime
import hashlib
import hmac
import json
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.conf import settings
from django.core.management import call_command
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from bkash.exceptions import TransportError
from bkash.mock import MockGatewayClient
from orders.models import Order, StatusEntry
from orders.services import PaymentStateMachine

from .dedup import WebhookDedupStore, bkash_event_key
from .models import ProcessedWebhook
from .verification import verify_hmac_signature


class BkashWebhookTests(TestCase):
    def setUp(self):
        self.gateway = MockGatewayClient(frontend_url="https://shop.example.com")
        patcher = patch("webhooks.views.get_gateway", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.machine = PaymentStateMachine(self.gateway)
        self.order = Order.objects.create(total_amount=Decimal("500.00"))
        self.created = self.machine.create_session(self.order.pk)

    def _post(self, payload, **headers):
        return self.client.post(
            reverse("webhooks:bkash"),
            data=json.dumps(payload),
            content_type="application/json",
            **headers,
        )

    def _completed_payload(self):
        return {
            "paymentID": self.created.payment_id,
            "trxID": "TRX1",
            "transactionStatus": "Completed",
            "amount": "500.00",
        }

    def test_webhook_completes_order_when_callback_was_lost(self):
        # customer paid but the browser never came back
        self.gateway.execute_payment(self.created.payment_id)

        resp = self._post(self._completed_payload())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"received": True})
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.COMPLETED)
        self.assertEqual(self.order.details.source, "webhook")
        self.assertTrue(ProcessedWebhook.objects.filter(key=f"bkash_{self.created.payment_id}_Completed").exists())

    def test_webhook_after_callback_completion_is_suppressed(self):
        self.machine.execute(self.order.pk, self.created.payment_id, source="callback")

        first = self._post(self._completed_payload())
        second = self._post(self._completed_payload())

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json(), {"received": True, "duplicate": True})
        self.assertEqual(self.order.status_history.filter(kind=StatusEntry.COMPLETED).count(), 1)

    def test_forged_completed_status_is_not_trusted(self):
        resp = self._post(self._completed_payload())

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PENDING)
        self.assertFalse(self.order.executed)
        self.assertFalse(ProcessedWebhook.objects.exists())

    def test_cancelled_webhook_cancels_pending_order(self):
        self.gateway.cancel_payment(self.created.payment_id)

        resp = self._post({"paymentID": self.created.payment_id, "transactionStatus": "Cancelled"})

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.CANCELLED)

    def test_missing_payment_id(self):
        resp = self._post({"transactionStatus": "Completed"})
        self.assertEqual(resp.status_code, 400)

    def test_invalid_json(self):
        resp = self.client.post(reverse("webhooks:bkash"), data="{not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(reverse("webhooks:bkash")).status_code, 405)

    def test_unknown_payment_id(self):
        resp = self._post({"paymentID": "NOPE", "transactionStatus": "Completed"})
        self.assertEqual(resp.status_code, 404)

    def test_verification_outage_returns_503_and_allows_redelivery(self):
        self.gateway.execute_payment(self.created.payment_id)
        with patch.object(self.gateway, "query_payment", side_effect=TransportError("down")):
            resp = self._post(self._completed_payload())

        self.assertEqual(resp.status_code, 503)
        self.assertFalse(ProcessedWebhook.objects.exists())

        retry = self._post(self._completed_payload())
        self.assertEqual(retry.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.COMPLETED)

    def test_signature_required_when_secret_configured(self):
        self.gateway.execute_payment(self.created.payment_id)
        body = json.dumps(self._completed_payload()).encode()
        good = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        with self.settings(BKASH={**settings.BKASH, "WEBHOOK_SECRET": "s3cret"}):
            unsigned = self.client.post(reverse("webhooks:bkash"), data=body, content_type="application/json")
            forged = self.client.post(
                reverse("webhooks:bkash"), data=body, content_type="application/json",
                HTTP_X_BKASH_SIGNATURE="0" * 64,
            )
            signed = self.client.post(
                reverse("webhooks:bkash"), data=body, content_type="application/json",
                HTTP_X_BKASH_SIGNATURE=good,
            )

        self.assertEqual(unsigned.status_code, 401)
        self.assertEqual(forged.status_code, 401)
        self.assertEqual(signed.status_code, 200)


class WebhookDedupStoreTests(TestCase):
    def test_mark_and_check(self):
        store = WebhookDedupStore(ttl_seconds=60)
        key = bkash_event_key("PAY1", "Completed")

        self.assertFalse(store.is_processed(key))
        store.mark_processed(key)
        store.mark_processed(key)

        self.assertTrue(store.is_processed(key))
        self.assertEqual(ProcessedWebhook.objects.count(), 1)

    def test_expired_keys_count_as_unseen_and_are_purged(self):
        store = WebhookDedupStore(ttl_seconds=60)
        store.mark_processed("old")
        store.mark_processed("fresh")
        ProcessedWebhook.objects.filter(key="old").update(
            processed_at=timezone.now() - datetime.timedelta(minutes=5)
        )

        self.assertFalse(store.is_processed("old"))
        self.assertEqual(store.purge_expired(), 1)
        self.assertEqual(list(ProcessedWebhook.objects.values_list("key", flat=True)), ["fresh"])

    def test_purge_command(self):
        ProcessedWebhook.objects.create(key="old", processed_at=timezone.now() - datetime.timedelta(days=2))
        out = StringIO()

        call_command("purge_webhook_keys", stdout=out)

        self.assertIn("Purged 1 webhook keys.", out.getvalue())
        self.assertFalse(ProcessedWebhook.objects.exists())


class SignatureTests(TestCase):
    def test_verify_hmac_signature(self):
        body = b'{"paymentID":"P"}'
        sig = hmac.new(b"k", body, hashlib.sha256).hexdigest()

        self.assertTrue(verify_hmac_signature(body, sig, "k"))
        self.assertFalse(verify_hmac_signature(body, sig, "other"))
        self.assertFalse(verify_hmac_signature(body, "", "k"))
        self.assertFalse(verify_hmac_signature(body, sig, ""))
