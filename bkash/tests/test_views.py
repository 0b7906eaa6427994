import datetime
import json
from decimal import Decimal
from io import StringIO
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from bkash.exceptions import GatewayBusinessError
from bkash.mock import MockGatewayClient
from catalog.models import Product
from orders.models import Order, OrderItem, StatusEntry
from orders.services import PaymentStateMachine


class BkashViewTestCase(TestCase):
    def setUp(self):
        self.gateway = MockGatewayClient(frontend_url="https://shop.example.com")
        patcher = patch("bkash.views.get_gateway", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.product = Product.objects.create(name="Hilsa", sku="HLS-1", price=Decimal("250.00"), stock=8)
        self.order = Order.objects.create(total_amount=Decimal("500.00"))
        OrderItem.objects.create(order=self.order, product=self.product, quantity=2, price=Decimal("250.00"))

    def _create(self, order_id=None):
        return self.client.post(
            reverse("bkash:create_payment"),
            data=json.dumps({"order_id": order_id or self.order.pk}),
            content_type="application/json",
        )

    def _callback(self, payment_id, status):
        return self.client.get(reverse("bkash:callback"), {"paymentID": payment_id, "status": status})

    def _redirect_params(self, resp):
        self.assertEqual(resp.status_code, 302)
        url = urlsplit(resp["Location"])
        self.assertEqual(f"{url.scheme}://{url.netloc}{url.path}", "https://shop.example.com/checkout/bkash-result")
        return {k: v[0] for k, v in parse_qs(url.query).items()}


class CreatePaymentViewTests(BkashViewTestCase):
    def test_create_payment(self):
        resp = self._create()

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["ok"])
        self.assertTrue(data["paymentID"].startswith("MOCK-PAY-"))
        self.assertIn("/_mock/bkash?", data["redirectURL"])
        self.assertEqual(data["amount"], "500.00")
        self.order.refresh_from_db()
        self.assertEqual(self.order.gateway_payment_id, data["paymentID"])

    def test_missing_order_id(self):
        resp = self.client.post(reverse("bkash:create_payment"), data="{}", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_unknown_order(self):
        self.assertEqual(self._create(order_id=987654).status_code, 404)

    def test_paid_order_conflicts(self):
        payment_id = self._create().json()["paymentID"]
        self._callback(payment_id, "success")

        resp = self._create()

        self.assertEqual(resp.status_code, 409)
        self.assertFalse(resp.json()["ok"])

    def test_gateway_rejection(self):
        with patch.object(self.gateway, "create_payment", side_effect=GatewayBusinessError("rejected", status_code="2001")):
            resp = self._create()
        self.assertEqual(resp.status_code, 400)

    def test_not_configured(self):
        cfg = {**settings.BKASH, "MOCK": False, "ENABLED": False}
        with self.settings(BKASH=cfg):
            resp = self._create()
        self.assertEqual(resp.status_code, 503)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(reverse("bkash:create_payment")).status_code, 405)


class CallbackViewTests(BkashViewTestCase):
    def test_success_redirect(self):
        payment_id = self._create().json()["paymentID"]

        params = self._redirect_params(self._callback(payment_id, "success"))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.COMPLETED)
        self.assertEqual(self.order.order_status, "processing")
        self.assertEqual(params["status"], "success")
        self.assertEqual(params["orderId"], str(self.order.pk))
        self.assertEqual(params["trxID"], self.order.gateway_trx_id)
        self.assertEqual(params["amount"], "500.00")

    def test_duplicate_success_callback(self):
        payment_id = self._create().json()["paymentID"]
        self._callback(payment_id, "success")

        params = self._redirect_params(self._callback(payment_id, "success"))

        self.assertEqual(params["status"], "success")
        self.assertEqual(self.order.status_history.filter(kind=StatusEntry.COMPLETED).count(), 1)

    def test_cancel_then_retry(self):
        payment_id = self._create().json()["paymentID"]

        params = self._redirect_params(self._callback(payment_id, "cancel"))

        self.assertEqual(params["status"], "cancelled")
        self.order.refresh_from_db()
        self.product.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.CANCELLED)
        self.assertEqual(self.product.stock, 10)

        retry = self._create()

        self.assertEqual(retry.status_code, 200)
        self.order.refresh_from_db()
        self.product.refresh_from_db()
        self.assertEqual(self.order.payment_attempts, 2)
        self.assertEqual(self.order.gateway_payment_id, retry.json()["paymentID"])
        self.assertEqual(self.product.stock, 8)

    def test_failure_status(self):
        payment_id = self._create().json()["paymentID"]

        params = self._redirect_params(self._callback(payment_id, "failure"))

        self.assertEqual(params["status"], "failed")
        self.assertEqual(params["message"], "Payment failure")

    def test_unknown_payment_id(self):
        params = self._redirect_params(self._callback("NOPE", "success"))
        self.assertEqual(params["status"], "error")

    def test_missing_payment_id(self):
        params = self._redirect_params(self.client.get(reverse("bkash:callback")))
        self.assertEqual(params["status"], "error")

    def test_unexpected_error_still_redirects(self):
        payment_id = self._create().json()["paymentID"]

        with patch.object(self.gateway, "execute_payment", side_effect=RuntimeError("boom")):
            params = self._redirect_params(self._callback(payment_id, "success"))

        self.assertEqual(params["status"], "error")


class PaymentStatusViewTests(BkashViewTestCase):
    def test_without_session(self):
        resp = self.client.get(reverse("bkash:payment_status", args=[self.order.pk]))

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["paymentStatus"], Order.PENDING)
        self.assertNotIn("bkashStatus", data)

    def test_with_session_records_snapshot_only(self):
        payment_id = self._create().json()["paymentID"]
        self.gateway.execute_payment(payment_id)

        data = self.client.get(reverse("bkash:payment_status", args=[self.order.pk])).json()

        self.assertEqual(data["bkashStatus"], "Completed")
        self.assertEqual(data["bkashDetails"]["paymentID"], payment_id)
        self.assertEqual(data["bkashDetails"]["amount"], "500.00")
        self.assertEqual(data["paymentStatus"], Order.PENDING)
        self.order.refresh_from_db()
        self.assertEqual(self.order.last_gateway_payload["transactionStatus"], "Completed")

    def test_unknown_order(self):
        resp = self.client.get(reverse("bkash:payment_status", args=[987654]))
        self.assertEqual(resp.status_code, 404)


class RefundViewTests(BkashViewTestCase):
    def _refund(self, **body):
        return self.client.post(
            reverse("bkash:refund"),
            data=json.dumps({"order_id": self.order.pk, **body}),
            content_type="application/json",
        )

    def _pay(self):
        payment_id = self._create().json()["paymentID"]
        self._callback(payment_id, "success")

    def test_requires_staff(self):
        self._pay()
        self.assertEqual(self._refund().status_code, 403)

        user = get_user_model().objects.create_user("clerk", password="pw")
        self.client.force_login(user)
        self.assertEqual(self._refund().status_code, 403)

    def test_staff_refund(self):
        self._pay()
        admin = get_user_model().objects.create_user("admin", password="pw", is_staff=True)
        self.client.force_login(admin)

        resp = self._refund(reason="Out of stock")

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["refundTrxID"].startswith("MOCK-REFUND-"))
        self.assertEqual(data["amount"], "500.00")
        self.assertEqual(data["orderId"], self.order.pk)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.REFUNDED)

    def test_refund_of_unpaid_order(self):
        admin = get_user_model().objects.create_user("admin", password="pw", is_staff=True)
        self.client.force_login(admin)

        self.assertEqual(self._refund().status_code, 400)


@patch("bkash.management.commands.reconcile_bkash_orders.get_gateway")
class ReconcileCommandTests(TestCase):
    def setUp(self):
        self.gateway = MockGatewayClient(frontend_url="https://shop.example.com")
        self.machine = PaymentStateMachine(self.gateway)

    def _stale_order(self):
        order = Order.objects.create(total_amount=Decimal("120.00"))
        created = self.machine.create_session(order.pk)
        Order.objects.filter(pk=order.pk).update(updated_at=timezone.now() - datetime.timedelta(minutes=10))
        return order, created.payment_id

    def test_completes_paid_orders_and_leaves_open_ones(self, get_gateway):
        get_gateway.return_value = self.gateway
        paid, paid_id = self._stale_order()
        waiting, _ = self._stale_order()
        self.gateway.execute_payment(paid_id)
        out = StringIO()

        call_command("reconcile_bkash_orders", sleep=0, stdout=out)

        paid.refresh_from_db()
        waiting.refresh_from_db()
        self.assertEqual(paid.payment_status, Order.COMPLETED)
        self.assertEqual(paid.details.source, "poll")
        self.assertEqual(waiting.payment_status, Order.PENDING)
        self.assertIn("Checked 2, updated 1 orders.", out.getvalue())

    def test_nothing_to_do(self, get_gateway):
        get_gateway.return_value = self.gateway
        Order.objects.create(total_amount=Decimal("50.00"))
        out = StringIO()

        call_command("reconcile_bkash_orders", sleep=0, stdout=out)

        self.assertIn("No pending orders to reconcile.", out.getvalue())
