from decimal import Decimal
from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase

from bkash.client import BkashGatewayClient, PaymentResult
from bkash.exceptions import GatewayBusinessError, TransportError
from bkash.utils import amounts_match, format_amount, parse_amount


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class GatewayClientTests(SimpleTestCase):
    def setUp(self):
        self.session = MagicMock()
        self.tokens = MagicMock()
        self.tokens.get_valid_token.return_value = "id-token"
        self.client = BkashGatewayClient(
            base_url="https://bkash.example.com",
            app_key="key",
            callback_url="https://api.example.com/api/bkash/callback",
            token_manager=self.tokens,
            session=self.session,
            timeout=5,
        )

    def test_create_payment_sends_two_decimal_amount(self):
        self.session.post.return_value = _response({
            "statusCode": "0000",
            "paymentID": "PAY1",
            "bkashURL": "https://pay.example.com/PAY1",
            "amount": "500.00",
            "paymentCreateTime": "2024-01-01T10:00:00",
        })

        created = self.client.create_payment(Decimal("500"), "42", "order-42")

        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://bkash.example.com/tokenized/checkout/create")
        self.assertEqual(kwargs["json"]["amount"], "500.00")
        self.assertEqual(kwargs["json"]["mode"], "0011")
        self.assertEqual(kwargs["json"]["merchantInvoiceNumber"], "42")
        self.assertEqual(kwargs["headers"]["Authorization"], "id-token")
        self.assertEqual(kwargs["headers"]["X-APP-Key"], "key")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(created.payment_id, "PAY1")
        self.assertEqual(created.redirect_url, "https://pay.example.com/PAY1")
        self.assertEqual(created.amount, Decimal("500.00"))

    def test_create_payment_non_success_code_raises(self):
        self.session.post.return_value = _response({"statusCode": "2001", "statusMessage": "Invalid App Key"})

        with self.assertRaises(GatewayBusinessError) as ctx:
            self.client.create_payment(Decimal("10"), "1")
        self.assertEqual(ctx.exception.status_code, "2001")

    def test_create_payment_missing_redirect_url_raises(self):
        self.session.post.return_value = _response({"statusCode": "0000", "paymentID": "PAY1"})

        with self.assertRaises(GatewayBusinessError):
            self.client.create_payment(Decimal("10"), "1")

    def test_execute_non_success_is_returned_not_raised(self):
        self.session.post.return_value = _response({
            "statusCode": "2014", "statusMessage": "Insufficient Balance", "paymentID": "PAY1",
        })

        result = self.client.execute_payment("PAY1")

        self.assertFalse(result.is_completed)
        self.assertEqual(result.status_code, "2014")
        self.assertEqual(result.status_message, "Insufficient Balance")

    def test_execute_already_executed_codes(self):
        for code in ("2062", "2117"):
            self.session.post.return_value = _response({"statusCode": code, "paymentID": "PAY1"})
            self.assertTrue(self.client.execute_payment("PAY1").already_executed)

    def test_execute_timeout_raises_transport_error(self):
        self.session.post.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(TransportError):
            self.client.execute_payment("PAY1")

    def test_non_json_body_raises_transport_error(self):
        resp = MagicMock()
        resp.raise_for_status.return_value = None
        resp.json.side_effect = ValueError("no json")
        self.session.post.return_value = resp

        with self.assertRaises(TransportError):
            self.client.query_payment("PAY1")

    def test_query_completed(self):
        self.session.post.return_value = _response({
            "statusCode": "0000", "paymentID": "PAY1", "trxID": "TRX1",
            "transactionStatus": "Completed", "amount": "99.99",
        })

        result = self.client.query_payment("PAY1")

        self.assertTrue(result.is_completed)
        self.assertEqual(result.trx_id, "TRX1")
        self.assertEqual(result.amount, Decimal("99.99"))
        self.assertTrue(self.session.post.call_args[0][0].endswith("/tokenized/checkout/payment/status"))

    def test_refund_failure_raises(self):
        self.session.post.return_value = _response({"statusCode": "2071", "statusMessage": "Refund not allowed"})

        with self.assertRaises(GatewayBusinessError):
            self.client.refund_payment("PAY1", "TRX1", Decimal("10"))

    def test_refund_success(self):
        self.session.post.return_value = _response({
            "statusCode": "0000", "refundTrxID": "RF1", "originalTrxID": "TRX1",
            "amount": "10.00", "transactionStatus": "Completed",
        })

        receipt = self.client.refund_payment("PAY1", "TRX1", Decimal("10"), "damaged")

        self.assertEqual(receipt.refund_trx_id, "RF1")
        self.assertEqual(receipt.amount, Decimal("10.00"))
        self.assertEqual(self.session.post.call_args[1]["json"]["sku"], "refund")


class PaymentResultTests(SimpleTestCase):
    def test_completed_requires_success_code(self):
        result = PaymentResult.from_response("P", {"statusCode": "2056", "transactionStatus": "Completed"})
        self.assertFalse(result.is_completed)

    def test_payment_id_falls_back_to_request(self):
        self.assertEqual(PaymentResult.from_response("P", {}).payment_id, "P")


class AmountHelperTests(SimpleTestCase):
    def test_format_amount(self):
        self.assertEqual(format_amount(Decimal("500")), "500.00")
        self.assertEqual(format_amount("99.999"), "100.00")
        self.assertEqual(format_amount(12.5), "12.50")
        with self.assertRaises(ValueError):
            format_amount("abc")

    def test_parse_amount(self):
        self.assertEqual(parse_amount("10.50"), Decimal("10.50"))
        self.assertIsNone(parse_amount(""))
        self.assertIsNone(parse_amount("n/a"))

    def test_amounts_match_within_one_paisa(self):
        self.assertTrue(amounts_match("99.99", Decimal("100.00")))
        self.assertFalse(amounts_match("90.00", Decimal("100.00")))
