"""In-memory stand-in for the bKash gateway (``BKASH["MOCK"] = True``).

Behaves like the sandbox closely enough to drive every reconciliation path
locally: a session completes once, a second execute answers "already
completed", and query reflects whatever execute did.
"""
import logging
import threading
import uuid
from urllib.parse import urlencode

from django.utils import timezone

from .client import CreatedPayment, GatewayClient, PaymentResult, RefundReceipt, SUCCESS_CODE
from .exceptions import GatewayBusinessError
from .utils import format_amount, parse_amount

logger = logging.getLogger(__name__)


def _suffix():
    return uuid.uuid4().hex[:12].upper()


class MockGatewayClient(GatewayClient):
    def __init__(self, frontend_url="http://localhost:3000", callback_url=""):
        self.frontend_url = frontend_url.rstrip("/")
        self.callback_url = callback_url
        self.sessions = {}
        self._lock = threading.Lock()

    def create_payment(self, amount, order_ref, payer_ref=""):
        payment_id = f"MOCK-PAY-{_suffix()}"
        amount_str = format_amount(amount)
        now = timezone.now().isoformat()
        redirect_url = f"{self.frontend_url}/_mock/bkash?" + urlencode({"paymentID": payment_id, "amount": amount_str})
        raw = {
            "statusCode": SUCCESS_CODE,
            "statusMessage": "Successful (mock)",
            "paymentID": payment_id,
            "bkashURL": redirect_url,
            "callbackURL": self.callback_url,
            "amount": amount_str,
            "intent": "sale",
            "currency": "BDT",
            "paymentCreateTime": now,
            "transactionStatus": "Initiated",
            "merchantInvoiceNumber": order_ref,
        }
        with self._lock:
            self.sessions[payment_id] = {"amount": amount_str, "status": "Initiated", "trx_id": "", "order_ref": order_ref}
        logger.info("bKash[mock] create payment order_ref=%s amount=%s paymentID=%s", order_ref, amount_str, payment_id)
        return CreatedPayment(payment_id=payment_id, redirect_url=redirect_url, amount=parse_amount(amount_str),
                              create_time=now, raw=raw)

    def execute_payment(self, payment_id):
        with self._lock:
            session = self.sessions.get(payment_id)
            if session is None:
                data = {"statusCode": "2056", "statusMessage": "Invalid Payment State (mock)", "paymentID": payment_id}
            elif session["status"] == "Completed":
                data = {"statusCode": "2062", "statusMessage": "The payment has already been completed (mock)",
                        "paymentID": payment_id}
            elif session["status"] != "Initiated":
                data = {"statusCode": "2056", "statusMessage": "Invalid Payment State (mock)",
                        "paymentID": payment_id, "transactionStatus": session["status"]}
            else:
                session["status"] = "Completed"
                session["trx_id"] = f"MOCK-TRX-{_suffix()}"
                data = {
                    "statusCode": SUCCESS_CODE,
                    "statusMessage": "Successful (mock execute)",
                    "paymentID": payment_id,
                    "trxID": session["trx_id"],
                    "transactionStatus": "Completed",
                    "amount": session["amount"],
                    "currency": "BDT",
                    "intent": "sale",
                    "paymentExecuteTime": timezone.now().isoformat(),
                    "merchantInvoiceNumber": session["order_ref"],
                    "customerMsisdn": "01770618575",
                }
        logger.info("bKash[mock] execute payment paymentID=%s statusCode=%s", payment_id, data["statusCode"])
        return PaymentResult.from_response(payment_id, data)

    def query_payment(self, payment_id):
        with self._lock:
            session = self.sessions.get(payment_id)
            if session is None:
                data = {"statusCode": "2023", "statusMessage": "Invalid Payment ID (mock)", "paymentID": payment_id}
            else:
                data = {
                    "statusCode": SUCCESS_CODE,
                    "statusMessage": "Successful (mock query)",
                    "paymentID": payment_id,
                    "trxID": session["trx_id"],
                    "transactionStatus": session["status"],
                    "amount": session["amount"],
                    "currency": "BDT",
                    "merchantInvoiceNumber": session["order_ref"],
                }
        logger.info("bKash[mock] query payment paymentID=%s transactionStatus=%s", payment_id, data.get("transactionStatus"))
        return PaymentResult.from_response(payment_id, data)

    def cancel_payment(self, payment_id, status="Cancelled"):
        """Simulate the customer abandoning (or failing) the session on the bKash page."""
        with self._lock:
            self.sessions[payment_id]["status"] = status

    def refund_payment(self, payment_id, trx_id, amount, reason="Customer refund"):
        with self._lock:
            session = self.sessions.get(payment_id)
            if session is None or session["status"] != "Completed":
                raise GatewayBusinessError("bKash refund failed: payment not completed (mock)", status_code="2071")
            session["status"] = "Refunded"
        data = {
            "statusCode": SUCCESS_CODE,
            "statusMessage": "Successful (mock refund)",
            "originalTrxID": trx_id,
            "refundTrxID": f"MOCK-REFUND-{_suffix()}",
            "transactionStatus": "Completed",
            "amount": format_amount(amount),
            "currency": "BDT",
            "completedTime": timezone.now().isoformat(),
        }
        logger.info("bKash[mock] refund payment paymentID=%s trxID=%s amount=%s", payment_id, trx_id, data["amount"])
        return RefundReceipt(refund_trx_id=data["refundTrxID"], original_trx_id=trx_id,
                             amount=parse_amount(data["amount"]), status=data["transactionStatus"], raw=data)
