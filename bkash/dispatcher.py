"""Entry points through which bKash tells us about a payment.

Three channels race to report the same outcome: the browser redirect
callback, the server-to-server webhook and an explicit status query. None of
them locks anything itself; they normalise what they learned into
``PaymentEvidence`` and let ``PaymentStateMachine`` decide. Only the webhook
can legitimately redeliver an identical payload, so only it consults the
dedup store.
"""
import dataclasses
import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from orders.models import Order
from orders.payment_details import PaymentExecuted
from orders.services import PaymentEvidence, PaymentStateMachine, get_order, get_order_by_payment_id
from orders.exceptions import NotFoundError
from webhooks.dedup import WebhookDedupStore, bkash_event_key
from webhooks.exceptions import InvalidWebhook

from .gateway import get_gateway
from .utils import format_amount, parse_amount

logger = logging.getLogger(__name__)

FAILED_STATUSES = ("Cancelled", "Failed")


@dataclass(frozen=True)
class RedirectTarget:
    status: str  # success | failed | cancelled | error
    order_id: int | None = None
    trx_id: str = ""
    amount: str = ""
    message: str = ""

    def url(self, frontend_url: str) -> str:
        params = {"status": self.status}
        if self.order_id is not None:
            params["orderId"] = self.order_id
        if self.trx_id:
            params["trxID"] = self.trx_id
        if self.amount:
            params["amount"] = self.amount
        if self.message:
            params["message"] = self.message
        return f"{frontend_url.rstrip('/')}/checkout/bkash-result?{urlencode(params)}"


@dataclass(frozen=True)
class WebhookAck:
    received: bool = True
    duplicate: bool = False
    status: str = ""

    def as_dict(self) -> dict:
        data = {"received": self.received}
        if self.duplicate:
            data["duplicate"] = True
        return data


def redirect_target_for(order: Order) -> RedirectTarget:
    """Where the customer lands, judged by the order's state after reconciliation."""
    if order.executed and order.payment_status == Order.COMPLETED:
        details = order.details
        paid = details.amount if isinstance(details, PaymentExecuted) and details.amount is not None else order.total_amount
        return RedirectTarget("success", order.pk, order.gateway_trx_id, format_amount(paid))
    if order.payment_status == Order.CANCELLED:
        return RedirectTarget("cancelled", order.pk)
    if order.payment_status == Order.FAILED:
        details = order.details
        return RedirectTarget("failed", order.pk, message=getattr(details, "reason", "") or "Payment not completed")
    if order.payment_status == Order.REFUNDED:
        return RedirectTarget("failed", order.pk, message="Payment has been refunded")
    return RedirectTarget("error", order.pk, message="Payment is still pending")


class ReconciliationDispatcher:
    def __init__(self, machine=None, dedup=None):
        self.machine = machine or PaymentStateMachine(get_gateway())
        self.dedup = dedup or WebhookDedupStore()

    @property
    def gateway(self):
        return self.machine.gateway

    # ---------- checkout ----------
    def create_payment_session(self, order_id) -> dict:
        created = self.machine.create_session(order_id)
        amount = created.amount if created.amount is not None else get_order(order_id).total_amount
        return {
            "paymentID": created.payment_id,
            "redirectURL": created.redirect_url,
            "amount": format_amount(amount),
        }

    # ---------- channel 1: browser redirect ----------
    def handle_redirect_callback(self, payment_id: str, status: str) -> RedirectTarget:
        logger.info("bKash callback received paymentID=%s status=%s", payment_id, status)
        if not payment_id:
            return RedirectTarget("error", message="Missing payment ID")
        try:
            order = get_order_by_payment_id(payment_id)
        except NotFoundError:
            logger.error("bKash callback: order not found paymentID=%s", payment_id)
            return RedirectTarget("error", message="Order not found")

        status = (status or "").strip()
        if status == "success":
            if order.executed and order.payment_status == Order.COMPLETED:
                logger.warning(
                    "Duplicate callback, already executed order_id=%s paymentID=%s trxID=%s",
                    order.pk, payment_id, order.gateway_trx_id,
                )
                return redirect_target_for(order)
            order = self.machine.execute(order.pk, payment_id, source="callback")
        elif status == "cancel":
            order = self.machine.confirm_failure_or_cancel(
                order.pk,
                PaymentEvidence(payment_id=payment_id, source="callback", transaction_status="Cancelled"),
                cancelled=True,
                reason="Payment cancelled by user",
            )
        else:
            order = self.machine.confirm_failure_or_cancel(
                order.pk,
                PaymentEvidence(payment_id=payment_id, source="callback", transaction_status=status),
                reason=f"Payment {status or 'unknown'}",
            )
        return redirect_target_for(order)

    # ---------- channel 2: webhook ----------
    def handle_webhook(self, payment_id: str, trx_id="", transaction_status="", amount=None) -> WebhookAck:
        if not payment_id:
            raise InvalidWebhook("Missing paymentID")

        key = bkash_event_key(payment_id, transaction_status)
        if self.dedup.is_processed(key):
            logger.info("bKash webhook already processed key=%s", key)
            return WebhookAck(duplicate=True)

        order = get_order_by_payment_id(payment_id)
        logger.info(
            "bKash webhook processing order_id=%s paymentID=%s transactionStatus=%s payment_status=%s",
            order.pk, payment_id, transaction_status, order.payment_status,
        )

        # the payload is only a hint; the query answer is what we act on
        verified = self.gateway.query_payment(payment_id)
        if transaction_status and verified.status != transaction_status:
            logger.warning(
                "bKash webhook status not confirmed by query order_id=%s paymentID=%s claimed=%s verified=%s",
                order.pk, payment_id, transaction_status, verified.status,
            )
        self._apply_verified(order, verified, "webhook", trx_hint=trx_id, amount_hint=amount)

        # an unconfirmed claim must not shadow the genuine notice that may follow
        if not transaction_status or verified.status == transaction_status:
            self.dedup.mark_processed(key)
        return WebhookAck(status=verified.status)

    # ---------- channel 3: explicit query ----------
    def get_payment_status(self, order_id) -> dict:
        order = get_order(order_id)
        response = {
            "orderId": order.pk,
            "paymentStatus": order.payment_status,
            "paymentDetails": order.payment_details,
        }
        if not order.gateway_payment_id:
            return response

        result = self.gateway.query_payment(order.gateway_payment_id)
        order = self.machine.record_snapshot(order.pk, result.raw)
        response.update({
            "paymentStatus": order.payment_status,
            "bkashStatus": result.status,
            "bkashDetails": {
                "paymentID": result.payment_id,
                "trxID": result.trx_id,
                "amount": format_amount(result.amount) if result.amount is not None else "",
                "completedTime": result.event_time,
            },
        })
        return response

    def reconcile_order(self, order_id) -> Order:
        """Query the gateway and let the answer drive the state machine."""
        order = get_order(order_id)
        if not order.gateway_payment_id or order.executed:
            return order
        result = self.gateway.query_payment(order.gateway_payment_id)
        return self._apply_verified(order, result, "poll")

    def refund(self, order_id, amount=None, reason="") -> dict:
        receipt = self.machine.refund(order_id, amount=amount, reason=reason)
        return {
            "orderId": int(order_id),
            "refundTrxID": receipt.refund_trx_id,
            "amount": format_amount(receipt.amount),
        }

    def _apply_verified(self, order, result, source, trx_hint="", amount_hint=None) -> Order:
        evidence = PaymentEvidence.from_result(result, source)
        if not evidence.trx_id and trx_hint:
            evidence = dataclasses.replace(evidence, trx_id=trx_hint)
        if evidence.amount is None and amount_hint not in (None, ""):
            evidence = dataclasses.replace(evidence, amount=parse_amount(amount_hint))

        if result.is_completed:
            return self.machine.confirm_completion(order.pk, evidence)
        if result.status in FAILED_STATUSES:
            return self.machine.confirm_failure_or_cancel(
                order.pk, evidence,
                cancelled=result.status == "Cancelled",
                reason=f"{result.status} via {source}",
            )
        logger.info(
            "bKash %s: no transition order_id=%s paymentID=%s transactionStatus=%s",
            source, order.pk, result.payment_id, result.status or "UNKNOWN",
        )
        return self.machine.record_snapshot(order.pk, result.raw)
