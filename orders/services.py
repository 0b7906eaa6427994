"""Payment state machine for bKash orders.

Every transition re-reads the order under ``select_for_update`` inside one
transaction, checks its precondition against that fresh row and writes in the
same transaction. Callback, webhook and poll can therefore race on one order
without two of them applying conflicting terminal states.

    no session -> pending
    pending    -> completed | failed | cancelled
    failed / cancelled -> pending   (retry, new paymentID)
    completed  -> refunded

Stock compensation runs after the transition has committed and never undoes it.
"""
import dataclasses
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from bkash.exceptions import AuthenticationError, TransportError
from bkash.utils import amounts_match, parse_amount

from .exceptions import AmountValidationError, NotFoundError, PaymentNotAllowed
from .models import Order, StatusEntry
from .payment_details import PaymentExecuted, PaymentFailed, PaymentRefunded, SessionCreated, dump_details
from .stock import reserve_stock, restore_stock

logger = logging.getLogger(__name__)

UNREACHABLE = (TransportError, AuthenticationError)


@dataclass(frozen=True)
class PaymentEvidence:
    """What one channel learned about a payment session."""

    payment_id: str
    trx_id: str = ""
    amount: Decimal | None = None
    source: str = ""
    transaction_status: str = ""
    status_message: str = ""
    customer_msisdn: str = ""
    event_time: str = ""
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_result(cls, result, source: str) -> "PaymentEvidence":
        return cls(
            payment_id=result.payment_id,
            trx_id=result.trx_id,
            amount=result.amount,
            source=source,
            transaction_status=result.status,
            status_message=result.status_message,
            customer_msisdn=result.customer_msisdn,
            event_time=result.event_time,
            raw=result.raw,
        )


def check_amount(paid, expected):
    if paid is None or not amounts_match(paid, expected):
        raise AmountValidationError(paid, expected)


def get_order(order_id) -> Order:
    try:
        return Order.objects.get(pk=order_id)
    except (Order.DoesNotExist, ValueError):
        raise NotFoundError(f"Order {order_id} not found")


def get_order_by_payment_id(payment_id: str) -> Order:
    order = Order.objects.filter(gateway_payment_id=payment_id).first() if payment_id else None
    if order is None:
        raise NotFoundError(f"No order for paymentID {payment_id}")
    return order


class PaymentStateMachine:
    def __init__(self, gateway, compensate=restore_stock, reserve=reserve_stock):
        self.gateway = gateway
        self.compensate = compensate
        self.reserve = reserve

    @staticmethod
    def _lock(order_id) -> Order:
        try:
            return Order.objects.select_for_update().get(pk=order_id)
        except (Order.DoesNotExist, ValueError):
            raise NotFoundError(f"Order {order_id} not found")

    # ---------- session ----------
    def create_session(self, order_id, amount=None):
        """Open a new bKash checkout session for the order and return the gateway's ``CreatedPayment``.

        The gateway call happens while the row is locked, so two concurrent
        checkouts for one order cannot both mint a session.
        """
        reserve_again = False
        with transaction.atomic():
            order = self._lock(order_id)
            if order.payment_method != Order.BKASH:
                raise PaymentNotAllowed("This order is not a bKash payment order")
            if order.executed:
                raise PaymentNotAllowed("This order has already been paid via bKash")
            if order.payment_status not in Order.RETRYABLE_STATUSES:
                raise PaymentNotAllowed(f"Order payment is already {order.payment_status}")

            amount = order.total_amount if amount is None else amount
            attempt = order.payment_attempts + 1
            logger.info("Creating bKash payment session order_id=%s amount=%s attempt=%s", order.pk, amount, attempt)

            created = self.gateway.create_payment(amount, str(order.pk), f"order-{order.pk}")

            order.gateway_payment_id = created.payment_id
            order.payment_status = Order.PENDING
            order.payment_attempts = attempt
            order.payment_details = dump_details(SessionCreated(
                payment_id=created.payment_id,
                amount=created.amount,
                create_time=created.create_time,
                attempt=attempt,
            ))
            order.last_gateway_payload = created.raw
            if order.stock_restored:
                order.stock_restored = False
                reserve_again = True
            order.save(update_fields=[
                "gateway_payment_id", "payment_status", "payment_attempts", "payment_details",
                "last_gateway_payload", "stock_restored", "updated_at",
            ])
            order.add_history(StatusEntry.SESSION, f"bKash session {created.payment_id} created (attempt {attempt})")

        if reserve_again:
            self.reserve(order)
        logger.info("bKash payment session created order_id=%s paymentID=%s attempt=%s", order.pk, created.payment_id, attempt)
        return created

    # ---------- completion ----------
    def confirm_completion(self, order_id, evidence: PaymentEvidence) -> Order:
        reserve_again = False
        with transaction.atomic():
            order = self._lock(order_id)
            if order.executed:
                logger.warning(
                    "Duplicate completion ignored order_id=%s paymentID=%s trxID=%s source=%s payment_status=%s",
                    order.pk, evidence.payment_id, evidence.trx_id, evidence.source, order.payment_status,
                )
                return order

            paid = evidence.amount
            try:
                check_amount(paid, order.total_amount)
            except AmountValidationError:
                logger.error(
                    "AMOUNT MISMATCH order_id=%s paymentID=%s trxID=%s paid=%s expected=%s source=%s",
                    order.pk, evidence.payment_id, evidence.trx_id, paid, order.total_amount, evidence.source,
                )
                order.add_history(
                    StatusEntry.AMOUNT_MISMATCH,
                    f"WARNING: Amount mismatch, needs review. Paid ৳{paid}, expected ৳{order.total_amount} "
                    f"(trxID {evidence.trx_id or 'N/A'}, via {evidence.source})",
                )

            # an older session was paid after a retry opened a new one; refund needs its pair
            if evidence.payment_id and evidence.payment_id != order.gateway_payment_id:
                logger.warning(
                    "Completion for superseded session order_id=%s paymentID=%s current_paymentID=%s trxID=%s",
                    order.pk, evidence.payment_id, order.gateway_payment_id, evidence.trx_id,
                )
                order.gateway_payment_id = evidence.payment_id

            order.payment_status = Order.COMPLETED
            order.order_status = "processing"
            order.executed = True
            order.gateway_trx_id = evidence.trx_id or order.gateway_trx_id
            order.payment_details = dump_details(PaymentExecuted(
                payment_id=evidence.payment_id or order.gateway_payment_id,
                trx_id=order.gateway_trx_id,
                amount=paid,
                transaction_status=evidence.transaction_status,
                customer_msisdn=evidence.customer_msisdn,
                execute_time=evidence.event_time,
                paid_at=timezone.now(),
                source=evidence.source,
            ))
            if evidence.raw:
                order.last_gateway_payload = evidence.raw
            # a late success after a failure notice: the goods are sold after all
            if order.stock_restored:
                order.stock_restored = False
                reserve_again = True
            order.save(update_fields=[
                "payment_status", "order_status", "executed", "gateway_payment_id", "gateway_trx_id",
                "payment_details", "last_gateway_payload", "stock_restored", "updated_at",
            ])
            order.add_history(
                StatusEntry.COMPLETED,
                f"bKash payment confirmed via {evidence.source}. TrxID: {order.gateway_trx_id or 'N/A'}, Amount: ৳{paid}",
            )

        if reserve_again:
            self.reserve(order)
        logger.info(
            "Payment COMPLETED order_id=%s paymentID=%s trxID=%s amount=%s source=%s",
            order.pk, evidence.payment_id, order.gateway_trx_id, paid, evidence.source,
        )
        return order

    # ---------- failure / cancel ----------
    def confirm_failure_or_cancel(self, order_id, evidence: PaymentEvidence, cancelled=False, reason="") -> Order:
        compensate = False
        with transaction.atomic():
            order = self._lock(order_id)
            if order.executed or order.payment_status not in (Order.PENDING, Order.FAILED):
                logger.info(
                    "Failure notice ignored order_id=%s paymentID=%s source=%s payment_status=%s",
                    order.pk, evidence.payment_id, evidence.source, order.payment_status,
                )
                return order
            if evidence.payment_id and order.gateway_payment_id and evidence.payment_id != order.gateway_payment_id:
                logger.info(
                    "Failure notice for superseded session ignored order_id=%s paymentID=%s current_paymentID=%s source=%s",
                    order.pk, evidence.payment_id, order.gateway_payment_id, evidence.source,
                )
                return order

            new_status = Order.CANCELLED if cancelled else Order.FAILED
            reason = reason or ("Payment cancelled by user" if cancelled else "Payment failed")
            order.payment_status = new_status
            order.payment_details = dump_details(PaymentFailed(
                payment_id=evidence.payment_id or order.gateway_payment_id,
                reason=reason,
                transaction_status=evidence.transaction_status,
                cancelled=cancelled,
                failed_at=timezone.now(),
            ))
            if evidence.raw:
                order.last_gateway_payload = evidence.raw
            if not order.stock_restored:
                order.stock_restored = True
                compensate = True
            order.save(update_fields=[
                "payment_status", "payment_details", "last_gateway_payload", "stock_restored", "updated_at",
            ])
            order.add_history(
                StatusEntry.CANCELLED if cancelled else StatusEntry.FAILED,
                f"bKash payment {new_status} via {evidence.source}: {reason}",
            )

        if compensate:
            self.compensate(order)
        logger.info(
            "Payment %s order_id=%s paymentID=%s source=%s transactionStatus=%s reason=%s",
            new_status.upper(), order.pk, evidence.payment_id, evidence.source, evidence.transaction_status, reason,
        )
        return order

    # ---------- execute with query fallback ----------
    def execute(self, order_id, payment_id: str, source="callback") -> Order:
        try:
            result = self.gateway.execute_payment(payment_id)
        except UNREACHABLE as e:
            logger.error("Execute payment ERROR order_id=%s paymentID=%s: %s", order_id, payment_id, e)
            return self._probe(order_id, payment_id, reason=f"bKash payment execution error: {e}")

        if result.is_completed:
            return self.confirm_completion(order_id, PaymentEvidence.from_result(result, source))
        if result.already_executed:
            logger.warning(
                "Execute says already executed order_id=%s paymentID=%s statusCode=%s, probing with query",
                order_id, payment_id, result.status_code,
            )
            return self._probe(order_id, payment_id, reason=result.status_message or "Payment already executed")

        message = result.status_message or "Payment execution failed"
        return self.confirm_failure_or_cancel(
            order_id,
            PaymentEvidence.from_result(result, source),
            reason=f"{message} (status: {result.status or 'n/a'})",
        )

    def _probe(self, order_id, payment_id: str, reason: str) -> Order:
        """Ask the gateway what really happened before calling the payment failed."""
        try:
            probe = self.gateway.query_payment(payment_id)
        except UNREACHABLE as e:
            logger.error("Query fallback also failed order_id=%s paymentID=%s: %s", order_id, payment_id, e)
            probe = None

        if probe is not None and probe.is_completed:
            logger.info(
                "Query reveals payment IS completed order_id=%s paymentID=%s trxID=%s",
                order_id, payment_id, probe.trx_id,
            )
            return self.confirm_completion(order_id, PaymentEvidence.from_result(probe, "query_fallback"))

        if probe is not None:
            evidence = PaymentEvidence.from_result(probe, "query_fallback")
        else:
            evidence = PaymentEvidence(payment_id=payment_id, source="query_fallback")
        return self.confirm_failure_or_cancel(order_id, evidence, reason=reason)

    # ---------- refund ----------
    def refund(self, order_id, amount=None, reason=""):
        compensate = False
        with transaction.atomic():
            order = self._lock(order_id)
            if order.payment_status != Order.COMPLETED:
                raise PaymentNotAllowed("Can only refund completed payments")
            if not order.gateway_payment_id or not order.gateway_trx_id:
                raise PaymentNotAllowed("No bKash payment found for this order")

            refund_amount = order.total_amount if amount in (None, "") else parse_amount(amount)
            if refund_amount is None or refund_amount <= 0 or refund_amount > order.total_amount:
                raise PaymentNotAllowed(f"Invalid refund amount {amount!r} for order total {order.total_amount}")
            reason = reason or "Admin initiated refund"

            logger.info(
                "Refund initiated order_id=%s paymentID=%s trxID=%s amount=%s reason=%s",
                order.pk, order.gateway_payment_id, order.gateway_trx_id, refund_amount, reason,
            )
            receipt = self.gateway.refund_payment(order.gateway_payment_id, order.gateway_trx_id, refund_amount, reason)
            if receipt.amount is None:
                receipt = dataclasses.replace(receipt, amount=refund_amount)

            order.payment_status = Order.REFUNDED
            order.payment_details = dump_details(PaymentRefunded(
                payment_id=order.gateway_payment_id,
                trx_id=order.gateway_trx_id,
                refund_trx_id=receipt.refund_trx_id,
                amount=refund_amount,
                reason=reason,
                refunded_at=timezone.now(),
            ))
            order.last_gateway_payload = receipt.raw
            if not order.stock_restored:
                order.stock_restored = True
                compensate = True
            order.save(update_fields=[
                "payment_status", "payment_details", "last_gateway_payload", "stock_restored", "updated_at",
            ])
            order.add_history(
                StatusEntry.REFUNDED,
                f"bKash refund processed. RefundTrxID: {receipt.refund_trx_id}, Amount: ৳{refund_amount}",
            )

        if compensate:
            self.compensate(order)
        logger.info(
            "Payment REFUNDED order_id=%s trxID=%s refundTrxID=%s amount=%s",
            order.pk, order.gateway_trx_id, receipt.refund_trx_id, refund_amount,
        )
        return receipt

    # ---------- snapshot ----------
    def record_snapshot(self, order_id, raw: dict) -> Order:
        with transaction.atomic():
            order = self._lock(order_id)
            order.last_gateway_payload = raw
            order.save(update_fields=["last_gateway_payload", "updated_at"])
        return order
