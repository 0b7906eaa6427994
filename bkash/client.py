"""bKash tokenized checkout: create, execute, query and refund.

The client only moves data; it never decides what a result means for an
order. ``execute_payment`` and ``query_payment`` hand back non-success
business answers as data, because "already executed" or "insufficient
balance" are outcomes the caller has to branch on.
"""
import abc
import logging
from dataclasses import dataclass, field
from decimal import Decimal

import requests

from .exceptions import GatewayBusinessError, TransportError
from .utils import format_amount, parse_amount

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"
COMPLETED = "Completed"
# "payment already completed" / "execute already called"
ALREADY_EXECUTED_CODES = frozenset({"2062", "2117"})

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


@dataclass(frozen=True)
class CreatedPayment:
    payment_id: str
    redirect_url: str
    amount: Decimal | None
    create_time: str = ""
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentResult:
    payment_id: str
    status: str
    trx_id: str = ""
    amount: Decimal | None = None
    status_code: str = ""
    status_message: str = ""
    customer_msisdn: str = ""
    event_time: str = ""
    raw: dict = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == COMPLETED and self.status_code in ("", SUCCESS_CODE)

    @property
    def already_executed(self) -> bool:
        return self.status_code in ALREADY_EXECUTED_CODES

    @classmethod
    def from_response(cls, payment_id: str, data: dict) -> "PaymentResult":
        return cls(
            payment_id=data.get("paymentID") or payment_id,
            status=str(data.get("transactionStatus") or ""),
            trx_id=data.get("trxID") or "",
            amount=parse_amount(data.get("amount")),
            status_code=str(data.get("statusCode") or ""),
            status_message=data.get("statusMessage") or data.get("errorMessage") or "",
            customer_msisdn=data.get("customerMsisdn") or "",
            event_time=data.get("paymentExecuteTime") or data.get("completedTime") or "",
            raw=data,
        )


@dataclass(frozen=True)
class RefundReceipt:
    refund_trx_id: str
    original_trx_id: str
    amount: Decimal | None
    status: str = ""
    raw: dict = field(default_factory=dict)


class GatewayClient(abc.ABC):
    @abc.abstractmethod
    def create_payment(self, amount, order_ref: str, payer_ref: str = "") -> CreatedPayment:
        ...

    @abc.abstractmethod
    def execute_payment(self, payment_id: str) -> PaymentResult:
        ...

    @abc.abstractmethod
    def query_payment(self, payment_id: str) -> PaymentResult:
        ...

    @abc.abstractmethod
    def refund_payment(self, payment_id: str, trx_id: str, amount, reason: str = "Customer refund") -> RefundReceipt:
        ...


class BkashGatewayClient(GatewayClient):
    def __init__(self, *, base_url, app_key, callback_url, token_manager, session=None, timeout=30):
        self.base_url = base_url.rstrip("/")
        self.app_key = app_key
        self.callback_url = callback_url
        self.tokens = token_manager
        self.session = session or requests.Session()
        self.timeout = timeout

    def _auth_headers(self) -> dict:
        return {
            **COMMON_HEADERS,
            "Authorization": self.tokens.get_valid_token(),
            "X-APP-Key": self.app_key,
        }

    def _post(self, path: str, body: dict) -> dict:
        headers = self._auth_headers()
        try:
            resp = self.session.post(self.base_url + path, json=body, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.Timeout as e:
            raise TransportError(f"bKash {path} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransportError(f"bKash {path} request failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"bKash {path} returned a non-JSON body") from e

    def create_payment(self, amount, order_ref, payer_ref=""):
        body = {
            "mode": "0011",
            "payerReference": payer_ref or order_ref,
            "callbackURL": self.callback_url,
            "amount": format_amount(amount),
            "currency": "BDT",
            "intent": "sale",
            "merchantInvoiceNumber": order_ref,
        }
        logger.info(
            "bKash create payment request order_ref=%s amount=%s callbackURL=%s",
            order_ref, body["amount"], self.callback_url,
        )
        try:
            data = self._post("/tokenized/checkout/create", body)
        except TransportError as e:
            logger.error("bKash create payment FAILED order_ref=%s amount=%s: %s", order_ref, body["amount"], e)
            raise

        logger.info(
            "bKash create payment response order_ref=%s statusCode=%s statusMessage=%s paymentID=%s bkashURL=%s amount=%s",
            order_ref, data.get("statusCode"), data.get("statusMessage"), data.get("paymentID"),
            "(present)" if data.get("bkashURL") else "(missing)", data.get("amount"),
        )
        if str(data.get("statusCode")) != SUCCESS_CODE:
            raise GatewayBusinessError(
                f"bKash create payment failed: {data.get('statusMessage')} (code: {data.get('statusCode')})",
                status_code=str(data.get("statusCode") or ""),
                status_message=data.get("statusMessage") or "",
                raw=data,
            )
        if not data.get("paymentID") or not data.get("bkashURL"):
            raise GatewayBusinessError(
                "bKash create payment returned incomplete response (missing bkashURL or paymentID)",
                status_code=str(data.get("statusCode") or ""),
                raw=data,
            )
        return CreatedPayment(
            payment_id=data["paymentID"],
            redirect_url=data["bkashURL"],
            amount=parse_amount(data.get("amount")),
            create_time=data.get("paymentCreateTime") or "",
            raw=data,
        )

    def execute_payment(self, payment_id):
        logger.info("bKash execute payment request paymentID=%s", payment_id)
        try:
            data = self._post("/tokenized/checkout/execute", {"paymentID": payment_id})
        except TransportError as e:
            logger.error("bKash execute payment FAILED paymentID=%s: %s", payment_id, e)
            raise

        result = PaymentResult.from_response(payment_id, data)
        logger.info(
            "bKash execute payment response paymentID=%s statusCode=%s statusMessage=%s trxID=%s transactionStatus=%s amount=%s",
            payment_id, result.status_code, result.status_message, result.trx_id, result.status, result.amount,
        )
        return result

    def query_payment(self, payment_id):
        logger.info("bKash query payment request paymentID=%s", payment_id)
        try:
            data = self._post("/tokenized/checkout/payment/status", {"paymentID": payment_id})
        except TransportError as e:
            logger.error("bKash query payment FAILED paymentID=%s: %s", payment_id, e)
            raise

        result = PaymentResult.from_response(payment_id, data)
        logger.info(
            "bKash query payment response paymentID=%s statusCode=%s trxID=%s transactionStatus=%s amount=%s",
            payment_id, result.status_code, result.trx_id, result.status, result.amount,
        )
        return result

    def refund_payment(self, payment_id, trx_id, amount, reason="Customer refund"):
        body = {
            "paymentID": payment_id,
            "trxID": trx_id,
            "amount": format_amount(amount),
            "reason": reason,
            "sku": "refund",
        }
        logger.info(
            "bKash refund payment request paymentID=%s trxID=%s amount=%s reason=%s",
            payment_id, trx_id, body["amount"], reason,
        )
        try:
            data = self._post("/tokenized/checkout/payment/refund", body)
        except TransportError as e:
            logger.error("bKash refund payment FAILED paymentID=%s trxID=%s: %s", payment_id, trx_id, e)
            raise

        logger.info(
            "bKash refund payment response paymentID=%s statusCode=%s statusMessage=%s refundTrxID=%s amount=%s",
            payment_id, data.get("statusCode"), data.get("statusMessage"), data.get("refundTrxID"), data.get("amount"),
        )
        if str(data.get("statusCode")) != SUCCESS_CODE or not data.get("refundTrxID"):
            raise GatewayBusinessError(
                f"bKash refund failed: {data.get('statusMessage')} (code: {data.get('statusCode')})",
                status_code=str(data.get("statusCode") or ""),
                status_message=data.get("statusMessage") or "",
                raw=data,
            )
        return RefundReceipt(
            refund_trx_id=data["refundTrxID"],
            original_trx_id=data.get("originalTrxID") or trx_id,
            amount=parse_amount(data.get("amount")),
            status=data.get("transactionStatus") or "",
            raw=data,
        )
