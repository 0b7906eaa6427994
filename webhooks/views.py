import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt

from bkash.dispatcher import ReconciliationDispatcher
from bkash.exceptions import AuthenticationError, TransportError
from bkash.gateway import get_gateway
from orders.exceptions import NotFoundError
from orders.services import PaymentStateMachine

from .exceptions import InvalidWebhook
from .verification import verify_hmac_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Bkash-Signature"


@csrf_exempt
def bkash_webhook(request):
    """bKash IPN: server-to-server notice of a payment status change.

    Signed with HMAC-SHA256 of the raw body when ``BKASH["WEBHOOK_SECRET"]``
    is set; unsigned deliveries are then refused.
    """
    if request.method != "POST":
        return JsonResponse({"error": "POST only"}, status=405)

    signature = request.headers.get(SIGNATURE_HEADER, "")
    secret = settings.BKASH.get("WEBHOOK_SECRET")
    logger.info("bKash webhook received has_signature=%s", bool(signature))
    if secret and not verify_hmac_signature(request.body, signature, secret):
        logger.warning("bKash webhook signature verification failed")
        return JsonResponse({"error": "Invalid signature"}, status=401)

    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return JsonResponse({"error": "Invalid JSON"}, status=400)
    if not isinstance(payload, dict):
        return JsonResponse({"error": "Invalid JSON"}, status=400)

    payment_id = payload.get("paymentID") or ""
    dispatcher = ReconciliationDispatcher(PaymentStateMachine(get_gateway()))
    try:
        ack = dispatcher.handle_webhook(
            payment_id,
            trx_id=payload.get("trxID") or "",
            transaction_status=payload.get("transactionStatus") or "",
            amount=payload.get("amount"),
        )
    except InvalidWebhook as e:
        logger.warning("bKash webhook rejected: %s", e)
        return JsonResponse({"error": str(e)}, status=400)
    except NotFoundError:
        logger.error("bKash webhook: order not found paymentID=%s", payment_id)
        return JsonResponse({"error": "Order not found"}, status=404)
    except (AuthenticationError, TransportError) as e:
        # not marked processed, so the gateway's redelivery gets another go
        logger.error("bKash webhook verification unavailable paymentID=%s: %s", payment_id, e)
        return JsonResponse({"error": "Verification unavailable"}, status=503)

    return JsonResponse(ack.as_dict(), status=200)
