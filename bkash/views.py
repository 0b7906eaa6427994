import json
import logging

from django.conf import settings
from django.http import HttpResponseRedirect, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from orders.exceptions import NotFoundError, PaymentNotAllowed
from orders.services import PaymentStateMachine

from .dispatcher import RedirectTarget, ReconciliationDispatcher
from .exceptions import AuthenticationError, GatewayBusinessError, TransportError
from .gateway import get_gateway, is_configured

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _error(message, status):
    return JsonResponse({"ok": False, "error": message}, status=status)


def _dispatcher():
    return ReconciliationDispatcher(PaymentStateMachine(get_gateway()))


@csrf_exempt
@require_POST
def create_payment_view(request):
    if not is_configured():
        return _error("bKash payment is not configured. Please contact support.", 503)
    body = _json_body(request)
    if not body:
        return _error("Invalid JSON body", 400)
    order_id = body.get("order_id")
    if not order_id:
        return _error("Order ID is required", 400)

    try:
        result = _dispatcher().create_payment_session(order_id)
    except NotFoundError:
        return _error("Order not found", 404)
    except PaymentNotAllowed as e:
        return _error(str(e), 409)
    except GatewayBusinessError as e:
        logger.error("bKash create-payment rejected order_id=%s: %s", order_id, e)
        return _error(str(e), 400)
    except (AuthenticationError, TransportError) as e:
        logger.error("bKash create-payment unavailable order_id=%s: %s", order_id, e)
        return _error(f"Failed to create bKash payment: {e}", 502)

    return JsonResponse({"ok": True, **result}, status=200)


@require_GET
def callback_view(request):
    """bKash sends the customer's browser here with ``paymentID`` and ``status``."""
    payment_id = request.GET.get("paymentID", "")
    status = request.GET.get("status", "")
    try:
        target = _dispatcher().handle_redirect_callback(payment_id, status)
    except Exception:
        # the customer must always land on the result page
        logger.exception("bKash callback processing ERROR paymentID=%s status=%s", payment_id, status)
        target = RedirectTarget("error", message="An unexpected error occurred")
    return HttpResponseRedirect(target.url(settings.FRONTEND_URL))


@require_GET
def payment_status_view(request, order_id: int):
    try:
        data = _dispatcher().get_payment_status(order_id)
    except NotFoundError:
        return _error("Order not found", 404)
    except (AuthenticationError, TransportError) as e:
        logger.error("bKash payment-status query failed order_id=%s: %s", order_id, e)
        return _error(f"Failed to query payment status: {e}", 502)
    return JsonResponse({"ok": True, **data}, status=200)


@csrf_exempt
@require_POST
def refund_view(request):
    if not (request.user.is_authenticated and request.user.is_staff):
        return _error("Admin access required", 403)
    body = _json_body(request)
    if not body:
        return _error("Invalid JSON body", 400)
    order_id = body.get("order_id")
    if not order_id:
        return _error("Order ID is required", 400)

    try:
        receipt = _dispatcher().refund(order_id, amount=body.get("amount"), reason=body.get("reason", ""))
    except NotFoundError:
        return _error("Order not found", 404)
    except PaymentNotAllowed as e:
        return _error(str(e), 400)
    except GatewayBusinessError as e:
        logger.error("bKash refund rejected order_id=%s: %s", order_id, e)
        return _error(str(e), 400)
    except (AuthenticationError, TransportError) as e:
        logger.error("bKash refund unavailable order_id=%s: %s", order_id, e)
        return _error(f"Failed to process refund: {e}", 502)

    logger.info("bKash refund done order_id=%s by user=%s", order_id, request.user.pk)
    return JsonResponse({"ok": True, "message": "Refund processed successfully", **receipt}, status=200)
