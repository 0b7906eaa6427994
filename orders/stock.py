import logging

from django.db import DatabaseError, transaction
from django.db.models import F

from catalog.models import Product

logger = logging.getLogger(__name__)


def _adjust(order, sign: int) -> bool:
    ok = True
    for item in order.items.all():
        try:
            # own savepoint so one bad row does not poison the caller's transaction
            with transaction.atomic():
                Product.objects.filter(pk=item.product_id).update(stock=F("stock") + sign * item.quantity)
        except DatabaseError:
            ok = False
            logger.exception(
                "Stock adjustment FAILED order_id=%s product_id=%s quantity=%s",
                order.pk, item.product_id, sign * item.quantity,
            )
    return ok


def restore_stock(order) -> bool:
    """Give every line item's quantity back to inventory.

    Best effort: failures are logged and reported through the return value,
    never raised, so the payment transition that triggered the restore stands.
    """
    ok = _adjust(order, +1)
    if ok:
        logger.info("Stock restored for order order_id=%s", order.pk)
    return ok


def reserve_stock(order) -> bool:
    ok = _adjust(order, -1)
    if ok:
        logger.info("Stock reserved again for order order_id=%s", order.pk)
    return ok
