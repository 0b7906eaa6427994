import time
from django.core.management.base import BaseCommand
from django.utils import timezone

from bkash.dispatcher import ReconciliationDispatcher
from bkash.exceptions import BkashError
from bkash.gateway import get_gateway
from orders.models import Order
from orders.services import PaymentStateMachine


class Command(BaseCommand):
    help = "Poll bKash for pending orders with an open session and reconcile local state"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        qs = (
            Order.objects.filter(payment_method=Order.BKASH, payment_status=Order.PENDING, executed=False)
            .exclude(gateway_payment_id="")
            .filter(updated_at__lt=cutoff)
            .order_by("updated_at")[:opts["max"]]
        )
        orders = list(qs)
        if not orders:
            self.stdout.write(self.style.SUCCESS("No pending orders to reconcile."))
            return

        dispatcher = ReconciliationDispatcher(PaymentStateMachine(get_gateway()))
        updated = 0
        for o in orders:
            try:
                after = dispatcher.reconcile_order(o.pk)
            except BkashError as e:
                self.stdout.write(self.style.WARNING(f"Order {o.pk}: {e}"))
            else:
                if after.payment_status != o.payment_status:
                    updated += 1
                    self.stdout.write(self.style.SUCCESS(f"Order {o.pk} -> {after.payment_status}"))
                else:
                    self.stdout.write(f"Order {o.pk}: still {after.payment_status}")
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(orders)}, updated {updated} orders."))
