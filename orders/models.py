from django.db import models

from .payment_details import load_details


class Order(models.Model):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PAYMENT_STATUS_CHOICES = [
        (PENDING, "Pending"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
        (CANCELLED, "Cancelled"),
        (REFUNDED, "Refunded"),
    ]
    # a new gateway session may only be opened from these
    RETRYABLE_STATUSES = (PENDING, FAILED, CANCELLED)

    ORDER_STATUS_CHOICES = [
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("shipped", "Shipped"),
        ("delivered", "Delivered"),
        ("cancelled", "Cancelled"),
    ]

    BKASH = "bkash"
    PAYMENT_METHOD_CHOICES = [
        ("credit_card", "Credit card"),
        ("debit_card", "Debit card"),
        ("paypal", "PayPal"),
        ("cash_on_delivery", "Cash on delivery"),
        (BKASH, "bKash"),
    ]

    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_method = models.CharField(max_length=32, choices=PAYMENT_METHOD_CHOICES, default=BKASH)
    payment_status = models.CharField(max_length=16, choices=PAYMENT_STATUS_CHOICES, default=PENDING, db_index=True)
    order_status = models.CharField(max_length=16, choices=ORDER_STATUS_CHOICES, default="pending")

    gateway_payment_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    gateway_trx_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    executed = models.BooleanField(default=False)
    payment_attempts = models.PositiveIntegerField(default=0)
    stock_restored = models.BooleanField(default=False)

    payment_details = models.JSONField(blank=True, null=True)
    last_gateway_payload = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def details(self):
        """Typed view of ``payment_details`` for the current lifecycle stage."""
        return load_details(self.payment_details)

    @property
    def is_paid(self) -> bool:
        return self.executed and self.payment_status == self.COMPLETED

    def add_history(self, kind: str, note: str) -> "StatusEntry":
        return StatusEntry.objects.create(order=self, status=self.order_status, kind=kind, note=note)

    def __str__(self):
        return f"Order#{self.pk} ({self.payment_status})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey("catalog.Product", on_delete=models.PROTECT, related_name="order_items")
    quantity = models.PositiveIntegerField(default=1)
    price = models.DecimalField(max_digits=12, decimal_places=2)

    def __str__(self):
        return f"{self.quantity} x {self.product_id}"


class StatusEntry(models.Model):
    """One audit line on an order. Rows are written once and never changed."""

    SESSION = "session"
    COMPLETED = "completed"
    AMOUNT_MISMATCH = "amount_mismatch"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    KIND_CHOICES = [
        (SESSION, "Session created"),
        (COMPLETED, "Payment completed"),
        (AMOUNT_MISMATCH, "Amount mismatch"),
        (FAILED, "Payment failed"),
        (CANCELLED, "Payment cancelled"),
        (REFUNDED, "Payment refunded"),
    ]

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="status_history")
    status = models.CharField(max_length=16, choices=Order.ORDER_STATUS_CHOICES)
    kind = models.CharField(max_length=32, choices=KIND_CHOICES, db_index=True)
    note = models.TextField(blank=True, default="")
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["timestamp", "id"]
        verbose_name_plural = "status history"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("status history entries are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("status history entries are append-only")

    def __str__(self):
        return f"{self.timestamp:%Y-%m-%d %H:%M} {self.kind}: {self.note}"
