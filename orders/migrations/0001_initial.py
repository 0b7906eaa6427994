import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("catalog", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("payment_method", models.CharField(choices=[("credit_card", "Credit card"), ("debit_card", "Debit card"), ("paypal", "PayPal"), ("cash_on_delivery", "Cash on delivery"), ("bkash", "bKash")], default="bkash", max_length=32)),
                ("payment_status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed"), ("cancelled", "Cancelled"), ("refunded", "Refunded")], db_index=True, default="pending", max_length=16)),
                ("order_status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("shipped", "Shipped"), ("delivered", "Delivered"), ("cancelled", "Cancelled")], default="pending", max_length=16)),
                ("gateway_payment_id", models.CharField(blank=True, db_index=True, default="", max_length=64)),
                ("gateway_trx_id", models.CharField(blank=True, db_index=True, default="", max_length=64)),
                ("executed", models.BooleanField(default=False)),
                ("payment_attempts", models.PositiveIntegerField(default=0)),
                ("stock_restored", models.BooleanField(default=False)),
                ("payment_details", models.JSONField(blank=True, null=True)),
                ("last_gateway_payload", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="OrderItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="items", to="orders.order")),
                ("product", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="order_items", to="catalog.product")),
            ],
        ),
        migrations.CreateModel(
            name="StatusEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("shipped", "Shipped"), ("delivered", "Delivered"), ("cancelled", "Cancelled")], max_length=16)),
                ("kind", models.CharField(choices=[("session", "Session created"), ("completed", "Payment completed"), ("amount_mismatch", "Amount mismatch"), ("failed", "Payment failed"), ("cancelled", "Payment cancelled"), ("refunded", "Payment refunded")], db_index=True, max_length=32)),
                ("note", models.TextField(blank=True, default="")),
                ("timestamp", models.DateTimeField(auto_now_add=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="status_history", to="orders.order")),
            ],
            options={
                "verbose_name_plural": "status history",
                "ordering": ["timestamp", "id"],
            },
        ),
    ]
