from django.contrib import admin
from .models import Order, OrderItem, StatusEntry


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0


class StatusEntryInline(admin.TabularInline):
    model = StatusEntry
    extra = 0
    can_delete = False
    readonly_fields = ("timestamp", "kind", "status", "note")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "total_amount", "payment_method", "payment_status", "order_status",
                    "gateway_payment_id", "gateway_trx_id", "payment_attempts", "updated_at")
    search_fields = ("gateway_payment_id", "gateway_trx_id")
    list_filter = ("payment_status", "order_status", "payment_method", "executed")
    readonly_fields = ("created_at", "updated_at", "executed", "gateway_payment_id", "gateway_trx_id",
                       "payment_details", "last_gateway_payload")
    inlines = [OrderItemInline, StatusEntryInline]
