from django.urls import path
from . import views
app_name = "bkash"
urlpatterns = [
    path("create-payment", views.create_payment_view, name="create_payment"),
    path("callback", views.callback_view, name="callback"),  # BKASH_CALLBACK_URL points here
    path("payment-status/<int:order_id>", views.payment_status_view, name="payment_status"),
    path("refund", views.refund_view, name="refund"),
]
