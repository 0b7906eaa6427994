from django.urls import path
from . import views
app_name = "webhooks"
urlpatterns = [
    path("bkash", views.bkash_webhook, name="bkash"),
]
