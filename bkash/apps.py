from django.apps import AppConfig


class BkashConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "bkash"
    verbose_name = "bKash tokenized checkout"
