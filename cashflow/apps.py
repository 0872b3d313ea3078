from django.apps import AppConfig


class CashflowConfig(AppConfig):
    name = "cashflow"
    verbose_name = "Cashflow"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        # Registers the schema capability check.
        from cashflow import checks  # noqa: F401
