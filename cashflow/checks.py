"""
Startup capability detection.

The core assumes its tables exist and fails loudly when they do not, rather
than degrading to empty results at request time.
"""

from django.apps import apps
from django.core.checks import Error, Tags, register
from django.core.exceptions import ImproperlyConfigured
from django.db import connections

REQUIRED_MODELS = ("Account", "BalanceMovement", "Assignment", "ReturnRequest", "Notification")


def missing_tables(using="default"):
    """Return the db_table names of required models that are absent from ``using``."""
    connection = connections[using]
    with connection.cursor() as cursor:
        existing = set(connection.introspection.table_names(cursor))

    app_config = apps.get_app_config("cashflow")
    required = [app_config.get_model(name)._meta.db_table for name in REQUIRED_MODELS]
    return [table for table in required if table not in existing]


@register(Tags.database)
def check_schema(app_configs=None, databases=None, **kwargs):
    errors = []
    for alias in databases or ():
        missing = missing_tables(alias)
        if missing:
            errors.append(
                Error(
                    f"Cashflow tables are missing from database '{alias}': {', '.join(missing)}",
                    hint="Run `python manage.py migrate cashflow`.",
                    id="cashflow.E001",
                )
            )
    return errors


def verify_schema(using="default"):
    """Raise ImproperlyConfigured unless every cashflow table is provisioned."""
    missing = missing_tables(using)
    if missing:
        raise ImproperlyConfigured(
            f"Cashflow storage is not provisioned; missing tables: {', '.join(missing)}"
        )
