"""
App settings, read from the ``CASHFLOW`` dict in Django settings.

Values are looked up on every call so ``override_settings`` works in tests.
"""

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

DEFAULTS = {
    "NOTIFY_ASYNC": True,
    "CUSTODIAN_RESOLVER": "cashflow.application.ledger.original_custodian_for",
}


def cashflow_setting(name):
    if name not in DEFAULTS:
        raise ImproperlyConfigured(f"Unknown CASHFLOW setting: {name}")
    return getattr(settings, "CASHFLOW", {}).get(name, DEFAULTS[name])


def custodian_resolver():
    """Return the configured ``holder_id -> custodian_id | None`` callable."""
    path = cashflow_setting("CUSTODIAN_RESOLVER")
    try:
        return import_string(path)
    except ImportError as exc:
        raise ImproperlyConfigured(
            f"CASHFLOW['CUSTODIAN_RESOLVER'] could not be imported: {path}"
        ) from exc
