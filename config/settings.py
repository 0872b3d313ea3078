"""
Django settings for the cashflow project.

Everything deployment-specific is read from the environment. SQLite is the
default so the project runs out of the box; point CASHFLOW_DB_ENGINE at
PostgreSQL to get real row-level locking for concurrent approvals.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-dev-key-change-me")

DEBUG = os.environ.get("DJANGO_DEBUG", "false").lower() in ("1", "true", "yes")

ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")
    if host.strip()
]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "cashflow",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"

WSGI_APPLICATION = "config.wsgi.application"

_db_engine = os.environ.get("CASHFLOW_DB_ENGINE", "django.db.backends.sqlite3")

if _db_engine.endswith("sqlite3"):
    DATABASES = {
        "default": {
            "ENGINE": _db_engine,
            "NAME": os.environ.get("CASHFLOW_DB_NAME", str(BASE_DIR / "db.sqlite3")),
            # IMMEDIATE takes the write lock at BEGIN, so a second decision on
            # the same request waits for the first to commit and then sees it.
            "OPTIONS": {
                "transaction_mode": "IMMEDIATE",
                "timeout": 20,
            },
            # File-backed so threads in tests share one database.
            "TEST": {
                "NAME": str(BASE_DIR / "test_db.sqlite3"),
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": _db_engine,
            "NAME": os.environ.get("CASHFLOW_DB_NAME", "cashflow"),
            "USER": os.environ.get("CASHFLOW_DB_USER", ""),
            "PASSWORD": os.environ.get("CASHFLOW_DB_PASSWORD", ""),
            "HOST": os.environ.get("CASHFLOW_DB_HOST", "localhost"),
            "PORT": os.environ.get("CASHFLOW_DB_PORT", ""),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = "UTC"

# Authentication is handled outside this service; actor ids arrive in the
# request payload.
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
}

CASHFLOW = {
    "NOTIFY_ASYNC": os.environ.get("CASHFLOW_NOTIFY_ASYNC", "true").lower() in ("1", "true", "yes"),
    "CUSTODIAN_RESOLVER": "cashflow.application.ledger.original_custodian_for",
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
        },
    },
    "loggers": {
        "cashflow": {
            "handlers": ["console"],
            "level": os.environ.get("CASHFLOW_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
