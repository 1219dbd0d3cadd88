"""
Django settings for the bidding service.

Values that differ between deployments come from the environment.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-insecure-bidding-service-key")

DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"

ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "bidding.apps.BiddingConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
]

ROOT_URLCONF = "bidding_service.urls"

WSGI_APPLICATION = "bidding_service.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DJANGO_DB_PATH", str(BASE_DIR / "db.sqlite3")),
        "OPTIONS": {"timeout": 20},
        # File-backed so threaded tests share one database.
        "TEST": {"NAME": str(BASE_DIR / "test_db.sqlite3")},
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Bidding core (see bidding/conf.py for defaults)
AUCTION_BIDDING = {
    "MIN_INCREMENT": "1",
    "LOCK_TIMEOUT": float(os.environ.get("BIDDING_LOCK_TIMEOUT", "5")),
    "SWEEP_INTERVAL": float(os.environ.get("BIDDING_SWEEP_INTERVAL", "60")),
    "SUBSCRIBER_QUEUE_SIZE": 256,
    "HEARTBEAT_INTERVAL": 15,
    "AUTO_BID_MAX_ROUNDS": None,
    "STRIPE_REFUND_HANDLER": os.environ.get("BIDDING_STRIPE_REFUND_HANDLER") or None,
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s:%(levelname)s:%(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "loggers": {
        # Propagates to the root console handler.
        "bidding": {"level": os.environ.get("BIDDING_LOG_LEVEL", "INFO")},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
}
