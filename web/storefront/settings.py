"""Django settings for the storefront project.

Values come from environment variables so the same image runs locally,
under docker compose and in tests.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "1" if default else "0").lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "rest_framework",
    "apps.checkout",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "storefront.urls"
WSGI_APPLICATION = "storefront.wsgi.application"

if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "postgres"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_AUTHENTICATION_CLASSES": ["rest_framework.authentication.SessionAuthentication"],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "DEFAULT_THROTTLE_RATES": {
        "cart": os.getenv("THROTTLE_CART", "120/min"),
        "checkout": os.getenv("THROTTLE_CHECKOUT", "30/min"),
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "60/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "120/min"),
        "payments_webhook": os.getenv("THROTTLE_PAYMENTS_WEBHOOK", "600/min"),
    },
}

CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}

# ---- checkout ----
STORE_NAME = os.getenv("STORE_NAME", "Storefront")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "orders@storefront.local")
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")

CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "BRL")
CHECKOUT_RESERVATION_TTL_SECS = int(os.getenv("CHECKOUT_RESERVATION_TTL_SECS", "900"))
CHECKOUT_QUOTE_TTL_SECS = int(os.getenv("CHECKOUT_QUOTE_TTL_SECS", "1800"))
CHECKOUT_MAX_INSTALLMENTS = int(os.getenv("CHECKOUT_MAX_INSTALLMENTS", "6"))
CHECKOUT_MIN_INSTALLMENT_CENTS = int(os.getenv("CHECKOUT_MIN_INSTALLMENT_CENTS", "5000"))
CHECKOUT_PAYMENT_METHODS = os.getenv("CHECKOUT_PAYMENT_METHODS", "PIX,CREDIT_CARD,DEBIT_CARD")
CHECKOUT_ORIGIN_ZIP = os.getenv("CHECKOUT_ORIGIN_ZIP", "01001-000")
CHECKOUT_DEFAULT_SHIPPING_METHOD = os.getenv("CHECKOUT_DEFAULT_SHIPPING_METHOD", "ship-1")
CHECKOUT_FREE_SHIPPING_THRESHOLD_CENTS = int(os.getenv("CHECKOUT_FREE_SHIPPING_THRESHOLD_CENTS", "29900"))
CHECKOUT_PAYMENT_RETRY_LIMIT = int(os.getenv("CHECKOUT_PAYMENT_RETRY_LIMIT", "1"))
CHECKOUT_GATEWAY_RETRY_LIMIT = int(os.getenv("CHECKOUT_GATEWAY_RETRY_LIMIT", "1"))

ORDER_LOCK_BACKEND = os.getenv("ORDER_LOCK_BACKEND", "process")  # process | database
ORDER_LOCK_TIMEOUT_SECS = float(os.getenv("ORDER_LOCK_TIMEOUT_SECS", "10"))
FULFILLMENT_INLINE = env_bool("FULFILLMENT_INLINE", False)
FULFILLMENT_WORKERS = int(os.getenv("FULFILLMENT_WORKERS", "2"))
PAYMENT_WEBHOOK_TOKEN = os.getenv("PAYMENT_WEBHOOK_TOKEN", "")

# ---- downstream services ----
USE_HTTP_ADAPTERS = env_bool("USE_HTTP_ADAPTERS", True)
SHIPPING_BASE_URL = os.getenv("SHIPPING_BASE_URL", "http://shipping:9001")
PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "http://payments:9002")
HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "2.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(session_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        "apps": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}
