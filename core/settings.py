
from pathlib import Path
from datetime import timedelta
import os

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(key, default):
    return os.getenv(key, default).lower() in {"1", "true", "yes", "on"}


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-settlement-local-only-0c8f2b71d94e4a")


DEBUG = _env_bool("DJANGO_DEBUG", "true")

ALLOWED_HOSTS = [host for host in os.getenv("DJANGO_ALLOWED_HOSTS", "").split(",") if host]



INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    'rest_framework',
    #apps
    'account',
    'shop',
    'catalog',
    'event',
    'order',
    'payment.apps.PaymentConfig',
    'notifications',

]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "core.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "core.wsgi.application"


# Postgres in production (advisory locks, serializable completion); sqlite for local runs.
if os.getenv("DATABASE_NAME"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DATABASE_NAME"),
            "USER": os.getenv("DATABASE_USER", ""),
            "PASSWORD": os.getenv("DATABASE_PASSWORD", ""),
            "HOST": os.getenv("DATABASE_HOST", "localhost"),
            "PORT": os.getenv("DATABASE_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }


AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]



LANGUAGE_CODE = "en-us"

TIME_ZONE = "UTC"

USE_I18N = True

USE_TZ = True



STATIC_URL = "static/"


DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

AUTH_USER_MODEL = "account.User"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": (
        "rest_framework_simplejwt.authentication.JWTAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ),
    "DEFAULT_PERMISSION_CLASSES": (
        "rest_framework.permissions.IsAuthenticated",
    ),
}



SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=60),   # 1 hour
    "REFRESH_TOKEN_LIFETIME": timedelta(days=30),     # 30 days

    "ROTATE_REFRESH_TOKENS": True,
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}

# Email (payment confirmations)
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "no-reply@localhost")

# Push notifications
FCM_SERVICE_ACCOUNT_FILE = os.getenv("FCM_SERVICE_ACCOUNT_FILE", "")
FCM_SERVICE_ACCOUNT_JSON = os.getenv("FCM_SERVICE_ACCOUNT_JSON", "")
FCM_PROJECT_ID = os.getenv("FCM_PROJECT_ID", "")

# Settlement
PLATFORM_COMMISSION_RATE = os.getenv("PLATFORM_COMMISSION_RATE", "0.10")
EVENT_WITHDRAWAL_FEE_RATE = os.getenv("EVENT_WITHDRAWAL_FEE_RATE", "0.06")
MIN_WITHDRAWAL_AMOUNT = os.getenv("MIN_WITHDRAWAL_AMOUNT", "10")
MAX_WITHDRAWAL_AMOUNT = os.getenv("MAX_WITHDRAWAL_AMOUNT", "150000")
PAYMENT_AMOUNT_TOLERANCE = os.getenv("PAYMENT_AMOUNT_TOLERANCE", "0.01")
SELLER_DROPOFF_WINDOW_HOURS = int(os.getenv("SELLER_DROPOFF_WINDOW_HOURS", "48"))
BUYER_PICKUP_WINDOW_HOURS = int(os.getenv("BUYER_PICKUP_WINDOW_HOURS", "24"))
SERVICE_RELEASE_WINDOW_HOURS = int(os.getenv("SERVICE_RELEASE_WINDOW_HOURS", "24"))
WITHDRAWAL_STUCK_AFTER_HOURS = int(os.getenv("WITHDRAWAL_STUCK_AFTER_HOURS", "2"))
WITHDRAWAL_RECONCILE_CEILING_HOURS = int(os.getenv("WITHDRAWAL_RECONCILE_CEILING_HOURS", "48"))
NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
NOTIFICATION_RETRY_DELAY_SECONDS = float(os.getenv("NOTIFICATION_RETRY_DELAY_SECONDS", "1"))
TICKET_NUMBER_MAX_ATTEMPTS = int(os.getenv("TICKET_NUMBER_MAX_ATTEMPTS", "3"))
ORDER_NUMBER_MAX_ATTEMPTS = int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS", "5"))
PENDING_PAYMENT_LOOKBACK_HOURS = int(os.getenv("PENDING_PAYMENT_LOOKBACK_HOURS", "24"))

# Payout providers
PAYOUT_PROVIDER = os.getenv("PAYOUT_PROVIDER", "payd")
PAYOUT_COUNTRY_CODE = os.getenv("PAYOUT_COUNTRY_CODE", "254")
PAYOUT_TIMEOUT_SECONDS = int(os.getenv("PAYOUT_TIMEOUT_SECONDS", "30"))
PAYOUT_CALLBACK_URL = os.getenv("PAYOUT_CALLBACK_URL", "http://localhost:8000/payment/payouts/callback/")

# Webhook sources (comma-separated IPs, CIDR networks or 41.90.*.* patterns)
PAYMENT_WEBHOOK_ALLOWED_IPS = os.getenv("PAYMENT_WEBHOOK_ALLOWED_IPS", "")
PAYOUT_CALLBACK_ALLOWED_IPS = os.getenv("PAYD_ALLOWED_IPS", "")
# Without an allow-list, webhooks are refused unless running in debug.
WEBHOOK_IP_ALLOWLIST_REQUIRED = _env_bool("WEBHOOK_IP_ALLOWLIST_REQUIRED", "false" if DEBUG else "true")
WEBHOOK_TRUST_FORWARDED_FOR = _env_bool("WEBHOOK_TRUST_FORWARDED_FOR", "false")

PAYD_BASE_URL = os.getenv("PAYD_BASE_URL", "https://api.mypayd.app/api/v2")
PAYD_USERNAME = os.getenv("PAYD_USERNAME", "")
PAYD_PASSWORD = os.getenv("PAYD_PASSWORD", "")

# SantimPay (test mode by default for local development)
SANTIMPAY_TEST_BED = _env_bool("SANTIMPAY_TEST_BED", "true")
SANTIMPAY_MERCHANT_ID = os.getenv("SANTIMPAY_MERCHANT_ID", "")
SANTIMPAY_PRIVATE_KEY = os.getenv("SANTIMPAY_PRIVATE_KEY", "")
SANTIMPAY_PAYOUT_METHOD = os.getenv("SANTIMPAY_PAYOUT_METHOD", "MPESA")

# Celery (runs tasks inline unless a broker is configured for the deployment)
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "")
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", "true")
CELERY_TASK_DEFAULT_QUEUE = "default"
CELERY_BEAT_SCHEDULE = {
    "order-deadline-checks": {
        "task": "order.tasks.run_deadline_checks",
        "schedule": crontab(minute="*/30"),  # Every 30 minutes
        "options": {"queue": "settlement"},
    },
    "retry-pending-payment-confirmations": {
        "task": "payment.tasks.retry_pending_confirmations",
        "schedule": crontab(minute="*/5"),  # Every 5 minutes
        "options": {"queue": "notifications"},
    },
    "reconcile-stuck-withdrawals": {
        "task": "payment.tasks.reconcile_stuck_withdrawals",
        "schedule": crontab(minute="0", hour="*/2"),  # Every 2 hours
        "options": {"queue": "settlement"},
    },
}
