import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    return int(raw)


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY") or "paywebhooks-dev-only-change-me-before-production-3b91d0e7a2"
DEBUG = env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [
    h.strip()
    for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")
    if h.strip()
]
if DEBUG:
    ALLOWED_HOSTS = ["*"]

# Security defaults for production; can be overridden from .env
SECURE_SSL_REDIRECT = env_bool("DJANGO_SECURE_SSL_REDIRECT", not DEBUG)
SESSION_COOKIE_SECURE = env_bool("DJANGO_SESSION_COOKIE_SECURE", not DEBUG)
CSRF_COOKIE_SECURE = env_bool("DJANGO_CSRF_COOKIE_SECURE", not DEBUG)
SECURE_HSTS_SECONDS = int(os.environ.get("DJANGO_SECURE_HSTS_SECONDS", "31536000" if not DEBUG else "0"))
SECURE_HSTS_INCLUDE_SUBDOMAINS = env_bool("DJANGO_SECURE_HSTS_INCLUDE_SUBDOMAINS", SECURE_HSTS_SECONDS > 0)
# Trust HTTPS forwarded by nginx when SSL is terminated at proxy level.
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

CSRF_TRUSTED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("DJANGO_CSRF_TRUSTED_ORIGINS", "").split(",")
    if origin.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "core",
    "quotes",
    "ledger.apps.LedgerConfig",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

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

WSGI_APPLICATION = "config.wsgi.application"

# Row lock waits give up with the webhook processing budget.
PAYMENT_WEBHOOK_TIMEOUT_SECONDS = env_int("PAYMENT_WEBHOOK_TIMEOUT_SECONDS", 30)

# sqlite for local runs and tests, mysql in docker/prod
DB_ENGINE = (os.environ.get("DJANGO_DB_ENGINE", "sqlite") or "sqlite").strip().lower()
if DB_ENGINE == "mysql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.mysql",
            "NAME": os.environ.get("MYSQL_DATABASE", "paywebhooks"),
            "USER": os.environ.get("MYSQL_USER", "paywebhooks"),
            "PASSWORD": os.environ.get("MYSQL_PASSWORD", "paywebhooks"),
            "HOST": os.environ.get("MYSQL_HOST", "db"),
            "PORT": os.environ.get("MYSQL_PORT", "3306"),
            "CONN_MAX_AGE": int(os.environ.get("DJANGO_CONN_MAX_AGE", "60")),
            "OPTIONS": {
                "charset": "utf8mb4",
                "init_command": f"SET SESSION innodb_lock_wait_timeout = {PAYMENT_WEBHOOK_TIMEOUT_SECONDS}",
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
            "OPTIONS": {"timeout": PAYMENT_WEBHOOK_TIMEOUT_SECONDS},
        }
    }

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "paywebhooks-cache",
        "TIMEOUT": int(os.environ.get("DJANGO_CACHE_TIMEOUT", "60")),
    }
}

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "Asia/Kolkata")
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "staticfiles": {
        "BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"
    },
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {"handlers": ["console"], "level": os.environ.get("DJANGO_LOG_LEVEL", "INFO")},
}

# Payment gateways (use .env, do NOT hardcode secrets)
PAYMENT_GATEWAYS = {
    "payu": {
        "merchant_key": os.getenv("PAYU_MERCHANT_KEY", ""),
        "salt": os.getenv("PAYU_SALT", ""),
        "base_url": os.getenv("PAYU_BASE_URL", "https://secure.payu.in"),
        "currency": os.getenv("PAYU_CURRENCY", "INR"),
    },
    "airwallex": {
        "webhook_secret": os.getenv("AIRWALLEX_WEBHOOK_SECRET", ""),
        "currency": os.getenv("AIRWALLEX_CURRENCY", "USD"),
        "signature_tolerance_seconds": env_int("AIRWALLEX_SIGNATURE_TOLERANCE_SECONDS", 300),
    },
}

PAYMENT_WEBHOOK_MAX_BODY_BYTES = env_int("PAYMENT_WEBHOOK_MAX_BODY_BYTES", 10 * 1024 * 1024)
PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS = env_int("PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS", 5 * 60)
# "memory" is only safe for a single instance; use "database" behind a load balancer.
PAYMENT_WEBHOOK_REPLAY_BACKEND = os.getenv("PAYMENT_WEBHOOK_REPLAY_BACKEND", "memory")
PAYMENT_WEBHOOK_REPLAY_MAX_ENTRIES = env_int("PAYMENT_WEBHOOK_REPLAY_MAX_ENTRIES", 10000)
PAYMENT_CREATE_ORDERS = env_bool("PAYMENT_CREATE_ORDERS", True)
PAYMENT_NOTIFICATIONS_INLINE = env_bool("PAYMENT_NOTIFICATIONS_INLINE", False)

# Django refuses request.body above this size; keep it just above the webhook ceiling
# so the webhook view can answer with its own 400.
DATA_UPLOAD_MAX_MEMORY_SIZE = PAYMENT_WEBHOOK_MAX_BODY_BYTES + 1024

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
TELEGRAM_NOTIFICATIONS = os.getenv("TELEGRAM_NOTIFICATIONS", "0") == "1"

EMAIL_BACKEND = os.environ.get(
    "DJANGO_EMAIL_BACKEND",
    "django.core.mail.backends.console.EmailBackend" if DEBUG else "django.core.mail.backends.smtp.EmailBackend",
)
EMAIL_HOST = os.environ.get("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.environ.get("EMAIL_PORT", "587"))
EMAIL_HOST_USER = os.environ.get("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.environ.get("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = env_bool("EMAIL_USE_TLS", True)
EMAIL_USE_SSL = env_bool("EMAIL_USE_SSL", False)
DEFAULT_FROM_EMAIL = os.environ.get("DEFAULT_FROM_EMAIL", "no-reply@paywebhooks.local")
