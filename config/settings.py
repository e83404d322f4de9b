import os
import socket
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

# --- Core ---
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "change-me")
DEBUG = os.getenv("DJANGO_DEBUG", "False").lower() == "true"
default_hosts = "127.0.0.1,localhost"
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", default_hosts).split(",") if h]
CSRF_TRUSTED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("DJANGO_CSRF_TRUSTED_ORIGINS", "").split(",")
    if origin.strip()
]

# "server" runs the central sync endpoints, "terminal" runs a store terminal
# that keeps its own database and syncs against SYNC_SERVER_URL.
SYNC_ROLE = os.getenv("SYNC_ROLE", "server").strip().lower()

# --- Applications ---
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework_simplejwt",
    "drf_spectacular",
    "apps.sync.apps.SyncConfig",
    "apps.terminal.apps.TerminalConfig",
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

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL")
if DATABASE_URL:
    parsed = urlparse(DATABASE_URL)
    ENGINE = "django.db.backends.postgresql"
    DATABASES = {
        "default": {
            "ENGINE": ENGINE,
            "NAME": parsed.path.lstrip("/") or "",
            "USER": parsed.username or "",
            "PASSWORD": parsed.password or "",
            "HOST": parsed.hostname or "localhost",
            "PORT": parsed.port or "5432",
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / os.getenv("SQLITE_NAME", "db.sqlite3"),
        }
    }

# --- Password validation ---
AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

# --- I18N ---
LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("DJANGO_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

# --- Static ---
STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "whitenoise.storage.CompressedStaticFilesStorage"},
}


# --- Cache ---
def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _redis_reachable(redis_url: str) -> bool:
    """Fast check to avoid crashing locally when Redis isn't running."""
    try:
        parsed = urlparse(redis_url)
        host = parsed.hostname or "127.0.0.1"
        port = parsed.port or 6379
        with socket.create_connection((host, port), timeout=0.25):
            return True
    except OSError:
        return False


_redis_url = os.getenv("REDIS_URL")
if _redis_url and _redis_reachable(_redis_url):
    CACHES = {
        "default": {
            "BACKEND": "django_redis.cache.RedisCache",
            "LOCATION": _redis_url,
            "OPTIONS": {"CLIENT_CLASS": "django_redis.client.DefaultClient"},
            "TIMEOUT": None,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "pos-sync-cache",
        }
    }

# --- Security ---
_secure_ssl_redirect = os.getenv("DJANGO_SECURE_SSL_REDIRECT", "True").lower() == "true"
_session_cookie_secure = os.getenv("DJANGO_SESSION_COOKIE_SECURE", "True").lower() == "true"
_csrf_cookie_secure = os.getenv("DJANGO_CSRF_COOKIE_SECURE", "True").lower() == "true"

# Terminals talk to the server over the LAN/VPN and serve no browser traffic of their own.
if DEBUG or SYNC_ROLE == "terminal":
    SECURE_SSL_REDIRECT = False
    SESSION_COOKIE_SECURE = False
    CSRF_COOKIE_SECURE = False
else:
    SECURE_SSL_REDIRECT = _secure_ssl_redirect
    SESSION_COOKIE_SECURE = _session_cookie_secure
    CSRF_COOKIE_SECURE = _csrf_cookie_secure
SECURE_HSTS_SECONDS = 0

# --- Logging: errors to django.log, sync activity to the console ---
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "file": {
            "level": "ERROR",
            "class": "logging.FileHandler",
            "filename": BASE_DIR / "django.log",
        },
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["file"],
            "level": "ERROR",
            "propagate": True,
        },
        "apps": {
            "handlers": ["console", "file"],
            "level": os.getenv("SYNC_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}

# --- Misc ---
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
}

SPECTACULAR_SETTINGS = {
    "TITLE": "POS Sync API",
    "DESCRIPTION": "Offline terminal synchronization: push, pull and conflict resolution",
    "VERSION": "1.0.0",
}

# --- Sync core ---
SYNC = {
    "PUSH_MAX_BATCH": _env_int("SYNC_PUSH_MAX_BATCH", 500),
    "PUSH_DEADLINE_SECONDS": _env_int("SYNC_PUSH_DEADLINE_SECONDS", 30),
    "PULL_DEFAULT_LIMIT": _env_int("SYNC_PULL_DEFAULT_LIMIT", 1000),
    "PULL_MAX_LIMIT": _env_int("SYNC_PULL_MAX_LIMIT", 5000),
    "IDEMPOTENCY_RETENTION_DAYS": _env_int("SYNC_IDEMPOTENCY_RETENTION_DAYS", 30),
    "CONFLICT_PAGE_SIZE": _env_int("SYNC_CONFLICT_PAGE_SIZE", 50),
}

# Terminal side
SYNC_TERMINAL = {
    "SERVER_URL": os.getenv("SYNC_SERVER_URL", "http://127.0.0.1:8000"),
    "TOKEN": os.getenv("SYNC_TOKEN", ""),
    "STORE_ID": os.getenv("SYNC_STORE_ID", ""),
    "BATCH_SIZE": _env_int("SYNC_BATCH_SIZE", 100),
    "INTERVAL_SECONDS": _env_int("SYNC_INTERVAL_SECONDS", 30),
    "PUSH_TIMEOUT_SECONDS": _env_int("SYNC_PUSH_TIMEOUT_SECONDS", 30),
    "PULL_TIMEOUT_SECONDS": _env_int("SYNC_PULL_TIMEOUT_SECONDS", 60),
    "BACKOFF_BASE_SECONDS": _env_int("SYNC_BACKOFF_BASE_SECONDS", 2),
    "BACKOFF_CAP_SECONDS": _env_int("SYNC_BACKOFF_CAP_SECONDS", 300),
    "MAX_PULL_PAGES": _env_int("SYNC_MAX_PULL_PAGES", 50),
    "PULL_TABLE_LIMIT": _env_int("SYNC_PULL_TABLE_LIMIT", 1000),
    "VERIFY_TLS": _env_bool("SYNC_VERIFY_TLS", True),
}
