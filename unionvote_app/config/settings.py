import os
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


def _env_list(name: str, default: str = "") -> list[str]:
    return [part.strip() for part in os.environ.get(name, default).split(",") if part.strip()]


DEBUG = _env_bool("DEBUG", default=False)

ALLOWED_HOSTS = _env_list("ALLOWED_HOSTS", "localhost,127.0.0.1")

SECRET_KEY = os.environ.get("SECRET_KEY", "")
if not SECRET_KEY:
    # Deployed hosts must provide a key; local runs and tests fall back to a dev key.
    if "ALLOWED_HOSTS" in os.environ and not DEBUG:
        raise ImproperlyConfigured("SECRET_KEY must be set when ALLOWED_HOSTS is configured")
    SECRET_KEY = "dev-only-insecure-secret-key-change-me"

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "voting.apps.VotingConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

TEMPLATES: list[dict[str, object]] = []

if os.environ.get("DATABASE_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.environ["DATABASE_HOST"],
            "PORT": os.environ.get("DATABASE_PORT", "5432"),
            "NAME": os.environ.get("DATABASE_NAME", "unionvote"),
            "USER": os.environ.get("DATABASE_USER", "unionvote"),
            "PASSWORD": os.environ.get("DATABASE_PASSWORD", ""),
            "CONN_MAX_AGE": _env_int("DATABASE_CONN_MAX_AGE", 60),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "unionvote",
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# Voting core.
VOTING_MEMBER_DIRECTORY = os.environ.get("VOTING_MEMBER_DIRECTORY", "voting.directory.DjangoUserDirectory")
VOTING_MEMBER_DIRECTORY_URL = os.environ.get("VOTING_MEMBER_DIRECTORY_URL", "")
VOTING_MEMBER_DIRECTORY_TIMEOUT_SECONDS = _env_float("VOTING_MEMBER_DIRECTORY_TIMEOUT_SECONDS", 5.0)
VOTING_MEMBER_DIRECTORY_CACHE_SECONDS = _env_int("VOTING_MEMBER_DIRECTORY_CACHE_SECONDS", 60)
VOTING_DEPARTMENT_GROUP_PREFIX = os.environ.get("VOTING_DEPARTMENT_GROUP_PREFIX", "dept:")
VOTING_BOARD_ROLE = os.environ.get("VOTING_BOARD_ROLE", "board")

VOTING_VERIFICATION_ORACLES = {
    "password": "voting.verification.PasswordOracle",
    "biometric": "voting.verification.HttpBiometricOracle",
}
VOTING_BIOMETRIC_ORACLE_URL = os.environ.get("VOTING_BIOMETRIC_ORACLE_URL", "")
VOTING_BIOMETRIC_MIN_CONFIDENCE = _env_float("VOTING_BIOMETRIC_MIN_CONFIDENCE", 0.9)
VOTING_VERIFICATION_TIMEOUT_SECONDS = _env_float("VOTING_VERIFICATION_TIMEOUT_SECONDS", 5.0)
VOTING_VERIFICATION_WORKERS = _env_int("VOTING_VERIFICATION_WORKERS", 4)
VOTING_VERIFICATION_MAX_FAILURES = _env_int("VOTING_VERIFICATION_MAX_FAILURES", 5)
VOTING_VERIFICATION_FAILURE_WINDOW_SECONDS = _env_int("VOTING_VERIFICATION_FAILURE_WINDOW_SECONDS", 15 * 60)

VOTING_TABULATION_MAX_RETRIES = _env_int("VOTING_TABULATION_MAX_RETRIES", 3)
# Ledger writes that lose a storage lock race are retried with a short backoff.
VOTING_LEDGER_LOCK_RETRIES = _env_int("VOTING_LEDGER_LOCK_RETRIES", 8)
VOTING_LEDGER_LOCK_BACKOFF_SECONDS = _env_float("VOTING_LEDGER_LOCK_BACKOFF_SECONDS", 0.05)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "health_endpoint": {
            "()": "config.logging_filters.HealthEndpointFilter",
        },
    },
    "formatters": {
        "default": {
            "format": "[{asctime}] {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
        "server": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "filters": ["health_endpoint"],
        },
    },
    "loggers": {
        "django.server": {
            "handlers": ["server"],
            "level": "INFO",
            "propagate": False,
        },
        "voting": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
}

SENTRY_DSN = os.environ.get("SENTRY_DSN", "").strip()
if SENTRY_DSN:
    import logging

    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        integrations=[
            DjangoIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        send_default_pii=False,
        send_client_reports=False,
        auto_session_tracking=False,
    )
