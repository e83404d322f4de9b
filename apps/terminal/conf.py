"""Accessors for the SYNC_TERMINAL settings block."""
from django.conf import settings

DEFAULTS = {
    "SERVER_URL": "http://127.0.0.1:8000",
    "TOKEN": "",
    "STORE_ID": "",
    "BATCH_SIZE": 100,
    "INTERVAL_SECONDS": 30,
    "PUSH_TIMEOUT_SECONDS": 30,
    "PULL_TIMEOUT_SECONDS": 60,
    "BACKOFF_BASE_SECONDS": 2,
    "BACKOFF_CAP_SECONDS": 300,
    "MAX_PULL_PAGES": 50,
    "PULL_TABLE_LIMIT": 1000,
    "VERIFY_TLS": True,
}


def terminal_setting(name: str):
    return getattr(settings, "SYNC_TERMINAL", {}).get(name, DEFAULTS[name])
