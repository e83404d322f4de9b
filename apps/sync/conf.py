"""Accessors for the SYNC settings block, with defaults for unset keys."""
from django.conf import settings

DEFAULTS = {
    "PUSH_MAX_BATCH": 500,
    "PUSH_DEADLINE_SECONDS": 30,
    "PULL_DEFAULT_LIMIT": 1000,
    "PULL_MAX_LIMIT": 5000,
    "IDEMPOTENCY_RETENTION_DAYS": 30,
    "CONFLICT_PAGE_SIZE": 50,
}


def sync_setting(name: str):
    return getattr(settings, "SYNC", {}).get(name, DEFAULTS[name])
