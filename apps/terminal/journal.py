"""Local change journal: a durable FIFO of edits made while offline."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from apps.sync.tables import get_descriptor

from .conf import terminal_setting
from .models import JournalEntry

logger = logging.getLogger(__name__)

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected-final"
OUTCOME_RETRYABLE = "retryable"
OUTCOMES = (OUTCOME_ACCEPTED, OUTCOME_REJECTED, OUTCOME_RETRYABLE)


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """Exponential backoff in seconds: base, 2*base, 4*base ... capped."""
    if attempts <= 0:
        return 0.0
    return float(min(base * (2 ** (attempts - 1)), cap))


def _base_version(entry: JournalEntry) -> Optional[int]:
    try:
        return int((entry.data or {}).get("baseVersion"))
    except (TypeError, ValueError):
        return None


class ChangeJournal:
    def __init__(self, store_id: str, backoff_base=None, backoff_cap=None, clock=timezone.now):
        self.store_id = store_id
        self.backoff_base = backoff_base if backoff_base is not None else terminal_setting("BACKOFF_BASE_SECONDS")
        self.backoff_cap = backoff_cap if backoff_cap is not None else terminal_setting("BACKOFF_CAP_SECONDS")
        self.clock = clock

    def _entries(self):
        return JournalEntry.objects.filter(store_id=self.store_id).order_by("id")

    def enqueue(self, table: str, action: str, data: Dict[str, Any], local_id: Optional[str] = None) -> str:
        get_descriptor(table)
        if action not in ("create", "update", "delete"):
            raise ValueError(f"unknown action {action!r}")
        local_id = local_id or uuid.uuid4().hex
        with transaction.atomic():
            JournalEntry.objects.create(
                store_id=self.store_id,
                local_id=local_id,
                table=table,
                action=action,
                data=data,
                created_at=self.clock(),
            )
        logger.debug("journal %s: queued %s %s %s", self.store_id, action, table, local_id)
        return local_id

    def peek(self, limit: int) -> List[JournalEntry]:
        return list(self._entries()[:limit])

    def ack(self, local_id: str, outcome: str, error: str = "") -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome {outcome!r}")
        with transaction.atomic():
            entry = self._entries().select_for_update().get(local_id=local_id)
            if outcome == OUTCOME_RETRYABLE:
                entry.attempts += 1
                entry.next_attempt_at = self.clock() + timedelta(
                    seconds=backoff_delay(entry.attempts, self.backoff_base, self.backoff_cap)
                )
                entry.last_error = (error or "")[:255]
                entry.save(update_fields=["attempts", "next_attempt_at", "last_error"])
                logger.info("journal %s: %s will retry (attempt %s): %s", self.store_id, local_id, entry.attempts, error)
            else:
                entry.delete()
                logger.debug("journal %s: %s removed (%s)", self.store_id, local_id, outcome)

    def step_back(self, failed: JournalEntry, same_record: Callable[[JournalEntry], bool]) -> List[str]:
        """An edit did not land: later edits to the same record were based on it,
        so each of their baseVersions drops by one. Returns the local ids moved."""
        base = _base_version(failed)
        if failed.action == "create" or base is None:
            return []
        moved = []
        with transaction.atomic():
            later = self._entries().select_for_update().filter(id__gt=failed.id).exclude(action="create")
            for entry in later:
                current = _base_version(entry)
                if current is None or current <= base or not same_record(entry):
                    continue
                entry.data = {**entry.data, "baseVersion": current - 1}
                entry.save(update_fields=["data"])
                moved.append(entry.local_id)
        if moved:
            logger.info("journal %s: rebased %s after %s did not land", self.store_id, moved, failed.local_id)
        return moved

    def pending_count(self) -> int:
        return self._entries().count()

    def next_attempt_at(self) -> Optional[datetime]:
        """When the head of the queue may be sent again; None if it is due now or the queue is empty."""
        head = self._entries().first()
        if head is None:
            return None
        return head.next_attempt_at

    def is_due(self, now: Optional[datetime] = None) -> bool:
        head = self._entries().first()
        if head is None:
            return False
        return head.next_attempt_at is None or head.next_attempt_at <= (now or self.clock())
