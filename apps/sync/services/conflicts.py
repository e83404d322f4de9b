"""Conflict registry: list, resolve and reject conflicts detected during push."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from django.core.paginator import Paginator
from django.db import transaction
from django.utils import timezone

from ..errors import ConflictClosed, ErrorKind, MalformedPayload, RecordGone, RecordNotFound, SyncError
from ..models import Conflict, TrackedRecord
from ..scope import SyncScope
from ..signals import conflict_closed
from ..tables import get_descriptor
from .push import ChangeResult, PushApplier

logger = logging.getLogger(__name__)

CHOICE_SERVER = "server"
CHOICE_CLIENT = "client"
CHOICE_MERGED = "merged"
CHOICES = (CHOICE_SERVER, CHOICE_CLIENT, CHOICE_MERGED)

_STATUS_FOR_CHOICE = {
    CHOICE_SERVER: Conflict.STATUS_RESOLVED_SERVER,
    CHOICE_CLIENT: Conflict.STATUS_RESOLVED_CLIENT,
    CHOICE_MERGED: Conflict.STATUS_MERGED,
}


@dataclass
class ConflictFilter:
    table: Optional[str] = None
    status: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


@dataclass
class Resolution:
    conflict: Conflict
    result: Optional[ChangeResult] = None

    @property
    def applied(self) -> bool:
        return self.result is None or self.result.status == "accepted"


class ConflictRegistry:
    def __init__(self, scope: SyncScope, clock=timezone.now):
        self.scope = scope
        self.clock = clock

    def _conflicts(self):
        return Conflict.objects.filter(store_id=self.scope.store_id)

    def list(self, filters: Optional[ConflictFilter] = None, page: int = 1, page_size: int = 50):
        filters = filters or ConflictFilter()
        conflicts = self._conflicts()
        if filters.table:
            conflicts = conflicts.filter(table=filters.table)
        if filters.status:
            conflicts = conflicts.filter(status=filters.status)
        if filters.created_after:
            conflicts = conflicts.filter(created_at__gte=filters.created_after)
        if filters.created_before:
            conflicts = conflicts.filter(created_at__lt=filters.created_before)
        paginator = Paginator(conflicts.order_by("-created_at", "-id"), page_size)
        return paginator.get_page(page)

    def get(self, conflict_id) -> Conflict:
        return self._conflicts().get(pk=conflict_id)

    def resolve(self, conflict_id, choice: str, merged_payload: Optional[Dict[str, Any]] = None) -> Resolution:
        """
        Resolve an open conflict.

        server: the client's change is discarded, nothing is written.
        client: the stored client payload is applied on top of the current server version.
        merged: merged_payload is applied the same way.
        The record write and the status change commit together; if the write
        fails the conflict stays open and the failed result is returned.
        """
        if choice not in CHOICES:
            raise MalformedPayload(f"unknown choice {choice!r}", field="choice")
        if choice == CHOICE_MERGED and not isinstance(merged_payload, dict):
            raise MalformedPayload("mergedPayload is required for merged", field="mergedPayload")

        try:
            with transaction.atomic():
                conflict = self._lock_open(conflict_id)
                result = None
                if choice != CHOICE_SERVER:
                    payload = conflict.client_payload if choice == CHOICE_CLIENT else merged_payload
                    action = "update" if choice == CHOICE_MERGED else conflict.action
                    result = self._fast_forward(conflict, action, payload)
                    conflict.resolved_version = result.version
                self._close(conflict, _STATUS_FOR_CHOICE[choice])
        except SyncError as exc:
            conflict = self.get(conflict_id)
            logger.info("resolving conflict %s with %s failed: %s", conflict_id, choice, exc)
            return Resolution(conflict=conflict, result=ChangeResult.from_error(conflict.client_local_id, exc))

        self._emit(conflict, result)
        return Resolution(conflict=conflict, result=result)

    def reject(self, conflict_id) -> Conflict:
        with transaction.atomic():
            conflict = self._lock_open(conflict_id)
            self._close(conflict, Conflict.STATUS_REJECTED)
        self._emit(conflict, None)
        return conflict

    def _lock_open(self, conflict_id) -> Conflict:
        conflict = self._conflicts().select_for_update().get(pk=conflict_id)
        if not conflict.is_open:
            raise ConflictClosed(f"conflict {conflict.id} is already {conflict.status}")
        return conflict

    def _close(self, conflict: Conflict, status: str) -> None:
        conflict.status = status
        conflict.resolved_at = self.clock()
        conflict.save(update_fields=["status", "resolved_at", "resolved_version"])
        logger.info("conflict %s -> %s", conflict.id, status)

    def _fast_forward(self, conflict: Conflict, action: str, payload: Dict[str, Any]) -> ChangeResult:
        descriptor = get_descriptor(conflict.table)
        applier = PushApplier(self.scope, clock=self.clock)
        record = TrackedRecord.objects.select_for_update().filter(
            pk=conflict.record_id, store_id=self.scope.store_id
        ).first()
        if record is None:
            raise RecordNotFound(f"{descriptor.name} record not found")
        if record.tombstone:
            raise RecordGone(f"{descriptor.name} {record.id} was deleted")
        changes = descriptor.clean_payload(payload)
        written = applier.write(descriptor, record, action, changes, expected_version=record.version)
        if written is None:
            # Another writer moved the record between the read and the write.
            raise SyncError("record changed during resolution; retry", kind=ErrorKind.STORAGE_UNAVAILABLE)
        return ChangeResult.accepted(conflict.client_local_id, written)

    def _emit(self, conflict: Conflict, result: Optional[ChangeResult]) -> None:
        responses = conflict_closed.send_robust(sender=self.__class__, scope=self.scope, conflict=conflict, result=result)
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.warning("conflict_closed receiver %r failed: %s", receiver, response)
