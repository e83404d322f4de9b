"""Applies client change batches against the authoritative record store."""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from ..errors import (
    ErrorKind,
    MalformedPayload,
    RecordGone,
    RecordNotFound,
    SyncError,
    UniqueViolation,
)
from ..models import AppliedChange, Conflict, RecordRevision, RecordUniqueKey, TrackedRecord
from ..scope import SyncScope
from ..signals import change_applied
from ..tables import TableDescriptor, get_descriptor

logger = logging.getLogger(__name__)

ACTIONS = ("create", "update", "delete")

STATUS_ACCEPTED = "accepted"
STATUS_CONFLICTED = "conflicted"
STATUS_FAILED = "failed"


@dataclass
class ChangeEntry:
    local_id: str
    table: str
    action: str
    data: Any = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ChangeEntry":
        return cls(
            local_id=str(raw.get("localId") or "").strip(),
            table=str(raw.get("table") or "").strip(),
            action=str(raw.get("action") or "").strip().lower(),
            data=raw.get("data") if raw.get("data") is not None else {},
        )


@dataclass
class ChangeResult:
    local_id: str
    status: str
    server_id: Optional[str] = None
    version: Optional[int] = None
    conflict_id: Optional[int] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def accepted(cls, local_id: str, record: TrackedRecord) -> "ChangeResult":
        return cls(local_id=local_id, status=STATUS_ACCEPTED, server_id=str(record.id), version=record.version)

    @classmethod
    def conflicted(cls, local_id: str, conflict: Conflict) -> "ChangeResult":
        return cls(
            local_id=local_id,
            status=STATUS_CONFLICTED,
            server_id=str(conflict.record_id),
            version=conflict.server_version,
            conflict_id=conflict.id,
        )

    @classmethod
    def failed(cls, local_id: str, kind, message: str = "", field: Optional[str] = None) -> "ChangeResult":
        error = {"kind": ErrorKind(kind).value}
        if field:
            error["field"] = field
        if message:
            error["message"] = message
        return cls(local_id=local_id, status=STATUS_FAILED, error=error)

    @classmethod
    def from_error(cls, local_id: str, exc: SyncError) -> "ChangeResult":
        return cls.failed(local_id, exc.kind, message=str(exc), field=exc.field)

    @property
    def retryable(self) -> bool:
        if self.status != STATUS_FAILED or not self.error:
            return False
        return self.error.get("kind") in (ErrorKind.STORAGE_UNAVAILABLE.value, ErrorKind.DEADLINE_EXCEEDED.value)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"localId": self.local_id, "status": self.status}
        if self.server_id is not None:
            payload["serverId"] = self.server_id
        if self.version is not None:
            payload["version"] = self.version
        if self.conflict_id is not None:
            payload["conflictId"] = self.conflict_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


def _parse_base_version(data: Dict[str, Any]) -> int:
    raw = data.get("baseVersion")
    if isinstance(raw, bool) or raw is None:
        raise MalformedPayload("baseVersion is required", field="baseVersion")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise MalformedPayload("baseVersion must be an integer", field="baseVersion") from None
    if value < 1:
        raise MalformedPayload("baseVersion must be positive", field="baseVersion")
    return value


class PushApplier:
    """
    Applies change entries one at a time, in the order given.
    Every entry commits (or rolls back) on its own; later entries see the
    effects of earlier accepted ones.
    """

    def __init__(self, scope: SyncScope, deadline: Optional[float] = None, clock=timezone.now):
        self.scope = scope
        self.deadline = deadline
        self.clock = clock

    # --- batch ---

    def apply(self, entries: Iterable[ChangeEntry]) -> List[ChangeResult]:
        results = []
        for entry in entries:
            if self.deadline is not None and time.monotonic() >= self.deadline:
                results.append(ChangeResult.failed(entry.local_id, ErrorKind.DEADLINE_EXCEEDED, "push deadline exceeded"))
                continue
            results.append(self.apply_one(entry))
        counts: Dict[str, int] = {}
        for result in results:
            counts[result.status] = counts.get(result.status, 0) + 1
        logger.info("push store=%s entries=%s outcome=%s", self.scope.store_id, len(results), counts)
        return results

    def apply_one(self, entry: ChangeEntry) -> ChangeResult:
        if not entry.local_id:
            return ChangeResult.failed("", ErrorKind.MALFORMED_PAYLOAD, "localId is required", field="localId")

        replay = self._replay(entry)
        if replay is not None:
            logger.debug("replayed outcome for %s", entry.local_id)
            return replay

        try:
            with transaction.atomic():
                result = self._dispatch(entry)
                self._remember(entry, result)
        except SyncError as exc:
            result = ChangeResult.from_error(entry.local_id, exc)
            if not exc.retryable:
                result = self._remember_failure(entry, result)
        except OperationalError:
            logger.exception("storage error applying %s", entry.local_id)
            result = ChangeResult.failed(entry.local_id, ErrorKind.STORAGE_UNAVAILABLE, "storage unavailable")
        except IntegrityError:
            # Same localId committed by a concurrent request.
            result = self._replay(entry)
            if result is None:
                raise

        self._emit(entry, result)
        return result

    # --- idempotency ---

    def _replay(self, entry: ChangeEntry) -> Optional[ChangeResult]:
        applied = AppliedChange.objects.filter(store_id=self.scope.store_id, local_id=entry.local_id).first()
        if applied is None:
            return None
        return ChangeResult(
            local_id=applied.local_id,
            status=applied.status,
            server_id=str(applied.server_id) if applied.server_id else None,
            version=applied.version,
            conflict_id=applied.conflict_id,
            error=applied.error,
        )

    def _remember(self, entry: ChangeEntry, result: ChangeResult) -> None:
        AppliedChange.objects.create(
            store_id=self.scope.store_id,
            local_id=entry.local_id,
            table=entry.table[:32],
            action=entry.action[:10],
            status=result.status,
            server_id=result.server_id,
            version=result.version,
            conflict_id=result.conflict_id,
            error=result.error,
        )

    def _remember_failure(self, entry: ChangeEntry, result: ChangeResult) -> ChangeResult:
        try:
            with transaction.atomic():
                self._remember(entry, result)
        except IntegrityError:
            return self._replay(entry) or result
        return result

    def _emit(self, entry: ChangeEntry, result: ChangeResult) -> None:
        responses = change_applied.send_robust(sender=self.__class__, scope=self.scope, entry=entry, result=result)
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.warning("change_applied receiver %r failed: %s", receiver, response)

    # --- per action ---

    def _dispatch(self, entry: ChangeEntry) -> ChangeResult:
        descriptor = get_descriptor(entry.table)
        if entry.action not in ACTIONS:
            raise MalformedPayload(f"unknown action {entry.action!r}", field="action")
        if not isinstance(entry.data, dict):
            raise MalformedPayload("data must be an object", field="data")
        if entry.action == "create":
            return self._create(descriptor, entry)
        return self._modify(descriptor, entry)

    def _create(self, descriptor: TableDescriptor, entry: ChangeEntry) -> ChangeResult:
        payload = descriptor.clean_payload(entry.data)
        descriptor.validate_create(payload)

        existing = self._records(descriptor).filter(local_id=entry.local_id).first()
        if existing is not None:
            return ChangeResult.accepted(entry.local_id, existing)

        record = TrackedRecord.objects.create(
            store_id=self.scope.store_id,
            organization_id=self.scope.organization_id or "",
            table=descriptor.name,
            local_id=entry.local_id,
            payload=payload,
            version=1,
            tombstone=False,
            updated_at=self.clock(),
        )
        RecordRevision.objects.create(record=record, version=1, payload=payload)
        self._sync_unique_keys(descriptor, record)
        return ChangeResult.accepted(entry.local_id, record)

    def _modify(self, descriptor: TableDescriptor, entry: ChangeEntry) -> ChangeResult:
        record = self.locate(descriptor, entry.data)
        base_version = _parse_base_version(entry.data)
        changes = descriptor.clean_payload(entry.data)

        if record.tombstone:
            raise RecordGone(f"{descriptor.name} {record.id} was deleted")
        if record.version > base_version:
            return self._conflict(descriptor, entry, record, base_version, changes)
        if record.version < base_version:
            raise MalformedPayload(
                f"baseVersion {base_version} is ahead of stored version {record.version}",
                field="baseVersion",
            )

        written = self.write(descriptor, record, entry.action, changes, expected_version=base_version)
        if written is None:
            # Lost the compare-and-set to a concurrent writer.
            record = self.locate(descriptor, {"serverId": str(record.id)})
            if record.tombstone:
                raise RecordGone(f"{descriptor.name} {record.id} was deleted")
            return self._conflict(descriptor, entry, record, base_version, changes)
        return ChangeResult.accepted(entry.local_id, written)

    def _conflict(self, descriptor, entry, record, base_version, changes) -> ChangeResult:
        base_payload = (
            RecordRevision.objects.filter(record=record, version=base_version)
            .values_list("payload", flat=True)
            .first()
        )
        conflict = Conflict.objects.create(
            store_id=self.scope.store_id,
            table=descriptor.name,
            record=record,
            client_local_id=entry.local_id,
            action=entry.action,
            base_version=base_version,
            server_version=record.version,
            server_payload=record.payload,
            client_payload=changes,
            base_payload=base_payload,
        )
        logger.info(
            "conflict %s on %s %s: base=%s stored=%s", conflict.id, descriptor.name, record.id, base_version, record.version
        )
        return ChangeResult.conflicted(entry.local_id, conflict)

    # --- shared with conflict resolution ---

    def _records(self, descriptor: TableDescriptor):
        return TrackedRecord.objects.filter(store_id=self.scope.store_id, table=descriptor.name)

    def locate(self, descriptor: TableDescriptor, data: Dict[str, Any]) -> TrackedRecord:
        """Find the addressed record inside the caller's scope."""
        server_id = data.get("serverId")
        record_local_id = data.get("recordLocalId")
        records = self._records(descriptor)
        if server_id:
            try:
                record = records.filter(pk=uuid.UUID(str(server_id))).first()
            except ValueError:
                record = None
        elif record_local_id:
            record = records.filter(local_id=str(record_local_id)).first()
        else:
            raise MalformedPayload("serverId is required", field="serverId")
        if record is None:
            raise RecordNotFound(f"{descriptor.name} record not found")
        return record

    def write(
        self,
        descriptor: TableDescriptor,
        record: TrackedRecord,
        action: str,
        changes: Dict[str, Any],
        expected_version: int,
    ) -> Optional[TrackedRecord]:
        """Compare-and-set write; returns None when the stored version moved on."""
        tombstone = action == "delete"
        payload = dict(record.payload) if tombstone else {**record.payload, **changes}
        now = self.clock()
        if now <= record.updated_at:
            now = record.updated_at + timedelta(microseconds=1)
        new_version = expected_version + 1

        updated = TrackedRecord.objects.filter(
            pk=record.pk,
            store_id=self.scope.store_id,
            version=expected_version,
            tombstone=False,
        ).update(payload=payload, version=new_version, tombstone=tombstone, updated_at=now)
        if not updated:
            return None

        record.payload = payload
        record.version = new_version
        record.tombstone = tombstone
        record.updated_at = now
        RecordRevision.objects.create(record=record, version=new_version, payload=payload, tombstone=tombstone)
        self._sync_unique_keys(descriptor, record)
        return record

    def _sync_unique_keys(self, descriptor: TableDescriptor, record: TrackedRecord) -> None:
        if not descriptor.unique_fields:
            return
        RecordUniqueKey.objects.filter(record=record).delete()
        if record.tombstone:
            return
        for field_name, value in descriptor.unique_values(record.payload).items():
            try:
                with transaction.atomic():
                    RecordUniqueKey.objects.create(
                        store_id=self.scope.store_id,
                        table=descriptor.name,
                        field=field_name,
                        value=value[:255],
                        record=record,
                    )
            except IntegrityError:
                raise UniqueViolation(f"{field_name} must be unique", field=field_name) from None
