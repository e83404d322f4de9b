"""Terminal-side copy of the store's records plus the edits made against it."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from django.db import transaction
from django.utils.dateparse import parse_datetime

from apps.sync.tables import get_descriptor

from .journal import ChangeJournal
from .models import JournalEntry, LocalRecord

logger = logging.getLogger(__name__)


class LocalStore:
    def __init__(self, store_id: str, journal: Optional[ChangeJournal] = None):
        self.store_id = store_id
        self.journal = journal or ChangeJournal(store_id)

    # --- local edits; each writes the row and its journal entry together ---

    def create(self, table: str, data: Dict[str, Any]) -> LocalRecord:
        descriptor = get_descriptor(table)
        payload = descriptor.clean_payload(data)
        descriptor.validate_create(payload)
        local_id = uuid.uuid4().hex
        with transaction.atomic():
            record = LocalRecord.objects.create(
                store_id=self.store_id,
                table=table,
                local_id=local_id,
                version=1,
                data=payload,
            )
            self.journal.enqueue(table, "create", payload, local_id=local_id)
        return record

    def update(self, record: LocalRecord, changes: Dict[str, Any]) -> LocalRecord:
        descriptor = get_descriptor(record.table)
        changes = descriptor.clean_payload(changes)
        with transaction.atomic():
            record = LocalRecord.objects.select_for_update().get(pk=record.pk)
            data = {**changes, **record.reference, "baseVersion": max(record.version, 1)}
            self.journal.enqueue(record.table, "update", data)
            record.data = {**record.data, **changes}
            record.version = max(record.version, 1) + 1
            record.save(update_fields=["data", "version", "modified_at"])
        return record

    def delete(self, record: LocalRecord) -> None:
        with transaction.atomic():
            record = LocalRecord.objects.select_for_update().get(pk=record.pk)
            data = {**record.reference, "baseVersion": max(record.version, 1)}
            self.journal.enqueue(record.table, "delete", data)
            record.delete()

    # --- outcomes reported by the coordinator ---

    def _target(self, entry: JournalEntry) -> Optional[LocalRecord]:
        records = LocalRecord.objects.filter(store_id=self.store_id, table=entry.table)
        if entry.action == "create":
            return records.filter(local_id=entry.local_id).first()
        data = entry.data or {}
        if data.get("serverId"):
            return records.filter(server_id=str(data["serverId"])).first()
        if data.get("recordLocalId"):
            return records.filter(local_id=str(data["recordLocalId"])).first()
        return None

    def record_keys(self, entry: JournalEntry) -> Set[Tuple[str, str, str]]:
        """Every id the entry's record is known by, so edits to one record can be matched up."""
        data = entry.data or {}
        keys = set()
        if entry.action == "create":
            keys.add(("local", entry.local_id))
        if data.get("serverId"):
            keys.add(("server", str(data["serverId"])))
        if data.get("recordLocalId"):
            keys.add(("local", str(data["recordLocalId"])))
        record = self._target(entry)
        if record is not None:
            if record.local_id:
                keys.add(("local", record.local_id))
            if record.server_id:
                keys.add(("server", record.server_id))
        return {(entry.table, kind, value) for kind, value in keys}

    def mark_accepted(self, entry: JournalEntry, result: Dict[str, Any]) -> None:
        record = self._target(entry)
        if record is None:
            return
        version = int(result.get("version") or 0)
        if result.get("serverId") and not record.server_id:
            record.server_id = str(result["serverId"])
        record.server_version = max(record.server_version, version)
        record.version = max(record.version, version)
        record.conflict_id = None
        record.sync_error = None
        record.save(update_fields=["server_id", "server_version", "version", "conflict_id", "sync_error", "modified_at"])

    def mark_conflicted(self, entry: JournalEntry, result: Dict[str, Any]) -> None:
        record = self._target(entry)
        if record is None:
            return
        record.conflict_id = result.get("conflictId")
        if result.get("version"):
            record.server_version = int(result["version"])
            record.version = record.server_version
        record.save(update_fields=["conflict_id", "server_version", "version", "modified_at"])

    def mark_rejected(self, entry: JournalEntry, error: Dict[str, Any]) -> None:
        record = self._target(entry)
        if record is None:
            return
        record.sync_error = error
        if record.server_id:
            # The rejected edit no longer counts towards the expected server version.
            record.version = max(record.server_version, record.version - 1)
        record.save(update_fields=["sync_error", "version", "modified_at"])

    # --- server deltas ---

    def apply_pulled(self, table: str, rows: Iterable[Dict[str, Any]]) -> int:
        """Upsert pulled rows by serverId; tombstones delete. Returns rows applied."""
        get_descriptor(table)
        applied = 0
        for row in rows:
            server_id = str(row["serverId"])
            records = LocalRecord.objects.filter(store_id=self.store_id, table=table)
            if row.get("tombstone"):
                records.filter(server_id=server_id).delete()
                applied += 1
                continue

            record = records.filter(server_id=server_id).first()
            if record is None and row.get("localId"):
                record = records.filter(local_id=row["localId"], server_id__isnull=True).first()
            if record is None:
                record = LocalRecord(store_id=self.store_id, table=table)

            version = int(row.get("version") or 0)
            record.server_id = server_id
            record.data = row.get("data") or {}
            record.version = version
            record.server_version = version
            record.updated_at = parse_datetime(row["updatedAt"]) if row.get("updatedAt") else None
            record.save()
            applied += 1
        return applied
