from django.db import models
from django.utils import timezone

from apps.sync.tables import TABLE_CHOICES


class JournalEntry(models.Model):
    """A local edit waiting to be pushed. The primary key is the append order."""

    ACTION_CHOICES = [("create", "create"), ("update", "update"), ("delete", "delete")]

    store_id = models.CharField(max_length=64)
    local_id = models.CharField(max_length=120, unique=True)
    table = models.CharField(max_length=32, choices=TABLE_CHOICES)
    action = models.CharField(max_length=10, choices=ACTION_CHOICES)
    data = models.JSONField(default=dict, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    next_attempt_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["id"]
        indexes = [models.Index(fields=["store_id", "id"], name="terminal_journal_fifo_idx")]
        verbose_name_plural = "journal entries"

    def __str__(self) -> str:
        return f"{self.action} {self.table} {self.local_id}"

    def as_change(self) -> dict:
        return {"localId": self.local_id, "table": self.table, "action": self.action, "data": self.data}


class LocalRecord(models.Model):
    store_id = models.CharField(max_length=64)
    table = models.CharField(max_length=32, choices=TABLE_CHOICES)
    local_id = models.CharField(max_length=120, null=True, blank=True, unique=True)
    server_id = models.CharField(max_length=64, null=True, blank=True)
    # version: what the server will hold once queued edits land; server_version: last confirmed.
    version = models.PositiveIntegerField(default=0)
    server_version = models.PositiveIntegerField(default=0)
    data = models.JSONField(default=dict, blank=True)
    conflict_id = models.BigIntegerField(null=True, blank=True)
    sync_error = models.JSONField(null=True, blank=True)
    updated_at = models.DateTimeField(null=True, blank=True)
    modified_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["store_id", "server_id"], name="terminal_record_server_id_uniq"),
        ]
        indexes = [models.Index(fields=["store_id", "table"], name="terminal_record_table_idx")]

    def __str__(self) -> str:
        return f"{self.table} {self.server_id or self.local_id}"

    @property
    def reference(self) -> dict:
        """How a change entry addresses this record on the server."""
        if self.server_id:
            return {"serverId": self.server_id}
        return {"recordLocalId": self.local_id}


class SyncState(models.Model):
    store_id = models.CharField(max_length=64, unique=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)
    last_cycle_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=255, blank=True)

    def __str__(self) -> str:
        return f"{self.store_id} @ {self.last_synced_at}"

    @classmethod
    def for_store(cls, store_id: str) -> "SyncState":
        state, _ = cls.objects.get_or_create(store_id=store_id)
        return state
