import uuid

from django.conf import settings
from django.db import models

from .tables import TABLE_CHOICES


class StoreMembership(models.Model):
    """Effective store scope of a user; copied into issued tokens."""

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="store_membership")
    store_id = models.CharField(max_length=64, db_index=True)
    organization_id = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.user} @ {self.store_id}"


class TrackedRecord(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    store_id = models.CharField(max_length=64)
    organization_id = models.CharField(max_length=64, blank=True)
    table = models.CharField(max_length=32, choices=TABLE_CHOICES)
    local_id = models.CharField(max_length=120, null=True, blank=True)
    payload = models.JSONField(default=dict, blank=True)
    version = models.PositiveIntegerField(default=1)
    tombstone = models.BooleanField(default=False)
    updated_at = models.DateTimeField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["store_id", "table", "updated_at"], name="sync_record_pull_idx")]
        constraints = [
            models.UniqueConstraint(fields=["store_id", "table", "local_id"], name="sync_record_local_id_uniq"),
        ]

    def __str__(self) -> str:
        return f"{self.table} {self.id} v{self.version}"


class RecordRevision(models.Model):
    record = models.ForeignKey(TrackedRecord, related_name="revisions", on_delete=models.CASCADE)
    version = models.PositiveIntegerField()
    payload = models.JSONField(default=dict, blank=True)
    tombstone = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [models.UniqueConstraint(fields=["record", "version"], name="sync_revision_uniq")]

    def __str__(self) -> str:
        return f"{self.record_id} v{self.version}"


class RecordUniqueKey(models.Model):
    store_id = models.CharField(max_length=64)
    table = models.CharField(max_length=32, choices=TABLE_CHOICES)
    field = models.CharField(max_length=64)
    value = models.CharField(max_length=255)
    record = models.ForeignKey(TrackedRecord, related_name="unique_keys", on_delete=models.CASCADE)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["store_id", "table", "field", "value"], name="sync_unique_key_uniq"),
        ]

    def __str__(self) -> str:
        return f"{self.table}.{self.field}={self.value}"


class AppliedChange(models.Model):
    """Outcome of every change entry the server applied, keyed by the client's localId."""

    STATUS_CHOICES = [("accepted", "accepted"), ("conflicted", "conflicted"), ("failed", "failed")]

    store_id = models.CharField(max_length=64)
    local_id = models.CharField(max_length=120)
    table = models.CharField(max_length=32)
    action = models.CharField(max_length=10)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES)
    server_id = models.UUIDField(null=True, blank=True)
    version = models.PositiveIntegerField(null=True, blank=True)
    conflict_id = models.BigIntegerField(null=True, blank=True)
    error = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        constraints = [models.UniqueConstraint(fields=["store_id", "local_id"], name="sync_applied_change_uniq")]

    def __str__(self) -> str:
        return f"{self.local_id} {self.status}"


class Conflict(models.Model):
    STATUS_OPEN = "open"
    STATUS_RESOLVED_SERVER = "resolved-server"
    STATUS_RESOLVED_CLIENT = "resolved-client"
    STATUS_MERGED = "merged"
    STATUS_REJECTED = "rejected"
    STATUS_CHOICES = [
        (STATUS_OPEN, "open"),
        (STATUS_RESOLVED_SERVER, "resolved-server"),
        (STATUS_RESOLVED_CLIENT, "resolved-client"),
        (STATUS_MERGED, "merged"),
        (STATUS_REJECTED, "rejected"),
    ]

    store_id = models.CharField(max_length=64)
    table = models.CharField(max_length=32, choices=TABLE_CHOICES)
    record = models.ForeignKey(TrackedRecord, related_name="conflicts", on_delete=models.CASCADE)
    client_local_id = models.CharField(max_length=120)
    action = models.CharField(max_length=10, default="update")
    base_version = models.PositiveIntegerField()
    server_version = models.PositiveIntegerField()
    server_payload = models.JSONField(default=dict, blank=True)
    client_payload = models.JSONField(default=dict, blank=True)
    base_payload = models.JSONField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_OPEN)
    resolved_version = models.PositiveIntegerField(null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [models.Index(fields=["store_id", "status", "created_at"], name="sync_conflict_list_idx")]

    def __str__(self) -> str:
        return f"{self.table} {self.record_id} {self.status}"

    @property
    def is_open(self) -> bool:
        return self.status == self.STATUS_OPEN
