from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import uuid

TABLE_CHOICES = [
    ("products", "products"),
    ("categories", "categories"),
    ("sales", "sales"),
    ("customers", "customers"),
    ("credits", "credits"),
    ("employees", "employees"),
    ("shifts", "shifts"),
    ("clockEvents", "clockEvents"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="StoreMembership",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("store_id", models.CharField(max_length=64, db_index=True)),
                ("organization_id", models.CharField(max_length=64, blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="store_membership",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="TrackedRecord",
            fields=[
                ("id", models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False, serialize=False)),
                ("store_id", models.CharField(max_length=64)),
                ("organization_id", models.CharField(max_length=64, blank=True)),
                ("table", models.CharField(max_length=32, choices=TABLE_CHOICES)),
                ("local_id", models.CharField(max_length=120, null=True, blank=True)),
                ("payload", models.JSONField(default=dict, blank=True)),
                ("version", models.PositiveIntegerField(default=1)),
                ("tombstone", models.BooleanField(default=False)),
                ("updated_at", models.DateTimeField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "indexes": [models.Index(fields=["store_id", "table", "updated_at"], name="sync_record_pull_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=["store_id", "table", "local_id"], name="sync_record_local_id_uniq"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RecordRevision",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("version", models.PositiveIntegerField()),
                ("payload", models.JSONField(default=dict, blank=True)),
                ("tombstone", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "record",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="revisions", to="sync.trackedrecord"
                    ),
                ),
            ],
            options={
                "constraints": [models.UniqueConstraint(fields=["record", "version"], name="sync_revision_uniq")],
            },
        ),
        migrations.CreateModel(
            name="RecordUniqueKey",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("store_id", models.CharField(max_length=64)),
                ("table", models.CharField(max_length=32, choices=TABLE_CHOICES)),
                ("field", models.CharField(max_length=64)),
                ("value", models.CharField(max_length=255)),
                (
                    "record",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="unique_keys", to="sync.trackedrecord"
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=["store_id", "table", "field", "value"], name="sync_unique_key_uniq"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AppliedChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("store_id", models.CharField(max_length=64)),
                ("local_id", models.CharField(max_length=120)),
                ("table", models.CharField(max_length=32)),
                ("action", models.CharField(max_length=10)),
                (
                    "status",
                    models.CharField(
                        max_length=20,
                        choices=[("accepted", "accepted"), ("conflicted", "conflicted"), ("failed", "failed")],
                    ),
                ),
                ("server_id", models.UUIDField(null=True, blank=True)),
                ("version", models.PositiveIntegerField(null=True, blank=True)),
                ("conflict_id", models.BigIntegerField(null=True, blank=True)),
                ("error", models.JSONField(null=True, blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                "constraints": [models.UniqueConstraint(fields=["store_id", "local_id"], name="sync_applied_change_uniq")],
            },
        ),
        migrations.CreateModel(
            name="Conflict",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("store_id", models.CharField(max_length=64)),
                ("table", models.CharField(max_length=32, choices=TABLE_CHOICES)),
                ("client_local_id", models.CharField(max_length=120)),
                ("action", models.CharField(max_length=10, default="update")),
                ("base_version", models.PositiveIntegerField()),
                ("server_version", models.PositiveIntegerField()),
                ("server_payload", models.JSONField(default=dict, blank=True)),
                ("client_payload", models.JSONField(default=dict, blank=True)),
                ("base_payload", models.JSONField(null=True, blank=True)),
                (
                    "status",
                    models.CharField(
                        max_length=20,
                        default="open",
                        choices=[
                            ("open", "open"),
                            ("resolved-server", "resolved-server"),
                            ("resolved-client", "resolved-client"),
                            ("merged", "merged"),
                            ("rejected", "rejected"),
                        ],
                    ),
                ),
                ("resolved_version", models.PositiveIntegerField(null=True, blank=True)),
                ("resolved_at", models.DateTimeField(null=True, blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                (
                    "record",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="conflicts", to="sync.trackedrecord"
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [models.Index(fields=["store_id", "status", "created_at"], name="sync_conflict_list_idx")],
            },
        ),
    ]
