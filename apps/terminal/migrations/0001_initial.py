from django.db import migrations, models
import django.utils.timezone

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

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="JournalEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("store_id", models.CharField(max_length=64)),
                ("local_id", models.CharField(max_length=120, unique=True)),
                ("table", models.CharField(max_length=32, choices=TABLE_CHOICES)),
                (
                    "action",
                    models.CharField(
                        max_length=10,
                        choices=[("create", "create"), ("update", "update"), ("delete", "delete")],
                    ),
                ),
                ("data", models.JSONField(default=dict, blank=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("next_attempt_at", models.DateTimeField(null=True, blank=True)),
                ("last_error", models.CharField(max_length=255, blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "ordering": ["id"],
                "verbose_name_plural": "journal entries",
                "indexes": [models.Index(fields=["store_id", "id"], name="terminal_journal_fifo_idx")],
            },
        ),
        migrations.CreateModel(
            name="LocalRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("store_id", models.CharField(max_length=64)),
                ("table", models.CharField(max_length=32, choices=TABLE_CHOICES)),
                ("local_id", models.CharField(max_length=120, null=True, blank=True, unique=True)),
                ("server_id", models.CharField(max_length=64, null=True, blank=True)),
                ("version", models.PositiveIntegerField(default=0)),
                ("server_version", models.PositiveIntegerField(default=0)),
                ("data", models.JSONField(default=dict, blank=True)),
                ("conflict_id", models.BigIntegerField(null=True, blank=True)),
                ("sync_error", models.JSONField(null=True, blank=True)),
                ("updated_at", models.DateTimeField(null=True, blank=True)),
                ("modified_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [models.Index(fields=["store_id", "table"], name="terminal_record_table_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=["store_id", "server_id"], name="terminal_record_server_id_uniq"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SyncState",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("store_id", models.CharField(max_length=64, unique=True)),
                ("last_synced_at", models.DateTimeField(null=True, blank=True)),
                ("last_cycle_at", models.DateTimeField(null=True, blank=True)),
                ("last_error", models.CharField(max_length=255, blank=True)),
            ],
        ),
    ]
