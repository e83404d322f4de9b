from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.sync.conf import sync_setting
from apps.sync.models import AppliedChange


class Command(BaseCommand):
    help = "Delete push outcomes older than the idempotency retention window."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=None,
            help="Retention in days (defaults to SYNC['IDEMPOTENCY_RETENTION_DAYS']).",
        )

    def handle(self, *args, **options):
        days = options["days"] if options["days"] is not None else sync_setting("IDEMPOTENCY_RETENTION_DAYS")
        cutoff = timezone.now() - timedelta(days=days)
        deleted, _ = AppliedChange.objects.filter(created_at__lt=cutoff).delete()
        self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} applied changes older than {days} days."))
