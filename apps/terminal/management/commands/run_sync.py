import signal

from django.core.management.base import BaseCommand, CommandError

from apps.terminal.conf import terminal_setting
from apps.terminal.coordinator import SyncCoordinator
from apps.terminal.transport import HttpTransport


class Command(BaseCommand):
    help = "Push queued local changes to the sync server and pull its deltas."

    def add_arguments(self, parser):
        parser.add_argument("--store", default=None, help="Store id (defaults to SYNC_TERMINAL['STORE_ID']).")
        parser.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
        parser.add_argument("--server", default=None, help="Server base URL.")
        parser.add_argument("--token", default=None, help="Bearer token for the sync endpoints.")

    def handle(self, *args, **options):
        store_id = options["store"] or terminal_setting("STORE_ID")
        if not store_id:
            raise CommandError("No store id. Pass --store or set SYNC_STORE_ID.")

        overrides = {}
        if options["server"]:
            overrides["base_url"] = options["server"]
        if options["token"]:
            overrides["token"] = options["token"]
        coordinator = SyncCoordinator(store_id, HttpTransport.from_settings(**overrides))

        if options["once"]:
            report = coordinator.sync_once(force=True)
            if report.error:
                raise CommandError(f"Sync failed: {report.error}")
            self.stdout.write(
                self.style.SUCCESS(
                    f"Pushed {report.pushed} (accepted {report.accepted}, conflicted {report.conflicted}, "
                    f"rejected {report.rejected}, retrying {report.retried}); pulled {report.pulled}."
                )
            )
            return

        signal.signal(signal.SIGTERM, lambda *_: coordinator.stop())
        self.stdout.write(f"Syncing store {store_id} every {coordinator.interval}s. Ctrl+C to stop.")
        try:
            coordinator.run_forever()
        except KeyboardInterrupt:
            coordinator.stop()
