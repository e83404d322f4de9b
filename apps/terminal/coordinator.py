"""
Drives the terminal's push -> pull -> merge cycle.

One coordinator per store. Cycles never overlap: a trigger that arrives while
a cycle is running is folded into a single follow-up cycle.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from django.db import close_old_connections, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from apps.sync.errors import is_retryable
from apps.sync.tables import TABLE_NAMES

from .conf import terminal_setting
from .journal import OUTCOME_ACCEPTED, OUTCOME_REJECTED, OUTCOME_RETRYABLE, ChangeJournal, backoff_delay
from .local_store import LocalStore
from .models import JournalEntry, SyncState
from .signals import change_conflicted, change_rejected, sync_completed
from .transport import TransportAuthError, TransportError

logger = logging.getLogger(__name__)

MAX_PUSH_BATCHES = 10


@dataclass
class CycleReport:
    started_at: datetime
    pushed: int = 0
    accepted: int = 0
    conflicted: int = 0
    rejected: int = 0
    retried: int = 0
    pulled: int = 0
    synced_at: Optional[datetime] = None
    error: str = ""
    skipped: bool = False
    conflict_ids: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.error and not self.skipped


class SyncCoordinator:
    def __init__(
        self,
        store_id: str,
        transport,
        journal: Optional[ChangeJournal] = None,
        local_store: Optional[LocalStore] = None,
        batch_size: Optional[int] = None,
        interval: Optional[float] = None,
        backoff_base: Optional[float] = None,
        backoff_cap: Optional[float] = None,
        pull_limit: Optional[int] = None,
        max_pull_pages: Optional[int] = None,
        clock=timezone.now,
    ):
        self.store_id = store_id
        self.transport = transport
        self.clock = clock
        self.backoff_base = backoff_base if backoff_base is not None else terminal_setting("BACKOFF_BASE_SECONDS")
        self.backoff_cap = backoff_cap if backoff_cap is not None else terminal_setting("BACKOFF_CAP_SECONDS")
        self.journal = journal or ChangeJournal(store_id, self.backoff_base, self.backoff_cap, clock=clock)
        self.local_store = local_store or LocalStore(store_id, self.journal)
        self.batch_size = batch_size or terminal_setting("BATCH_SIZE")
        self.interval = interval if interval is not None else terminal_setting("INTERVAL_SECONDS")
        self.pull_limit = pull_limit or terminal_setting("PULL_TABLE_LIMIT")
        self.max_pull_pages = max_pull_pages or terminal_setting("MAX_PULL_PAGES")

        self._state_lock = threading.Lock()
        self._running = False
        self._rerun = False
        self._failures = 0
        self._not_before: Optional[datetime] = None
        self._offline = False
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- triggers ---

    def sync_once(self, force: bool = False) -> Optional[CycleReport]:
        """Run a cycle now. Returns None if one is already running (it will run again afterwards)."""
        with self._state_lock:
            if self._running:
                self._rerun = True
                logger.debug("sync %s already running; trigger coalesced", self.store_id)
                return None
            self._running = True
        try:
            while True:
                report = self._run_cycle(force=force)
                with self._state_lock:
                    if not self._rerun:
                        self._running = False
                        return report
                    self._rerun = False
        except BaseException:
            with self._state_lock:
                self._running = False
                self._rerun = False
            raise

    def trigger(self) -> None:
        self._wake.set()

    def notify_online(self) -> None:
        """Network came back: drop any backoff and sync as soon as possible."""
        self._end_backoff()
        self.trigger()

    def _end_backoff(self) -> None:
        self._failures = 0
        self._not_before = None
        self._offline = False

    @property
    def backing_off_until(self) -> Optional[datetime]:
        return self._not_before

    # --- background loop ---

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name=f"sync-{self.store_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_forever(self) -> None:
        logger.info("sync loop for %s started (interval %ss)", self.store_id, self.interval)
        while not self._stop.is_set():
            close_old_connections()
            try:
                self.sync_once()
            except Exception:
                logger.exception("sync cycle for %s crashed", self.store_id)
            finally:
                close_old_connections()
            self._wake.wait(self._next_delay())
            self._wake.clear()
        logger.info("sync loop for %s stopped", self.store_id)

    def _next_delay(self) -> float:
        now = self.clock()
        if self._not_before is not None:
            return max(0.0, (self._not_before - now).total_seconds())
        delay = float(self.interval)
        head_due = self.journal.next_attempt_at()
        if head_due is not None:
            # Wake up when a retried entry at the head may be sent again.
            delay = min(delay, max(0.0, (head_due - now).total_seconds()))
        return delay

    # --- cycle ---

    def _run_cycle(self, force: bool = False) -> CycleReport:
        now = self.clock()
        report = CycleReport(started_at=now)
        if not force and self._not_before is not None and now < self._not_before:
            if not (self._offline and self.transport.health()):
                report.skipped = True
                report.error = "backing off"
                return report
            logger.info("sync %s: server reachable again, ending backoff early", self.store_id)
            self._end_backoff()

        try:
            self._push(report)
            self._pull(report)
        except TransportAuthError as exc:
            # Nothing is acked; the operator has to sign the terminal in again.
            report.error = exc.kind
            logger.warning("sync %s stopped: %s (%s)", self.store_id, exc.kind, exc)
        except TransportError as exc:
            self._failures += 1
            delay = backoff_delay(self._failures, self.backoff_base, self.backoff_cap)
            self._not_before = self.clock() + timedelta(seconds=delay)
            # No HTTP status means the server was never reached.
            self._offline = exc.status_code is None
            report.error = exc.kind
            logger.warning("sync %s failed (%s), retrying in %ss: %s", self.store_id, exc.kind, delay, exc)
        else:
            self._end_backoff()

        self._record_state(report)
        if report.ok:
            responses = sync_completed.send_robust(sender=self.__class__, store_id=self.store_id, report=report)
            self._log_receiver_errors(responses)
        logger.info(
            "sync %s: pushed=%s accepted=%s conflicted=%s rejected=%s retried=%s pulled=%s error=%s",
            self.store_id,
            report.pushed,
            report.accepted,
            report.conflicted,
            report.rejected,
            report.retried,
            report.pulled,
            report.error or "-",
        )
        return report

    def _push(self, report: CycleReport) -> None:
        for _ in range(MAX_PUSH_BATCHES):
            if not self.journal.is_due(self.clock()):
                return
            entries = self._batch()
            results = self.transport.push([entry.as_change() for entry in entries])
            report.pushed += len(entries)
            by_local_id = {str(result.get("localId")): result for result in results}

            progressed = False
            for entry in entries:
                result = by_local_id.get(entry.local_id)
                if result is None:
                    self.journal.ack(entry.local_id, OUTCOME_RETRYABLE, error="no result returned")
                    report.retried += 1
                    continue
                progressed = self._settle(entry, result, report) or progressed
            if not progressed:
                return

    def _batch(self) -> List[JournalEntry]:
        """The queue head, cut before the first entry whose record is already in the batch.

        A later edit to a record only goes out once the earlier one has an outcome,
        so it can be rebased if that one does not land.
        """
        batch: List[JournalEntry] = []
        seen: set = set()
        for entry in self.journal.peek(self.batch_size):
            keys = self.local_store.record_keys(entry)
            if batch and keys & seen:
                break
            batch.append(entry)
            seen |= keys
        return batch

    def _settle(self, entry: JournalEntry, result: Dict[str, Any], report: CycleReport) -> bool:
        """Record one push result. Returns True if the entry left the journal."""
        status = result.get("status")
        error = result.get("error") or {}
        with transaction.atomic():
            if status == "accepted":
                self.local_store.mark_accepted(entry, result)
                self.journal.ack(entry.local_id, OUTCOME_ACCEPTED)
                report.accepted += 1
            elif status == "conflicted":
                self.local_store.mark_conflicted(entry, result)
                self._rebase_followers(entry)
                self.journal.ack(entry.local_id, OUTCOME_REJECTED)
                report.conflicted += 1
                if result.get("conflictId") is not None:
                    report.conflict_ids.append(result["conflictId"])
            elif status == "failed" and is_retryable(error.get("kind")):
                self.journal.ack(entry.local_id, OUTCOME_RETRYABLE, error=str(error.get("kind")))
                report.retried += 1
                return False
            else:
                if not error:
                    error = {"kind": "malformed_payload", "message": f"unexpected status {status!r}"}
                self.local_store.mark_rejected(entry, error)
                self._rebase_followers(entry)
                self.journal.ack(entry.local_id, OUTCOME_REJECTED)
                report.rejected += 1

        if status == "conflicted":
            responses = change_conflicted.send_robust(
                sender=self.__class__, store_id=self.store_id, entry=entry, result=result
            )
            self._log_receiver_errors(responses)
        elif status != "accepted":
            logger.warning("change %s %s %s rejected: %s", entry.local_id, entry.action, entry.table, error)
            responses = change_rejected.send_robust(
                sender=self.__class__, store_id=self.store_id, entry=entry, error=error
            )
            self._log_receiver_errors(responses)
        return True

    def _rebase_followers(self, entry: JournalEntry) -> None:
        keys = self.local_store.record_keys(entry)
        self.journal.step_back(entry, lambda other: bool(keys & self.local_store.record_keys(other)))

    def _pull(self, report: CycleReport) -> None:
        state = SyncState.for_store(self.store_id)
        for _ in range(self.max_pull_pages):
            since = state.last_synced_at
            body = self.transport.pull(since, limit=self.pull_limit)
            synced_at = parse_datetime(body["syncedAt"]) if body.get("syncedAt") else None

            with transaction.atomic():
                for table in TABLE_NAMES:
                    report.pulled += self.local_store.apply_pulled(table, body.get(table) or [])
                advanced = synced_at is not None and (since is None or synced_at > since)
                if advanced:
                    state.last_synced_at = synced_at
                    state.save(update_fields=["last_synced_at"])

            if not body.get("hasMore") or not advanced:
                break
        report.synced_at = state.last_synced_at

    def _record_state(self, report: CycleReport) -> None:
        SyncState.objects.update_or_create(
            store_id=self.store_id,
            defaults={"last_cycle_at": report.started_at, "last_error": report.error[:255]},
        )

    def _log_receiver_errors(self, responses) -> None:
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.warning("signal receiver %r failed: %s", receiver, response)


_coordinators: Dict[str, SyncCoordinator] = {}
_coordinators_lock = threading.Lock()


def coordinator_for(store_id: str, transport_factory=None) -> SyncCoordinator:
    """The single coordinator for a store, created on first use."""
    with _coordinators_lock:
        coordinator = _coordinators.get(store_id)
        if coordinator is None:
            from .transport import HttpTransport

            transport = transport_factory() if transport_factory else HttpTransport.from_settings()
            coordinator = SyncCoordinator(store_id, transport)
            _coordinators[store_id] = coordinator
        return coordinator
