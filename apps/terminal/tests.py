import threading
from datetime import timedelta
from io import StringIO
from unittest import mock
from urllib.parse import urlsplit

import requests
from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient, APITestCase

from apps.sync.errors import MalformedPayload, UnknownTable
from apps.sync.models import AppliedChange, Conflict, RecordRevision, StoreMembership, TrackedRecord
from apps.sync.serializers import StoreTokenObtainPairSerializer

from . import coordinator as coordinator_module
from .coordinator import SyncCoordinator, coordinator_for
from .journal import OUTCOME_ACCEPTED, OUTCOME_REJECTED, OUTCOME_RETRYABLE, ChangeJournal, backoff_delay
from .local_store import LocalStore
from .models import JournalEntry, LocalRecord, SyncState
from .signals import change_conflicted, change_rejected, sync_completed
from .transport import (
    HttpTransport,
    TransportAuthError,
    TransportError,
    TransportRejected,
    TransportTimeout,
)


class Clock:
    def __init__(self):
        self.now = timezone.now()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class APIClientSession:
    """Routes HttpTransport calls into the in-process API instead of the network."""

    def __init__(self):
        self.client = APIClient()
        self.headers = {}
        self.lose_push_responses = 0

    def request(self, method, url, timeout=None, verify=True, json=None, params=None):
        path = urlsplit(url).path
        extra = {}
        if "Authorization" in self.headers:
            extra["HTTP_AUTHORIZATION"] = self.headers["Authorization"]
        if method == "POST":
            resp = self.client.post(path, json, format="json", **extra)
        else:
            resp = self.client.get(path, params or {}, **extra)
        if path.endswith("/push") and self.lose_push_responses:
            self.lose_push_responses -= 1
            raise requests.Timeout("read timed out")
        return resp


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.body = body

    def json(self):
        if self.body is None:
            raise ValueError("no JSON")
        return self.body


class FakeSession:
    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class StubTransport:
    def __init__(self, push_results=None, pull_bodies=None, push_error=None, on_pull=None):
        self.push_results = push_results
        self.pull_bodies = list(pull_bodies or [])
        self.push_error = push_error
        self.on_pull = on_pull
        self.pushed = []
        self.pulls = []
        self.healthy = False
        self.health_checks = 0

    def push(self, changes):
        self.pushed.append(changes)
        if self.push_error is not None:
            raise self.push_error
        if callable(self.push_results):
            return self.push_results(changes)
        return self.push_results or []

    def health(self):
        self.health_checks += 1
        return self.healthy

    def pull(self, since, limit=None):
        self.pulls.append(since)
        if self.on_pull is not None:
            self.on_pull()
        if self.pull_bodies:
            return self.pull_bodies.pop(0)
        return {"syncedAt": None, "hasMore": False}


def failed_with(kind):
    def results(changes):
        return [{"localId": c["localId"], "status": "failed", "error": {"kind": kind}} for c in changes]

    return results


class JournalTests(TestCase):
    def setUp(self):
        self.clock = Clock()
        self.journal = ChangeJournal("store-a", backoff_base=2, backoff_cap=300, clock=self.clock)

    def test_backoff_delay(self):
        self.assertEqual(backoff_delay(0, 2, 300), 0)
        self.assertEqual(backoff_delay(1, 2, 300), 2)
        self.assertEqual(backoff_delay(2, 2, 300), 4)
        self.assertEqual(backoff_delay(3, 2, 5), 5)
        self.assertEqual(backoff_delay(30, 2, 300), 300)

    def test_peek_is_fifo(self):
        ids = [self.journal.enqueue("products", "create", {"name": str(n), "price": n}) for n in range(3)]
        self.assertEqual([e.local_id for e in self.journal.peek(10)], ids)
        self.assertEqual([e.local_id for e in self.journal.peek(2)], ids[:2])
        self.assertEqual(self.journal.pending_count(), 3)

    def test_journals_are_per_store(self):
        self.journal.enqueue("products", "create", {})
        other = ChangeJournal("store-b", clock=self.clock)
        self.assertEqual(other.peek(10), [])
        self.assertFalse(other.is_due())

    def test_enqueue_rejects_unknown_table_and_action(self):
        with self.assertRaises(UnknownTable):
            self.journal.enqueue("plugins", "create", {})
        with self.assertRaises(ValueError):
            self.journal.enqueue("products", "upsert", {})
        self.assertEqual(self.journal.pending_count(), 0)

    def test_final_outcomes_remove_the_entry(self):
        first = self.journal.enqueue("products", "create", {})
        second = self.journal.enqueue("products", "create", {})
        self.journal.ack(first, OUTCOME_ACCEPTED)
        self.journal.ack(second, OUTCOME_REJECTED)
        self.assertEqual(self.journal.pending_count(), 0)

    def test_retryable_ack_backs_off_without_reordering(self):
        head = self.journal.enqueue("products", "create", {})
        tail = self.journal.enqueue("products", "create", {})

        self.journal.ack(head, OUTCOME_RETRYABLE, error="storage_unavailable")
        entry = JournalEntry.objects.get(local_id=head)
        self.assertEqual(entry.attempts, 1)
        self.assertEqual(entry.next_attempt_at, self.clock.now + timedelta(seconds=2))
        self.assertEqual(entry.last_error, "storage_unavailable")
        self.assertFalse(self.journal.is_due())
        self.assertEqual(self.journal.next_attempt_at(), entry.next_attempt_at)

        self.clock.advance(2)
        self.assertTrue(self.journal.is_due())
        self.journal.ack(head, OUTCOME_RETRYABLE)
        self.assertEqual(JournalEntry.objects.get(local_id=head).next_attempt_at, self.clock.now + timedelta(seconds=4))
        self.assertEqual([e.local_id for e in self.journal.peek(10)], [head, tail])

    def test_ack_of_unknown_entry_raises(self):
        with self.assertRaises(JournalEntry.DoesNotExist):
            self.journal.ack("missing", OUTCOME_ACCEPTED)
        with self.assertRaises(ValueError):
            self.journal.ack("missing", "maybe")

    def test_step_back_rebases_later_edits_of_the_same_record(self):
        first = self.journal.enqueue("products", "update", {"serverId": "srv-1", "baseVersion": 1, "price": 2})
        other = self.journal.enqueue("products", "update", {"serverId": "srv-2", "baseVersion": 4, "price": 2})
        second = self.journal.enqueue("products", "update", {"serverId": "srv-1", "baseVersion": 2, "name": "Fig"})
        third = self.journal.enqueue("products", "delete", {"serverId": "srv-1", "baseVersion": 3})

        failed = JournalEntry.objects.get(local_id=first)
        moved = self.journal.step_back(failed, lambda entry: entry.data.get("serverId") == "srv-1")
        self.assertEqual(moved, [second, third])
        bases = {entry.local_id: entry.data["baseVersion"] for entry in self.journal.peek(10)}
        self.assertEqual(bases, {first: 1, other: 4, second: 1, third: 2})
        self.assertEqual(JournalEntry.objects.get(local_id=second).data["name"], "Fig")

    def test_step_back_after_a_create_changes_nothing(self):
        created = self.journal.enqueue("customers", "create", {"name": "Ann"})
        self.journal.enqueue("customers", "update", {"recordLocalId": created, "baseVersion": 1, "name": "Anna"})
        failed = JournalEntry.objects.get(local_id=created)
        self.assertEqual(self.journal.step_back(failed, lambda entry: True), [])


class LocalStoreTests(TestCase):
    def setUp(self):
        self.store = LocalStore("store-a", ChangeJournal("store-a"))

    def test_create_writes_record_and_journal_entry(self):
        record = self.store.create("products", {"name": "Apple", "price": 1.5, "serverId": "ignored"})
        entry = JournalEntry.objects.get()
        self.assertEqual(entry.local_id, record.local_id)
        self.assertEqual(entry.action, "create")
        self.assertEqual(entry.data, {"name": "Apple", "price": 1.5})
        self.assertEqual(record.version, 1)
        self.assertIsNone(record.server_id)

    def test_invalid_create_writes_nothing(self):
        with self.assertRaises(MalformedPayload):
            self.store.create("products", {"name": "No price"})
        self.assertFalse(LocalRecord.objects.exists())
        self.assertFalse(JournalEntry.objects.exists())

    def test_update_before_and_after_the_server_id_is_known(self):
        record = self.store.create("customers", {"name": "Ann"})
        record = self.store.update(record, {"phone": "555"})
        entry = JournalEntry.objects.last()
        self.assertEqual(entry.data, {"phone": "555", "recordLocalId": record.local_id, "baseVersion": 1})
        self.assertEqual(record.version, 2)
        self.assertEqual(record.data, {"name": "Ann", "phone": "555"})

        record.server_id = "srv-1"
        record.save()
        self.store.update(record, {"phone": "556"})
        self.assertEqual(JournalEntry.objects.last().data, {"phone": "556", "serverId": "srv-1", "baseVersion": 2})

    def test_delete_queues_a_delete(self):
        record = LocalRecord.objects.create(store_id="store-a", table="customers", server_id="srv-1", version=4, server_version=4)
        self.store.delete(record)
        self.assertFalse(LocalRecord.objects.exists())
        entry = JournalEntry.objects.get()
        self.assertEqual(entry.action, "delete")
        self.assertEqual(entry.data, {"serverId": "srv-1", "baseVersion": 4})

    def test_apply_pulled(self):
        mine = self.store.create("customers", {"name": "Mine"})
        stale = LocalRecord.objects.create(store_id="store-a", table="customers", server_id="srv-old", version=1)
        stamp = timezone.now().isoformat()
        applied = self.store.apply_pulled(
            "customers",
            [
                {"serverId": "srv-new", "localId": "elsewhere", "version": 3, "updatedAt": stamp, "tombstone": False, "data": {"name": "New"}},
                {"serverId": "srv-mine", "localId": mine.local_id, "version": 1, "updatedAt": stamp, "tombstone": False, "data": {"name": "Mine"}},
                {"serverId": "srv-old", "version": 2, "updatedAt": stamp, "tombstone": True, "data": {}},
            ],
        )
        self.assertEqual(applied, 3)
        mine.refresh_from_db()
        self.assertEqual(mine.server_id, "srv-mine")
        new = LocalRecord.objects.get(server_id="srv-new")
        self.assertEqual((new.version, new.server_version, new.data), (3, 3, {"name": "New"}))
        self.assertFalse(LocalRecord.objects.filter(pk=stale.pk).exists())

    def test_record_keys_match_edits_of_one_record(self):
        record = self.store.create("customers", {"name": "Ann"})
        record = self.store.update(record, {"phone": "555"})
        record.server_id = "srv-1"
        record.save()
        self.store.update(record, {"phone": "556"})
        self.store.create("customers", {"name": "Bob"})

        created, by_local_id, by_server_id, unrelated = JournalEntry.objects.order_by("id")
        keys = self.store.record_keys(created)
        self.assertTrue(keys & self.store.record_keys(by_local_id))
        self.assertTrue(keys & self.store.record_keys(by_server_id))
        self.assertFalse(keys & self.store.record_keys(unrelated))

    def test_rejected_edit_steps_the_local_version_back(self):
        record = LocalRecord.objects.create(store_id="store-a", table="customers", server_id="srv-1", version=1, server_version=1)
        record = self.store.update(record, {"name": "A"})
        record = self.store.update(record, {"name": "B"})
        self.assertEqual(record.version, 3)
        self.store.mark_rejected(JournalEntry.objects.order_by("id").first(), {"kind": "unique_violation"})
        record.refresh_from_db()
        self.assertEqual((record.version, record.server_version), (2, 1))


class HttpTransportTests(TestCase):
    def transport(self, *responses):
        return HttpTransport("http://sync.test/", "tok", session=FakeSession(*responses))

    def test_push_sends_changes_with_bearer_token(self):
        transport = self.transport(FakeResponse(200, {"results": [{"localId": "L1", "status": "accepted"}]}))
        results = transport.push([{"localId": "L1"}])
        self.assertEqual(results, [{"localId": "L1", "status": "accepted"}])
        method, url, kwargs = transport.session.calls[0]
        self.assertEqual((method, url), ("POST", "http://sync.test/api/sync/push"))
        self.assertEqual(kwargs["json"], {"changes": [{"localId": "L1"}]})
        self.assertEqual(kwargs["timeout"], 30)
        self.assertEqual(transport.session.headers["Authorization"], "Bearer tok")

    def test_pull_sends_watermark(self):
        since = timezone.now()
        transport = self.transport(FakeResponse(200, {"syncedAt": None}), FakeResponse(200, {"syncedAt": None}))
        transport.pull(None)
        transport.pull(since, limit=10)
        self.assertEqual(transport.session.calls[0][2]["params"], {"since": ""})
        self.assertEqual(transport.session.calls[1][2]["params"], {"since": since.isoformat(), "limit": 10})
        self.assertEqual(transport.session.calls[1][2]["timeout"], 60)

    def test_failures_are_classified(self):
        cases = [
            (requests.Timeout("slow"), TransportTimeout, "deadline_exceeded", True),
            (requests.ConnectionError("offline"), TransportError, "unavailable", True),
            (FakeResponse(503, {"detail": "down"}), TransportError, "unavailable", True),
            (FakeResponse(429), TransportError, "unavailable", True),
            (FakeResponse(401, {"detail": "expired"}), TransportAuthError, "unauthorized", False),
            (FakeResponse(403), TransportAuthError, "forbidden", False),
            (FakeResponse(400, {"changes": ["too many"]}), TransportRejected, "rejected", False),
            (FakeResponse(200), TransportError, "unavailable", True),
        ]
        for response, error_class, kind, retryable in cases:
            with self.subTest(kind=kind, response=response):
                with self.assertRaises(error_class) as ctx:
                    self.transport(response).push([])
                self.assertIs(type(ctx.exception), error_class)
                self.assertEqual(ctx.exception.kind, kind)
                self.assertEqual(ctx.exception.retryable, retryable)

    def test_health(self):
        self.assertTrue(self.transport(FakeResponse(200, {"ok": True})).health())
        self.assertFalse(self.transport(requests.ConnectionError("offline")).health())

    @override_settings(SYNC_TERMINAL={"SERVER_URL": "https://hq.test", "TOKEN": "abc", "PUSH_TIMEOUT_SECONDS": 5})
    def test_from_settings(self):
        transport = HttpTransport.from_settings(session=FakeSession())
        self.assertEqual(transport.base_url, "https://hq.test")
        self.assertEqual(transport.push_timeout, 5)
        self.assertEqual(transport.pull_timeout, 60)


class CoordinatorStubTests(TestCase):
    def setUp(self):
        self.clock = Clock()

    def coordinator(self, transport, **kwargs):
        return SyncCoordinator("store-a", transport, backoff_base=2, backoff_cap=300, clock=self.clock, **kwargs)

    def test_retryable_entry_stays_queued_with_backoff(self):
        stub = StubTransport(push_results=failed_with("storage_unavailable"))
        coordinator = self.coordinator(stub)
        local_id = coordinator.journal.enqueue("categories", "create", {"name": "x"})

        report = coordinator.sync_once()
        self.assertEqual(report.retried, 1)
        self.assertEqual(report.error, "")
        entry = JournalEntry.objects.get(local_id=local_id)
        self.assertEqual(entry.attempts, 1)

        coordinator.sync_once()
        self.assertEqual(len(stub.pushed), 1)
        self.clock.advance(2)
        coordinator.sync_once()
        self.assertEqual(len(stub.pushed), 2)
        self.assertEqual(JournalEntry.objects.get(local_id=local_id).attempts, 2)

    def test_missing_result_is_retried(self):
        stub = StubTransport(push_results=[])
        coordinator = self.coordinator(stub)
        local_id = coordinator.journal.enqueue("categories", "create", {"name": "x"})
        report = coordinator.sync_once()
        self.assertEqual(report.retried, 1)
        self.assertEqual(JournalEntry.objects.get(local_id=local_id).last_error, "no result returned")

    def test_permanent_failure_is_acked_and_reported(self):
        rejected = []

        def on_rejected(entry, error, **kwargs):
            rejected.append((entry.local_id, error["kind"]))

        change_rejected.connect(on_rejected)
        self.addCleanup(change_rejected.disconnect, on_rejected)

        coordinator = self.coordinator(StubTransport(push_results=failed_with("unknown_table")))
        record = coordinator.local_store.create("categories", {"name": "x"})
        report = coordinator.sync_once()
        self.assertEqual(report.rejected, 1)
        self.assertEqual(coordinator.journal.pending_count(), 0)
        self.assertEqual(rejected, [(record.local_id, "unknown_table")])
        record.refresh_from_db()
        self.assertEqual(record.sync_error, {"kind": "unknown_table"})

    def test_auth_failure_acks_nothing_and_does_not_back_off(self):
        coordinator = self.coordinator(StubTransport(push_error=TransportAuthError("expired", status_code=401)))
        coordinator.journal.enqueue("categories", "create", {"name": "x"})
        report = coordinator.sync_once()
        self.assertEqual(report.error, "unauthorized")
        self.assertEqual(JournalEntry.objects.get().attempts, 0)
        self.assertIsNone(coordinator.backing_off_until)

    def test_transport_failure_backs_off_the_cycle(self):
        stub = StubTransport(push_error=TransportRejected("bad batch", status_code=400))
        coordinator = self.coordinator(stub)
        coordinator.journal.enqueue("categories", "create", {"name": "x"})

        report = coordinator.sync_once()
        self.assertEqual(report.error, "rejected")
        self.assertEqual(coordinator.backing_off_until, self.clock.now + timedelta(seconds=2))
        self.assertEqual(coordinator.journal.pending_count(), 1)

        skipped = coordinator.sync_once()
        self.assertTrue(skipped.skipped)
        self.assertEqual(len(stub.pushed), 1)
        self.assertEqual(stub.health_checks, 0)

        stub.push_error = TransportError("still down")
        self.clock.advance(2)
        coordinator.sync_once()
        self.assertEqual(coordinator.backing_off_until, self.clock.now + timedelta(seconds=4))
        self.assertEqual(SyncState.objects.get(store_id="store-a").last_error, "unavailable")

        coordinator.notify_online()
        self.assertIsNone(coordinator.backing_off_until)
        stub.push_error = None
        stub.push_results = lambda changes: [
            {"localId": c["localId"], "status": "accepted", "serverId": "srv", "version": 1} for c in changes
        ]
        report = coordinator.sync_once()
        self.assertTrue(report.ok)
        self.assertEqual(report.accepted, 1)

    def test_later_edit_of_a_record_waits_for_the_earlier_one(self):
        def accept(changes):
            return [
                {"localId": c["localId"], "status": "accepted", "serverId": "srv-1", "version": c["data"]["baseVersion"] + 1}
                for c in changes
            ]

        stub = StubTransport(push_results=failed_with("storage_unavailable"))
        coordinator = self.coordinator(stub)
        record = LocalRecord.objects.create(store_id="store-a", table="products", server_id="srv-1", version=1, server_version=1)
        record = coordinator.local_store.update(record, {"price": 2})
        coordinator.local_store.update(record, {"price": 3})
        first, second = JournalEntry.objects.order_by("id")

        report = coordinator.sync_once()
        self.assertEqual(report.retried, 1)
        self.assertEqual([[c["localId"] for c in batch] for batch in stub.pushed], [[first.local_id]])
        self.assertEqual(JournalEntry.objects.get(local_id=second.local_id).data["baseVersion"], 2)

        stub.push_results = accept
        self.clock.advance(2)
        report = coordinator.sync_once()
        self.assertEqual(report.accepted, 2)
        self.assertEqual(
            [[c["localId"] for c in batch] for batch in stub.pushed[1:]],
            [[first.local_id], [second.local_id]],
        )
        self.assertEqual(coordinator.journal.pending_count(), 0)
        record.refresh_from_db()
        self.assertEqual((record.version, record.server_version), (3, 3))

    def test_edits_of_different_records_share_a_batch(self):
        stub = StubTransport(push_results=failed_with("storage_unavailable"))
        coordinator = self.coordinator(stub)
        coordinator.local_store.create("categories", {"name": "a"})
        coordinator.local_store.create("categories", {"name": "b"})
        coordinator.sync_once()
        self.assertEqual(len(stub.pushed[0]), 2)

    def test_reachable_server_ends_an_offline_backoff(self):
        stub = StubTransport(push_error=TransportError("connection refused"))
        coordinator = self.coordinator(stub)
        coordinator.journal.enqueue("categories", "create", {"name": "x"})
        coordinator.sync_once()
        self.assertIsNotNone(coordinator.backing_off_until)

        self.assertTrue(coordinator.sync_once().skipped)
        self.assertEqual(stub.health_checks, 1)

        stub.healthy = True
        stub.push_error = None
        stub.push_results = lambda changes: [
            {"localId": c["localId"], "status": "accepted", "serverId": "srv", "version": 1} for c in changes
        ]
        report = coordinator.sync_once()
        self.assertFalse(report.skipped)
        self.assertEqual(report.accepted, 1)
        self.assertIsNone(coordinator.backing_off_until)

    def test_loop_wakes_when_a_retried_entry_is_due(self):
        coordinator = self.coordinator(StubTransport(push_results=failed_with("storage_unavailable")), interval=60)
        self.assertEqual(coordinator._next_delay(), 60)
        coordinator.journal.enqueue("categories", "create", {"name": "x"})
        coordinator.sync_once()
        self.assertEqual(coordinator._next_delay(), 2)

    def test_watermark_never_moves_back(self):
        later = self.clock.now
        earlier = later - timedelta(hours=1)
        SyncState.objects.create(store_id="store-a", last_synced_at=later)
        stub = StubTransport(pull_bodies=[{"syncedAt": earlier.isoformat(), "hasMore": True, "products": []}])
        report = self.coordinator(stub).sync_once()
        self.assertEqual(stub.pulls, [later])
        self.assertEqual(report.synced_at, later)
        self.assertEqual(SyncState.objects.get(store_id="store-a").last_synced_at, later)

    def test_overlapping_triggers_coalesce_into_one_more_cycle(self):
        nested = []
        stub = StubTransport()
        coordinator = self.coordinator(stub)

        def trigger_during_cycle():
            if len(stub.pulls) == 1:
                nested.append(coordinator.sync_once())
                nested.append(coordinator.sync_once())

        stub.on_pull = trigger_during_cycle
        report = coordinator.sync_once()
        self.assertIsNotNone(report)
        self.assertEqual(nested, [None, None])
        self.assertEqual(len(stub.pulls), 2)

    def test_sync_completed_signal(self):
        reports = []

        def on_completed(report, **kwargs):
            reports.append(report)

        sync_completed.connect(on_completed)
        self.addCleanup(sync_completed.disconnect, on_completed)
        self.coordinator(StubTransport()).sync_once()
        self.assertEqual(len(reports), 1)

    def test_background_loop_starts_and_stops(self):
        coordinator = self.coordinator(StubTransport(), interval=60)
        ran = threading.Event()
        with mock.patch.object(coordinator, "sync_once", side_effect=lambda: ran.set()):
            coordinator.start()
            self.assertTrue(ran.wait(5))
            coordinator.stop(timeout=5)
        self.assertIsNone(coordinator._thread)

    def test_one_coordinator_per_store(self):
        self.addCleanup(coordinator_module._coordinators.clear)
        first = coordinator_for("store-a", transport_factory=StubTransport)
        self.assertIs(coordinator_for("store-a", transport_factory=StubTransport), first)
        self.assertIsNot(coordinator_for("store-b", transport_factory=StubTransport), first)


@override_settings(SECURE_SSL_REDIRECT=False)
class EndToEndTests(APITestCase):
    """Terminal coordinator against the real sync endpoints, in one process."""

    def setUp(self):
        user = get_user_model().objects.create_user(username="terminal-1", password="pass1234")
        StoreMembership.objects.create(user=user, store_id="store-a")
        token = str(StoreTokenObtainPairSerializer.get_token(user).access_token)
        self.session = APIClientSession()
        self.clock = Clock()
        self.transport = HttpTransport("http://testserver", token, session=self.session)
        self.coordinator = SyncCoordinator(
            "store-a", self.transport, backoff_base=2, backoff_cap=300, clock=self.clock
        )
        self.local = self.coordinator.local_store

        other = get_user_model().objects.create_user(username="terminal-2", password="pass1234")
        StoreMembership.objects.create(user=other, store_id="store-a")
        self.other_terminal = APIClient()
        self.other_terminal.credentials(
            HTTP_AUTHORIZATION=f"Bearer {StoreTokenObtainPairSerializer.get_token(other).access_token}"
        )

    def seed(self, payload, version=1, tombstone=False, updated_at=None):
        record = TrackedRecord.objects.create(
            store_id="store-a",
            table="products",
            payload=payload,
            version=version,
            tombstone=tombstone,
            updated_at=updated_at or timezone.now(),
        )
        RecordRevision.objects.create(record=record, version=version, payload=payload, tombstone=tombstone)
        return record

    def test_local_create_reaches_the_server_and_comes_back(self):
        record = self.local.create("products", {"name": "Apple", "price": 1.5})
        report = self.coordinator.sync_once()

        self.assertTrue(report.ok)
        self.assertEqual(report.accepted, 1)
        self.assertEqual(self.coordinator.journal.pending_count(), 0)
        server = TrackedRecord.objects.get()
        self.assertEqual(server.local_id, record.local_id)
        record.refresh_from_db()
        self.assertEqual(record.server_id, str(server.id))
        self.assertEqual(LocalRecord.objects.count(), 1)
        self.assertEqual(SyncState.objects.get(store_id="store-a").last_synced_at, server.updated_at)

    def test_edits_made_before_the_first_sync_land_in_order(self):
        record = self.local.create("products", {"name": "Milk", "price": 1})
        record = self.local.update(record, {"price": 2})
        self.local.update(record, {"price": 3})
        report = self.coordinator.sync_once()
        self.assertEqual(report.accepted, 3)
        server = TrackedRecord.objects.get()
        self.assertEqual((server.version, server.payload["price"]), (3, 3))
        record.refresh_from_db()
        self.assertEqual((record.version, record.server_version), (3, 3))

    def test_update_of_deleted_record_is_dropped(self):
        server = self.seed({"name": "Plum", "price": 3}, version=4, tombstone=True)
        record = LocalRecord.objects.create(
            store_id="store-a", table="products", server_id=str(server.id), version=3, server_version=3,
            data={"name": "Plum", "price": 3},
        )
        rejected = []

        def on_rejected(error, **kwargs):
            rejected.append(error["kind"])

        change_rejected.connect(on_rejected)
        self.addCleanup(change_rejected.disconnect, on_rejected)

        self.local.update(record, {"price": 4})
        report = self.coordinator.sync_once()
        self.assertEqual(report.rejected, 1)
        self.assertEqual(rejected, ["gone"])
        self.assertEqual(self.coordinator.journal.pending_count(), 0)
        self.assertFalse(LocalRecord.objects.filter(pk=record.pk).exists())

    def test_concurrent_update_becomes_a_conflict(self):
        server = self.seed({"name": "Pear", "price": 8}, version=5)
        record = LocalRecord.objects.create(
            store_id="store-a", table="products", server_id=str(server.id), version=5, server_version=5,
            data={"name": "Pear", "price": 8},
        )
        resp = self.other_terminal.post(
            "/api/sync/push",
            {"changes": [{"localId": "A1", "table": "products", "action": "update",
                          "data": {"serverId": str(server.id), "baseVersion": 5, "price": 10}}]},
            format="json",
        )
        self.assertEqual(resp.data["results"][0]["version"], 6)

        conflicted = []

        def on_conflicted(result, **kwargs):
            conflicted.append(result["conflictId"])

        change_conflicted.connect(on_conflicted)
        self.addCleanup(change_conflicted.disconnect, on_conflicted)

        self.local.update(record, {"price": 12})
        entry = JournalEntry.objects.get()
        report = self.coordinator.sync_once()

        conflict = Conflict.objects.get()
        self.assertEqual(report.conflicted, 1)
        self.assertEqual(report.conflict_ids, [conflict.id])
        self.assertEqual(conflicted, [conflict.id])
        self.assertEqual(conflict.client_local_id, entry.local_id)
        self.assertEqual(self.coordinator.journal.pending_count(), 0)

        record.refresh_from_db()
        self.assertEqual(record.conflict_id, conflict.id)
        self.assertEqual(record.version, 6)
        self.assertEqual(record.data, {"name": "Pear", "price": 10})

    def test_queued_edits_behind_a_conflict_do_not_overwrite(self):
        server = self.seed({"name": "Pear", "price": 8}, version=1)
        record = LocalRecord.objects.create(
            store_id="store-a", table="products", server_id=str(server.id), version=1, server_version=1,
            data={"name": "Pear", "price": 8},
        )
        record = self.local.update(record, {"price": 9})
        self.local.update(record, {"name": "Green pear"})
        resp = self.other_terminal.post(
            "/api/sync/push",
            {"changes": [{"localId": "B1", "table": "products", "action": "update",
                          "data": {"serverId": str(server.id), "baseVersion": 1, "price": 10}}]},
            format="json",
        )
        self.assertEqual(resp.data["results"][0]["version"], 2)

        report = self.coordinator.sync_once()
        self.assertEqual((report.accepted, report.conflicted), (0, 2))
        server.refresh_from_db()
        self.assertEqual((server.version, server.payload), (2, {"name": "Pear", "price": 10}))
        self.assertEqual(
            sorted(c.client_payload.get("name", "") for c in Conflict.objects.all()), ["", "Green pear"]
        )
        self.assertEqual(self.coordinator.journal.pending_count(), 0)
        record.refresh_from_db()
        self.assertEqual((record.version, record.data), (2, {"name": "Pear", "price": 10}))

    def test_edit_after_a_rejected_one_still_lands(self):
        resp = self.other_terminal.post(
            "/api/sync/push",
            {"changes": [
                {"localId": "E1", "table": "employees", "action": "create", "data": {"name": "Ann", "email": "ann@shop.test"}},
                {"localId": "E2", "table": "employees", "action": "create", "data": {"name": "Bob", "email": "bob@shop.test"}},
            ]},
            format="json",
        )
        ann_id = resp.data["results"][0]["serverId"]
        self.coordinator.sync_once()
        record = LocalRecord.objects.get(server_id=str(ann_id))

        record = self.local.update(record, {"email": "bob@shop.test"})
        self.local.update(record, {"name": "Annie"})
        report = self.coordinator.sync_once()

        self.assertEqual((report.rejected, report.accepted), (1, 1))
        server = TrackedRecord.objects.get(pk=ann_id)
        self.assertEqual((server.version, server.payload), (2, {"name": "Annie", "email": "ann@shop.test"}))
        record.refresh_from_db()
        self.assertEqual((record.version, record.server_version), (2, 2))

    def test_lost_push_response_is_replayed_without_duplicates(self):
        self.local.create("products", {"name": "Apple", "price": 1})
        self.local.create("products", {"name": "Pear", "price": 2})
        self.session.lose_push_responses = 1

        report = self.coordinator.sync_once()
        self.assertEqual(report.error, "deadline_exceeded")
        self.assertEqual(self.coordinator.journal.pending_count(), 2)
        self.assertEqual(TrackedRecord.objects.count(), 2)
        self.assertEqual(self.coordinator.backing_off_until, self.clock.now + timedelta(seconds=2))

        self.clock.advance(2)
        report = self.coordinator.sync_once()
        self.assertEqual(report.accepted, 2)
        self.assertEqual(TrackedRecord.objects.count(), 2)
        first_outcomes = {a.local_id: str(a.server_id) for a in AppliedChange.objects.all()}
        local_ids = {r.local_id: r.server_id for r in LocalRecord.objects.all()}
        self.assertEqual(local_ids, first_outcomes)

    def test_paged_pull_matches_the_server(self):
        base = timezone.now() - timedelta(hours=1)
        for n in range(5):
            self.seed({"name": f"P{n}", "price": n}, version=n + 1, updated_at=base + timedelta(seconds=n))
        self.seed({"name": "Gone", "price": 0}, version=2, tombstone=True, updated_at=base)

        watermarks = []
        coordinator = SyncCoordinator("store-a", self.transport, pull_limit=2, clock=self.clock)
        report = coordinator.sync_once()
        watermarks.append(SyncState.objects.get(store_id="store-a").last_synced_at)
        self.assertEqual(report.pulled, 6)

        for server in TrackedRecord.objects.filter(tombstone=False):
            local = LocalRecord.objects.get(server_id=str(server.id))
            self.assertEqual((local.data, local.version), (server.payload, server.version))
        self.assertEqual(LocalRecord.objects.count(), 5)
        self.assertEqual(watermarks[0], base + timedelta(seconds=4))

        self.seed({"name": "Late", "price": 9}, updated_at=base + timedelta(seconds=10))
        coordinator.sync_once()
        watermarks.append(SyncState.objects.get(store_id="store-a").last_synced_at)
        self.assertEqual(watermarks, sorted(watermarks))
        self.assertEqual(LocalRecord.objects.count(), 6)

    def test_run_sync_command(self):
        self.local.create("categories", {"name": "Fruit"})
        out = StringIO()
        with mock.patch("apps.terminal.management.commands.run_sync.HttpTransport.from_settings", return_value=self.transport):
            call_command("run_sync", "--once", "--store", "store-a", stdout=out)
        self.assertIn("Pushed 1 (accepted 1", out.getvalue())

    @override_settings(SYNC_TERMINAL={})
    def test_run_sync_needs_a_store(self):
        with self.assertRaises(CommandError):
            call_command("run_sync", "--once")
