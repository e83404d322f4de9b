import time
import uuid
from datetime import timedelta
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import OperationalError
from django.test import TestCase, override_settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework.test import APIClient, APITestCase
from rest_framework_simplejwt.tokens import AccessToken, RefreshToken

from .errors import ErrorKind, is_retryable
from .models import AppliedChange, Conflict, RecordRevision, RecordUniqueKey, StoreMembership, TrackedRecord
from .scope import SyncScope
from .serializers import StoreTokenObtainPairSerializer
from .services import ChangeEntry, PullStreamer, PushApplier, resolve_limits
from .signals import change_applied
from .tables import TABLE_NAMES, get_descriptor


def seed_record(store_id, table, payload, version=1, tombstone=False, updated_at=None):
    record = TrackedRecord.objects.create(
        store_id=store_id,
        table=table,
        payload=payload,
        version=version,
        tombstone=tombstone,
        updated_at=updated_at or timezone.now(),
    )
    RecordRevision.objects.create(record=record, version=version, payload=payload, tombstone=tombstone)
    return record


def create(local_id, table, **data):
    return {"localId": local_id, "table": table, "action": "create", "data": data}


def update(local_id, table, server_id, base_version, **data):
    data.update({"serverId": str(server_id), "baseVersion": base_version})
    return {"localId": local_id, "table": table, "action": "update", "data": data}


def delete(local_id, table, server_id, base_version):
    return {
        "localId": local_id,
        "table": table,
        "action": "delete",
        "data": {"serverId": str(server_id), "baseVersion": base_version},
    }


@override_settings(SECURE_SSL_REDIRECT=False)
class SyncApiTestCase(APITestCase):
    def setUp(self):
        self.user = self.make_user("cashier-a", "store-a")
        self.client.credentials(HTTP_AUTHORIZATION=self.bearer(self.user))

    def make_user(self, username, store_id, organization_id="org-1"):
        user = get_user_model().objects.create_user(username=username, password="pass1234")
        StoreMembership.objects.create(user=user, store_id=store_id, organization_id=organization_id)
        return user

    def bearer(self, user):
        return f"Bearer {StoreTokenObtainPairSerializer.get_token(user).access_token}"

    def client_for(self, user):
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=self.bearer(user))
        return client

    def push(self, *changes, client=None):
        resp = (client or self.client).post("/api/sync/push", {"changes": list(changes)}, format="json")
        self.assertEqual(resp.status_code, 200, resp.content)
        return resp.data["results"]

    def pull(self, client=None, **params):
        params.setdefault("since", "")
        resp = (client or self.client).get("/api/sync/pull", params)
        self.assertEqual(resp.status_code, 200, resp.content)
        return resp.data


class AuthTests(SyncApiTestCase):
    def test_push_requires_authentication(self):
        self.client.credentials()
        resp = self.client.post("/api/sync/push", {"changes": []}, format="json")
        self.assertEqual(resp.status_code, 401)

    def test_identity_without_store_is_forbidden(self):
        user = get_user_model().objects.create_user(username="nobody", password="pass1234")
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {RefreshToken.for_user(user).access_token}")
        resp = self.client.get("/api/sync/pull", {"since": ""})
        self.assertEqual(resp.status_code, 403)

    def test_membership_is_used_when_token_has_no_store_claim(self):
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {RefreshToken.for_user(self.user).access_token}")
        results = self.push(create("L1", "categories", name="Fruit"))
        self.assertEqual(results[0]["status"], "accepted")
        self.assertEqual(TrackedRecord.objects.get().store_id, "store-a")

    def test_token_endpoint_issues_store_claims(self):
        self.client.credentials()
        resp = self.client.post("/api/auth/token/", {"username": "cashier-a", "password": "pass1234"}, format="json")
        self.assertEqual(resp.status_code, 200)
        token = AccessToken(resp.data["access"])
        self.assertEqual(token["store_id"], "store-a")
        self.assertEqual(token["organization_id"], "org-1")

    def test_health_is_public(self):
        self.client.credentials()
        resp = self.client.get("/api/sync/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.data["ok"])


class PushTests(SyncApiTestCase):
    def test_create_then_pull_from_another_terminal(self):
        results = self.push(create("L1", "products", name="Apple", price=1.5))
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]["localId"], "L1")
        self.assertEqual(results[0]["status"], "accepted")
        self.assertEqual(results[0]["version"], 1)
        server_id = results[0]["serverId"]

        other = self.client_for(self.make_user("cashier-a2", "store-a"))
        body = self.pull(client=other)
        self.assertEqual(len(body["products"]), 1)
        row = body["products"][0]
        self.assertEqual(row["serverId"], server_id)
        self.assertEqual(row["localId"], "L1")
        self.assertEqual(row["version"], 1)
        self.assertFalse(row["tombstone"])
        self.assertEqual(row["data"], {"name": "Apple", "price": 1.5})

    def test_concurrent_update_is_conflicted(self):
        record = seed_record("store-a", "products", {"name": "Pear", "price": 8}, version=5)
        other = self.client_for(self.make_user("cashier-b", "store-a"))

        first = self.push(update("A1", "products", record.id, 5, price=10))
        self.assertEqual(first[0]["status"], "accepted")
        self.assertEqual(first[0]["version"], 6)

        second = self.push(update("B1", "products", record.id, 5, price=12), client=other)
        self.assertEqual(second[0]["status"], "conflicted")
        self.assertEqual(second[0]["version"], 6)

        conflict = Conflict.objects.get(status=Conflict.STATUS_OPEN)
        self.assertEqual(second[0]["conflictId"], conflict.id)
        self.assertEqual(conflict.client_local_id, "B1")
        self.assertEqual(conflict.base_version, 5)
        self.assertEqual(conflict.server_version, 6)
        self.assertEqual(conflict.server_payload["price"], 10)
        self.assertEqual(conflict.client_payload, {"price": 12})
        self.assertEqual(conflict.base_payload, {"name": "Pear", "price": 8})

        record.refresh_from_db()
        self.assertEqual(record.version, 6)
        self.assertEqual(record.payload["price"], 10)

    def test_update_after_delete_is_gone(self):
        record = seed_record("store-a", "products", {"name": "Plum", "price": 3}, version=4, tombstone=True)
        results = self.push(update("L9", "products", record.id, 3, price=4))
        self.assertEqual(results[0]["status"], "failed")
        self.assertEqual(results[0]["error"]["kind"], "gone")
        record.refresh_from_db()
        self.assertEqual(record.version, 4)

    def test_delete_sets_tombstone_and_keeps_payload(self):
        record = seed_record("store-a", "customers", {"name": "Ann"}, version=2)
        results = self.push(delete("D1", "customers", record.id, 2))
        self.assertEqual(results[0]["status"], "accepted")
        self.assertEqual(results[0]["version"], 3)
        record.refresh_from_db()
        self.assertTrue(record.tombstone)
        self.assertEqual(record.payload, {"name": "Ann"})

        again = self.push(delete("D2", "customers", record.id, 3))
        self.assertEqual(again[0]["error"]["kind"], "gone")

    def test_versions_increase_with_every_write(self):
        created = self.push(create("C1", "categories", name="Drinks"))[0]
        versions = [created["version"]]
        for n in range(5):
            result = self.push(update(f"U{n}", "categories", created["serverId"], versions[-1], name=f"Drinks {n}"))[0]
            self.assertEqual(result["status"], "accepted")
            versions.append(result["version"])
        self.assertEqual(versions, [1, 2, 3, 4, 5, 6])
        record = TrackedRecord.objects.get(pk=created["serverId"])
        self.assertEqual(record.payload, {"name": "Drinks 4"})
        self.assertEqual(record.revisions.count(), 6)

    def test_update_merges_top_level_keys_only(self):
        record = seed_record("store-a", "products", {"name": "Tea", "price": 2, "meta": {"a": 1, "b": 2}})
        self.push(update("M1", "products", record.id, 1, meta={"a": 5}))
        record.refresh_from_db()
        self.assertEqual(record.payload, {"name": "Tea", "price": 2, "meta": {"a": 5}})

    def test_replayed_batch_returns_original_outcomes(self):
        record = seed_record("store-a", "products", {"name": "Fig", "price": 1}, version=3)
        batch = [
            create("R1", "products", name="Kiwi", price=2),
            update("R2", "products", record.id, 3, price=5),
            create("R3", "nope", name="x"),
        ]
        first = self.push(*batch)
        second = self.push(*batch)
        self.assertEqual(first, second)
        self.assertEqual(TrackedRecord.objects.filter(table="products").count(), 2)
        record.refresh_from_db()
        self.assertEqual(record.version, 4)

    def test_replayed_conflict_does_not_open_a_second_conflict(self):
        record = seed_record("store-a", "products", {"name": "Fig", "price": 1}, version=3)
        first = self.push(update("X1", "products", record.id, 2, price=9))
        second = self.push(update("X1", "products", record.id, 2, price=9))
        self.assertEqual(first[0]["conflictId"], second[0]["conflictId"])
        self.assertEqual(Conflict.objects.filter(client_local_id="X1").count(), 1)

    def test_unknown_table(self):
        results = self.push(create("T1", "plugins", name="x"))
        self.assertEqual(results[0]["status"], "failed")
        self.assertEqual(results[0]["error"]["kind"], "unknown_table")

    def test_incomplete_entries_fail_alone(self):
        results = self.push(
            create("P1", "products", name="Tea", price=2),
            {"localId": "P2", "table": "", "action": "create", "data": {"name": "x"}},
            {"localId": "P3", "table": "products", "action": "", "data": {}},
            {"localId": "P4", "table": None, "action": "create", "data": {"name": "x"}},
            {"table": "products", "action": "create", "data": {"name": "Nameless", "price": 1}},
        )
        self.assertEqual([r["status"] for r in results], ["accepted"] + ["failed"] * 4)
        self.assertEqual(results[1]["error"]["kind"], "unknown_table")
        self.assertEqual(results[2]["error"]["kind"], "malformed_payload")
        self.assertEqual(results[2]["error"]["field"], "action")
        self.assertEqual(results[3]["error"]["kind"], "unknown_table")
        self.assertEqual(results[4]["error"]["kind"], "malformed_payload")
        self.assertEqual(results[4]["error"]["field"], "localId")
        self.assertEqual(TrackedRecord.objects.filter(store_id="store-a").count(), 1)

    def test_malformed_payloads(self):
        record = seed_record("store-a", "products", {"name": "Fig", "price": 1}, version=2)
        results = self.push(
            create("P1", "products", name="No price"),
            {"localId": "P2", "table": "products", "action": "update", "data": {"serverId": str(record.id)}},
            {"localId": "P3", "table": "products", "action": "create", "data": "oops"},
            {"localId": "P4", "table": "products", "action": "upsert", "data": {}},
            update("P5", "products", record.id, 7, price=3),
        )
        self.assertEqual([r["status"] for r in results], ["failed"] * 5)
        self.assertEqual({r["error"]["kind"] for r in results}, {"malformed_payload"})
        self.assertEqual(results[0]["error"]["field"], "price")
        self.assertEqual(results[1]["error"]["field"], "baseVersion")
        self.assertEqual(results[4]["error"]["field"], "baseVersion")

    def test_unknown_server_id_is_not_found(self):
        results = self.push(
            update("N1", "products", uuid.uuid4(), 1, price=3),
            update("N2", "products", "not-a-uuid", 1, price=3),
        )
        self.assertEqual([r["error"]["kind"] for r in results], ["not_found", "not_found"])

    def test_later_entries_see_earlier_ones_in_the_same_batch(self):
        results = self.push(
            create("L1", "products", name="Milk", price=1),
            {"localId": "L2", "table": "products", "action": "update", "data": {"recordLocalId": "L1", "baseVersion": 1, "price": 2}},
            {"localId": "L3", "table": "products", "action": "delete", "data": {"recordLocalId": "L1", "baseVersion": 2}},
        )
        self.assertEqual([r["status"] for r in results], ["accepted"] * 3)
        self.assertEqual([r["version"] for r in results], [1, 2, 3])
        self.assertEqual(len({r["serverId"] for r in results}), 1)
        record = TrackedRecord.objects.get()
        self.assertTrue(record.tombstone)
        self.assertEqual(record.payload["price"], 2)

    def test_unique_email_per_store(self):
        first = self.push(create("E1", "employees", name="Ann", email="ann@shop.test"))[0]
        dup = self.push(create("E2", "employees", name="Other Ann", email=" ANN@shop.test "))[0]
        self.assertEqual(first["status"], "accepted")
        self.assertEqual(dup["status"], "failed")
        self.assertEqual(dup["error"], {"kind": "unique_violation", "field": "email", "message": "email must be unique"})
        self.assertEqual(TrackedRecord.objects.filter(table="employees").count(), 1)

        other = self.client_for(self.make_user("cashier-b", "store-b"))
        elsewhere = self.push(create("E1", "employees", name="Ann", email="ann@shop.test"), client=other)[0]
        self.assertEqual(elsewhere["status"], "accepted")

        bob = self.push(create("E3", "employees", name="Bob", email="bob@shop.test"))[0]
        clash = self.push(update("E4", "employees", bob["serverId"], 1, email="ann@shop.test"))[0]
        self.assertEqual(clash["error"]["kind"], "unique_violation")
        self.assertEqual(TrackedRecord.objects.get(pk=bob["serverId"]).payload["email"], "bob@shop.test")

        self.push(delete("E5", "employees", first["serverId"], 1))
        reused = self.push(create("E6", "employees", name="New Ann", email="ann@shop.test"))[0]
        self.assertEqual(reused["status"], "accepted")

    def test_employees_without_email_do_not_clash(self):
        results = self.push(
            create("E1", "employees", name="Ann"),
            create("E2", "employees", name="Bob", email=""),
        )
        self.assertEqual([r["status"] for r in results], ["accepted", "accepted"])
        self.assertFalse(RecordUniqueKey.objects.exists())

    def test_other_store_records_are_never_touched(self):
        foreign = seed_record("store-b", "products", {"name": "Secret", "price": 99}, version=1)
        results = self.push(
            update("I1", "products", foreign.id, 1, price=0),
            delete("I2", "products", foreign.id, 1),
        )
        self.assertEqual([r["error"]["kind"] for r in results], ["not_found", "not_found"])
        foreign.refresh_from_db()
        self.assertEqual(foreign.version, 1)
        self.assertFalse(foreign.tombstone)
        self.assertEqual(foreign.payload["price"], 99)

    def test_same_local_id_in_two_stores_is_independent(self):
        other = self.client_for(self.make_user("cashier-b", "store-b"))
        a = self.push(create("SAME", "categories", name="A"))[0]
        b = self.push(create("SAME", "categories", name="B"), client=other)[0]
        self.assertNotEqual(a["serverId"], b["serverId"])
        self.assertEqual(AppliedChange.objects.filter(local_id="SAME").count(), 2)

    @override_settings(SYNC={"PUSH_MAX_BATCH": 2})
    def test_batch_size_is_capped(self):
        changes = [create(f"B{n}", "categories", name="x") for n in range(3)]
        resp = self.client.post("/api/sync/push", {"changes": changes}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(TrackedRecord.objects.exists())

    def test_failing_audit_receiver_does_not_fail_the_push(self):
        def broken_receiver(**kwargs):
            raise RuntimeError("audit sink down")

        seen = []

        def audit_receiver(result, **kwargs):
            seen.append(result.status)

        change_applied.connect(broken_receiver)
        change_applied.connect(audit_receiver)
        self.addCleanup(change_applied.disconnect, broken_receiver)
        self.addCleanup(change_applied.disconnect, audit_receiver)

        results = self.push(create("H1", "categories", name="Snacks"), create("H2", "nope"))
        self.assertEqual(results[0]["status"], "accepted")
        self.assertEqual(seen, ["accepted", "failed"])


class PushApplierTests(TestCase):
    def setUp(self):
        self.scope = SyncScope(store_id="store-a")

    def test_storage_errors_are_retryable_and_not_remembered(self):
        applier = PushApplier(self.scope)
        entry = ChangeEntry("S1", "categories", "create", {"name": "x"})
        with mock.patch.object(PushApplier, "_dispatch", side_effect=OperationalError("database is locked")):
            result = applier.apply([entry])[0]
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error["kind"], "storage_unavailable")
        self.assertTrue(result.retryable)
        self.assertFalse(AppliedChange.objects.exists())

        retried = applier.apply([entry])[0]
        self.assertEqual(retried.status, "accepted")

    def test_entries_past_the_deadline_are_not_started(self):
        applier = PushApplier(self.scope, deadline=time.monotonic() - 1)
        results = applier.apply([ChangeEntry("D1", "categories", "create", {"name": "x"})])
        self.assertEqual(results[0].error["kind"], "deadline_exceeded")
        self.assertTrue(results[0].retryable)
        self.assertFalse(TrackedRecord.objects.exists())
        self.assertFalse(AppliedChange.objects.exists())

    def test_updated_at_never_goes_backwards(self):
        future = timezone.now() + timedelta(hours=1)
        record = seed_record("store-a", "categories", {"name": "x"}, updated_at=future)
        applier = PushApplier(self.scope)
        applier.apply([ChangeEntry("U1", "categories", "update", {"serverId": str(record.id), "baseVersion": 1})])
        record.refresh_from_db()
        self.assertGreater(record.updated_at, future)

    def test_error_kinds(self):
        self.assertTrue(is_retryable("storage_unavailable"))
        self.assertTrue(is_retryable(ErrorKind.DEADLINE_EXCEEDED))
        self.assertFalse(is_retryable("gone"))
        self.assertFalse(is_retryable("conflict"))

    def test_descriptors_cover_every_table(self):
        for name in TABLE_NAMES:
            self.assertEqual(get_descriptor(name).name, name)
        self.assertEqual(get_descriptor("employees").unique_fields, ("email",))


class PullTests(SyncApiTestCase):
    def test_paginated_first_pull(self):
        base = timezone.now() - timedelta(days=1)
        TrackedRecord.objects.bulk_create(
            TrackedRecord(
                store_id="store-a",
                table="products",
                payload={"name": f"P{n}", "price": n},
                version=1,
                updated_at=base + timedelta(milliseconds=n),
            )
            for n in range(3000)
        )
        latest = base + timedelta(milliseconds=2999)

        body = self.pull(limit=1000)
        self.assertEqual(len(body["products"]), 1000)
        self.assertTrue(body["hasMore"])
        self.assertEqual(parse_datetime(body["syncedAt"]), base + timedelta(milliseconds=999))

        seen = {row["serverId"] for row in body["products"]}
        pages = 1
        watermarks = [parse_datetime(body["syncedAt"])]
        while body["hasMore"]:
            body = self.pull(since=body["syncedAt"], limit=1000)
            self.assertEqual(len(body["products"]), 1000)
            seen.update(row["serverId"] for row in body["products"])
            watermarks.append(parse_datetime(body["syncedAt"]))
            pages += 1

        self.assertEqual(pages, 3)
        self.assertEqual(len(seen), 3000)
        self.assertEqual(watermarks[-1], latest)
        self.assertEqual(watermarks, sorted(watermarks))

    def test_truncated_page_includes_ties(self):
        stamp = timezone.now()
        for n in range(3):
            seed_record("store-a", "customers", {"name": f"C{n}"}, updated_at=stamp)
        body = self.pull(limit_customers=2)
        self.assertEqual(len(body["customers"]), 3)
        self.assertTrue(body["hasMore"])

        body = self.pull(since=body["syncedAt"], limit_customers=2)
        self.assertEqual(body["customers"], [])
        self.assertFalse(body["hasMore"])
        self.assertEqual(parse_datetime(body["syncedAt"]), stamp)

    def test_rows_are_ordered_by_updated_at(self):
        now = timezone.now()
        late = seed_record("store-a", "categories", {"name": "late"}, updated_at=now)
        early = seed_record("store-a", "categories", {"name": "early"}, updated_at=now - timedelta(seconds=5))
        body = self.pull()
        self.assertEqual([row["serverId"] for row in body["categories"]], [str(early.id), str(late.id)])

    def test_tombstones_are_returned(self):
        old = timezone.now() - timedelta(days=400)
        record = seed_record("store-a", "products", {"name": "Gone", "price": 1}, version=2, tombstone=True, updated_at=old)
        body = self.pull()
        self.assertEqual(body["products"][0]["serverId"], str(record.id))
        self.assertTrue(body["products"][0]["tombstone"])

    def test_since_filters_strictly_after(self):
        now = timezone.now()
        seed_record("store-a", "products", {"name": "a", "price": 1}, updated_at=now - timedelta(minutes=1))
        fresh = seed_record("store-a", "products", {"name": "b", "price": 1}, updated_at=now)
        body = self.pull(since=(now - timedelta(minutes=1)).isoformat())
        self.assertEqual([row["serverId"] for row in body["products"]], [str(fresh.id)])

    def test_every_table_is_present_and_scoped(self):
        seed_record("store-b", "products", {"name": "Secret", "price": 1})
        body = self.pull()
        for name in TABLE_NAMES:
            self.assertEqual(body[name], [])
        self.assertFalse(body["hasMore"])
        self.assertIsNone(body["syncedAt"])

    def test_watermark_does_not_move_back_for_an_empty_pull(self):
        since = timezone.now() + timedelta(minutes=5)
        seed_record("store-a", "products", {"name": "a", "price": 1})
        result = PullStreamer(SyncScope("store-a")).pull(since=since)
        self.assertEqual(result.synced_at, since)

    def test_record_committed_between_table_reads_is_not_skipped(self):
        seed_record("store-a", "products", {"name": "early", "price": 1}, updated_at=timezone.now() - timedelta(minutes=1))
        late = []

        class CommitAfterProducts(PullStreamer):
            def _slice(self, table, since, limit):
                rows = super()._slice(table, since, limit)
                if table == "products" and not late:
                    late.append(seed_record("store-a", "products", {"name": "late", "price": 2}))
                return rows

        first = CommitAfterProducts(SyncScope("store-a")).pull()
        second = PullStreamer(SyncScope("store-a")).pull(since=first.synced_at)
        pulled = {row.id for rows in first.tables.values() for row in rows}
        pulled.update(row.id for rows in second.tables.values() for row in rows)
        self.assertIn(late[0].id, pulled)
        self.assertLess(first.synced_at, late[0].updated_at)

    def test_invalid_limits_are_rejected(self):
        resp = self.client.get("/api/sync/pull", {"since": "", "limit_products": "lots"})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.get("/api/sync/pull", {"since": "yesterday"})
        self.assertEqual(resp.status_code, 400)

    @override_settings(SYNC={"PULL_DEFAULT_LIMIT": 10, "PULL_MAX_LIMIT": 20})
    def test_limits_are_clamped(self):
        limits = resolve_limits({"products": 500})
        self.assertEqual(limits["products"], 20)
        self.assertEqual(limits["sales"], 10)


class ConflictTests(SyncApiTestCase):
    def setUp(self):
        super().setUp()
        self.record = seed_record("store-a", "products", {"name": "Pear", "price": 8}, version=5)
        self.push(update("A1", "products", self.record.id, 5, price=10))
        result = self.push(update("B1", "products", self.record.id, 5, price=12))[0]
        self.conflict_id = result["conflictId"]

    def resolve(self, conflict_id, **body):
        return self.client.post(f"/api/sync/conflicts/{conflict_id}/resolve", body, format="json")

    def test_resolve_with_client_payload(self):
        resp = self.resolve(self.conflict_id, choice="client")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["status"], "accepted")
        self.assertEqual(resp.data["version"], 7)
        self.assertEqual(resp.data["conflict"]["status"], "resolved-client")
        self.record.refresh_from_db()
        self.assertEqual(self.record.version, 7)
        self.assertEqual(self.record.payload["price"], 12)
        conflict = Conflict.objects.get(pk=self.conflict_id)
        self.assertEqual(conflict.resolved_version, 7)
        self.assertIsNotNone(conflict.resolved_at)

    def test_resolve_with_server_payload_writes_nothing(self):
        resp = self.resolve(self.conflict_id, choice="server")
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("status", resp.data)
        self.assertEqual(resp.data["conflict"]["status"], "resolved-server")
        self.record.refresh_from_db()
        self.assertEqual(self.record.version, 6)
        self.assertEqual(self.record.payload["price"], 10)

    def test_resolve_with_merged_payload(self):
        resp = self.resolve(self.conflict_id, choice="merged", mergedPayload={"price": 11, "baseVersion": 1})
        self.assertEqual(resp.data["status"], "accepted")
        self.assertEqual(resp.data["conflict"]["status"], "merged")
        self.record.refresh_from_db()
        self.assertEqual(self.record.version, 7)
        self.assertEqual(self.record.payload, {"name": "Pear", "price": 11})

    def test_merged_requires_a_payload(self):
        resp = self.resolve(self.conflict_id, choice="merged")
        self.assertEqual(resp.status_code, 400)
        self.assertTrue(Conflict.objects.get(pk=self.conflict_id).is_open)

    def test_closed_conflicts_cannot_be_resolved_again(self):
        self.assertEqual(self.resolve(self.conflict_id, choice="server").status_code, 200)
        self.assertEqual(self.resolve(self.conflict_id, choice="client").status_code, 409)
        resp = self.client.post(f"/api/sync/conflicts/{self.conflict_id}/reject")
        self.assertEqual(resp.status_code, 409)
        self.record.refresh_from_db()
        self.assertEqual(self.record.version, 6)

    def test_reject(self):
        resp = self.client.post(f"/api/sync/conflicts/{self.conflict_id}/reject")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["conflict"]["status"], "rejected")

    def test_failed_resolution_leaves_the_conflict_open(self):
        self.push(delete("Z1", "products", self.record.id, 6))
        resp = self.resolve(self.conflict_id, choice="client")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["status"], "failed")
        self.assertEqual(resp.data["error"]["kind"], "gone")
        self.assertEqual(resp.data["conflict"]["status"], "open")

    def test_stale_delete_conflict_resolves_to_a_tombstone(self):
        result = self.push(delete("D1", "products", self.record.id, 5))[0]
        self.assertEqual(result["status"], "conflicted")
        resp = self.resolve(result["conflictId"], choice="client")
        self.assertEqual(resp.data["status"], "accepted")
        self.record.refresh_from_db()
        self.assertTrue(self.record.tombstone)

    def test_detail_and_tenant_isolation(self):
        resp = self.client.get(f"/api/sync/conflicts/{self.conflict_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["clientLocalId"], "B1")
        self.assertEqual(resp.data["serverId"], str(self.record.id))
        self.assertEqual(resp.data["basePayload"], {"name": "Pear", "price": 8})

        other = self.client_for(self.make_user("cashier-b", "store-b"))
        self.assertEqual(other.get(f"/api/sync/conflicts/{self.conflict_id}").status_code, 404)
        resp = other.post(f"/api/sync/conflicts/{self.conflict_id}/resolve", {"choice": "client"}, format="json")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(other.get("/api/sync/conflicts").data["pagination"]["total"], 0)

    def test_list_filters_and_pagination(self):
        for n in range(2):
            self.push(update(f"C{n}", "products", self.record.id, 4, price=n))
        self.client.post(f"/api/sync/conflicts/{self.conflict_id}/reject")

        resp = self.client.get("/api/sync/conflicts", {"page_size": 2})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.data["conflicts"]), 2)
        self.assertEqual(resp.data["pagination"], {"page": 1, "pageSize": 2, "total": 3, "pages": 2})
        self.assertEqual(resp.data["conflicts"][0]["clientLocalId"], "C1")

        page_two = self.client.get("/api/sync/conflicts", {"page_size": 2, "page": 2})
        self.assertEqual(len(page_two.data["conflicts"]), 1)

        open_only = self.client.get("/api/sync/conflicts", {"status": "open"})
        self.assertEqual(open_only.data["pagination"]["total"], 2)
        other_table = self.client.get("/api/sync/conflicts", {"table": "customers"})
        self.assertEqual(other_table.data["conflicts"], [])
        self.assertEqual(self.client.get("/api/sync/conflicts", {"status": "lost"}).status_code, 400)

    def test_created_range_filter(self):
        Conflict.objects.filter(pk=self.conflict_id).update(created_at=timezone.now() - timedelta(days=3))
        self.push(update("C9", "products", self.record.id, 4, price=1))
        since = (timezone.now() - timedelta(days=1)).isoformat()
        resp = self.client.get("/api/sync/conflicts", {"created_after": since})
        self.assertEqual([c["clientLocalId"] for c in resp.data["conflicts"]], ["C9"])
        resp = self.client.get("/api/sync/conflicts", {"created_before": since})
        self.assertEqual([c["clientLocalId"] for c in resp.data["conflicts"]], ["B1"])


class PurgeAppliedChangesTests(TestCase):
    def test_purges_only_old_outcomes(self):
        AppliedChange.objects.create(store_id="s", local_id="old", table="products", action="create", status="accepted")
        AppliedChange.objects.create(store_id="s", local_id="new", table="products", action="create", status="accepted")
        AppliedChange.objects.filter(local_id="old").update(created_at=timezone.now() - timedelta(days=40))

        out = StringIO()
        call_command("purge_applied_changes", days=30, stdout=out)
        self.assertEqual(list(AppliedChange.objects.values_list("local_id", flat=True)), ["new"])
        self.assertIn("Deleted 1", out.getvalue())
