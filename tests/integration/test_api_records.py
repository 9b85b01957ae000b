"""Integration tests for /records routes."""
import pytest
from fastapi.testclient import TestClient

from fieldsync.api.deps import get_record_store
from fieldsync.api.main import create_app
from fieldsync.models.sync import SyncStatus


@pytest.fixture(name="client")
def client_fixture(store):
    app = create_app()
    app.dependency_overrides[get_record_store] = lambda: store
    with TestClient(app) as c:
        yield c


def _exhaust(store, clock, sync_id, target="hr_system"):
    for _ in range(store.policy.max_attempts):
        (record,) = store.claim(target, 1, now=clock())
        assert record.id == sync_id
        store.mark_failed(record.id, record.claim_token, "HTTP 503", attempted_at=clock())
        clock.advance(hours=2)


class TestEnqueue:
    def test_enqueue_returns_201(self, client, store):
        resp = client.post(
            "/records",
            json={
                "record_type": "participant",
                "record_id": "p-1",
                "target_system": "hr_system",
                "payload": {"fullName": "Thandi Mokoena"},
                "created_by": "u-7",
            },
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "pending"
        record = store.get(body["id"])
        assert record.status == SyncStatus.PENDING
        assert record.attempts == 0
        assert record.payload == {"fullName": "Thandi Mokoena"}
        assert record.created_by == "u-7"

    def test_enqueue_missing_target_is_422(self, client):
        resp = client.post("/records", json={"record_type": "participant", "record_id": "p-1"})
        assert resp.status_code == 422

    def test_enqueue_empty_record_type_is_422(self, client):
        resp = client.post(
            "/records",
            json={"record_type": "", "record_id": "p-1", "target_system": "hr_system"},
        )
        assert resp.status_code == 422


class TestHistory:
    def test_empty(self, client):
        resp = client.get("/records")
        assert resp.status_code == 200
        assert resp.json()["records"] == []
        assert resp.json()["pagination"]["total"] == 0

    def test_filters_and_pagination(self, client, store):
        for i in range(3):
            store.enqueue("participant", f"p-{i}", "hr_system", {})
        store.enqueue("attendance", "a-1", "kwantu", {})

        resp = client.get("/records", params={"target_system": "hr_system", "limit": 2})
        body = resp.json()
        assert len(body["records"]) == 2
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
        assert all(r["target_system"] == "hr_system" for r in body["records"])

        resp = client.get("/records", params={"record_type": "attendance"})
        assert [r["record_id"] for r in resp.json()["records"]] == ["a-1"]

    def test_status_filter(self, client, store):
        store.enqueue("participant", "p-1", "hr_system", {})
        assert client.get("/records", params={"status": "failed"}).json()["records"] == []
        assert len(client.get("/records", params={"status": "pending"}).json()["records"]) == 1

    def test_invalid_status_is_422(self, client):
        assert client.get("/records", params={"status": "exploded"}).status_code == 422

    def test_get_record(self, client, store):
        sync_id = store.enqueue("participant", "p-1", "hr_system", {"a": 1})
        resp = client.get(f"/records/{sync_id}")
        assert resp.status_code == 200
        assert resp.json()["id"] == sync_id
        assert resp.json()["payload"] == {"a": 1}
        assert "claim_token" not in resp.json()

    def test_get_missing_record_is_404(self, client):
        assert client.get("/records/does-not-exist").status_code == 404

    def test_entity_history(self, client, store, clock):
        first = store.enqueue("participant", "p-1", "hr_system", {})
        (record,) = store.claim("hr_system", 1, now=clock())
        store.mark_synced(record.id, record.claim_token, synced_at=clock())
        second = store.enqueue("participant", "p-1", "kwantu", {})

        resp = client.get("/records/entity/p-1")
        body = resp.json()
        assert body["last_sync"]["id"] == second
        assert [r["id"] for r in body["history"]] == [second, first]

    def test_entity_without_history(self, client):
        body = client.get("/records/entity/unknown").json()
        assert body["last_sync"] is None
        assert body["history"] == []


class TestRetry:
    def test_retry_exhausted_record(self, client, store, clock):
        sync_id = store.enqueue("participant", "p-1", "hr_system", {"a": 1})
        _exhaust(store, clock, sync_id)

        resp = client.post(f"/records/{sync_id}/retry", json={"requested_by": "ops"})

        assert resp.status_code == 201
        fresh = resp.json()["record"]
        assert fresh["status"] == "pending"
        assert fresh["attempts"] == 0
        assert fresh["payload"] == {"a": 1}
        assert fresh["id"] != sync_id
        original = store.get(sync_id)
        assert original.status == SyncStatus.FAILED
        assert original.attempts == 5

    def test_exhausted_listing(self, client, store, clock):
        sync_id = store.enqueue("participant", "p-1", "hr_system", {})
        store.enqueue("participant", "p-2", "kwantu", {})
        _exhaust(store, clock, sync_id)

        resp = client.get("/records/exhausted")
        assert [r["id"] for r in resp.json()] == [sync_id]

    def test_retry_synced_record_is_400(self, client, store, clock):
        sync_id = store.enqueue("participant", "p-1", "hr_system", {})
        (record,) = store.claim("hr_system", 1, now=clock())
        store.mark_synced(record.id, record.claim_token, synced_at=clock())

        resp = client.post(f"/records/{sync_id}/retry")
        assert resp.status_code == 400
        assert "already synced" in resp.json()["detail"]

    def test_retry_pending_record_is_400(self, client, store):
        sync_id = store.enqueue("participant", "p-1", "hr_system", {})
        assert client.post(f"/records/{sync_id}/retry").status_code == 400

    def test_retry_missing_record_is_404(self, client):
        assert client.post("/records/nope/retry").status_code == 404

    def test_retry_twice_creates_one_copy(self, client, store, clock):
        sync_id = store.enqueue("participant", "p-1", "hr_system", {})
        _exhaust(store, clock, sync_id)

        first = client.post(f"/records/{sync_id}/retry")
        second = client.post(f"/records/{sync_id}/retry")

        assert first.status_code == 201
        assert second.status_code == 400
        assert "already re-enqueued" in second.json()["detail"]
        assert store.get(sync_id).requeued_as == first.json()["record"]["id"]
        assert len(store.history_for("p-1")) == 2
        assert client.get("/records/exhausted").json() == []


class TestBulkEnqueue:
    def test_all_valid(self, client, store):
        resp = client.post(
            "/records/bulk",
            json={
                "records": [
                    {"record_type": "participant", "record_id": "p-1", "payload": {"a": 1}},
                    {"record_type": "participant", "record_id": "p-2", "target_system": "kwantu"},
                ],
                "target_system": "hr_system",
                "created_by": "u-7",
            },
        )

        assert resp.status_code == 200
        body = resp.json()
        assert (body["total"], body["successful"], body["failed"]) == (2, 2, 0)
        first, second = body["results"]["successful"]
        assert first["record_id"] == "p-1"
        assert store.get(first["id"]).target_system == "hr_system"
        assert store.get(first["id"]).payload == {"a": 1}
        assert store.get(second["id"]).target_system == "kwantu"
        assert store.get(second["id"]).created_by == "u-7"
        assert store.get(second["id"]).status == SyncStatus.PENDING

    def test_invalid_items_reported_per_item(self, client, store):
        resp = client.post(
            "/records/bulk",
            json={
                "records": [
                    {"record_type": "task", "record_id": "t-1", "target_system": "hr_system"},
                    {"record_type": "task", "target_system": "hr_system"},
                    "not-an-object",
                    {"record_type": "task", "record_id": 42, "target_system": "hr_system"},
                    {"record_type": "task", "record_id": "t-3", "target_system": "hr_system", "payload": [1]},
                ]
            },
        )

        assert resp.status_code == 200
        body = resp.json()
        assert (body["total"], body["successful"], body["failed"]) == (5, 2, 3)
        assert [i["index"] for i in body["results"]["successful"]] == [0, 3]
        assert body["results"]["successful"][1]["record_id"] == "42"
        failed = {i["index"]: i for i in body["results"]["failed"]}
        assert "record_id" in failed[1]["error"]
        assert failed[2]["error"] == "item must be an object"
        assert failed[4]["error"] == "payload must be an object"
        assert failed[4]["record_id"] == "t-3"
        assert store.count_records() == 2

    def test_empty_list_is_400(self, client):
        assert client.post("/records/bulk", json={"records": []}).status_code == 400

    def test_missing_records_is_422(self, client):
        assert client.post("/records/bulk", json={"target_system": "hr_system"}).status_code == 422

    def test_too_many_records_is_400(self, client, store):
        item = {"record_type": "task", "record_id": "t-1", "target_system": "hr_system"}
        resp = client.post("/records/bulk", json={"records": [item] * 1001})
        assert resp.status_code == 400
        assert store.count_records() == 0
