"""Tests for the requeue maintenance script."""
from unittest.mock import patch

import pytest

from fieldsync.models.sync import SyncStatus
from fieldsync.scripts.requeue import _requeue


def _exhaust(store, clock, target="hr_system", record_id="p-1"):
    sync_id = store.enqueue("participant", record_id, target, {"id": record_id})
    for _ in range(store.policy.max_attempts):
        (record,) = store.claim(target, 1, now=clock())
        store.mark_failed(record.id, record.claim_token, "HTTP 503", attempted_at=clock())
        clock.advance(hours=2)
    return sync_id


@pytest.fixture(autouse=True)
def _patched_engine(engine):
    with patch("fieldsync.db.engine.get_engine", return_value=engine):
        yield


@pytest.fixture
def script_store(engine):
    from fieldsync.store.records import RecordStore

    return RecordStore(engine)


class TestRequeueScript:
    def test_requeues_exhausted_records(self, script_store, clock):
        original = _exhaust(script_store, clock)

        assert _requeue("hr_system", limit=100, dry_run=False, requested_by="ops") == 1

        history = script_store.history_for("p-1")
        assert len(history) == 2
        fresh = next(r for r in history if r.id != original)
        assert fresh.status == SyncStatus.PENDING
        assert fresh.attempts == 0
        assert fresh.created_by == "ops"
        assert script_store.get(original).status == SyncStatus.FAILED

    def test_dry_run_changes_nothing(self, script_store, clock):
        _exhaust(script_store, clock)
        assert _requeue("hr_system", limit=100, dry_run=True, requested_by="ops") == 0
        assert len(script_store.history_for("p-1")) == 1

    def test_target_filter(self, script_store, clock):
        _exhaust(script_store, clock, target="hr_system", record_id="p-1")
        _exhaust(script_store, clock, target="kwantu", record_id="p-2")
        assert _requeue("kwantu", limit=100, dry_run=False, requested_by="ops") == 1
        assert len(script_store.history_for("p-1")) == 1
        assert len(script_store.history_for("p-2")) == 2

    def test_nothing_to_requeue(self, script_store, clock):
        script_store.enqueue("participant", "p-1", "hr_system", {})
        assert _requeue(None, limit=100, dry_run=False, requested_by="ops") == 0

    def test_second_run_does_not_duplicate(self, script_store, clock):
        _exhaust(script_store, clock)
        assert _requeue("hr_system", limit=100, dry_run=False, requested_by="ops") == 1
        assert _requeue("hr_system", limit=100, dry_run=False, requested_by="ops") == 0
        assert len(script_store.history_for("p-1")) == 2
