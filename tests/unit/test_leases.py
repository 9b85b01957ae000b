"""Tests for per-target dispatch cycle leases."""
from datetime import datetime, timedelta

from fieldsync.store.leases import CycleLeaseStore

NOW = datetime(2025, 1, 15, 9, 0)


class TestCycleLeaseStore:
    def test_first_acquire_succeeds(self, leases):
        assert leases.acquire("hr_system", "worker-a", now=NOW)
        lease = leases.get("hr_system")
        assert lease.holder == "worker-a"
        assert lease.last_started_at == NOW

    def test_second_holder_blocked(self, leases):
        assert leases.acquire("hr_system", "worker-a", now=NOW)
        assert not leases.acquire("hr_system", "worker-b", now=NOW + timedelta(minutes=1))

    def test_other_targets_independent(self, leases):
        assert leases.acquire("hr_system", "worker-a", now=NOW)
        assert leases.acquire("kwantu", "worker-b", now=NOW)

    def test_release_allows_next_holder(self, leases):
        leases.acquire("hr_system", "worker-a", now=NOW)
        leases.release("hr_system", "worker-a", now=NOW + timedelta(seconds=30))
        assert leases.get("hr_system").last_finished_at == NOW + timedelta(seconds=30)
        assert leases.acquire("hr_system", "worker-b", now=NOW + timedelta(minutes=1))

    def test_expired_lease_can_be_taken_over(self, leases):
        leases.acquire("hr_system", "worker-a", now=NOW)
        assert leases.acquire("hr_system", "worker-b", now=NOW + timedelta(minutes=16))
        assert leases.get("hr_system").holder == "worker-b"

    def test_release_by_non_holder_is_ignored(self, leases):
        leases.acquire("hr_system", "worker-a", now=NOW)
        leases.release("hr_system", "worker-b", now=NOW)
        assert leases.get("hr_system").holder == "worker-a"

    def test_get_unknown_target(self, engine):
        assert CycleLeaseStore(engine, ttl=timedelta(minutes=1)).get("nope") is None

    def test_renew_pushes_expiry_out(self, leases):
        leases.acquire("hr_system", "worker-a", now=NOW)
        assert leases.renew("hr_system", "worker-a", now=NOW + timedelta(minutes=10))
        assert leases.get("hr_system").lease_expires_at == NOW + timedelta(minutes=25)
        assert not leases.acquire("hr_system", "worker-b", now=NOW + timedelta(minutes=16))

    def test_renew_after_takeover_fails(self, leases):
        leases.acquire("hr_system", "worker-a", now=NOW)
        leases.acquire("hr_system", "worker-b", now=NOW + timedelta(minutes=16))
        assert not leases.renew("hr_system", "worker-a", now=NOW + timedelta(minutes=17))
        assert leases.get("hr_system").holder == "worker-b"
