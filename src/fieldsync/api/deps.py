"""FastAPI dependencies for the stores and the scheduler."""
from typing import Optional

from fieldsync.db.engine import get_engine
from fieldsync.scheduler.jobs import SyncScheduler, build_sync_scheduler
from fieldsync.store.records import RecordStore
from fieldsync.store.registry import TargetRegistry

_sync_scheduler: Optional[SyncScheduler] = None


def get_record_store() -> RecordStore:
    return RecordStore(get_engine())


def get_target_registry() -> TargetRegistry:
    return TargetRegistry(get_engine())


def get_sync_scheduler() -> SyncScheduler:
    global _sync_scheduler
    if _sync_scheduler is None:
        _sync_scheduler = build_sync_scheduler(get_engine())
    return _sync_scheduler
