"""Target configuration and on-demand dispatch routes (administrative)."""
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from fieldsync.api.deps import get_record_store, get_sync_scheduler, get_target_registry
from fieldsync.crypto import MissingEncryptionKeyError
from fieldsync.models.sync import SyncFrequency
from fieldsync.scheduler.jobs import SyncScheduler, TargetBusyError
from fieldsync.store.records import RecordStore
from fieldsync.store.registry import TargetRegistry, TargetSettings

logger = logging.getLogger(__name__)

router = APIRouter()


class TargetConfigRequest(BaseModel):
    enabled: Optional[bool] = None
    auto_sync: Optional[bool] = None
    sync_frequency: Optional[SyncFrequency] = None
    webhook_url: Optional[str] = None
    api_key: Optional[str] = None  # write-only; "" clears the stored key
    config_options: Optional[Dict[str, Any]] = None
    updated_by: Optional[str] = None


class TargetOut(BaseModel):
    target_system: str
    enabled: bool
    auto_sync: bool
    sync_frequency: SyncFrequency
    webhook_url: Optional[str]
    has_api_key: bool
    config_options: Dict[str, Any]
    updated_by: Optional[str]
    updated_at: Optional[datetime]
    record_counts: Optional[Dict[str, int]] = None

    @classmethod
    def from_settings(cls, settings: TargetSettings, counts: Optional[Dict[str, int]] = None) -> "TargetOut":
        return cls(**asdict(settings), record_counts=counts)


async def _do_dispatch(sync_scheduler: SyncScheduler, target_system: str) -> None:
    """Background task: run one on-demand cycle."""
    try:
        result = await sync_scheduler.trigger(target_system)
        logger.info(
            "On-demand dispatch for %s done: synced=%d failed=%d",
            target_system,
            result.synced,
            result.failed,
        )
    except TargetBusyError:
        logger.info("On-demand dispatch for %s skipped: cycle already running", target_system)
    except Exception as exc:
        logger.error("On-demand dispatch for %s failed: %s", target_system, exc)


@router.get("", response_model=List[TargetOut])
def list_targets(registry: TargetRegistry = Depends(get_target_registry)):
    return [TargetOut.from_settings(t) for t in registry.list_all()]


@router.put("/{target_system}", response_model=TargetOut)
def configure_target(
    target_system: str,
    request: TargetConfigRequest,
    registry: TargetRegistry = Depends(get_target_registry),
):
    """Create or update a target's sync configuration. The api key is never echoed back."""
    try:
        settings = registry.upsert(target_system, **request.model_dump())
    except MissingEncryptionKeyError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return TargetOut.from_settings(settings)


@router.get("/{target_system}", response_model=TargetOut)
def get_target(
    target_system: str,
    registry: TargetRegistry = Depends(get_target_registry),
    store: RecordStore = Depends(get_record_store),
):
    settings = registry.get(target_system)
    if not settings:
        raise HTTPException(status_code=404, detail="Sync configuration not found")
    return TargetOut.from_settings(settings, counts=store.status_counts(target_system))


@router.post("/{target_system}/dispatch", status_code=202)
async def trigger_dispatch(
    target_system: str,
    background_tasks: BackgroundTasks,
    registry: TargetRegistry = Depends(get_target_registry),
    sync_scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """
    Start a dispatch cycle for one target now, regardless of auto_sync.
    Returns immediately; the cycle runs in the background.
    """
    settings = registry.get(target_system)
    if not settings:
        raise HTTPException(status_code=404, detail="Sync configuration not found")
    if not settings.enabled:
        raise HTTPException(status_code=409, detail=f"Sync to '{target_system}' is not enabled")
    background_tasks.add_task(_do_dispatch, sync_scheduler, target_system)
    return {"message": "Dispatch started", "target_system": target_system}
