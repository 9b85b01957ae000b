"""Sync record intake, history and manual re-enqueue routes."""
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from fieldsync.api.deps import get_record_store
from fieldsync.models.sync import SyncRecord, SyncStatus
from fieldsync.store.records import (
    RecordNotFoundError,
    RecordNotRequeueableError,
    RecordStore,
)

router = APIRouter()

MAX_BULK_RECORDS = 1000


class EnqueueRequest(BaseModel):
    record_type: str = Field(min_length=1)  # "participant", "attendance", "task", ...
    record_id: str = Field(min_length=1)
    target_system: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None


class BulkEnqueueRequest(BaseModel):
    # Items stay untyped so one malformed entry is reported, not a 422 for the batch
    records: List[Any]
    target_system: Optional[str] = None
    created_by: Optional[str] = None


class BulkItemOut(BaseModel):
    index: int
    record_id: Optional[str] = None
    id: Optional[str] = None
    error: Optional[str] = None


class BulkResults(BaseModel):
    successful: List[BulkItemOut]
    failed: List[BulkItemOut]


class BulkEnqueueResponse(BaseModel):
    total: int
    successful: int
    failed: int
    results: BulkResults


class RetryRequest(BaseModel):
    requested_by: Optional[str] = None


class SyncRecordOut(BaseModel):
    id: str
    record_type: str
    record_id: str
    target_system: str
    payload: Dict[str, Any]
    status: SyncStatus
    error_message: Optional[str]
    attempts: int
    synced_at: Optional[datetime]
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime
    requeued_as: Optional[str] = None

    @classmethod
    def from_record(cls, record: SyncRecord) -> "SyncRecordOut":
        return cls(**record.model_dump())


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class HistoryResponse(BaseModel):
    records: List[SyncRecordOut]
    pagination: Pagination


class EntitySyncStatus(BaseModel):
    record_id: str
    last_sync: Optional[SyncRecordOut]
    history: List[SyncRecordOut]


@router.post("", status_code=201)
def enqueue_record(request: EnqueueRequest, store: RecordStore = Depends(get_record_store)):
    """Producer entry point. Returns the new sync record id; delivery happens later."""
    sync_id = store.enqueue(
        record_type=request.record_type,
        record_id=request.record_id,
        target_system=request.target_system,
        payload=request.payload,
        created_by=request.created_by,
    )
    return {"id": sync_id, "status": SyncStatus.PENDING.value}


@router.post("/bulk", response_model=BulkEnqueueResponse)
def enqueue_records_bulk(
    request: BulkEnqueueRequest, store: RecordStore = Depends(get_record_store)
):
    """
    Enqueue many records at once.

    Items are validated one by one: a bad item is reported in results.failed
    and does not block the others. A request-level target_system fills in
    items that do not name their own.
    """
    if not request.records:
        raise HTTPException(status_code=400, detail="Please provide a non-empty list of records")
    if len(request.records) > MAX_BULK_RECORDS:
        raise HTTPException(
            status_code=400, detail=f"At most {MAX_BULK_RECORDS} records per request"
        )
    items = []
    for item in request.records:
        if isinstance(item, dict) and request.target_system and not item.get("target_system"):
            item = {**item, "target_system": request.target_system}
        items.append(item)
    outcomes = store.enqueue_many(items, created_by=request.created_by)
    successful = [
        BulkItemOut(index=o.index, record_id=o.record_id, id=o.sync_id) for o in outcomes if o.ok
    ]
    failed = [
        BulkItemOut(index=o.index, record_id=o.record_id, error=o.error)
        for o in outcomes
        if not o.ok
    ]
    return BulkEnqueueResponse(
        total=len(outcomes),
        successful=len(successful),
        failed=len(failed),
        results=BulkResults(successful=successful, failed=failed),
    )


@router.get("", response_model=HistoryResponse)
def list_records(
    target_system: Optional[str] = None,
    status: Optional[SyncStatus] = None,
    record_type: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    store: RecordStore = Depends(get_record_store),
):
    """Sync history, newest first."""
    page = max(page, 1)
    limit = min(max(limit, 1), 500)
    records = store.list_records(
        target_system=target_system,
        status=status,
        record_type=record_type,
        limit=limit,
        offset=(page - 1) * limit,
    )
    total = store.count_records(target_system=target_system, status=status, record_type=record_type)
    return HistoryResponse(
        records=[SyncRecordOut.from_record(r) for r in records],
        pagination=Pagination(
            page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)
        ),
    )


@router.get("/exhausted", response_model=List[SyncRecordOut])
def list_exhausted(
    target_system: Optional[str] = None,
    limit: int = 100,
    store: RecordStore = Depends(get_record_store),
):
    """Records that ran out of automatic retries and need an operator."""
    return [SyncRecordOut.from_record(r) for r in store.list_exhausted(target_system, limit=limit)]


@router.get("/entity/{record_id}", response_model=EntitySyncStatus)
def entity_sync_status(record_id: str, store: RecordStore = Depends(get_record_store)):
    """Latest sync state plus full history for one domain entity."""
    history = [SyncRecordOut.from_record(r) for r in store.history_for(record_id)]
    return EntitySyncStatus(
        record_id=record_id,
        last_sync=history[0] if history else None,
        history=history,
    )


@router.get("/{sync_id}", response_model=SyncRecordOut)
def get_record(sync_id: str, store: RecordStore = Depends(get_record_store)):
    record = store.get(sync_id)
    if not record:
        raise HTTPException(status_code=404, detail="Sync record not found")
    return SyncRecordOut.from_record(record)


@router.post("/{sync_id}/retry", status_code=201)
def retry_record(
    sync_id: str,
    request: Optional[RetryRequest] = None,
    store: RecordStore = Depends(get_record_store),
):
    """Manually re-enqueue a permanently failed record as a fresh pending record."""
    requested_by = request.requested_by if request else None
    try:
        fresh = store.requeue(sync_id, requested_by=requested_by)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Sync record not found")
    except RecordNotRequeueableError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "message": "Sync record re-enqueued",
        "original_id": sync_id,
        "record": SyncRecordOut.from_record(fresh),
    }
