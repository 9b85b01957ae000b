"""Sync records, per-target configuration and dispatch cycle leases."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class SyncFrequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


class SyncRecord(SQLModel, table=True):
    """One domain entity that must be delivered to one external system."""

    __tablename__ = "sync_records"

    id: str = Field(default_factory=new_id, primary_key=True)
    record_type: str = Field(index=True)  # "participant", "attendance", "task", ...
    record_id: str = Field(index=True)  # id of the domain entity, not owned here
    target_system: str = Field(index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    error_message: Optional[str] = None
    attempts: int = 0
    synced_at: Optional[datetime] = None

    # Claim bookkeeping: a record is owned by one worker until claimed_until
    claim_token: Optional[str] = None
    claimed_until: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error_transient: bool = True

    # Set once when an exhausted record is manually re-enqueued; id of the copy
    requeued_as: Optional[str] = None

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class SyncConfiguration(SQLModel, table=True):
    """Per-target settings. Written by administrators, read by the engine."""

    __tablename__ = "sync_configurations"

    id: str = Field(default_factory=new_id, primary_key=True)
    target_system: str = Field(unique=True, index=True)
    enabled: bool = True
    auto_sync: bool = False
    sync_frequency: SyncFrequency = SyncFrequency.DAILY
    webhook_url: Optional[str] = None
    api_key: Optional[str] = None  # Fernet token, never plaintext
    config_options: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SyncCycleLease(SQLModel, table=True):
    """
    Mutual exclusion and cadence state for dispatch cycles of one target.

    holder is set while a cycle runs; lease_expires_at bounds how long a
    crashed worker can keep a target locked.
    """

    __tablename__ = "sync_cycle_leases"

    target_system: str = Field(primary_key=True)
    holder: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
