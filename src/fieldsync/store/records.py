"""
RecordStore: durable queue of sync intents (the sync_records table).

Producers call enqueue(). Everything else is driven by the Dispatcher:

  1. claim()        pending / retry-eligible records → pending + claim lease
  2. mark_synced()  pending → synced   (attempts += 1, synced_at set)
     mark_failed()  pending → failed   (attempts += 1, error_message set)
     release()      drop the claim without counting an attempt

Claims are conditional UPDATEs guarded on the status, attempts and claim
expiry the claimer observed, so two workers racing on the same target can
never both own a record. Outcome writes are guarded on the claim token.
The database is the only coordination point; nothing here holds locks in
memory.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, func, or_, update
from sqlmodel import Session, select

from fieldsync.config import get_settings
from fieldsync.models.sync import SyncRecord, SyncStatus, utcnow
from fieldsync.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """Raised when a sync record id does not exist."""


class RecordNotRequeueableError(ValueError):
    """Raised when a manual re-enqueue is requested for a record that is not permanently failed."""


class RecordAlreadySyncedError(RecordNotRequeueableError):
    """Raised when a manual re-enqueue targets a record that was already delivered."""


class ClaimLostError(RuntimeError):
    """Raised when an outcome is written by a worker that no longer holds the claim."""


@dataclass
class BulkEnqueueOutcome:
    """Result for one item of a bulk enqueue. Exactly one of sync_id and error is set."""

    index: int
    record_id: Optional[str]
    sync_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _as_str(value) -> Optional[str]:
    return None if value is None else str(value)


def _item_error(item) -> Optional[str]:
    if not isinstance(item, dict):
        return "item must be an object"
    missing = [
        key
        for key in ("record_type", "record_id", "target_system")
        if item.get(key) is None or str(item.get(key)).strip() == ""
    ]
    if missing:
        return f"missing required field(s): {', '.join(missing)}"
    for key in ("record_type", "target_system"):
        if not isinstance(item[key], str):
            return f"{key} must be a string"
    if not isinstance(item["record_id"], (str, int)) or isinstance(item["record_id"], bool):
        return "record_id must be a string or integer"
    payload = item.get("payload")
    if payload is not None and not isinstance(payload, dict):
        return "payload must be an object"
    return None


class RecordStore:
    """Repository over sync_records. All methods open their own short session."""

    def __init__(
        self,
        engine,
        policy: Optional[RetryPolicy] = None,
        claim_lease: Optional[timedelta] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            policy: Retry policy deciding which failed records are claimable.
            claim_lease: How long a claim stays exclusive before another
                worker may take the record over.
        """
        self.engine = engine
        self.policy = policy or RetryPolicy.from_settings()
        self.claim_lease = claim_lease or timedelta(
            seconds=get_settings().claim_lease_seconds
        )

    # ─── Producer side ────────────────────────────────────────────────────────

    def enqueue(
        self,
        record_type: str,
        record_id: str,
        target_system: str,
        payload: Dict[str, Any],
        created_by: Optional[str] = None,
    ) -> str:
        """Store a new pending sync intent and return its id."""
        if not record_type or not target_system or not record_id:
            raise ValueError("record_type, record_id and target_system are required")
        record = SyncRecord(
            record_type=record_type,
            record_id=str(record_id),
            target_system=target_system,
            payload=payload or {},
            created_by=created_by,
        )
        with Session(self.engine) as s:
            s.add(record)
            s.commit()
            s.refresh(record)
        logger.debug("Enqueued %s %s for %s as %s", record_type, record_id, target_system, record.id)
        return record.id

    def enqueue_many(
        self,
        items: Iterable[Dict[str, Any]],
        created_by: Optional[str] = None,
    ) -> List[BulkEnqueueOutcome]:
        """
        Store several sync intents in one transaction.

        Each item is a mapping with record_type, record_id, target_system
        and an optional payload. Invalid items are reported and skipped;
        valid ones are inserted together. Outcomes come back in input order.
        """
        outcomes: List[BulkEnqueueOutcome] = []
        records: List[SyncRecord] = []
        for index, item in enumerate(items):
            record_id = item.get("record_id") if isinstance(item, dict) else None
            error = _item_error(item)
            if error:
                outcomes.append(BulkEnqueueOutcome(index, _as_str(record_id), error=error))
                continue
            record = SyncRecord(
                record_type=item["record_type"],
                record_id=str(record_id),
                target_system=item["target_system"],
                payload=item.get("payload") or {},
                created_by=item.get("created_by") or created_by,
            )
            records.append(record)
            outcomes.append(BulkEnqueueOutcome(index, record.record_id, sync_id=record.id))

        if records:
            with Session(self.engine) as s:
                s.add_all(records)
                s.commit()
        logger.info(
            "Bulk enqueue: %d stored, %d rejected",
            len(records),
            len(outcomes) - len(records),
        )
        return outcomes

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, sync_id: str) -> Optional[SyncRecord]:
        with Session(self.engine) as s:
            return s.get(SyncRecord, sync_id)

    def list_records(
        self,
        target_system: Optional[str] = None,
        status: Optional[SyncStatus] = None,
        record_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SyncRecord]:
        """Sync history, newest first."""
        stmt = self._filtered(select(SyncRecord), target_system, status, record_type)
        stmt = stmt.order_by(SyncRecord.created_at.desc()).offset(offset).limit(limit)
        with Session(self.engine) as s:
            return list(s.exec(stmt).all())

    def count_records(
        self,
        target_system: Optional[str] = None,
        status: Optional[SyncStatus] = None,
        record_type: Optional[str] = None,
    ) -> int:
        stmt = self._filtered(
            select(func.count()).select_from(SyncRecord), target_system, status, record_type
        )
        with Session(self.engine) as s:
            return s.exec(stmt).one()

    def status_counts(self, target_system: str) -> Dict[str, int]:
        """Number of records per status for one target."""
        stmt = (
            select(SyncRecord.status, func.count())
            .where(SyncRecord.target_system == target_system)
            .group_by(SyncRecord.status)
        )
        counts = {status.value: 0 for status in SyncStatus}
        with Session(self.engine) as s:
            for status, n in s.exec(stmt).all():
                counts[SyncStatus(status).value] = n
        return counts

    def history_for(self, record_id: str) -> List[SyncRecord]:
        """Every sync record for one domain entity, newest first."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncRecord)
                    .where(SyncRecord.record_id == str(record_id))
                    .order_by(SyncRecord.created_at.desc())
                ).all()
            )

    def list_exhausted(self, target_system: Optional[str] = None, limit: int = 100) -> List[SyncRecord]:
        """Permanently failed records awaiting manual intervention, oldest first."""
        stmt = select(SyncRecord).where(
            SyncRecord.status == SyncStatus.FAILED,
            SyncRecord.attempts >= self.policy.max_attempts,
            SyncRecord.requeued_as.is_(None),
        )
        if target_system:
            stmt = stmt.where(SyncRecord.target_system == target_system)
        stmt = stmt.order_by(SyncRecord.created_at).limit(limit)
        with Session(self.engine) as s:
            return list(s.exec(stmt).all())

    # ─── Claiming ─────────────────────────────────────────────────────────────

    def claim(self, target_system: str, limit: int, now: Optional[datetime] = None) -> List[SyncRecord]:
        """
        Atomically reserve up to `limit` eligible records of one target.

        Eligible: pending without a live claim, or failed with retries left
        and the backoff interval elapsed. Returned records are oldest first
        and carry the claim_token that outcome writes must present.
        """
        return self._claim(SyncRecord.target_system == target_system, limit, now)

    def claim_unroutable(
        self, known_targets: Iterable[str], limit: int, now: Optional[datetime] = None
    ) -> List[SyncRecord]:
        """Like claim(), but for records whose target is not in `known_targets`."""
        return self._claim(SyncRecord.target_system.not_in(list(known_targets)), limit, now)

    def _claim(self, target_clause, limit: int, now: Optional[datetime]) -> List[SyncRecord]:
        if limit <= 0:
            return []
        now = now or utcnow()
        token = uuid4().hex
        claimed_until = now + self.claim_lease
        unclaimed = or_(SyncRecord.claimed_until.is_(None), SyncRecord.claimed_until < now)

        stmt = (
            select(SyncRecord)
            .where(target_clause, unclaimed, self._eligible_clause(now))
            .order_by(SyncRecord.created_at, SyncRecord.id)
            .limit(limit)
        )

        claimed_ids = []
        with Session(self.engine) as s:
            candidates = s.exec(stmt).all()
            for c in candidates:
                if c.status == SyncStatus.FAILED and not self._retry_due(c, now):
                    continue
                result = s.exec(
                    update(SyncRecord)
                    .where(
                        SyncRecord.id == c.id,
                        SyncRecord.status == c.status,
                        SyncRecord.attempts == c.attempts,
                        unclaimed,
                    )
                    .values(
                        status=SyncStatus.PENDING,
                        error_message=None,
                        claim_token=token,
                        claimed_until=claimed_until,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                s.commit()
                if result.rowcount == 1:
                    claimed_ids.append(c.id)

        if not claimed_ids:
            return []
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncRecord)
                    .where(SyncRecord.id.in_(claimed_ids))
                    .order_by(SyncRecord.created_at, SyncRecord.id)
                ).all()
            )

    def _eligible_clause(self, now: datetime):
        """SQL form of the retry policy: pending, or failed and due for retry."""
        retry_due = []
        for attempts in range(self.policy.max_attempts):
            for transient in (True, False):
                cutoff = now - self.policy.delay_for(attempts, transient)
                retry_due.append(
                    and_(
                        SyncRecord.attempts == attempts,
                        SyncRecord.last_error_transient == transient,
                        or_(
                            SyncRecord.last_attempt_at.is_(None),
                            SyncRecord.last_attempt_at <= cutoff,
                        ),
                    )
                )
        failed_clause = and_(SyncRecord.status == SyncStatus.FAILED, or_(*retry_due))
        return or_(SyncRecord.status == SyncStatus.PENDING, failed_clause)

    def _retry_due(self, record: SyncRecord, now: datetime) -> bool:
        return self.policy.decide(
            record.attempts,
            record.last_attempt_at,
            now,
            transient=record.last_error_transient,
        ).eligible

    # ─── Outcomes ─────────────────────────────────────────────────────────────

    def mark_synced(self, sync_id: str, claim_token: str, synced_at: Optional[datetime] = None) -> None:
        """pending → synced. Counts one delivery attempt and releases the claim."""
        synced_at = synced_at or utcnow()
        self._finish(
            sync_id,
            claim_token,
            status=SyncStatus.SYNCED,
            synced_at=synced_at,
            error_message=None,
            last_attempt_at=synced_at,
            updated_at=synced_at,
        )

    def mark_failed(
        self,
        sync_id: str,
        claim_token: str,
        error_message: str,
        transient: bool = True,
        attempted_at: Optional[datetime] = None,
    ) -> None:
        """pending → failed. Counts one delivery attempt and releases the claim."""
        attempted_at = attempted_at or utcnow()
        self._finish(
            sync_id,
            claim_token,
            status=SyncStatus.FAILED,
            error_message=error_message or "delivery failed",
            last_error_transient=transient,
            last_attempt_at=attempted_at,
            updated_at=attempted_at,
        )

    def _finish(self, sync_id: str, claim_token: str, **values) -> None:
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncRecord)
                .where(
                    SyncRecord.id == sync_id,
                    SyncRecord.claim_token == claim_token,
                    SyncRecord.status == SyncStatus.PENDING,
                )
                .values(
                    attempts=SyncRecord.attempts + 1,
                    claim_token=None,
                    claimed_until=None,
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            s.commit()
        if result.rowcount != 1:
            raise ClaimLostError(f"Claim on sync record {sync_id} is no longer held")

    def extend_claim(self, sync_id: str, claim_token: str, now: Optional[datetime] = None) -> bool:
        """
        Push a held claim out to now + claim_lease.

        Returns False if the token no longer owns the record, in which case
        the caller must not deliver it.
        """
        now = now or utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncRecord)
                .where(
                    SyncRecord.id == sync_id,
                    SyncRecord.claim_token == claim_token,
                    SyncRecord.status == SyncStatus.PENDING,
                )
                .values(claimed_until=now + self.claim_lease, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            s.commit()
        return result.rowcount == 1

    def release(self, sync_id: str, claim_token: str) -> bool:
        """Return a claimed, undelivered record to the pool. No attempt is counted."""
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncRecord)
                .where(SyncRecord.id == sync_id, SyncRecord.claim_token == claim_token)
                .values(claim_token=None, claimed_until=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            s.commit()
        return result.rowcount == 1

    # ─── Manual intervention ──────────────────────────────────────────────────

    def requeue(self, sync_id: str, requested_by: Optional[str] = None) -> SyncRecord:
        """
        Re-enqueue a permanently failed record as a fresh pending record.

        The original keeps its failed status and attempt count as the audit
        trail and records the id of its copy in requeued_as; the copy starts
        again at attempts = 0. A record can be re-enqueued only once.

        Raises:
            RecordNotFoundError: unknown id.
            RecordAlreadySyncedError: the record was delivered.
            RecordNotRequeueableError: the record is pending or still has
                automatic retries left, or was already re-enqueued.
        """
        with Session(self.engine) as s:
            original = s.get(SyncRecord, sync_id)
            if original is None:
                raise RecordNotFoundError(f"Sync record {sync_id} not found")
            if original.status == SyncStatus.SYNCED:
                raise RecordAlreadySyncedError(f"Sync record {sync_id} is already synced")
            if original.status != SyncStatus.FAILED or not self.policy.is_exhausted(original.attempts):
                raise RecordNotRequeueableError(
                    f"Sync record {sync_id} is {original.status.value} with "
                    f"{original.attempts}/{self.policy.max_attempts} attempts; "
                    "automatic retries still apply"
                )
            if original.requeued_as is not None:
                raise RecordNotRequeueableError(
                    f"Sync record {sync_id} was already re-enqueued as {original.requeued_as}"
                )
            fresh = SyncRecord(
                record_type=original.record_type,
                record_id=original.record_id,
                target_system=original.target_system,
                payload=dict(original.payload or {}),
                created_by=requested_by or original.created_by,
            )
            # Only one concurrent request may mark the original and keep its copy
            marked = s.exec(
                update(SyncRecord)
                .where(
                    SyncRecord.id == sync_id,
                    SyncRecord.status == SyncStatus.FAILED,
                    SyncRecord.requeued_as.is_(None),
                )
                .values(requeued_as=fresh.id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount != 1:
                s.rollback()
                raise RecordNotRequeueableError(
                    f"Sync record {sync_id} was already re-enqueued by another request"
                )
            s.add(fresh)
            s.commit()
            s.refresh(fresh)
        logger.info("Re-enqueued exhausted sync record %s as %s", sync_id, fresh.id)
        return fresh

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _filtered(stmt, target_system, status, record_type):
        if target_system:
            stmt = stmt.where(SyncRecord.target_system == target_system)
        if status:
            stmt = stmt.where(SyncRecord.status == SyncStatus(status))
        if record_type:
            stmt = stmt.where(SyncRecord.record_type == record_type)
        return stmt
