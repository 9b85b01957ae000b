"""
Per-target dispatch cycle leases (the sync_cycle_leases table).

A worker must hold a target's lease to run a dispatch cycle for it, which
serializes cycles per target across threads and processes. Acquisition is
a conditional UPDATE on holder/expiry, so the database decides the winner.
The same row records when the last cycle started and finished, which the
scheduler uses to decide whether a target is due.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from fieldsync.config import get_settings
from fieldsync.models.sync import SyncCycleLease, utcnow

logger = logging.getLogger(__name__)


class CycleLeaseStore:
    def __init__(self, engine, ttl: Optional[timedelta] = None):
        self.engine = engine
        self.ttl = ttl or timedelta(seconds=get_settings().cycle_lease_seconds)

    def get(self, target_system: str) -> Optional[SyncCycleLease]:
        with Session(self.engine) as s:
            return s.get(SyncCycleLease, target_system)

    def acquire(self, target_system: str, holder: str, now: Optional[datetime] = None) -> bool:
        """Take the lease for `target_system`. Returns False if another holder has it."""
        now = now or utcnow()
        self._ensure_row(target_system)
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncCycleLease)
                .where(
                    SyncCycleLease.target_system == target_system,
                    or_(
                        SyncCycleLease.holder.is_(None),
                        SyncCycleLease.lease_expires_at.is_(None),
                        SyncCycleLease.lease_expires_at < now,
                    ),
                )
                .values(holder=holder, lease_expires_at=now + self.ttl, last_started_at=now)
                .execution_options(synchronize_session=False)
            )
            s.commit()
        return result.rowcount == 1

    def renew(self, target_system: str, holder: str, now: Optional[datetime] = None) -> bool:
        """Extend a held lease to now + ttl. Returns False if `holder` lost it."""
        now = now or utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncCycleLease)
                .where(
                    SyncCycleLease.target_system == target_system,
                    SyncCycleLease.holder == holder,
                )
                .values(lease_expires_at=now + self.ttl)
                .execution_options(synchronize_session=False)
            )
            s.commit()
        return result.rowcount == 1

    def release(self, target_system: str, holder: str, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncCycleLease)
                .where(
                    SyncCycleLease.target_system == target_system,
                    SyncCycleLease.holder == holder,
                )
                .values(holder=None, lease_expires_at=None, last_finished_at=now)
                .execution_options(synchronize_session=False)
            )
            s.commit()
        if result.rowcount != 1:
            logger.warning("Cycle lease for %s was taken over before %s released it", target_system, holder)

    def _ensure_row(self, target_system: str) -> None:
        with Session(self.engine) as s:
            if s.get(SyncCycleLease, target_system) is not None:
                return
            s.add(SyncCycleLease(target_system=target_system))
            try:
                s.commit()
            except IntegrityError:
                s.rollback()  # created concurrently by another worker
