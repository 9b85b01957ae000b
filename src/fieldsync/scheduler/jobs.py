"""
APScheduler jobs for background dispatch.

One interval job, "dispatch_tick", wakes every SCHEDULER_TICK_SECONDS and
asks SyncScheduler which targets are due. Due-ness is derived fresh on
every tick from the enabled configurations and the last start time kept in
sync_cycle_leases, so enabling, disabling or changing a target's frequency
takes effect on the next tick without a restart.

Targets run concurrently; within a target, a cycle only runs while its
lease is held, so two workers (threads or processes) never dispatch the
same target at once.
"""
import asyncio
import logging
import os
import socket
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

from fieldsync.config import get_settings
from fieldsync.models.sync import SyncFrequency, utcnow
from fieldsync.store.leases import CycleLeaseStore
from fieldsync.store.registry import TargetDisabledError, TargetNotConfiguredError, TargetSettings
from fieldsync.sync.dispatcher import DispatchResult, Dispatcher

logger = logging.getLogger(__name__)

FREQUENCY_INTERVALS = {
    SyncFrequency.HOURLY: timedelta(hours=1),
    SyncFrequency.DAILY: timedelta(days=1),
    SyncFrequency.WEEKLY: timedelta(weeks=1),
}


class TargetBusyError(RuntimeError):
    """Raised when a cycle is requested for a target that already has one running."""


def is_due(target: TargetSettings, last_started_at: Optional[datetime], now: datetime) -> bool:
    """True if the timer should start a cycle for `target` at `now`."""
    if not target.enabled or not target.auto_sync:
        return False
    interval = FREQUENCY_INTERVALS.get(target.sync_frequency)
    if interval is None:  # manual
        return False
    return last_started_at is None or now - last_started_at >= interval


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class SyncScheduler:
    """Decides which targets to dispatch and runs their cycles under a lease."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        leases: CycleLeaseStore,
        worker_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.leases = leases
        self.worker_id = worker_id or get_settings().worker_id or default_worker_id()
        self.clock = clock or dispatcher.clock
        self._cancel = asyncio.Event()

    async def tick(self) -> Dict[str, DispatchResult]:
        """
        Run one scheduling pass.

        Store or registry errors abort the pass (logged); the next tick
        starts over from the database. Errors inside one target's cycle do
        not affect the others.

        Returns:
            Map of target_system → DispatchResult for cycles that ran.
        """
        now = self.clock()
        try:
            due = [
                t.target_system
                for t in self.registry.list_enabled()
                if is_due(t, self._last_started(t.target_system), now)
            ]
            self.dispatcher.fail_unroutable()
        except SQLAlchemyError as exc:
            logger.error("Scheduler tick aborted, store unavailable: %s", exc)
            return {}

        if not due:
            return {}
        logger.info("Scheduler tick: %d target(s) due: %s", len(due), ", ".join(due))

        outcomes = await asyncio.gather(
            *(self._run_leased(target) for target in due), return_exceptions=True
        )
        results: Dict[str, DispatchResult] = {}
        for target, outcome in zip(due, outcomes):
            if isinstance(outcome, TargetBusyError):
                logger.info("Skipping %s: cycle already running elsewhere", target)
            elif isinstance(outcome, Exception):
                logger.error("Dispatch cycle for %s aborted: %s", target, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[target] = outcome
        return results

    async def trigger(self, target_system: str) -> DispatchResult:
        """
        Run a cycle for one target now, regardless of auto_sync or frequency.

        Raises:
            TargetNotConfiguredError: no configuration for the target.
            TargetDisabledError: the target is disabled.
            TargetBusyError: another cycle for the target holds the lease.
        """
        target = self.registry.get(target_system)
        if target is None:
            raise TargetNotConfiguredError(f"No sync configuration for target '{target_system}'")
        if not target.enabled:
            raise TargetDisabledError(f"Sync to '{target_system}' is not enabled")
        logger.info("On-demand dispatch requested for %s", target_system)
        return await self._run_leased(target_system)

    def shutdown(self) -> None:
        """Ask in-flight cycles to stop after their current record."""
        self._cancel.set()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _last_started(self, target_system: str) -> Optional[datetime]:
        lease = self.leases.get(target_system)
        return lease.last_started_at if lease else None

    async def _run_leased(self, target_system: str) -> DispatchResult:
        if not self.leases.acquire(target_system, self.worker_id, now=self.clock()):
            raise TargetBusyError(f"A dispatch cycle for '{target_system}' is already running")

        def heartbeat() -> bool:
            return self.leases.renew(target_system, self.worker_id, now=self.clock())

        try:
            return await self.dispatcher.run_cycle(
                target_system, cancel=self._cancel, heartbeat=heartbeat
            )
        finally:
            self.leases.release(target_system, self.worker_id, now=self.clock())


def build_sync_scheduler(engine) -> SyncScheduler:
    """Wire the store, registry, adapters and dispatcher for `engine`."""
    from fieldsync.adapters.defaults import build_default_registry
    from fieldsync.store.records import RecordStore
    from fieldsync.store.registry import TargetRegistry

    dispatcher = Dispatcher(
        store=RecordStore(engine),
        registry=TargetRegistry(engine),
        adapters=build_default_registry(),
    )
    return SyncScheduler(dispatcher, CycleLeaseStore(engine))


def build_scheduler(sync_scheduler: SyncScheduler) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        sync_scheduler: SyncScheduler whose tick() the job runs.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _dispatch_tick,
        trigger="interval",
        seconds=settings.scheduler_tick_seconds,
        id="dispatch_tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"sync_scheduler": sync_scheduler},
    )

    return scheduler


async def _dispatch_tick(sync_scheduler: SyncScheduler) -> None:
    """Scheduler job body. Never raises, so the job stays registered."""
    try:
        await sync_scheduler.tick()
    except Exception as exc:
        logger.error("Dispatch tick failed: %s", exc)
