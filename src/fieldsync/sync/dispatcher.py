"""
Dispatcher: one dispatch cycle for one target system.

Flow for a cycle:
  1. Read the target's configuration fresh (disabled / missing → no-op)
  2. Claim a bounded, oldest-first batch of eligible records
  3. For each record: extend its claim (skip it if another worker took it
     over), deliver through the target's adapter (bounded by a timeout),
     then write synced or failed back through the RecordStore
  4. Between records, honour a cooperative cancel event and renew the
     caller's cycle lease; records not yet attempted are released back to
     the pool when either stops the cycle

Per-record outcomes are independent: an adapter failure, timeout or
exception only fails that record. Store errors (SQLAlchemyError) are not
caught here; they abort the cycle and the scheduler retries on its next
tick.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fieldsync.adapters.base import AdapterRegistry, DeliveryResult, TargetAdapter, UnknownTargetError
from fieldsync.config import get_settings
from fieldsync.crypto import CredentialDecryptError, MissingEncryptionKeyError
from fieldsync.models.sync import SyncRecord, utcnow
from fieldsync.store.records import ClaimLostError, RecordStore
from fieldsync.store.registry import Credentials, TargetRegistry, TargetSettings

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Counters for one cycle. skipped_reason is set when nothing was claimed on purpose."""

    target_system: str
    claimed: int = 0
    synced: int = 0
    failed: int = 0
    released: int = 0
    lost: int = 0
    cancelled: bool = False
    skipped_reason: Optional[str] = None


class Dispatcher:
    """Delivers claimed sync records to their target adapters."""

    def __init__(
        self,
        store: RecordStore,
        registry: TargetRegistry,
        adapters: AdapterRegistry,
        batch_size: Optional[int] = None,
        delivery_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: RecordStore holding the sync intents.
            registry: TargetRegistry for per-target settings and credentials.
            adapters: AdapterRegistry resolving target keys to adapters.
            batch_size: Max records claimed per cycle.
            delivery_timeout: Upper bound in seconds for one deliver() call.
            clock: Source of "now" (injectable for tests).
        """
        settings = get_settings()
        self.store = store
        self.registry = registry
        self.adapters = adapters
        self.batch_size = batch_size or settings.batch_size
        self.delivery_timeout = delivery_timeout or settings.delivery_timeout_seconds
        self.clock = clock

    async def run_cycle(
        self,
        target_system: str,
        cancel: Optional[asyncio.Event] = None,
        heartbeat: Optional[Callable[[], bool]] = None,
    ) -> DispatchResult:
        """
        Claim and deliver one batch of records for `target_system`.

        Args:
            target_system: Target key (sync_configurations.target_system).
            cancel: When set, the cycle stops before the next record.
            heartbeat: Called before each record to renew the caller's cycle
                lease. A False return stops the cycle like a cancel.

        Returns:
            DispatchResult with per-outcome counts.
        """
        result = DispatchResult(target_system=target_system)

        target = self.registry.get(target_system)
        if target is None:
            result.skipped_reason = "not configured"
            return result
        if not target.enabled:
            result.skipped_reason = "disabled"
            return result

        records = self.store.claim(target_system, self.batch_size, now=self.clock())
        result.claimed = len(records)
        if not records:
            return result

        logger.info("Dispatch cycle for %s: %d record(s) claimed", target_system, len(records))

        adapter, config_error = self._resolve(target)
        credentials = None
        if config_error is None:
            try:
                credentials = self.registry.credentials_for(target_system)
            except (MissingEncryptionKeyError, CredentialDecryptError) as exc:
                config_error = f"Credentials for target '{target_system}' unavailable: {exc}"

        for index, record in enumerate(records):
            stop_reason = None
            if cancel is not None and cancel.is_set():
                stop_reason = "cancelled"
            elif heartbeat is not None and not heartbeat():
                stop_reason = "cycle lease lost"
            if stop_reason:
                result.cancelled = True
                for pending in records[index:]:
                    if self.store.release(pending.id, pending.claim_token):
                        result.released += 1
                logger.info(
                    "Dispatch cycle for %s stopped (%s); %d record(s) released",
                    target_system,
                    stop_reason,
                    result.released,
                )
                break

            # The batch is claimed up front; re-own each record right before delivering it
            if not self.store.extend_claim(record.id, record.claim_token, now=self.clock()):
                result.lost += 1
                logger.warning("Claim on sync record %s was taken over; not delivering", record.id)
                continue

            if config_error is not None:
                outcome = DeliveryResult.failure(config_error, transient=True)
            else:
                outcome = await self._deliver(adapter, record, target, credentials)
            self._apply(record, outcome, result)

        logger.info(
            "Dispatch cycle for %s finished: synced=%d failed=%d released=%d lost=%d",
            target_system,
            result.synced,
            result.failed,
            result.released,
            result.lost,
        )
        return result

    def fail_unroutable(self, limit: Optional[int] = None) -> int:
        """
        Fail records whose target system has no configuration row.

        They still consume an attempt and follow the retry policy, so they
        go through once the target is configured, or end up exhausted and
        visible for manual intervention. Returns the number failed.
        """
        known = self.registry.known_targets()
        records = self.store.claim_unroutable(known, limit or self.batch_size, now=self.clock())
        failed = 0
        for record in records:
            try:
                self.store.mark_failed(
                    record.id,
                    record.claim_token,
                    f"No sync configuration for target '{record.target_system}'",
                    transient=True,
                    attempted_at=self.clock(),
                )
                failed += 1
            except ClaimLostError:
                logger.warning("Lost claim on unroutable record %s", record.id)
        if failed:
            logger.warning("Failed %d record(s) referencing unconfigured targets", failed)
        return failed

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _resolve(self, target: TargetSettings):
        try:
            return self.adapters.get(target.target_system, target.config_options), None
        except UnknownTargetError as exc:
            return None, str(exc)

    async def _deliver(
        self,
        adapter: TargetAdapter,
        record: SyncRecord,
        target: TargetSettings,
        credentials: Credentials,
    ) -> DeliveryResult:
        try:
            return await asyncio.wait_for(
                adapter.deliver(
                    record.payload or {},
                    target.config_options,
                    credentials,
                    idempotency_key=record.id,
                    record_type=record.record_type,
                ),
                timeout=self.delivery_timeout,
            )
        except asyncio.TimeoutError:
            return DeliveryResult.failure(
                f"Delivery timed out after {self.delivery_timeout:g}s", transient=True
            )
        except Exception as exc:
            logger.exception("Adapter %s raised while delivering %s", adapter.name, record.id)
            return DeliveryResult.failure(
                f"Adapter error: {exc.__class__.__name__}: {exc}", transient=True
            )

    def _apply(self, record: SyncRecord, outcome: DeliveryResult, result: DispatchResult) -> None:
        now = self.clock()
        try:
            if outcome.ok:
                self.store.mark_synced(record.id, record.claim_token, synced_at=now)
                result.synced += 1
            else:
                self.store.mark_failed(
                    record.id,
                    record.claim_token,
                    outcome.reason or "delivery failed",
                    transient=outcome.transient,
                    attempted_at=now,
                )
                result.failed += 1
                logger.warning(
                    "Sync record %s (%s %s) failed on attempt %d: %s",
                    record.id,
                    record.record_type,
                    record.record_id,
                    record.attempts + 1,
                    outcome.reason,
                )
        except ClaimLostError:
            result.lost += 1
            logger.warning("Claim on sync record %s expired before its outcome was written", record.id)
