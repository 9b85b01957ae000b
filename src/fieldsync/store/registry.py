"""
TargetRegistry: per-target configuration (the sync_configurations table).

Reads return TargetSettings views built fresh from the database on every
call, so enable/disable and frequency changes are visible to the next
scheduling decision. Views never carry credential material; the decrypted
api key is only reachable through credentials_for(), which the dispatcher
calls right before invoking an adapter.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from fieldsync.crypto import CredentialCipher
from fieldsync.models.sync import SyncConfiguration, SyncFrequency, utcnow

logger = logging.getLogger(__name__)


class TargetNotConfiguredError(LookupError):
    """Raised when no configuration row exists for a target system."""


class TargetDisabledError(RuntimeError):
    """Raised when work is requested for a target whose configuration is disabled."""


@dataclass(frozen=True)
class TargetSettings:
    """Read-only view of a SyncConfiguration without the api key."""

    target_system: str
    enabled: bool
    auto_sync: bool
    sync_frequency: SyncFrequency
    webhook_url: Optional[str]
    has_api_key: bool
    config_options: Dict[str, Any] = field(default_factory=dict)
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: SyncConfiguration) -> "TargetSettings":
        return cls(
            target_system=row.target_system,
            enabled=row.enabled,
            auto_sync=row.auto_sync,
            sync_frequency=SyncFrequency(row.sync_frequency),
            webhook_url=row.webhook_url,
            has_api_key=bool(row.api_key),
            config_options=dict(row.config_options or {}),
            updated_by=row.updated_by,
            updated_at=row.updated_at,
        )


@dataclass(frozen=True)
class Credentials:
    """Transport details handed to an adapter for a single delivery."""

    webhook_url: Optional[str]
    api_key: Optional[str]

    def __repr__(self) -> str:
        masked = "***" if self.api_key else None
        return f"Credentials(webhook_url={self.webhook_url!r}, api_key={masked!r})"

    __str__ = __repr__


class TargetRegistry:
    """Repository over sync_configurations."""

    def __init__(self, engine, cipher: Optional[CredentialCipher] = None):
        self.engine = engine
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher()
        return self._cipher

    # ─── Engine-facing reads ──────────────────────────────────────────────────

    def get(self, target_system: str) -> Optional[TargetSettings]:
        with Session(self.engine) as s:
            row = self._row(s, target_system)
            return TargetSettings.from_row(row) if row else None

    def list_enabled(self) -> List[TargetSettings]:
        with Session(self.engine) as s:
            rows = s.exec(
                select(SyncConfiguration)
                .where(SyncConfiguration.enabled == True)  # noqa: E712
                .order_by(SyncConfiguration.target_system)
            ).all()
            return [TargetSettings.from_row(r) for r in rows]

    def list_all(self) -> List[TargetSettings]:
        with Session(self.engine) as s:
            rows = s.exec(select(SyncConfiguration).order_by(SyncConfiguration.target_system)).all()
            return [TargetSettings.from_row(r) for r in rows]

    def known_targets(self) -> List[str]:
        """Every configured target key, enabled or not."""
        with Session(self.engine) as s:
            return list(s.exec(select(SyncConfiguration.target_system)).all())

    def credentials_for(self, target_system: str) -> Credentials:
        """
        Decrypt the transport credentials of one target.

        Only the adapter invocation path should call this. The result must
        not be logged or persisted.

        Raises:
            TargetNotConfiguredError: no configuration row for the target.
        """
        with Session(self.engine) as s:
            row = self._row(s, target_system)
            if row is None:
                raise TargetNotConfiguredError(f"No sync configuration for target '{target_system}'")
            api_key = self.cipher.decrypt(row.api_key) if row.api_key else None
            return Credentials(webhook_url=row.webhook_url, api_key=api_key)

    # ─── Administrative writes ────────────────────────────────────────────────

    def upsert(
        self,
        target_system: str,
        *,
        enabled: Optional[bool] = None,
        auto_sync: Optional[bool] = None,
        sync_frequency: Optional[SyncFrequency] = None,
        webhook_url: Optional[str] = None,
        api_key: Optional[str] = None,
        config_options: Optional[Dict[str, Any]] = None,
        updated_by: Optional[str] = None,
    ) -> TargetSettings:
        """
        Create or update the configuration of one target.

        Fields left as None keep their current value (or the column default
        on create). A non-empty api_key is encrypted before it is stored; an
        empty string clears the stored key.
        """
        if not target_system:
            raise ValueError("target_system is required")
        with Session(self.engine) as s:
            row = self._row(s, target_system)
            if row is None:
                row = SyncConfiguration(target_system=target_system)
            if enabled is not None:
                row.enabled = enabled
            if auto_sync is not None:
                row.auto_sync = auto_sync
            if sync_frequency is not None:
                row.sync_frequency = SyncFrequency(sync_frequency)
            if webhook_url is not None:
                row.webhook_url = webhook_url or None
            if api_key is not None:
                row.api_key = self.cipher.encrypt(api_key) if api_key else None
            if config_options is not None:
                row.config_options = dict(config_options)
            row.updated_by = updated_by
            row.updated_at = utcnow()
            s.add(row)
            s.commit()
            s.refresh(row)
            logger.info(
                "Sync configuration for %s saved (enabled=%s auto_sync=%s frequency=%s)",
                row.target_system,
                row.enabled,
                row.auto_sync,
                SyncFrequency(row.sync_frequency).value,
            )
            return TargetSettings.from_row(row)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _row(s: Session, target_system: str) -> Optional[SyncConfiguration]:
        return s.exec(
            select(SyncConfiguration).where(SyncConfiguration.target_system == target_system)
        ).first()
