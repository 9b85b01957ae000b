"""
Target adapter capability interface.

One adapter per external system. The dispatcher looks adapters up by
target key in an AdapterRegistry at dispatch time, so adding a target is a
register() call, not a dispatcher change.

Contract for implementations:
  - deliver() returns a DeliveryResult; transport problems are reported
    as failures, not raised.
  - deliver() may be called more than once for the same sync record (on
    retry or after a lost claim). Adapters must make repeated delivery
    safe on the target side, normally by sending `idempotency_key`.
  - credentials are read-only inputs and must not be logged or stored.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fieldsync.store.registry import Credentials


class UnknownTargetError(LookupError):
    """Raised when no adapter is registered for a target system."""


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    reason: Optional[str] = None
    transient: bool = True  # only meaningful when ok is False

    @classmethod
    def success(cls) -> "DeliveryResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str, transient: bool = True) -> "DeliveryResult":
        return cls(ok=False, reason=reason, transient=transient)


class TargetAdapter(ABC):
    """Delivers one payload to one external system."""

    name: str = "adapter"

    @abstractmethod
    async def deliver(
        self,
        payload: Dict[str, Any],
        config_options: Dict[str, Any],
        credentials: Credentials,
        *,
        idempotency_key: str,
        record_type: str,
    ) -> DeliveryResult:
        """Send `payload` and translate the outcome into a DeliveryResult."""


class AdapterRegistry:
    """Maps target system keys to adapter instances."""

    def __init__(self):
        self._adapters: Dict[str, TargetAdapter] = {}

    def register(self, target_system: str, adapter: TargetAdapter) -> None:
        self._adapters[target_system] = adapter

    def get(self, target_system: str, config_options: Optional[Dict[str, Any]] = None) -> TargetAdapter:
        """
        Resolve the adapter for a target.

        A target without its own adapter can name a registered one via
        config_options["adapter"] (e.g. "webhook").

        Raises:
            UnknownTargetError: nothing registered under either key.
        """
        if target_system in self._adapters:
            return self._adapters[target_system]
        alias = (config_options or {}).get("adapter")
        if alias and alias in self._adapters:
            return self._adapters[alias]
        raise UnknownTargetError(f"No adapter registered for target '{target_system}'")

    def has(self, target_system: str, config_options: Optional[Dict[str, Any]] = None) -> bool:
        try:
            self.get(target_system, config_options)
        except UnknownTargetError:
            return False
        return True

    def targets(self) -> List[str]:
        return sorted(self._adapters)
