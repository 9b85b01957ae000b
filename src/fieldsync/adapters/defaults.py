"""Adapter registry with the built-in targets."""
from typing import Optional

from fieldsync.adapters.base import AdapterRegistry
from fieldsync.adapters.hr_system import HRSystemAdapter
from fieldsync.adapters.kwantu import KwantuAdapter
from fieldsync.adapters.webhook import WebhookAdapter


def build_default_registry(timeout: Optional[float] = None) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register("hr_system", HRSystemAdapter(timeout=timeout))
    registry.register("kwantu", KwantuAdapter(timeout=timeout))
    registry.register("webhook", WebhookAdapter(timeout=timeout))
    return registry
