"""
Generic webhook adapter over httpx.

POSTs the payload as JSON to the target's webhook_url with:
  Authorization: Bearer <api_key>       (when an api key is configured)
  Idempotency-Key: <sync record id>     (same value on every retry)
  X-Signature: sha256=<hex>             (HMAC-SHA256 of the body, keyed by the api key)

Outcome mapping:
  2xx                          → success
  408, 425, 429, 5xx           → transient failure
  other 4xx / 1xx / 3xx        → permanent failure
  timeout / connection errors  → transient failure
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

import httpx

from fieldsync.adapters.base import DeliveryResult, TargetAdapter
from fieldsync.config import get_settings
from fieldsync.store.registry import Credentials

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}
MAX_REASON_BODY_CHARS = 300


def classify_status(status_code: int) -> DeliveryResult:
    """Translate an HTTP status code into the engine's binary outcome."""
    if 200 <= status_code < 300:
        return DeliveryResult.success()
    transient = status_code >= 500 or status_code in TRANSIENT_STATUS_CODES
    return DeliveryResult.failure(f"HTTP {status_code}", transient=transient)


def sign_body(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookAdapter(TargetAdapter):
    """POST the payload verbatim to the configured webhook URL."""

    name = "webhook"

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout: Default request timeout in seconds. Overridable per
                target with config_options["timeout_seconds"].
            transport: httpx transport override (httpx.MockTransport in tests).
        """
        self.timeout = timeout if timeout is not None else get_settings().delivery_timeout_seconds
        self._transport = transport

    # ─── Hooks for subclasses ─────────────────────────────────────────────────

    def build_body(
        self, payload: Dict[str, Any], config_options: Dict[str, Any], *, idempotency_key: str, record_type: str
    ) -> Dict[str, Any]:
        return payload

    def build_url(self, credentials: Credentials, config_options: Dict[str, Any]) -> Optional[str]:
        return credentials.webhook_url

    def build_headers(self, body: bytes, credentials: Credentials, idempotency_key: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if credentials.api_key:
            headers["Authorization"] = f"Bearer {credentials.api_key}"
            headers["X-Signature"] = sign_body(body, credentials.api_key)
        return headers

    # ─── TargetAdapter ────────────────────────────────────────────────────────

    async def deliver(
        self,
        payload: Dict[str, Any],
        config_options: Dict[str, Any],
        credentials: Credentials,
        *,
        idempotency_key: str,
        record_type: str,
    ) -> DeliveryResult:
        url = self.build_url(credentials, config_options)
        if not url:
            return DeliveryResult.failure("No webhook_url configured for target", transient=False)

        body_doc = self.build_body(
            payload, config_options, idempotency_key=idempotency_key, record_type=record_type
        )
        body = json.dumps(body_doc, default=str, separators=(",", ":")).encode()
        headers = self.build_headers(body, credentials, idempotency_key)
        timeout = float(config_options.get("timeout_seconds", self.timeout))

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException:
            return DeliveryResult.failure(f"Timed out after {timeout:g}s calling {self.name}", transient=True)
        except httpx.HTTPError as exc:
            return DeliveryResult.failure(f"Transport error calling {self.name}: {exc.__class__.__name__}", transient=True)

        result = classify_status(response.status_code)
        if not result.ok:
            detail = response.text[:MAX_REASON_BODY_CHARS].strip()
            reason = f"{result.reason} from {self.name}" + (f": {detail}" if detail else "")
            logger.debug("Delivery %s rejected by %s: %s", idempotency_key, self.name, result.reason)
            return DeliveryResult.failure(reason, transient=result.transient)
        return result
