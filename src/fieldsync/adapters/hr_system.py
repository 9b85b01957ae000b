"""HR system adapter: wraps each payload in a typed envelope."""
from typing import Any, Dict, Optional

from fieldsync.adapters.webhook import WebhookAdapter
from fieldsync.store.registry import Credentials


class HRSystemAdapter(WebhookAdapter):
    """
    Delivers to the HR platform's ingestion endpoint.

    Body:
        {"type": <record type>, "idempotencyKey": <sync id>, "data": <payload>}

    config_options:
        path: appended to webhook_url (e.g. "/v1/ingest").
        timeout_seconds: per-target request timeout.
    """

    name = "hr_system"

    def build_body(
        self, payload: Dict[str, Any], config_options: Dict[str, Any], *, idempotency_key: str, record_type: str
    ) -> Dict[str, Any]:
        return {"type": record_type, "idempotencyKey": idempotency_key, "data": payload}

    def build_url(self, credentials: Credentials, config_options: Dict[str, Any]) -> Optional[str]:
        if not credentials.webhook_url:
            return None
        path = config_options.get("path", "")
        if not path:
            return credentials.webhook_url
        return credentials.webhook_url.rstrip("/") + "/" + path.lstrip("/")
