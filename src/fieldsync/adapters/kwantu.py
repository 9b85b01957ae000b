"""
Kwantu platform adapter.

Participant payloads produced by the field app look like:

    {
        "participant": {"id", "fullName", "idNumber", "email", "phone", ...},
        "attendance": [{"checkInTime", "checkOutTime", "hoursWorked", ...}],
        "metadata": {...},
    }

Kwantu expects flat snake_case beneficiary fields plus a list of work
sessions. Other record types are forwarded unchanged under "data".
"""
from typing import Any, Dict, List

from fieldsync.adapters.webhook import WebhookAdapter, sign_body
from fieldsync.store.registry import Credentials

PARTICIPANT_FIELDS = {
    "id": "external_ref",
    "fullName": "full_name",
    "idNumber": "national_id",
    "email": "email",
    "phone": "phone",
    "dateOfBirth": "date_of_birth",
    "gender": "gender",
    "status": "status",
}

ATTENDANCE_FIELDS = {
    "checkInTime": "started_at",
    "checkOutTime": "ended_at",
    "hoursWorked": "hours",
    "siteId": "site_ref",
}


def _rename(doc: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    return {dst: doc[src] for src, dst in mapping.items() if src in doc}


class KwantuAdapter(WebhookAdapter):
    """Delivers participant and attendance data to Kwantu."""

    name = "kwantu"

    def build_body(
        self, payload: Dict[str, Any], config_options: Dict[str, Any], *, idempotency_key: str, record_type: str
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"reference": idempotency_key, "record_type": record_type}
        programme = config_options.get("programme_id")
        if programme:
            body["programme_id"] = programme

        if record_type == "participant" and "participant" in payload:
            body["beneficiary"] = _rename(payload["participant"], PARTICIPANT_FIELDS)
            sessions: List[Dict[str, Any]] = [
                _rename(a, ATTENDANCE_FIELDS) for a in payload.get("attendance", [])
            ]
            body["work_sessions"] = sessions
        else:
            body["data"] = payload
        return body

    def build_headers(self, body: bytes, credentials: Credentials, idempotency_key: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if credentials.api_key:
            headers["X-Api-Key"] = credentials.api_key
            headers["X-Signature"] = sign_body(body, credentials.api_key)
        return headers
