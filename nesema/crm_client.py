"""GoHighLevel (LeadConnector) API client.

Every call is recorded in ``crm_sync_log``.  Calls never raise; failures come
back as ``None``, an empty list or ``False`` so callers can carry on.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests
import structlog
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nesema import egress
from nesema.config import get_settings
from nesema.db.models import crm_sync_log, new_id
from nesema.observability import CRM_CALLS
from nesema.time_utils import utc_now


logger = structlog.get_logger(__name__)

CRM_BASE_URL = "https://services.leadconnectorhq.com"
CRM_API_VERSION = "2021-07-28"


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {get_settings().ghl_api_key or ''}",
        "Content-Type": "application/json",
        "Version": CRM_API_VERSION,
    }


def _decode(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class CrmClient:
    """Thin wrapper over the CRM REST API bound to a database session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def write_log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        payload: Any = None,
        response: Any = None,
        success: bool,
        error: Optional[str] = None,
    ) -> Optional[str]:
        """Insert a ``crm_sync_log`` row; failures are logged, never raised."""

        log_id = new_id()
        try:
            self._session.execute(
                insert(crm_sync_log).values(
                    id=log_id,
                    user_id=user_id,
                    event_type=event_type,
                    crm_contact_id=contact_id,
                    payload=payload,
                    response=response,
                    success=success,
                    error=error,
                    created_at=utc_now(),
                )
            )
        except SQLAlchemyError:
            logger.warning("crm_log_write_failed", event_type=event_type, exc_info=True)
            return None
        return log_id

    def _request(
        self,
        method: str,
        path: str,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        body: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        contact_id: Optional[str] = None,
    ) -> tuple[Any, bool]:
        if not get_settings().ghl_api_key:
            self.write_log(
                event_type, user_id=user_id, contact_id=contact_id, success=False, error="GHL_API_KEY not set"
            )
            CRM_CALLS.labels(event_type, "false").inc()
            return None, False

        payload = dict(body) if body is not None else None
        try:
            response = egress.secure_request(
                method,
                f"{CRM_BASE_URL}{path}",
                headers=_headers(),
                json=payload,
                params=params,
                raise_for_status=False,
            )
        except (requests.RequestException, egress.EgressError) as exc:
            logger.warning("crm_request_failed", event_type=event_type, error=str(exc))
            self.write_log(
                event_type,
                user_id=user_id,
                contact_id=contact_id,
                payload=payload,
                success=False,
                error=str(exc),
            )
            CRM_CALLS.labels(event_type, "false").inc()
            return None, False

        data = _decode(response)
        ok = response.ok
        if not ok:
            logger.warning("crm_request_rejected", event_type=event_type, status=response.status_code)
        self.write_log(
            event_type,
            user_id=user_id,
            contact_id=contact_id,
            payload=payload,
            response=data,
            success=ok,
            error=None if ok else f"HTTP {response.status_code}",
        )
        CRM_CALLS.labels(event_type, "true" if ok else "false").inc()
        return data, ok

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------
    def create_contact(self, data: Mapping[str, Any], *, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        res, ok = self._request("POST", "/contacts/", "create_contact", user_id=user_id, body=data)
        if not ok or not isinstance(res, dict):
            return None
        return res.get("contact")

    def update_contact(
        self, contact_id: str, data: Mapping[str, Any], *, user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        res, ok = self._request(
            "PUT", f"/contacts/{contact_id}", "update_contact", user_id=user_id, body=data, contact_id=contact_id
        )
        if not ok or not isinstance(res, dict):
            return None
        return res.get("contact")

    def get_contact_by_email(self, email: str, *, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        res, ok = self._request(
            "GET",
            "/contacts/",
            "get_contact_by_email",
            user_id=user_id,
            params={"email": email, "locationId": get_settings().ghl_location_id or ""},
        )
        if not ok or not isinstance(res, dict):
            return None
        contacts = res.get("contacts") or []
        return contacts[0] if contacts else None

    def add_contact_tags(self, contact_id: str, tags: Sequence[str], *, user_id: Optional[str] = None) -> bool:
        _, ok = self._request(
            "POST",
            f"/contacts/{contact_id}/tags",
            "add_tag",
            user_id=user_id,
            body={"tags": list(tags)},
            contact_id=contact_id,
        )
        return ok

    def remove_contact_tags(self, contact_id: str, tags: Sequence[str], *, user_id: Optional[str] = None) -> bool:
        _, ok = self._request(
            "DELETE",
            f"/contacts/{contact_id}/tags",
            "remove_tag",
            user_id=user_id,
            body={"tags": list(tags)},
            contact_id=contact_id,
        )
        return ok

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------
    def create_opportunity(
        self, data: Mapping[str, Any], *, user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        res, ok = self._request(
            "POST",
            "/opportunities/",
            "create_opportunity",
            user_id=user_id,
            body=data,
            contact_id=data.get("contactId"),
        )
        if not ok or not isinstance(res, dict):
            return None
        return res.get("opportunity")

    def update_opportunity(
        self, opportunity_id: str, data: Mapping[str, Any], *, user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        res, ok = self._request(
            "PUT", f"/opportunities/{opportunity_id}", "update_opportunity", user_id=user_id, body=data
        )
        if not ok or not isinstance(res, dict):
            return None
        return res.get("opportunity")

    def move_opportunity_stage(
        self, opportunity_id: str, stage_id: str, *, user_id: Optional[str] = None
    ) -> bool:
        _, ok = self._request(
            "PUT",
            f"/opportunities/{opportunity_id}",
            "move_opportunity_stage",
            user_id=user_id,
            body={"pipelineStageId": stage_id},
        )
        return ok

    def get_pipeline_stages(self, pipeline_id: str, *, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        res, ok = self._request(
            "GET",
            f"/opportunities/pipelines/{pipeline_id}",
            "get_pipeline_stages",
            user_id=user_id,
            params={"locationId": get_settings().ghl_location_id or ""},
        )
        if not ok or not isinstance(res, dict):
            return []
        return list(res.get("stages") or [])

    # ------------------------------------------------------------------
    # Notes, SMS and workflows
    # ------------------------------------------------------------------
    def add_note(self, contact_id: str, body: str, *, user_id: Optional[str] = None) -> bool:
        _, ok = self._request(
            "POST",
            f"/contacts/{contact_id}/notes",
            "add_note",
            user_id=user_id,
            body={"body": body},
            contact_id=contact_id,
        )
        return ok

    def send_sms(self, contact_id: str, message: str, *, user_id: Optional[str] = None) -> bool:
        _, ok = self._request(
            "POST",
            "/conversations/messages",
            "send_sms",
            user_id=user_id,
            body={"type": "SMS", "contactId": contact_id, "message": message},
            contact_id=contact_id,
        )
        return ok

    def trigger_workflow(self, contact_id: str, workflow_id: str, *, user_id: Optional[str] = None) -> bool:
        _, ok = self._request(
            "POST",
            f"/contacts/{contact_id}/workflow/{workflow_id}",
            "trigger_workflow",
            user_id=user_id,
            body={},
            contact_id=contact_id,
        )
        return ok


def test_connection() -> Dict[str, Any]:
    """Check the configured credentials against the contacts endpoint."""

    settings = get_settings()
    if not settings.ghl_api_key or not settings.ghl_location_id:
        return {"ok": False, "error": "GHL_API_KEY or GHL_LOCATION_ID not set"}
    try:
        response = egress.secure_request(
            "GET",
            f"{CRM_BASE_URL}/contacts/",
            headers=_headers(),
            params={"locationId": settings.ghl_location_id, "limit": 1},
            raise_for_status=False,
        )
    except (requests.RequestException, egress.EgressError) as exc:
        return {"ok": False, "error": str(exc)}
    if response.ok:
        return {"ok": True}
    return {"ok": False, "error": f"HTTP {response.status_code}"}


# Not a pytest test.
test_connection.__test__ = False  # type: ignore[attr-defined]


__all__ = ["CrmClient", "CRM_BASE_URL", "test_connection"]
