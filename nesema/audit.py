"""Admin audit trail."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from nesema.db.models import admin_audit_log, new_id, row_to_dict
from nesema.time_utils import utc_now


logger = structlog.get_logger(__name__)


def audit_log(
    session: Session,
    admin_id: Optional[str],
    action: str,
    target_type: str,
    target_id: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> str:
    """Record an admin action and return the new row id."""

    entry_id = new_id()
    payload = dict(metadata or {})
    session.execute(
        insert(admin_audit_log).values(
            id=entry_id,
            admin_id=admin_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            metadata=payload or None,
            created_at=utc_now(),
        )
    )
    logger.info(
        "admin_audit",
        admin_id=admin_id,
        action=action,
        target_type=target_type,
        target_id=str(target_id),
        **{f"meta_{key}": value for key, value in payload.items()},
    )
    return entry_id


def list_audit_log(session: Session, limit: int = 100) -> List[Dict[str, Any]]:
    limit = max(1, min(limit, 500))
    rows = session.execute(
        select(admin_audit_log).order_by(admin_audit_log.c.created_at.desc()).limit(limit)
    ).mappings()
    return [row_to_dict(row) for row in rows]


__all__ = ["audit_log", "list_audit_log"]
