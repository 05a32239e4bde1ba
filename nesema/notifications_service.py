from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.orm import Session

from nesema.db.models import new_id, notifications, row_to_dict
from nesema.time_utils import utc_now


logger = structlog.get_logger(__name__)


class NotificationNotFoundError(Exception):
    """Raised when attempting to update a notification that does not exist."""


class NotificationService:
    """Persist in-app notifications and report unread counts."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(
        self,
        user_id: str,
        title: str,
        *,
        body: Optional[str] = None,
        type: str = "general",
        link: Optional[str] = None,
    ) -> str:
        """Insert a single notification for *user_id* and return its id."""

        notification_id = new_id()
        self._session.execute(
            insert(notifications).values(
                id=notification_id,
                user_id=user_id,
                type=type or "general",
                title=title,
                body=body,
                link=link,
                read=False,
                created_at=utc_now(),
            )
        )
        logger.info("notification_created", user_id=user_id, type=type)
        return notification_id

    def create_many(self, user_ids: Iterable[str], payload: Mapping[str, Any]) -> int:
        """Insert one notification per user and return how many were written."""

        now = utc_now()
        rows = [
            {
                "id": new_id(),
                "user_id": user_id,
                "type": payload.get("type") or "general",
                "title": payload["title"],
                "body": payload.get("body"),
                "link": payload.get("link"),
                "read": False,
                "created_at": now,
            }
            for user_id in user_ids
        ]
        if not rows:
            return 0
        self._session.execute(insert(notifications), rows)
        logger.info("notifications_created", count=len(rows), type=rows[0]["type"])
        return len(rows)

    def mark_read(self, user_id: str, notification_id: str) -> None:
        result = self._session.execute(
            update(notifications)
            .where(notifications.c.id == notification_id)
            .where(notifications.c.user_id == user_id)
            .values(read=True)
        )
        if not result.rowcount:
            raise NotificationNotFoundError(notification_id)

    def mark_all_read(self, user_id: str) -> int:
        result = self._session.execute(
            update(notifications)
            .where(notifications.c.user_id == user_id)
            .where(notifications.c.read.is_(False))
            .values(read=True)
        )
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_for_user(
        self, user_id: str, *, unread_only: bool = False, limit: int = 50
    ) -> List[Dict[str, Any]]:
        query = select(notifications).where(notifications.c.user_id == user_id)
        if unread_only:
            query = query.where(notifications.c.read.is_(False))
        query = query.order_by(notifications.c.created_at.desc()).limit(max(1, limit))
        return [row_to_dict(row) for row in self._session.execute(query).mappings()]

    def unread_count(self, user_id: str) -> int:
        count = self._session.execute(
            select(func.count())
            .select_from(notifications)
            .where(notifications.c.user_id == user_id)
            .where(notifications.c.read.is_(False))
        ).scalar_one()
        return int(count or 0)


__all__ = ["NotificationService", "NotificationNotFoundError"]
