"""Sliding-window limiter for assistant requests backed by ``ai_usage_log``."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from nesema.config import get_settings
from nesema.db.models import ai_usage_log, new_id
from nesema.time_utils import ensure_utc, utc_now


class RateLimitExceeded(Exception):
    """Raised when a user has exhausted their assistant quota."""

    def __init__(self, retry_after: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after


def check_and_log_ai_usage(
    session: Session, user_id: str, feature: str, now: Optional[datetime] = None
) -> None:
    """Record one use of *feature* or raise :class:`RateLimitExceeded`."""

    settings = get_settings()
    now = now or utc_now()
    window = timedelta(seconds=settings.ai_rate_limit_window_seconds)
    window_start = now - window

    count, oldest = session.execute(
        select(func.count(), func.min(ai_usage_log.c.created_at))
        .where(ai_usage_log.c.user_id == user_id)
        .where(ai_usage_log.c.created_at >= window_start)
    ).one()
    if (count or 0) >= settings.ai_rate_limit_max:
        retry_after = 1
        if oldest is not None:
            remaining = (ensure_utc(oldest) + window - now).total_seconds()
            retry_after = max(1, math.ceil(remaining))
        raise RateLimitExceeded(retry_after)

    session.execute(
        insert(ai_usage_log).values(id=new_id(), user_id=user_id, feature=feature, created_at=now)
    )
    session.commit()


__all__ = ["RateLimitExceeded", "check_and_log_ai_usage"]
