"""Daily.co video rooms."""

from __future__ import annotations

import time
from typing import Any, Dict

import structlog

from nesema import egress
from nesema.config import get_settings


logger = structlog.get_logger(__name__)

DAILY_BASE_URL = "https://api.daily.co/v1"
ROOM_TTL_SECONDS = 2 * 60 * 60


class VideoNotConfiguredError(RuntimeError):
    """Raised when ``DAILY_API_KEY`` is missing."""


def _headers() -> Dict[str, str]:
    api_key = get_settings().daily_api_key
    if not api_key:
        raise VideoNotConfiguredError("DAILY_API_KEY not configured")
    return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}


def room_name_for(appointment_id: str) -> str:
    return f"nesema-{appointment_id}"


def create_room(name: str, expires_in: int = ROOM_TTL_SECONDS) -> Dict[str, Any]:
    """Create a room and return the provider's JSON description."""

    response = egress.secure_request(
        "POST",
        f"{DAILY_BASE_URL}/rooms",
        headers=_headers(),
        json={
            "name": name,
            "properties": {
                "enable_screenshare": True,
                "enable_chat": True,
                "start_video_off": False,
                "start_audio_off": False,
                "exp": int(time.time()) + expires_in,
            },
        },
        raise_for_status=False,
    )
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not response.ok:
        logger.warning("video_room_create_failed", room=name, status=response.status_code)
    return payload if isinstance(payload, dict) else {}


def delete_room(name: str) -> None:
    egress.secure_request("DELETE", f"{DAILY_BASE_URL}/rooms/{name}", headers=_headers(), raise_for_status=False)
    logger.info("video_room_deleted", room=name)


__all__ = ["create_room", "delete_room", "room_name_for", "VideoNotConfiguredError"]
