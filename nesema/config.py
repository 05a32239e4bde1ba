"""Environment driven application settings."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from platformdirs import user_data_dir

from nesema import APP_NAME

load_dotenv()

_DEV_ENVIRONMENTS = {"development", "dev", "local", "test"}
# Per-process fallback so development tokens survive a settings cache reset.
_DEV_JWT_SECRET = secrets.token_urlsafe(48)


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""

    environment: str
    app_url: str
    email_from: str
    jwt_secret: str
    access_token_expire_minutes: int
    refresh_token_expire_days: int
    cron_secret: Optional[str]
    seed_secret: Optional[str]
    admin_email: Optional[str]
    admin_password: Optional[str]
    openai_api_key: Optional[str]
    ai_model: str
    ai_max_tokens: int
    use_offline_model: bool
    ai_rate_limit_max: int
    ai_rate_limit_window_seconds: int
    ghl_api_key: Optional[str]
    ghl_location_id: Optional[str]
    ghl_pipeline_id: Optional[str]
    ghl_practitioner_pipeline_id: Optional[str]
    ghl_reengagement_workflow_id: Optional[str]
    resend_api_key: Optional[str]
    daily_api_key: Optional[str]
    practice_timezone: str
    enable_scheduler: bool
    document_storage_dir: Path
    document_encryption_key: Optional[str]
    log_level: str

    @property
    def is_development(self) -> bool:
        return self.environment in _DEV_ENVIRONMENTS


def _resolve_jwt_secret(environment: str) -> str:
    secret = _env_str("JWT_SECRET")
    if secret:
        return secret
    if environment in _DEV_ENVIRONMENTS:
        return _DEV_JWT_SECRET
    raise RuntimeError("JWT_SECRET must be set outside development")


def _document_dir() -> Path:
    override = _env_str("DOCUMENT_STORAGE_DIR")
    if override:
        return Path(override).expanduser()
    return Path(user_data_dir(APP_NAME, APP_NAME)) / "documents"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return settings derived from the current environment."""

    environment = (_env_str("ENVIRONMENT", "development") or "development").lower()
    return Settings(
        environment=environment,
        app_url=(_env_str("APP_URL", "https://nesema.com") or "").rstrip("/"),
        email_from=_env_str("EMAIL_FROM", "Nesema <hello@nesema.com>") or "",
        jwt_secret=_resolve_jwt_secret(environment),
        access_token_expire_minutes=env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
        refresh_token_expire_days=env_int("REFRESH_TOKEN_EXPIRE_DAYS", 7),
        cron_secret=_env_str("CRON_SECRET"),
        seed_secret=_env_str("SEED_SECRET"),
        admin_email=_env_str("ADMIN_EMAIL"),
        admin_password=_env_str("ADMIN_PASSWORD"),
        openai_api_key=_env_str("OPENAI_API_KEY"),
        ai_model=_env_str("AI_MODEL", "gpt-4o") or "gpt-4o",
        ai_max_tokens=env_int("AI_MAX_TOKENS", 1024),
        use_offline_model=env_flag("USE_OFFLINE_MODEL"),
        ai_rate_limit_max=env_int("AI_RATE_LIMIT_MAX", 20),
        ai_rate_limit_window_seconds=env_int("AI_RATE_LIMIT_WINDOW_SECONDS", 60 * 60),
        ghl_api_key=_env_str("GHL_API_KEY"),
        ghl_location_id=_env_str("GHL_LOCATION_ID"),
        ghl_pipeline_id=_env_str("GHL_PIPELINE_ID"),
        ghl_practitioner_pipeline_id=_env_str("GHL_PRACTITIONER_PIPELINE_ID"),
        ghl_reengagement_workflow_id=_env_str("GHL_REENGAGEMENT_WORKFLOW_ID"),
        resend_api_key=_env_str("RESEND_API_KEY"),
        daily_api_key=_env_str("DAILY_API_KEY"),
        practice_timezone=_env_str("PRACTICE_TIMEZONE", "Europe/London") or "Europe/London",
        enable_scheduler=env_flag("ENABLE_SCHEDULER"),
        document_storage_dir=_document_dir(),
        document_encryption_key=_env_str("DOCUMENT_ENCRYPTION_KEY"),
        log_level=(_env_str("LOG_LEVEL", "INFO") or "INFO").upper(),
    )


__all__ = ["Settings", "get_settings", "env_flag", "env_int"]
