"""FastAPI application for the Nesema practice platform.

Route handlers are intentionally thin: they authenticate the caller, check
ownership, run a few queries and hand integration work (CRM, e-mail) to
background tasks that open their own database session.
"""

from __future__ import annotations

import json
import re
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Tuple
from urllib.parse import quote

import jwt
import structlog
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars, unbind_contextvars

from nesema import (
    accounts,
    crm_client,
    crm_sync,
    document_store,
    email_service,
    foods,
    prompts,
    video,
    worker,
)
from nesema.ai_rate_limit import RateLimitExceeded, check_and_log_ai_usage
from nesema.audit import audit_log, list_audit_log
from nesema.auth import (
    AccountSuspendedError,
    AuthenticationError,
    authenticate_user,
    create_access_token,
    create_refresh_token,
    decode_token,
    register_user,
    revoke_refresh_token,
    rotate_refresh_token,
)
from nesema.config import get_settings
from nesema.cron_jobs import JOBS as CRON_JOBS
from nesema.db.models import (
    appointments,
    availability,
    care_plans,
    check_ins,
    crm_sync_log,
    discount_codes,
    documents,
    education_assignments,
    education_content,
    meal_plans,
    messages,
    new_id,
    patients,
    platform_settings,
    practitioner_types,
    practitioners,
    referral_codes,
    row_to_dict,
    users,
)
from nesema.db.session import get_db, init_db, session_scope
from nesema.notifications_service import NotificationNotFoundError, NotificationService
from nesema.observability import (
    AI_REQUESTS,
    REQUEST_COUNTER,
    REQUEST_LATENCY,
    _TRACE_ID_CTX,
    configure_logging,
    normalise_path_for_metrics,
)
from nesema.openai_client import is_configured as ai_is_configured
from nesema.openai_client import stream_completion
from nesema.scheduling import (
    DiscountError,
    apply_discount,
    export_appointment_ics,
    fee_for,
    generate_slots,
    is_slot_available,
)
from nesema.time_utils import ensure_utc, format_long_date, format_time, parse_iso_datetime, utc_now


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()
    logger.info("lifespan_startup", scheduler=settings.enable_scheduler)
    if settings.enable_scheduler:
        worker.start_scheduler()
    start_ts = time.time()
    try:
        yield
    finally:
        if settings.enable_scheduler:
            await worker.stop_scheduler()
        logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)


app = FastAPI(title="Nesema API", lifespan=lifespan)

_origins = [get_settings().app_url]
if get_settings().is_development:
    _origins += ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")
        _TRACE_ID_CTX.reset(token)


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    normalised = normalise_path_for_metrics(request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        raise
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
    return response


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


_ERROR_MESSAGE_KEYS: Tuple[str, ...] = ("message", "detail", "error", "msg")
_ERROR_RESERVED_KEYS = {"code", "details", *_ERROR_MESSAGE_KEYS}


def _stringify_error_detail(item: Any) -> str:
    """Return a readable message from arbitrary error detail structures."""

    if isinstance(item, dict):
        loc = item.get("loc")
        for key in _ERROR_MESSAGE_KEYS:
            value = item.get(key)
            if value not in (None, ""):
                if loc:
                    return f"{'.'.join(str(part) for part in loc)}: {value}"
                return str(value)
        return str(item)
    return str(item)


def _build_error_response(payload: Any, status_code: int | None = None) -> ErrorResponse:
    """Normalize ``payload`` into the standard :class:`ErrorResponse` structure."""

    code: int | str | None = status_code
    message = "An error occurred"
    details: Any | None = None
    extras: Dict[str, Any] = {}

    if isinstance(payload, dict):
        if payload.get("code") not in (None, ""):
            code = payload["code"]
        if "details" in payload:
            details = payload["details"]
        for key in _ERROR_MESSAGE_KEYS:
            if payload.get(key) not in (None, ""):
                message = str(payload[key])
                break
        else:
            message = str(payload) if payload else message
        extras = {k: v for k, v in payload.items() if k not in _ERROR_RESERVED_KEYS}
    elif isinstance(payload, list):
        rendered = [_stringify_error_detail(item) for item in payload if item not in (None, "")]
        if rendered:
            message = "; ".join(rendered)
        details = payload
    elif payload not in (None, ""):
        message = str(payload)

    error_payload: Dict[str, Any] = {"message": message}
    if code is not None:
        error_payload["code"] = code
    if details is not None:
        error_payload["details"] = details
    if extras:
        error_payload.update(extras)

    return ErrorResponse(error=ErrorDetail(**error_payload))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    error_payload = _build_error_response(exc.detail, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload.model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
    error_payload = _build_error_response(errors, status_code=422)
    return JSONResponse(status_code=422, content=jsonable_encoder(error_payload.model_dump()))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    error_payload = _build_error_response("Internal server error", status_code=500)
    return JSONResponse(status_code=500, content=error_payload.model_dump())


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

security = HTTPBearer(auto_error=False)

_MAINTENANCE_EXEMPT_PREFIXES = ("/api/auth/",)

_SETTINGS_DEFAULTS = {
    "maintenance_mode": False,
    "allow_practitioner_signup": True,
    "allow_patient_signup": True,
}


def _platform_settings(db: Session) -> Dict[str, Any]:
    row = db.execute(select(platform_settings).limit(1)).mappings().first()
    if not row:
        return dict(_SETTINGS_DEFAULTS, id=None)
    return dict(row)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Resolve the bearer token to an active user row."""

    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        data = decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user = db.execute(select(users).where(users.c.id == data.get("sub"))).mappings().first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    if user["suspended"]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account suspended")
    if (
        user["role"] != "admin"
        and not request.url.path.startswith(_MAINTENANCE_EXEMPT_PREFIXES)
        and _platform_settings(db)["maintenance_mode"]
    ):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Maintenance in progress")
    bind_contextvars(user_id=user["id"])
    return dict(user)


def require_roles(*roles: str):
    """Dependency factory ensuring the current user is in an allowed role."""

    allowed = {"admin", *roles}

    def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient privileges",
            )
        return user

    return checker


require_admin = require_roles()


# ---------------------------------------------------------------------------
# Shared lookups
# ---------------------------------------------------------------------------


def _full_name(row: Optional[Dict[str, Any]]) -> str:
    if not row:
        return ""
    return f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    keys = ("id", "email", "role", "first_name", "last_name", "phone", "avatar_url", "suspended", "created_at")
    return row_to_dict({key: user.get(key) for key in keys})


def _user_by_id(db: Session, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    row = db.execute(select(users).where(users.c.id == user_id)).mappings().first()
    return dict(row) if row else None


def _practitioner_for_user(db: Session, user_id: str) -> Optional[Dict[str, Any]]:
    row = db.execute(select(practitioners).where(practitioners.c.user_id == user_id)).mappings().first()
    return dict(row) if row else None


def _patient_for_user(db: Session, user_id: str) -> Optional[Dict[str, Any]]:
    row = db.execute(select(patients).where(patients.c.user_id == user_id)).mappings().first()
    return dict(row) if row else None


def _get_practitioner(db: Session, practitioner_id: str) -> Optional[Dict[str, Any]]:
    row = db.execute(select(practitioners).where(practitioners.c.id == practitioner_id)).mappings().first()
    return dict(row) if row else None


def _get_patient(db: Session, patient_id: str) -> Optional[Dict[str, Any]]:
    row = db.execute(select(patients).where(patients.c.id == patient_id)).mappings().first()
    return dict(row) if row else None


def _require_practitioner(db: Session, user: Dict[str, Any]) -> Dict[str, Any]:
    prac = _practitioner_for_user(db, user["id"])
    if not prac:
        raise HTTPException(status_code=403, detail="Practitioner record not found")
    return prac


def _require_patient(db: Session, user: Dict[str, Any]) -> Dict[str, Any]:
    patient = _patient_for_user(db, user["id"])
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


def _patient_with_access(db: Session, user: Dict[str, Any], patient_id: str) -> Dict[str, Any]:
    """Return the patient row when *user* is that patient, their practitioner or an admin."""

    patient = _get_patient(db, patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    if user["role"] == "admin" or patient["user_id"] == user["id"]:
        return patient
    if user["role"] == "practitioner":
        prac = _practitioner_for_user(db, user["id"])
        if prac and patient["practitioner_id"] == prac["id"]:
            return patient
    raise HTTPException(status_code=403, detail="Insufficient privileges")


def _practitioner_of_patient(db: Session, user: Dict[str, Any], patient_id: str) -> Tuple[Dict[str, Any], Optional[str]]:
    """Return ``(patient, practitioner_id)`` for write access to a patient's plans."""

    patient = _get_patient(db, patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    if user["role"] == "admin":
        return patient, patient["practitioner_id"]
    prac = _require_practitioner(db, user)
    if patient["practitioner_id"] != prac["id"]:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient, prac["id"]


def _get_appointment(db: Session, appointment_id: str) -> Dict[str, Any]:
    row = db.execute(select(appointments).where(appointments.c.id == appointment_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return dict(row)


def _appointment_role(db: Session, user: Dict[str, Any], appt: Dict[str, Any]) -> Optional[str]:
    """Return ``"practitioner"``, ``"patient"`` or ``"admin"`` when *user* may see *appt*."""

    if user["role"] == "admin":
        return "admin"
    prac = _practitioner_for_user(db, user["id"])
    if prac and prac["id"] == appt["practitioner_id"]:
        return "practitioner"
    patient = _patient_for_user(db, user["id"])
    if patient and patient["id"] == appt["patient_id"]:
        return "patient"
    return None


def _queue_sync(background_tasks: Optional[BackgroundTasks], fn: Callable[..., Any], *args: Any) -> None:
    """Run ``fn(session, *args)`` in its own session, after the response or inline without *background_tasks*."""

    if background_tasks is not None:
        background_tasks.add_task(worker.run_in_session, fn, *args)
    else:
        worker.run_in_session(fn, *args)


_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics", tags=["system"], response_model=None)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str
    role: str
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str = Field(min_length=1, max_length=120)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


def _token_response(db: Session, user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "access_token": create_access_token(user["id"], user["role"]),
        "refresh_token": create_refresh_token(db, user["id"]),
        "token_type": "bearer",
        "user": _public_user(user),
    }


@app.post("/api/auth/register", status_code=201)
def register(
    payload: RegisterRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if payload.role not in ("practitioner", "patient"):
        raise HTTPException(status_code=400, detail="Invalid role")
    flags = _platform_settings(db)
    if not flags[f"allow_{payload.role}_signup"]:
        raise HTTPException(status_code=403, detail="Sign-ups are currently closed")
    try:
        created = register_user(
            db,
            payload.email,
            payload.password,
            payload.role,
            payload.first_name,
            payload.last_name,
            phone=payload.phone,
        )
    except ValueError as exc:
        code = 409 if str(exc) == "Email already registered" else 400
        raise HTTPException(status_code=code, detail=str(exc))

    user = _user_by_id(db, created["user_id"])
    response = _token_response(db, user)
    db.commit()
    logger.info("user_registered", user_id=user["id"], role=user["role"])

    if payload.role == "practitioner":
        prac = _practitioner_for_user(db, user["id"])
        background_tasks.add_task(
            email_service.send_practitioner_welcome, user["email"], user["first_name"], prac["booking_slug"]
        )
    return response


@app.post("/api/auth/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        user = authenticate_user(db, payload.email, payload.password)
    except AuthenticationError as exc:
        # Persist the failed-attempt counter before rejecting.
        db.commit()
        if exc.locked:
            raise HTTPException(status_code=423, detail="Account locked. Try again later.")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    except AccountSuspendedError:
        raise HTTPException(status_code=403, detail="Account suspended")
    response = _token_response(db, user)
    db.commit()
    return response


@app.post("/api/auth/refresh")
def refresh(payload: RefreshRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    rotated = rotate_refresh_token(db, payload.refresh_token)
    if not rotated:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = rotated["user"]
    db.commit()
    return {
        "access_token": create_access_token(user["id"], user["role"]),
        "refresh_token": rotated["refresh_token"],
        "token_type": "bearer",
        "user": _public_user(user),
    }


@app.post("/api/auth/logout")
def logout(payload: RefreshRequest, db: Session = Depends(get_db)) -> Dict[str, bool]:
    revoke_refresh_token(db, payload.refresh_token)
    db.commit()
    return {"success": True}


@app.get("/api/auth/me")
def me(user: Dict[str, Any] = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    result = _public_user(user)
    prac = _practitioner_for_user(db, user["id"])
    patient = _patient_for_user(db, user["id"])
    result["practitioner_id"] = prac["id"] if prac else None
    result["patient_id"] = patient["id"] if patient else None
    return result


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class SendNotificationRequest(BaseModel):
    target: str = "all"
    title: Optional[str] = None
    body: Optional[str] = None
    type: str = "general"
    link: Optional[str] = None


@app.get("/api/notifications")
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    service = NotificationService(db)
    return {
        "notifications": service.list_for_user(user["id"], unread_only=unread_only, limit=limit),
        "unread": service.unread_count(user["id"]),
    }


@app.post("/api/notifications/read-all")
def read_all_notifications(
    user: Dict[str, Any] = Depends(get_current_user), db: Session = Depends(get_db)
) -> Dict[str, int]:
    updated = NotificationService(db).mark_all_read(user["id"])
    db.commit()
    return {"updated": updated}


@app.post("/api/notifications/send")
def send_notifications(
    payload: SendNotificationRequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    title = (payload.title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    prac = _require_practitioner(db, user)

    query = select(patients.c.user_id).where(patients.c.practitioner_id == prac["id"])
    if payload.target != "all":
        query = query.where(patients.c.id == payload.target)
    recipients = list(db.execute(query).scalars())
    if payload.target != "all" and not recipients:
        raise HTTPException(status_code=404, detail="Patient not found")
    if not recipients:
        raise HTTPException(status_code=400, detail="No recipients found")

    sent = NotificationService(db).create_many(
        recipients,
        {"title": title, "body": payload.body, "type": payload.type or "general", "link": payload.link},
    )
    db.commit()
    return {"sent": sent}


@app.post("/api/notifications/{notification_id}/read")
def read_notification(
    notification_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    try:
        NotificationService(db).mark_read(user["id"], notification_id)
    except NotificationNotFoundError:
        raise HTTPException(status_code=404, detail="Notification not found")
    db.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Video rooms
# ---------------------------------------------------------------------------


class RoomRequest(BaseModel):
    appointmentId: Optional[str] = None


@app.post("/api/daily/room")
def create_video_room(
    payload: RoomRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if not get_settings().daily_api_key:
        raise HTTPException(status_code=503, detail="DAILY_API_KEY not configured")
    if not payload.appointmentId:
        raise HTTPException(status_code=400, detail="appointmentId required")
    appt = _get_appointment(db, payload.appointmentId)
    if _appointment_role(db, user, appt) not in ("practitioner", "patient"):
        raise HTTPException(status_code=403, detail="Forbidden")
    if appt["daily_room_url"]:
        return {"url": appt["daily_room_url"]}

    room = video.create_room(video.room_name_for(appt["id"]))
    url = room.get("url")
    if not url:
        raise HTTPException(status_code=500, detail="Failed to create video room")
    db.execute(update(appointments).where(appointments.c.id == appt["id"]).values(daily_room_url=url))
    db.commit()
    return {"url": url}


# ---------------------------------------------------------------------------
# Foods
# ---------------------------------------------------------------------------


@app.get("/api/foods/search")
def search_foods(q: str = "") -> Dict[str, Any]:
    return foods.search_foods(q)


# ---------------------------------------------------------------------------
# AI assistant
# ---------------------------------------------------------------------------


class AIRequest(BaseModel):
    userMessage: Optional[str] = None


class CarePlanDraftRequest(AIRequest):
    practitionerId: Optional[str] = None


class MealAlternativesRequest(AIRequest):
    foodName: Optional[str] = None


class AIStreamRequest(AIRequest):
    systemPrompt: Optional[str] = None
    feature: str = "stream"


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class PlanQARequest(BaseModel):
    systemContext: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None


PLAN_QA_HISTORY = 10
AI_NOT_CONFIGURED_MESSAGE = "AI is not configured. Please contact support."


def _text_stream(chunks: Iterator[str]) -> StreamingResponse:
    return StreamingResponse(chunks, media_type="text/plain; charset=utf-8")


def _rate_limited_stream(
    db: Session,
    user: Dict[str, Any],
    feature: str,
    system_prompt: str,
    messages: Any,
) -> StreamingResponse:
    try:
        check_and_log_ai_usage(db, user["id"], feature)
    except RateLimitExceeded as exc:
        AI_REQUESTS.labels(feature, "rate_limited").inc()
        raise HTTPException(
            status_code=429,
            detail={"code": "RATE_LIMIT", "message": "Rate limit exceeded"},
            headers={"Retry-After": str(exc.retry_after)},
        )
    AI_REQUESTS.labels(feature, "ok").inc()
    logger.info("ai_request", feature=feature)
    return _text_stream(stream_completion(system_prompt, messages, get_settings().ai_max_tokens))


def _simple_ai_route(feature: str, *roles: str) -> None:
    system_prompt = prompts.FEATURE_PROMPTS[feature]

    def handler(
        payload: AIRequest,
        user: Dict[str, Any] = Depends(require_roles(*roles)),
        db: Session = Depends(get_db),
    ) -> StreamingResponse:
        if not payload.userMessage:
            raise HTTPException(status_code=400, detail="Missing userMessage")
        return _rate_limited_stream(db, user, feature, system_prompt, payload.userMessage)

    handler.__name__ = f"ai_{feature.replace('-', '_')}"
    app.post(f"/api/ai/{feature}", response_class=StreamingResponse)(handler)


_simple_ai_route("checkin-analysis", "practitioner")
_simple_ai_route("lab-interpretation", "practitioner")
_simple_ai_route("session-notes", "practitioner")
_simple_ai_route("meal-explanation", "practitioner", "patient")
_simple_ai_route("weekly-summary", "practitioner", "patient")


@app.post("/api/ai/care-plan-draft", response_class=StreamingResponse)
def ai_care_plan_draft(
    payload: CarePlanDraftRequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    if not payload.userMessage:
        raise HTTPException(status_code=400, detail="Missing userMessage")
    response = _rate_limited_stream(db, user, "care-plan-draft", prompts.CARE_PLAN_DRAFT, payload.userMessage)
    audit_log(db, user["id"], "ai_care_plan_generated", "care_plan", payload.practitionerId or user["id"])
    db.commit()
    return response


@app.post("/api/ai/meal-alternatives", response_class=StreamingResponse)
def ai_meal_alternatives(
    payload: MealAlternativesRequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    if not payload.userMessage or not payload.foodName:
        raise HTTPException(status_code=400, detail="Missing userMessage or foodName")
    return _rate_limited_stream(
        db, user, "meal-alternatives", prompts.meal_alternatives_prompt(payload.foodName), payload.userMessage
    )


@app.post("/api/ai/stream", response_class=StreamingResponse)
def ai_stream(
    payload: AIStreamRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    if not payload.systemPrompt or not payload.userMessage:
        raise HTTPException(status_code=400, detail="Missing systemPrompt or userMessage")
    return _rate_limited_stream(db, user, payload.feature or "stream", payload.systemPrompt, payload.userMessage)


@app.post("/api/ai/plan-qa", response_class=StreamingResponse)
def ai_plan_qa(
    payload: PlanQARequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner", "patient")),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    if not payload.systemContext or not payload.messages:
        raise HTTPException(status_code=400, detail="Missing systemContext or messages")
    if not ai_is_configured():
        return _text_stream(iter([AI_NOT_CONFIGURED_MESSAGE]))
    history = [message.model_dump() for message in payload.messages[-PLAN_QA_HISTORY:]]
    return _rate_limited_stream(db, user, "plan-qa", prompts.plan_qa_prompt(payload.systemContext), history)


# ---------------------------------------------------------------------------
# Public booking & appointments
# ---------------------------------------------------------------------------

SESSION_TYPE_LABELS = {
    "initial": "Initial consultation",
    "followup": "Follow-up session",
    "review": "Review session",
}


class BookingRequest(BaseModel):
    scheduled_at: str
    appointment_type: Literal["initial", "followup"] = "initial"
    patient_notes: Optional[str] = None
    discount_code: Optional[str] = None


class AppointmentIdRequest(BaseModel):
    appointmentId: Optional[str] = None


def _bookable_practitioner(db: Session, slug: str) -> Dict[str, Any]:
    row = db.execute(select(practitioners).where(practitioners.c.booking_slug == slug)).mappings().first()
    if not row or not row["is_live"] or not row["allows_self_booking"]:
        raise HTTPException(status_code=404, detail="Practitioner not found")
    return dict(row)


def _slots_for(db: Session, prac: Dict[str, Any], now: datetime) -> List[Dict[str, Any]]:
    avail = db.execute(
        select(availability)
        .where(availability.c.practitioner_id == prac["id"])
        .where(availability.c.is_active.is_(True))
    ).mappings().all()
    booked = db.execute(
        select(appointments.c.scheduled_at, appointments.c.duration_mins)
        .where(appointments.c.practitioner_id == prac["id"])
        .where(appointments.c.status == "scheduled")
        .where(appointments.c.scheduled_at >= now - timedelta(days=1))
    ).mappings().all()
    return generate_slots(avail, prac["session_length_mins"], prac["buffer_mins"], booked, now=now)


def _count_active_appointments(db: Session, patient_id: str) -> int:
    return db.execute(
        select(func.count())
        .select_from(appointments)
        .where(appointments.c.patient_id == patient_id)
        .where(appointments.c.status.in_(("scheduled", "completed")))
    ).scalar_one()


@app.get("/api/book/{slug}")
def booking_page(slug: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    prac = _bookable_practitioner(db, slug)
    prac_user = _user_by_id(db, prac["user_id"]) or {}
    return {
        "practitioner": {
            "id": prac["id"],
            "name": _full_name(prac_user),
            "avatar_url": prac_user.get("avatar_url"),
            "practice_name": prac["practice_name"],
            "discipline": prac["discipline"],
            "bio": prac["bio"],
            "session_length_mins": prac["session_length_mins"],
            "initial_fee": prac["initial_fee"],
            "followup_fee": prac["followup_fee"],
            "cancellation_hours": prac["cancellation_hours"],
        },
        "days": _slots_for(db, prac, utc_now()),
    }


@app.post("/api/book/{slug}", status_code=201)
def book_appointment(
    slug: str,
    payload: BookingRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_roles("patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    prac = _bookable_practitioner(db, slug)
    patient = _require_patient(db, user)
    scheduled_at = parse_iso_datetime(payload.scheduled_at)
    if scheduled_at is None:
        raise HTTPException(status_code=400, detail="Invalid scheduled_at")

    now = utc_now()
    if not is_slot_available(_slots_for(db, prac, now), scheduled_at):
        raise HTTPException(status_code=409, detail="Slot no longer available")

    amount = fee_for(prac, payload.appointment_type)
    discount_id = None
    if payload.discount_code:
        code_row = db.execute(
            select(discount_codes).where(discount_codes.c.code == payload.discount_code.strip().upper())
        ).mappings().first()
        if not code_row:
            raise HTTPException(status_code=400, detail="Invalid discount code")
        try:
            amount = apply_discount(code_row, payload.appointment_type, amount, now)
        except DiscountError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        discount_id = code_row["id"]
        db.execute(
            update(discount_codes)
            .where(discount_codes.c.id == discount_id)
            .values(uses_count=discount_codes.c.uses_count + 1)
        )

    if not patient["practitioner_id"]:
        db.execute(update(patients).where(patients.c.id == patient["id"]).values(practitioner_id=prac["id"]))

    appointment_id = new_id()
    db.execute(
        insert(appointments).values(
            id=appointment_id,
            practitioner_id=prac["id"],
            patient_id=patient["id"],
            appointment_type=payload.appointment_type,
            status="scheduled",
            scheduled_at=scheduled_at,
            duration_mins=prac["session_length_mins"],
            location_type="virtual",
            patient_notes=payload.patient_notes,
            amount_pence=amount,
            discount_code_id=discount_id,
            reminder_sent=False,
            created_at=now,
        )
    )
    prac_user = _user_by_id(db, prac["user_id"]) or {}
    patient_name = _full_name(user)
    NotificationService(db).create(
        prac_user["id"],
        "New booking",
        body=f"{patient_name or 'A patient'} booked a {SESSION_TYPE_LABELS[payload.appointment_type].lower()}.",
        type="booking",
        link="/practitioner/calendar",
    )
    db.commit()
    logger.info("appointment_booked", appointment_id=appointment_id, practitioner_id=prac["id"])

    prac_name = crm_sync.practitioner_display_name(db, prac, _full_name(prac_user))
    date_text = format_long_date(scheduled_at)
    time_text = format_time(scheduled_at)
    session_type = SESSION_TYPE_LABELS[payload.appointment_type]
    background_tasks.add_task(
        email_service.send_booking_confirmation_patient,
        user["email"],
        patient_name,
        prac_name,
        date_text,
        time_text,
        session_type,
        amount,
        prac["cancellation_hours"],
        appointment_id,
    )
    if prac_user.get("email"):
        background_tasks.add_task(
            email_service.send_booking_notification_practitioner,
            prac_user["email"],
            _full_name(prac_user),
            patient_name,
            date_text,
            time_text,
            session_type,
        )
    if payload.appointment_type == "initial" and _count_active_appointments(db, patient["id"]) == 1:
        _queue_sync(background_tasks, crm_sync.sync_patient_first_booking, patient["id"])

    return row_to_dict(_get_appointment(db, appointment_id))


@app.get("/api/appointments")
def list_appointments(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user: Dict[str, Any] = Depends(require_roles("practitioner", "patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    query = select(appointments).order_by(appointments.c.scheduled_at)
    if user["role"] == "practitioner":
        query = query.where(appointments.c.practitioner_id == _require_practitioner(db, user)["id"])
    elif user["role"] == "patient":
        query = query.where(appointments.c.patient_id == _require_patient(db, user)["id"])
    if status_filter:
        query = query.where(appointments.c.status == status_filter)
    return {"appointments": [row_to_dict(row) for row in db.execute(query).mappings()]}


@app.post("/api/appointments/completed-sync")
def appointment_completed_sync(
    payload: AppointmentIdRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, bool]:
    if not payload.appointmentId:
        raise HTTPException(status_code=400, detail="appointmentId required")
    _queue_sync(background_tasks, crm_sync.sync_appointment_completed, payload.appointmentId)
    return {"ok": True}


@app.post("/api/appointments/first-booking-sync")
def appointment_first_booking_sync(
    payload: AppointmentIdRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    if not payload.appointmentId:
        return {"ok": True}
    row = db.execute(
        select(appointments.c.patient_id, appointments.c.appointment_type).where(
            appointments.c.id == payload.appointmentId
        )
    ).first()
    if not row or row.appointment_type != "initial":
        return {"ok": True}
    if _count_active_appointments(db, row.patient_id) <= 1:
        _queue_sync(background_tasks, crm_sync.sync_patient_first_booking, row.patient_id)
    return {"ok": True}


@app.post("/api/appointments/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    appt = _get_appointment(db, appointment_id)
    if not _appointment_role(db, user, appt):
        raise HTTPException(status_code=403, detail="Forbidden")
    if appt["status"] != "scheduled":
        raise HTTPException(status_code=400, detail="Only scheduled appointments can be cancelled")
    db.execute(update(appointments).where(appointments.c.id == appointment_id).values(status="cancelled"))
    db.commit()
    return row_to_dict(_get_appointment(db, appointment_id))


@app.post("/api/appointments/{appointment_id}/complete")
def complete_appointment(
    appointment_id: str,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    appt = _get_appointment(db, appointment_id)
    if _appointment_role(db, user, appt) not in ("practitioner", "admin"):
        raise HTTPException(status_code=403, detail="Forbidden")
    if appt["status"] != "scheduled":
        raise HTTPException(status_code=400, detail="Only scheduled appointments can be completed")
    db.execute(update(appointments).where(appointments.c.id == appointment_id).values(status="completed"))
    db.commit()
    _queue_sync(background_tasks, crm_sync.sync_appointment_completed, appointment_id)
    return row_to_dict(_get_appointment(db, appointment_id))


@app.get("/api/appointments/{appointment_id}/ics", response_model=None)
def appointment_ics(
    appointment_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    appt = _get_appointment(db, appointment_id)
    if not _appointment_role(db, user, appt):
        raise HTTPException(status_code=403, detail="Forbidden")
    prac = _get_practitioner(db, appt["practitioner_id"])
    prac_name = crm_sync.practitioner_display_name(db, prac, "your practitioner")
    ics = export_appointment_ics(
        appt,
        summary=f"Session with {prac_name}",
        description=f"{get_settings().app_url}/{user['role']}/session?appointmentId={appointment_id}",
    )
    return Response(
        content=ics,
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="nesema-{appointment_id}.ics"'},
    )


# ---------------------------------------------------------------------------
# Practitioner settings
# ---------------------------------------------------------------------------


class PractitionerProfileUpdate(BaseModel):
    practice_name: Optional[str] = None
    discipline: Optional[str] = None
    registration_body: Optional[str] = None
    registration_number: Optional[str] = None
    years_of_practice: Optional[int] = Field(default=None, ge=0)
    bio: Optional[str] = None
    session_length_mins: Optional[int] = Field(default=None, gt=0, le=480)
    buffer_mins: Optional[int] = Field(default=None, ge=0, le=240)
    allows_self_booking: Optional[bool] = None
    initial_fee: Optional[int] = Field(default=None, ge=0)
    followup_fee: Optional[int] = Field(default=None, ge=0)
    cancellation_hours: Optional[int] = Field(default=None, ge=0)
    notification_preferences: Optional[Dict[str, Any]] = None


class AvailabilityRow(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    is_active: bool = True


class AvailabilityUpdate(BaseModel):
    slots: List[AvailabilityRow]


def _practitioner_profile(db: Session, prac_id: str) -> Dict[str, Any]:
    return row_to_dict(_get_practitioner(db, prac_id))


@app.get("/api/practitioner/profile")
def get_practitioner_profile(
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return _practitioner_profile(db, _require_practitioner(db, user)["id"])


@app.put("/api/practitioner/profile")
def update_practitioner_profile(
    payload: PractitionerProfileUpdate,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    prac = _require_practitioner(db, user)
    changes = payload.model_dump(exclude_unset=True)
    if changes:
        db.execute(update(practitioners).where(practitioners.c.id == prac["id"]).values(**changes))
        db.commit()
    return _practitioner_profile(db, prac["id"])


def _availability_rows(db: Session, prac_id: str) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(availability)
        .where(availability.c.practitioner_id == prac_id)
        .order_by(availability.c.day_of_week, availability.c.start_time)
    ).mappings()
    return [row_to_dict(row) for row in rows]


@app.get("/api/practitioner/availability")
def get_availability(
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"slots": _availability_rows(db, _require_practitioner(db, user)["id"])}


@app.put("/api/practitioner/availability")
def replace_availability(
    payload: AvailabilityUpdate,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    prac = _require_practitioner(db, user)
    for slot in payload.slots:
        if not _HHMM.match(slot.start_time) or not _HHMM.match(slot.end_time):
            raise HTTPException(status_code=400, detail="Times must be in HH:MM format")
        if slot.end_time <= slot.start_time:
            raise HTTPException(status_code=400, detail="end_time must be after start_time")

    db.execute(delete(availability).where(availability.c.practitioner_id == prac["id"]))
    if payload.slots:
        db.execute(
            insert(availability),
            [dict(slot.model_dump(), id=new_id(), practitioner_id=prac["id"]) for slot in payload.slots],
        )
    db.commit()
    return {"slots": _availability_rows(db, prac["id"])}


# ---------------------------------------------------------------------------
# Check-ins, care plans and meal plans
# ---------------------------------------------------------------------------

AT_RISK_DAYS = 7


class CheckInRequest(BaseModel):
    mood_score: Optional[int] = Field(default=None, ge=1, le=10)
    energy_score: Optional[int] = Field(default=None, ge=1, le=10)
    digestion_score: Optional[int] = Field(default=None, ge=1, le=10)
    sleep_hours: Optional[float] = Field(default=None, ge=0, le=24)
    symptoms: List[str] = Field(default_factory=list)
    supplements_taken: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class SupplementItem(BaseModel):
    name: str
    dose: Optional[str] = None
    timing: Optional[str] = None


class CarePlanRequest(BaseModel):
    goals: List[str] = Field(default_factory=list)
    supplements: List[SupplementItem] = Field(default_factory=list)
    notes: Optional[str] = None


class MealPlanRequest(BaseModel):
    meals: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


@app.post("/api/check-ins", status_code=201)
def create_check_in(
    payload: CheckInRequest,
    user: Dict[str, Any] = Depends(require_roles("patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    patient = _require_patient(db, user)
    check_in_id = new_id()
    db.execute(
        insert(check_ins).values(id=check_in_id, patient_id=patient["id"], checked_in_at=utc_now(), **payload.model_dump())
    )
    db.commit()
    row = db.execute(select(check_ins).where(check_ins.c.id == check_in_id)).mappings().first()
    return row_to_dict(row)


@app.get("/api/check-ins")
def list_check_ins(
    days: int = Query(default=30, ge=1, le=365),
    patient_id: Optional[str] = None,
    user: Dict[str, Any] = Depends(require_roles("practitioner", "patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if user["role"] == "patient":
        patient = _require_patient(db, user)
    else:
        if not patient_id:
            raise HTTPException(status_code=400, detail="patient_id is required")
        patient = _patient_with_access(db, user, patient_id)
    since = utc_now() - timedelta(days=days)
    rows = db.execute(
        select(check_ins)
        .where(check_ins.c.patient_id == patient["id"])
        .where(check_ins.c.checked_in_at >= since)
        .order_by(check_ins.c.checked_in_at.desc())
    ).mappings()
    return {"check_ins": [row_to_dict(row) for row in rows]}


def _upsert_weekly_plan(db: Session, table, patient_id: str, practitioner_id: Optional[str], week: int, values: Dict[str, Any]) -> Dict[str, Any]:
    existing = db.execute(
        select(table.c.id).where(table.c.patient_id == patient_id).where(table.c.week_number == week)
    ).scalar()
    if existing:
        db.execute(update(table).where(table.c.id == existing).values(practitioner_id=practitioner_id, **values))
        plan_id = existing
    else:
        plan_id = new_id()
        db.execute(
            insert(table).values(id=plan_id, patient_id=patient_id, practitioner_id=practitioner_id, week_number=week, **values)
        )
    db.commit()
    return row_to_dict(db.execute(select(table).where(table.c.id == plan_id)).mappings().first())


def _weekly_plans(db: Session, table, patient_id: str) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(table).where(table.c.patient_id == patient_id).order_by(table.c.week_number)
    ).mappings()
    return [row_to_dict(row) for row in rows]


@app.put("/api/patients/{patient_id}/care-plans/{week}")
def upsert_care_plan(
    patient_id: str,
    week: int,
    payload: CarePlanRequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if week < 1:
        raise HTTPException(status_code=400, detail="week must be at least 1")
    patient, prac_id = _practitioner_of_patient(db, user, patient_id)
    values = {
        "goals": payload.goals,
        "supplements": [item.model_dump() for item in payload.supplements],
        "notes": payload.notes,
        "updated_at": utc_now(),
    }
    return _upsert_weekly_plan(db, care_plans, patient["id"], prac_id, week, values)


@app.get("/api/patients/{patient_id}/care-plans")
def list_care_plans(
    patient_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    patient = _patient_with_access(db, user, patient_id)
    return {"care_plans": _weekly_plans(db, care_plans, patient["id"])}


@app.put("/api/patients/{patient_id}/meal-plans/{week}")
def upsert_meal_plan(
    patient_id: str,
    week: int,
    payload: MealPlanRequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if week < 1:
        raise HTTPException(status_code=400, detail="week must be at least 1")
    patient, prac_id = _practitioner_of_patient(db, user, patient_id)
    return _upsert_weekly_plan(
        db, meal_plans, patient["id"], prac_id, week, {"meals": payload.meals, "notes": payload.notes}
    )


@app.get("/api/patients/{patient_id}/meal-plans")
def list_meal_plans(
    patient_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    patient = _patient_with_access(db, user, patient_id)
    return {"meal_plans": _weekly_plans(db, meal_plans, patient["id"])}


# ---------------------------------------------------------------------------
# Practitioner roster
# ---------------------------------------------------------------------------


def _last_check_in_subquery():
    return (
        select(check_ins.c.patient_id, func.max(check_ins.c.checked_in_at).label("last_check_in"))
        .group_by(check_ins.c.patient_id)
        .subquery()
    )


@app.get("/api/practitioner/patients")
def practitioner_patients(
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    prac = _require_practitioner(db, user)
    last = _last_check_in_subquery()
    rows = db.execute(
        select(
            patients.c.id,
            patients.c.goals,
            patients.c.programme_start,
            patients.c.programme_end,
            users.c.first_name,
            users.c.last_name,
            users.c.email,
            last.c.last_check_in,
        )
        .join(users, users.c.id == patients.c.user_id)
        .join(last, last.c.patient_id == patients.c.id, isouter=True)
        .where(patients.c.practitioner_id == prac["id"])
        .order_by(users.c.last_name, users.c.first_name)
    ).mappings()

    cutoff = utc_now() - timedelta(days=AT_RISK_DAYS)
    roster = []
    for row in rows:
        item = row_to_dict(row)
        last_at = row["last_check_in"]
        item["at_risk"] = last_at is None or ensure_utc(last_at) < cutoff
        roster.append(item)
    return {"patients": roster}


@app.get("/api/practitioner/patients/{patient_id}")
def practitioner_patient_detail(
    patient_id: str,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    patient, _ = _practitioner_of_patient(db, user, patient_id)
    patient_user = _user_by_id(db, patient["user_id"]) or {}
    recent = db.execute(
        select(check_ins)
        .where(check_ins.c.patient_id == patient_id)
        .order_by(check_ins.c.checked_in_at.desc())
        .limit(30)
    ).mappings()
    upcoming = db.execute(
        select(appointments)
        .where(appointments.c.patient_id == patient_id)
        .order_by(appointments.c.scheduled_at.desc())
        .limit(20)
    ).mappings()
    return {
        "patient": row_to_dict(patient),
        "user": _public_user(patient_user) if patient_user else None,
        "check_ins": [row_to_dict(row) for row in recent],
        "care_plans": _weekly_plans(db, care_plans, patient_id),
        "appointments": [row_to_dict(row) for row in upcoming],
    }


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageRequest(BaseModel):
    recipient_id: str
    body: str = Field(min_length=1, max_length=10000)


def _can_message(db: Session, sender: Dict[str, Any], recipient: Dict[str, Any]) -> bool:
    if "admin" in (sender["role"], recipient["role"]):
        return True
    roles = {sender["role"]: sender, recipient["role"]: recipient}
    if set(roles) != {"practitioner", "patient"}:
        return False
    prac = _practitioner_for_user(db, roles["practitioner"]["id"])
    patient = _patient_for_user(db, roles["patient"]["id"])
    return bool(prac and patient and patient["practitioner_id"] == prac["id"])


@app.post("/api/messages", status_code=201)
def send_message(
    payload: MessageRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    recipient = _user_by_id(db, payload.recipient_id)
    if not recipient:
        raise HTTPException(status_code=404, detail="Recipient not found")
    if recipient["id"] == user["id"] or not _can_message(db, user, recipient):
        raise HTTPException(status_code=403, detail="You cannot message this user")

    message_id = new_id()
    db.execute(
        insert(messages).values(
            id=message_id, sender_id=user["id"], recipient_id=recipient["id"], body=payload.body, created_at=utc_now()
        )
    )
    NotificationService(db).create(
        recipient["id"],
        f"New message from {_full_name(user) or 'Nesema'}",
        body=payload.body[:140],
        type="message",
        link="/messages",
    )
    db.commit()
    return row_to_dict(db.execute(select(messages).where(messages.c.id == message_id)).mappings().first())


@app.get("/api/messages")
def message_thread(
    with_user: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = db.execute(
        select(messages)
        .where(
            or_(
                and_(messages.c.sender_id == user["id"], messages.c.recipient_id == with_user),
                and_(messages.c.sender_id == with_user, messages.c.recipient_id == user["id"]),
            )
        )
        .order_by(messages.c.created_at)
    ).mappings()
    return {"messages": [row_to_dict(row) for row in rows]}


@app.post("/api/messages/{message_id}/read")
def read_message(
    message_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    row = db.execute(select(messages).where(messages.c.id == message_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Message not found")
    if row["recipient_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Forbidden")
    if row["read_at"] is None:
        db.execute(update(messages).where(messages.c.id == message_id).values(read_at=utc_now()))
        db.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

DOCUMENT_TYPES = ("lab_result", "intake_form", "consent", "report", "other")


def _get_document(db: Session, document_id: str) -> Dict[str, Any]:
    row = db.execute(select(documents).where(documents.c.id == document_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Document not found")
    return dict(row)


def _public_document(row: Dict[str, Any]) -> Dict[str, Any]:
    data = row_to_dict(row)
    data.pop("storage_path", None)
    return data


@app.post("/api/documents", status_code=201)
async def upload_document(
    patient_id: str = Form(...),
    title: str = Form(...),
    document_type: str = Form("other"),
    file: UploadFile = File(...),
    user: Dict[str, Any] = Depends(require_roles("practitioner", "patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if document_type not in DOCUMENT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid document_type")
    if not title.strip():
        raise HTTPException(status_code=400, detail="title is required")
    patient = _patient_with_access(db, user, patient_id)
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="File is empty")

    document_id = new_id()
    storage_path = document_store.store_document(patient["id"], document_id, file.filename or title, data)
    is_lab = document_type == "lab_result"
    db.execute(
        insert(documents).values(
            id=document_id,
            patient_id=patient["id"],
            practitioner_id=patient["practitioner_id"],
            uploaded_by=user["id"],
            document_type=document_type,
            title=title.strip(),
            storage_path=storage_path,
            content_type=file.content_type or "application/octet-stream",
            size_bytes=len(data),
            is_lab_result=is_lab,
            requires_pin=False,
            created_at=utc_now(),
        )
    )
    db.commit()
    return _public_document(_get_document(db, document_id))


@app.get("/api/documents")
def list_documents(
    patient_id: Optional[str] = None,
    user: Dict[str, Any] = Depends(require_roles("practitioner", "patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if user["role"] == "patient":
        patient = _require_patient(db, user)
    else:
        if not patient_id:
            raise HTTPException(status_code=400, detail="patient_id is required")
        patient = _patient_with_access(db, user, patient_id)
    rows = db.execute(
        select(documents).where(documents.c.patient_id == patient["id"]).order_by(documents.c.created_at.desc())
    ).mappings()
    return {"documents": [_public_document(dict(row)) for row in rows]}


def _content_disposition(title: Optional[str]) -> str:
    """Build an ``inline`` header safe for latin-1 with the UTF-8 name in ``filename*``."""

    name = title or "document"
    fallback = re.sub(r'[^\x20-\x7e]|["\\]', "_", name).strip() or "document"
    return f"inline; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


@app.get("/api/documents/download", response_model=None)
def download_document(token: str, db: Session = Depends(get_db)) -> Response:
    try:
        document_id = document_store.document_id_from_token(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired link")
    doc = _get_document(db, document_id)
    try:
        content = document_store.load_document(doc["storage_path"])
    except (OSError, ValueError):
        logger.warning("document_read_failed", document_id=document_id, exc_info=True)
        raise HTTPException(status_code=404, detail="Document not found")
    return Response(
        content=content,
        media_type=doc["content_type"] or "application/octet-stream",
        headers={"Content-Disposition": _content_disposition(doc["title"])},
    )


@app.post("/api/documents/{document_id}/signed-url")
def document_signed_url(
    document_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    doc = _get_document(db, document_id)
    _patient_with_access(db, user, doc["patient_id"])
    return document_store.signed_url(document_id)


# ---------------------------------------------------------------------------
# Education
# ---------------------------------------------------------------------------


class EducationRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    content_type: Literal["article", "video", "guide", "recipe"] = "article"
    body: Optional[str] = None
    url: Optional[str] = None


class AssignRequest(BaseModel):
    patient_id: str


@app.post("/api/education", status_code=201)
def create_education(
    payload: EducationRequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    prac_id = None if user["role"] == "admin" else _require_practitioner(db, user)["id"]
    content_id = new_id()
    db.execute(
        insert(education_content).values(id=content_id, practitioner_id=prac_id, created_at=utc_now(), **payload.model_dump())
    )
    db.commit()
    return row_to_dict(
        db.execute(select(education_content).where(education_content.c.id == content_id)).mappings().first()
    )


@app.get("/api/education")
def list_education(
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    query = select(education_content).order_by(education_content.c.created_at.desc())
    if user["role"] != "admin":
        prac = _require_practitioner(db, user)
        query = query.where(
            or_(education_content.c.practitioner_id == prac["id"], education_content.c.practitioner_id.is_(None))
        )
    return {"content": [row_to_dict(row) for row in db.execute(query).mappings()]}


@app.post("/api/education/{content_id}/assign", status_code=201)
def assign_education(
    content_id: str,
    payload: AssignRequest,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    content = db.execute(select(education_content).where(education_content.c.id == content_id)).mappings().first()
    if not content:
        raise HTTPException(status_code=404, detail="Content not found")
    patient, prac_id = _practitioner_of_patient(db, user, payload.patient_id)
    if content["practitioner_id"] not in (None, prac_id):
        raise HTTPException(status_code=403, detail="Forbidden")

    assignment_id = new_id()
    db.execute(
        insert(education_assignments).values(
            id=assignment_id, content_id=content_id, patient_id=patient["id"], assigned_by=user["id"], created_at=utc_now()
        )
    )
    NotificationService(db).create(
        patient["user_id"],
        "New resource from your practitioner",
        body=content["title"],
        type="education",
        link="/patient/education",
    )
    db.commit()
    return {"id": assignment_id, "content_id": content_id, "patient_id": patient["id"]}


@app.get("/api/education/assigned")
def assigned_education(
    user: Dict[str, Any] = Depends(require_roles("patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    patient = _require_patient(db, user)
    rows = db.execute(
        select(
            education_assignments.c.id,
            education_assignments.c.completed_at,
            education_assignments.c.created_at,
            education_content.c.id.label("content_id"),
            education_content.c.title,
            education_content.c.content_type,
            education_content.c.body,
            education_content.c.url,
        )
        .join(education_content, education_content.c.id == education_assignments.c.content_id)
        .where(education_assignments.c.patient_id == patient["id"])
        .order_by(education_assignments.c.created_at.desc())
    ).mappings()
    return {"assignments": [row_to_dict(row) for row in rows]}


@app.post("/api/education/assignments/{assignment_id}/complete")
def complete_education(
    assignment_id: str,
    user: Dict[str, Any] = Depends(require_roles("patient")),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    patient = _require_patient(db, user)
    result = db.execute(
        update(education_assignments)
        .where(education_assignments.c.id == assignment_id)
        .where(education_assignments.c.patient_id == patient["id"])
        .values(completed_at=utc_now())
    )
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Assignment not found")
    db.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


class PractitionerOnboardingRequest(BaseModel):
    practice_name: Optional[str] = None
    discipline: Optional[str] = None
    registration_body: Optional[str] = None
    registration_number: Optional[str] = None
    years_of_practice: Optional[int] = Field(default=None, ge=0)
    bio: Optional[str] = None
    initial_fee: Optional[int] = Field(default=None, ge=0)
    followup_fee: Optional[int] = Field(default=None, ge=0)
    session_length_mins: Optional[int] = Field(default=None, gt=0, le=480)


class PatientOnboardingRequest(BaseModel):
    goals: List[str] = Field(default_factory=list)
    motivation_level: Optional[Literal["exploring", "ready", "all_in"]] = None
    diet_type: Optional[str] = None
    date_of_birth: Optional[date] = None
    health_conditions: Optional[str] = None
    medications: Optional[str] = None
    allergies: Optional[str] = None
    programme_weeks: int = Field(default=12, ge=1, le=104)


@app.post("/api/onboarding/practitioner/complete")
def complete_practitioner_onboarding(
    payload: PractitionerOnboardingRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_roles("practitioner")),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    prac = _practitioner_for_user(db, user["id"])
    if not prac:
        raise HTTPException(status_code=404, detail="Practitioner not found")
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "discipline" in changes:
        known = db.execute(
            select(practitioner_types.c.id)
            .where(practitioner_types.c.name == changes["discipline"])
            .where(practitioner_types.c.is_active.is_(True))
        ).first()
        if not known:
            raise HTTPException(status_code=400, detail="Unknown discipline")
    if changes:
        db.execute(update(practitioners).where(practitioners.c.id == prac["id"]).values(**changes))
    db.commit()
    _queue_sync(background_tasks, crm_sync.sync_practitioner_signup, prac["id"])
    return {"ok": True}


@app.post("/api/onboarding/patient/complete")
def complete_patient_onboarding(
    payload: PatientOnboardingRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_roles("patient")),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    patient = _patient_for_user(db, user["id"])
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    start = utc_now().date()
    values = payload.model_dump()
    values.update(programme_start=start, programme_end=start + timedelta(weeks=payload.programme_weeks))
    db.execute(update(patients).where(patients.c.id == patient["id"]).values(**values))
    db.commit()
    _queue_sync(background_tasks, crm_sync.sync_patient_signup, patient["id"])

    if patient["practitioner_id"]:
        prac = _get_practitioner(db, patient["practitioner_id"])
        if prac:
            prac_name = crm_sync.practitioner_display_name(db, prac, "your practitioner")
            background_tasks.add_task(
                email_service.send_patient_welcome,
                user["email"],
                user["first_name"],
                prac_name,
                prac["booking_slug"],
            )
    return {"ok": True}


@app.get("/api/practitioner-types")
def public_practitioner_types(db: Session = Depends(get_db)) -> Dict[str, Any]:
    rows = db.execute(
        select(practitioner_types.c.id, practitioner_types.c.name)
        .where(practitioner_types.c.is_active.is_(True))
        .order_by(practitioner_types.c.sort_order, practitioner_types.c.name)
    ).mappings()
    return {"types": [dict(row) for row in rows]}


# ---------------------------------------------------------------------------
# Admin console
# ---------------------------------------------------------------------------


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ReassignRequest(BaseModel):
    practitionerId: Optional[str] = None


class MatchRequest(BaseModel):
    patientId: Optional[str] = None
    practitionerId: Optional[str] = None


class DiscountCodeRequest(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    applies_to: Literal["all", "initial", "followup"] = "all"
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class ReferralCodeRequest(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    referrer_reward_type: str = "none"
    referrer_reward_value: float = 0
    referee_reward_type: str = "none"
    referee_reward_value: float = 0
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_until: Optional[datetime] = None


class ToggleRequest(BaseModel):
    is_active: bool = False


class PractitionerTypeRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    sort_order: Optional[int] = None


class SettingsRequest(BaseModel):
    allow_practitioner_signup: Optional[bool] = None
    allow_patient_signup: Optional[bool] = None
    maintenance_mode: Optional[bool] = None


class RetryRequest(BaseModel):
    logId: Optional[str] = None


def _admin_practitioner(db: Session, practitioner_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    prac = _get_practitioner(db, practitioner_id)
    if not prac:
        raise HTTPException(status_code=404, detail="Practitioner not found")
    return prac, _user_by_id(db, prac["user_id"]) or {}


def _admin_patient(db: Session, patient_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    patient = _get_patient(db, patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient, _user_by_id(db, patient["user_id"]) or {}


def _set_suspended(db: Session, user_id: str, suspended: bool) -> None:
    db.execute(update(users).where(users.c.id == user_id).values(suspended=suspended, updated_at=utc_now()))


def _email_later(background_tasks: BackgroundTasks, fn: Callable[..., Any], user: Dict[str, Any], *args: Any) -> None:
    if user.get("email"):
        background_tasks.add_task(fn, user["email"], user.get("first_name") or "there", *args)


@app.get("/api/admin/practitioners")
def admin_list_practitioners(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    query = (
        select(practitioners, users.c.email, users.c.first_name, users.c.last_name, users.c.suspended)
        .join(users, users.c.id == practitioners.c.user_id)
        .order_by(practitioners.c.created_at.desc())
    )
    if status_filter:
        query = query.where(practitioners.c.verification_status == status_filter)
    return {"practitioners": [row_to_dict(row) for row in db.execute(query).mappings()]}


@app.post("/api/admin/practitioners/{practitioner_id}/verify")
def admin_verify_practitioner(
    practitioner_id: str,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    prac, prac_user = _admin_practitioner(db, practitioner_id)
    db.execute(
        update(practitioners)
        .where(practitioners.c.id == practitioner_id)
        .values(verification_status="verified", is_live=True, rejection_reason=None)
    )
    audit_log(db, admin["id"], "verify", "practitioner", practitioner_id)
    db.commit()
    _email_later(background_tasks, email_service.send_practitioner_verified, prac_user)
    _queue_sync(background_tasks, crm_sync.sync_practitioner_verified, practitioner_id)
    return {"ok": True}


@app.post("/api/admin/practitioners/{practitioner_id}/reject")
def admin_reject_practitioner(
    practitioner_id: str,
    payload: ReasonRequest,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    reason = (payload.reason or "").strip()
    if not reason:
        raise HTTPException(status_code=400, detail="Reason is required")
    prac, prac_user = _admin_practitioner(db, practitioner_id)
    db.execute(
        update(practitioners)
        .where(practitioners.c.id == practitioner_id)
        .values(verification_status="rejected", rejection_reason=reason, is_live=False)
    )
    audit_log(db, admin["id"], "reject", "practitioner", practitioner_id, {"reason": reason})
    db.commit()
    _email_later(background_tasks, email_service.send_practitioner_rejected, prac_user, reason)
    _queue_sync(background_tasks, crm_sync.sync_practitioner_rejected, practitioner_id, reason)
    return {"ok": True}


@app.post("/api/admin/practitioners/{practitioner_id}/suspend")
def admin_suspend_practitioner(
    practitioner_id: str,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    prac, prac_user = _admin_practitioner(db, practitioner_id)
    db.execute(update(practitioners).where(practitioners.c.id == practitioner_id).values(is_live=False))
    _set_suspended(db, prac["user_id"], True)
    audit_log(db, admin["id"], "suspend", "practitioner", practitioner_id)
    db.commit()
    _email_later(background_tasks, email_service.send_account_suspended, prac_user, "practitioner")
    return {"ok": True}


@app.post("/api/admin/practitioners/{practitioner_id}/reinstate")
def admin_reinstate_practitioner(
    practitioner_id: str,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    prac, prac_user = _admin_practitioner(db, practitioner_id)
    _set_suspended(db, prac["user_id"], False)
    if prac["verification_status"] == "verified":
        db.execute(update(practitioners).where(practitioners.c.id == practitioner_id).values(is_live=True))
    audit_log(db, admin["id"], "reinstate", "practitioner", practitioner_id)
    db.commit()
    _email_later(background_tasks, email_service.send_account_reinstated, prac_user, "practitioner")
    return {"ok": True}


@app.get("/api/admin/patients")
def admin_list_patients(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = db.execute(
        select(
            patients.c.id,
            patients.c.user_id,
            patients.c.practitioner_id,
            patients.c.programme_start,
            patients.c.programme_end,
            patients.c.created_at,
            users.c.email,
            users.c.first_name,
            users.c.last_name,
            users.c.suspended,
        )
        .join(users, users.c.id == patients.c.user_id)
        .order_by(patients.c.created_at.desc())
    ).mappings()
    return {"patients": [row_to_dict(row) for row in rows]}


@app.post("/api/admin/patients/{patient_id}/suspend")
def admin_suspend_patient(
    patient_id: str,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    patient, patient_user = _admin_patient(db, patient_id)
    _set_suspended(db, patient["user_id"], True)
    audit_log(db, admin["id"], "suspend", "patient", patient_id)
    db.commit()
    _email_later(background_tasks, email_service.send_account_suspended, patient_user, "patient")
    return {"ok": True}


@app.post("/api/admin/patients/{patient_id}/reinstate")
def admin_reinstate_patient(
    patient_id: str,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    patient, patient_user = _admin_patient(db, patient_id)
    _set_suspended(db, patient["user_id"], False)
    audit_log(db, admin["id"], "reinstate", "patient", patient_id)
    db.commit()
    _email_later(background_tasks, email_service.send_account_reinstated, patient_user, "patient")
    return {"ok": True}


@app.post("/api/admin/patients/{patient_id}/reassign")
def admin_reassign_patient(
    patient_id: str,
    payload: ReassignRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    if not payload.practitionerId:
        raise HTTPException(status_code=400, detail="practitionerId is required")
    patient, _ = _admin_patient(db, patient_id)
    _admin_practitioner(db, payload.practitionerId)
    db.execute(update(patients).where(patients.c.id == patient_id).values(practitioner_id=payload.practitionerId))
    audit_log(
        db,
        admin["id"],
        "reassign",
        "patient",
        patient_id,
        {"previous_practitioner_id": patient["practitioner_id"], "new_practitioner_id": payload.practitionerId},
    )
    db.commit()
    return {"ok": True}


@app.post("/api/admin/patients/{patient_id}/delete")
def admin_delete_patient(
    patient_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    patient, patient_user = _admin_patient(db, patient_id)
    audit_log(db, admin["id"], "delete", "patient", patient_id, {"email": patient_user.get("email")})
    db.commit()
    # The churn flow needs the patient row, so it runs before the delete.
    _queue_sync(None, crm_sync.sync_patient_churned, patient_id)
    accounts.delete_user(db, patient["user_id"])
    db.commit()
    return {"ok": True}


@app.get("/api/admin/appointments")
def admin_list_appointments(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    query = select(appointments).order_by(appointments.c.scheduled_at.desc())
    if status_filter:
        query = query.where(appointments.c.status == status_filter)
    return {"appointments": [row_to_dict(row) for row in db.execute(query).mappings()]}


@app.post("/api/admin/appointments/{appointment_id}/cancel")
def admin_cancel_appointment(
    appointment_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    appt = _get_appointment(db, appointment_id)
    db.execute(update(appointments).where(appointments.c.id == appointment_id).values(status="cancelled"))
    audit_log(db, admin["id"], "cancel", "appointment", appointment_id, {"previous_status": appt["status"]})
    db.commit()
    return {"ok": True}


@app.get("/api/admin/payments")
def admin_payments(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = [
        row_to_dict(row)
        for row in db.execute(
            select(
                appointments.c.id,
                appointments.c.practitioner_id,
                appointments.c.patient_id,
                appointments.c.appointment_type,
                appointments.c.scheduled_at,
                appointments.c.amount_pence,
                appointments.c.discount_code_id,
                appointments.c.stripe_payment_id,
            )
            .where(appointments.c.status == "completed")
            .order_by(appointments.c.scheduled_at.desc())
        ).mappings()
    ]
    total = sum(row["amount_pence"] or 0 for row in rows)
    return {"payments": rows, "total_revenue_pence": total}


@app.post("/api/admin/content/{content_id}/delete")
def admin_delete_content(
    content_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    title = db.execute(select(education_content.c.title).where(education_content.c.id == content_id)).scalar()
    if title is None:
        raise HTTPException(status_code=404, detail="Content not found")
    db.execute(delete(education_assignments).where(education_assignments.c.content_id == content_id))
    db.execute(delete(education_content).where(education_content.c.id == content_id))
    audit_log(db, admin["id"], "delete_content", "education_content", content_id, {"title": title})
    db.commit()
    return {"ok": True}


@app.post("/api/admin/documents/{document_id}/delete")
def admin_delete_document(
    document_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    doc = _get_document(db, document_id)
    db.execute(delete(documents).where(documents.c.id == document_id))
    audit_log(db, admin["id"], "delete_document", "document", document_id, {"title": doc["title"]})
    db.commit()
    if doc["storage_path"]:
        document_store.delete_document(doc["storage_path"])
    return {"ok": True}


@app.post("/api/admin/documents/{document_id}/signed-url")
def admin_document_signed_url(
    document_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    _get_document(db, document_id)
    return document_store.signed_url(document_id)


# Discount and referral codes


@app.get("/api/admin/discount-codes")
def admin_list_discount_codes(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = db.execute(select(discount_codes).order_by(discount_codes.c.created_at.desc())).mappings()
    return {"codes": [row_to_dict(row) for row in rows]}


@app.post("/api/admin/discount-codes", status_code=201)
def admin_create_discount_code(
    payload: DiscountCodeRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    code = (payload.code or "").strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail="Code is required")
    if payload.discount_type not in ("percentage", "fixed"):
        raise HTTPException(status_code=400, detail="discount_type must be percentage or fixed")
    if payload.discount_value is None or payload.discount_value <= 0:
        raise HTTPException(status_code=400, detail="discount_value must be greater than 0")
    if payload.discount_type == "percentage" and payload.discount_value > 100:
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100")
    if db.execute(select(discount_codes.c.id).where(discount_codes.c.code == code)).first():
        raise HTTPException(status_code=409, detail="A discount code with this code already exists")

    code_id = new_id()
    values = payload.model_dump(exclude={"code"}, exclude_none=True)
    db.execute(
        insert(discount_codes).values(
            id=code_id, code=code, uses_count=0, is_active=True, created_by=admin["id"], created_at=utc_now(), **values
        )
    )
    audit_log(db, admin["id"], "discount_code_created", "discount_code", code_id, {"code": code})
    db.commit()
    row = db.execute(select(discount_codes).where(discount_codes.c.id == code_id)).mappings().first()
    return {"code": row_to_dict(row)}


@app.patch("/api/admin/discount-codes/{code_id}")
def admin_toggle_discount_code(
    code_id: str,
    payload: ToggleRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    result = db.execute(
        update(discount_codes).where(discount_codes.c.id == code_id).values(is_active=payload.is_active)
    )
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Not found")
    action = "discount_code_enabled" if payload.is_active else "discount_code_disabled"
    audit_log(db, admin["id"], action, "discount_code", code_id)
    db.commit()
    return {"ok": True}


@app.delete("/api/admin/discount-codes/{code_id}")
def admin_delete_discount_code(
    code_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    code = db.execute(select(discount_codes.c.code).where(discount_codes.c.id == code_id)).scalar()
    if code is None:
        raise HTTPException(status_code=404, detail="Not found")
    db.execute(delete(discount_codes).where(discount_codes.c.id == code_id))
    audit_log(db, admin["id"], "discount_code_deleted", "discount_code", code_id, {"code": code})
    db.commit()
    return {"ok": True}


@app.get("/api/admin/referral-codes")
def admin_list_referral_codes(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = db.execute(select(referral_codes).order_by(referral_codes.c.created_at.desc())).mappings()
    return {"codes": [row_to_dict(row) for row in rows]}


@app.post("/api/admin/referral-codes", status_code=201)
def admin_create_referral_code(
    payload: ReferralCodeRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    code = (payload.code or "").strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail="Code is required")
    if db.execute(select(referral_codes.c.id).where(referral_codes.c.code == code)).first():
        raise HTTPException(status_code=409, detail="A referral code with this code already exists")

    code_id = new_id()
    db.execute(
        insert(referral_codes).values(
            id=code_id,
            code=code,
            uses_count=0,
            is_active=True,
            created_by=admin["id"],
            created_at=utc_now(),
            **payload.model_dump(exclude={"code"}),
        )
    )
    audit_log(db, admin["id"], "referral_code_created", "referral_code", code_id, {"code": code})
    db.commit()
    row = db.execute(select(referral_codes).where(referral_codes.c.id == code_id)).mappings().first()
    return {"code": row_to_dict(row)}


# Practitioner types


@app.get("/api/admin/practitioner-types")
def admin_list_practitioner_types(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = db.execute(
        select(practitioner_types).order_by(practitioner_types.c.sort_order, practitioner_types.c.name)
    ).mappings()
    return {"types": [row_to_dict(row) for row in rows]}


@app.post("/api/admin/practitioner-types", status_code=201)
def admin_create_practitioner_type(
    payload: PractitionerTypeRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    if db.execute(select(practitioner_types.c.id).where(practitioner_types.c.name == name)).first():
        raise HTTPException(status_code=409, detail="A type with this name already exists")
    sort_order = payload.sort_order
    if sort_order is None:
        current = db.execute(select(func.max(practitioner_types.c.sort_order))).scalar()
        sort_order = (current or 0) + 1

    type_id = new_id()
    db.execute(
        insert(practitioner_types).values(
            id=type_id, name=name, sort_order=sort_order, is_active=True, created_by=admin["id"], created_at=utc_now()
        )
    )
    audit_log(db, admin["id"], "practitioner_type_created", "practitioner_type", type_id, {"name": name})
    db.commit()
    row = db.execute(select(practitioner_types).where(practitioner_types.c.id == type_id)).mappings().first()
    return {"type": row_to_dict(row)}


@app.patch("/api/admin/practitioner-types/{type_id}")
def admin_toggle_practitioner_type(
    type_id: str,
    payload: ToggleRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    result = db.execute(
        update(practitioner_types).where(practitioner_types.c.id == type_id).values(is_active=payload.is_active)
    )
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Not found")
    action = "practitioner_type_enabled" if payload.is_active else "practitioner_type_disabled"
    audit_log(db, admin["id"], action, "practitioner_type", type_id)
    db.commit()
    return {"ok": True}


@app.delete("/api/admin/practitioner-types/{type_id}")
def admin_delete_practitioner_type(
    type_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    name = db.execute(select(practitioner_types.c.name).where(practitioner_types.c.id == type_id)).scalar()
    if name is None:
        raise HTTPException(status_code=404, detail="Not found")
    in_use = db.execute(
        select(func.count()).select_from(practitioners).where(practitioners.c.discipline == name)
    ).scalar_one()
    if in_use:
        db.execute(update(practitioner_types).where(practitioner_types.c.id == type_id).values(is_active=False))
        audit_log(db, admin["id"], "practitioner_type_deactivated", "practitioner_type", type_id, {"name": name, "in_use": in_use})
        db.commit()
        return {
            "ok": True,
            "deactivated": True,
            "message": (
                f"{name} is used by {in_use} practitioner(s). "
                "It has been hidden from the sign-up form rather than deleted."
            ),
        }
    db.execute(delete(practitioner_types).where(practitioner_types.c.id == type_id))
    audit_log(db, admin["id"], "practitioner_type_deleted", "practitioner_type", type_id, {"name": name})
    db.commit()
    return {"ok": True, "deleted": True}


# Settings, matching and audit


@app.get("/api/admin/settings")
def admin_get_settings(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return row_to_dict(_platform_settings(db))


@app.post("/api/admin/settings")
def admin_update_settings(
    payload: SettingsRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    current = _platform_settings(db)
    changes = payload.model_dump(exclude_none=True)
    values = {key: changes.get(key, current[key]) for key in _SETTINGS_DEFAULTS}
    values.update(updated_at=utc_now(), updated_by=admin["id"])
    if current["id"]:
        db.execute(update(platform_settings).where(platform_settings.c.id == current["id"]).values(**values))
    else:
        db.execute(insert(platform_settings).values(id=new_id(), **values))
    audit_log(db, admin["id"], "settings_update", "platform_settings", current["id"] or "new", changes)
    db.commit()
    return row_to_dict(_platform_settings(db))


@app.post("/api/admin/matching/assign")
def admin_match_patient(
    payload: MatchRequest,
    background_tasks: BackgroundTasks,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    if not payload.patientId or not payload.practitionerId:
        raise HTTPException(status_code=400, detail="patientId and practitionerId are required")
    patient, _ = _admin_patient(db, payload.patientId)
    prac, _ = _admin_practitioner(db, payload.practitionerId)

    db.execute(update(patients).where(patients.c.id == patient["id"]).values(practitioner_id=prac["id"]))
    audit_log(db, admin["id"], "assign", "patient", patient["id"], {"practitionerId": prac["id"]})
    prac_name = crm_sync.practitioner_display_name(db, prac, "your practitioner")
    NotificationService(db).create(
        patient["user_id"],
        "You've been matched",
        body=f"You've been matched with {prac_name}.",
        type="match",
        link="/patient",
    )
    db.commit()
    _queue_sync(background_tasks, crm_sync.sync_patient_matched, patient["id"], prac["id"])
    _queue_sync(background_tasks, crm_sync.send_matched_sms, patient["id"])
    return {"ok": True}


@app.get("/api/admin/audit-log")
def admin_list_audit_log(
    limit: int = Query(default=100, ge=1, le=500),
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"entries": list_audit_log(db, limit)}


@app.get("/api/admin/overview")
def admin_overview(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    by_status = {
        row.verification_status: row.total
        for row in db.execute(
            select(practitioners.c.verification_status, func.count().label("total")).group_by(
                practitioners.c.verification_status
            )
        )
    }
    patient_total = db.execute(select(func.count()).select_from(patients)).scalar_one()
    active_total = db.execute(
        select(func.count()).select_from(patients).where(patients.c.practitioner_id.is_not(None))
    ).scalar_one()
    scheduled = db.execute(
        select(func.count()).select_from(appointments).where(appointments.c.status == "scheduled")
    ).scalar_one()
    revenue = db.execute(
        select(func.coalesce(func.sum(appointments.c.amount_pence), 0)).where(appointments.c.status == "completed")
    ).scalar_one()
    return {
        "practitioners": {
            "total": sum(by_status.values()),
            "pending": by_status.get("pending", 0),
            "verified": by_status.get("verified", 0),
            "rejected": by_status.get("rejected", 0),
        },
        "patients": {"total": patient_total, "active": active_total},
        "appointments": {"scheduled": scheduled},
        "revenue_pence": int(revenue or 0),
    }


# CRM


@app.get("/api/admin/crm/log")
def admin_crm_log(
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = db.execute(select(crm_sync_log).order_by(crm_sync_log.c.created_at.desc()).limit(50)).mappings()
    return {"rows": [row_to_dict(row) for row in rows]}


@app.post("/api/admin/crm/retry")
def admin_crm_retry(
    payload: RetryRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    if not payload.logId:
        raise HTTPException(status_code=400, detail="logId required")
    row = db.execute(select(crm_sync_log).where(crm_sync_log.c.id == payload.logId)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Log entry not found")
    try:
        ok = crm_sync.retry_sync(db, dict(row))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        db.rollback()
        logger.exception("crm_retry_failed", log_id=payload.logId)
        raise HTTPException(status_code=500, detail="Retry failed")
    audit_log(db, admin["id"], "crm_retry", "crm_sync_log", payload.logId, {"event_type": row["event_type"]})
    db.commit()
    return {"ok": bool(ok)}


def _ndjson_sync(role_table, flow: Callable[..., bool]) -> StreamingResponse:
    """Stream progress lines while running *flow* for every unsynced user of a role."""

    def generate() -> Iterator[str]:
        with session_scope() as session:
            ids = list(
                session.execute(
                    select(role_table.c.id)
                    .join(users, users.c.id == role_table.c.user_id)
                    .where(users.c.crm_contact_id.is_(None))
                    .order_by(role_table.c.created_at)
                ).scalars()
            )
            total = len(ids)
            yield json.dumps({"total": total}) + "\n"
            synced = 0
            for index, record_id in enumerate(ids, start=1):
                if flow(session, record_id):
                    synced += 1
                session.commit()
                yield json.dumps({"done": index, "total": total}) + "\n"
            yield json.dumps({"complete": True, "synced": synced}) + "\n"

    return StreamingResponse(generate(), media_type="application/x-ndjson")


@app.post("/api/admin/crm/sync-patients", response_class=StreamingResponse)
def admin_crm_sync_patients(admin: Dict[str, Any] = Depends(require_admin)) -> StreamingResponse:
    return _ndjson_sync(patients, crm_sync.sync_patient_signup)


@app.post("/api/admin/crm/sync-practitioners", response_class=StreamingResponse)
def admin_crm_sync_practitioners(admin: Dict[str, Any] = Depends(require_admin)) -> StreamingResponse:
    return _ndjson_sync(practitioners, crm_sync.sync_practitioner_signup)


@app.post("/api/admin/crm/test")
def admin_crm_test(admin: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    return crm_client.test_connection()


def _bearer_matches(request: Request, secret: Optional[str]) -> bool:
    if not secret:
        return False
    header = request.headers.get("authorization") or ""
    return secrets.compare_digest(header, f"Bearer {secret}")


@app.post("/api/admin/seed")
def admin_seed(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    settings = get_settings()
    if not _bearer_matches(request, settings.seed_secret):
        raise HTTPException(status_code=403, detail="Forbidden")
    if not settings.admin_email or not settings.admin_password:
        raise HTTPException(status_code=400, detail="ADMIN_EMAIL and ADMIN_PASSWORD env vars are required")
    try:
        return accounts.seed_admin(db, settings.admin_email, settings.admin_password)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# Account and cron
# ---------------------------------------------------------------------------


@app.post("/api/account/delete")
def delete_account(
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, bool]:
    if user["role"] == "patient":
        patient = _patient_for_user(db, user["id"])
        if patient:
            _queue_sync(None, crm_sync.sync_patient_churned, patient["id"])
    accounts.delete_user(db, user["id"])
    db.commit()
    unbind_contextvars("user_id")
    return {"success": True}


@app.api_route("/api/cron/{job}", methods=["GET", "POST"])
def run_cron_job(job: str, request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    if not _bearer_matches(request, get_settings().cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
    handler = CRON_JOBS.get(job)
    if handler is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    return handler(db, utc_now())
