"""Logging configuration, request trace ids and Prometheus metrics."""

from __future__ import annotations

import logging
import re
from contextvars import ContextVar

import structlog
from prometheus_client import REGISTRY, Counter, Histogram


_TRACE_ID_CTX: ContextVar[str | None] = ContextVar("trace_id", default=None)
_CONFIGURED = False


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging and structlog JSON output once per process."""

    global _CONFIGURED
    if _CONFIGURED:
        return
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def current_trace_id() -> str | None:
    """Return the trace identifier bound to the current request context."""

    return _TRACE_ID_CTX.get()


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "nesema_http_requests_total",
    "Total HTTP requests processed by the API",
    ("method", "path", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "nesema_http_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "path"),
)
AI_REQUESTS = _get_or_create_metric(
    Counter,
    "nesema_ai_requests_total",
    "AI assistant requests by feature and outcome",
    ("feature", "outcome"),
)
CRM_CALLS = _get_or_create_metric(
    Counter,
    "nesema_crm_calls_total",
    "Outbound CRM API calls",
    ("event_type", "success"),
)
EMAILS_SENT = _get_or_create_metric(
    Counter,
    "nesema_emails_total",
    "Transactional e-mails attempted",
    ("template", "success"),
)
CRON_RUNS = _get_or_create_metric(
    Counter,
    "nesema_cron_runs_total",
    "Scheduled job executions",
    ("job", "outcome"),
)


_PATH_PARAM_RE = re.compile(
    r"/(?:[0-9]+|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})(?=/|$)"
)


def normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    return _PATH_PARAM_RE.sub("/{id}", path)


__all__ = [
    "configure_logging",
    "current_trace_id",
    "normalise_path_for_metrics",
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "AI_REQUESTS",
    "CRM_CALLS",
    "EMAILS_SENT",
    "CRON_RUNS",
]
