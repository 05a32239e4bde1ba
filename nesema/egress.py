"""Hardened HTTP egress helpers enforcing TLS verification and allowlists."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse
import os

import requests
from prometheus_client import Counter

from nesema.observability import _get_or_create_metric


EGRESS_FAILURES = _get_or_create_metric(
    Counter,
    "nesema_egress_failures_total",
    "Outbound HTTP calls blocked or failed security checks",
    ("reason",),
)

DEFAULT_ALLOWED_HOSTS = frozenset(
    {
        "services.leadconnectorhq.com",
        "api.resend.com",
        "api.daily.co",
        "world.openfoodfacts.org",
        "api.openai.com",
        "localhost",
        "127.0.0.1",
    }
)


class EgressError(RuntimeError):
    """Raised when an outbound request targets a host outside the allowlist."""


def _allowed_hosts() -> set[str]:
    raw = os.getenv("ALLOWED_EGRESS_HOSTS")
    if raw:
        return {host.strip().lower() for host in raw.split(",") if host.strip()}
    return set(DEFAULT_ALLOWED_HOSTS)


def _verify_host(url: str) -> None:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    allowed = _allowed_hosts()
    if allowed and host not in allowed:
        EGRESS_FAILURES.labels(reason="disallowed_host").inc()
        raise EgressError(f"Egress to host '{host}' is not permitted")


def secure_request(method: str, url: str, **kwargs: Any) -> requests.Response:
    """Dispatch a HTTP request enforcing TLS verification and allowlists.

    Pass ``raise_for_status=False`` to receive non-2xx responses instead of
    an :class:`requests.HTTPError`.
    """

    _verify_host(url)
    check_status = kwargs.pop("raise_for_status", True)
    kwargs.setdefault("timeout", 10)
    kwargs.setdefault("verify", True)
    try:
        response = requests.request(method=method, url=url, **kwargs)
        if check_status:
            response.raise_for_status()
        return response
    except requests.exceptions.SSLError:
        EGRESS_FAILURES.labels(reason="tls_failure").inc()
        raise
    except requests.exceptions.HTTPError:
        EGRESS_FAILURES.labels(reason="http_status").inc()
        raise
    except requests.exceptions.RequestException:
        EGRESS_FAILURES.labels(reason="network_failure").inc()
        raise


def secure_get(url: str, **kwargs: Any) -> requests.Response:
    return secure_request("GET", url, **kwargs)


def secure_post(url: str, **kwargs: Any) -> requests.Response:
    return secure_request("POST", url, **kwargs)


__all__ = ["secure_get", "secure_post", "secure_request", "EgressError", "EGRESS_FAILURES"]
