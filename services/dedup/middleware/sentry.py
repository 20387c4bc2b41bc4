"""
Sentry instrumentation for the venue review service.
Server-side only. Scrubs credentials and the reviewer header before events leave the process.
"""

from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from services.dedup.config import settings

SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie", "x-admin-user-id"}

# Expected outcomes that the API already turns into 4xx responses
_IGNORED_ERRORS = ("VenueNotFoundError", "SourceNotFoundError", "MergeConflictError", "InvalidPairError")


def _scrub_headers(headers: Any) -> None:
    if isinstance(headers, dict):
        for key in list(headers.keys()):
            if key.lower() in SENSITIVE_HEADERS:
                headers[key] = "[FILTERED]"


def _strip_sensitive_data(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """before_send hook: drop handled domain errors, scrub headers in breadcrumbs and request."""
    exc_info = hint.get("exc_info") if hint else None
    if exc_info and type(exc_info[1]).__name__ in _IGNORED_ERRORS:
        return None

    for breadcrumb in event.get("breadcrumbs", {}).get("values", []):
        data = breadcrumb.get("data", {})
        if isinstance(data, dict):
            _scrub_headers(data.get("headers"))

    request = event.get("request", {})
    if isinstance(request, dict):
        _scrub_headers(request.get("headers"))
    return event


def setup_sentry() -> None:
    if not settings.sentry_dsn:
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        before_send=_strip_sensitive_data,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        send_default_pii=False,
    )
