"""
Sentry instrumentation for the registry service and ingestion CLI.
Strips credentials from breadcrumbs and request data: provider API keys
travel in headers and query strings.
"""

from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from services.registry.config import Settings, settings as default_settings

SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie"}
SENSITIVE_PARAMS = ("apikey=", "access_token=", "token=")


def _filter_headers(headers: Any) -> None:
    if isinstance(headers, dict):
        for key in list(headers.keys()):
            if key.lower() in SENSITIVE_HEADERS:
                headers[key] = "[FILTERED]"


def _filter_url(url: Any) -> Any:
    if not isinstance(url, str) or "?" not in url:
        return url
    base, query = url.split("?", 1)
    parts = [
        p.split("=", 1)[0] + "=[FILTERED]" if p.lower().startswith(SENSITIVE_PARAMS) else p
        for p in query.split("&")
    ]
    return f"{base}?{'&'.join(parts)}"


def _strip_sensitive_data(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """before_send hook: strip auth headers, cookies and API keys in URLs."""
    if "breadcrumbs" in event:
        for breadcrumb in event["breadcrumbs"].get("values", []):
            data = breadcrumb.get("data", {})
            if isinstance(data, dict):
                _filter_headers(data.get("headers", {}))
                if "url" in data:
                    data["url"] = _filter_url(data["url"])
    request = event.get("request", {})
    if isinstance(request, dict):
        _filter_headers(request.get("headers", {}))
        if isinstance(request.get("query_string"), str):
            request["query_string"] = _filter_url("?" + request["query_string"])[1:]
    return event


def setup_sentry(settings: Settings = default_settings) -> None:
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
