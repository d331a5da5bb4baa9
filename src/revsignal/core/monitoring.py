"""Prometheus metrics, Sentry integration, and LLM call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Pipeline counters: sync runs, reconciled records, token refreshes, deal scores
- track_llm_call(): Context manager for LLM call metrics
- init_sentry(): Initialize Sentry with tenant-aware before_send callback
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.revsignal.core.tenant import current_tenant_id

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Pipeline Metrics ────────────────────────────────────────────────────

sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Completed or failed CRM sync cycles",
    ["provider", "sync_type", "status"],
)

sync_records_total = Counter(
    "crm_sync_records_total",
    "Records upserted by the reconciliation engine",
    ["provider", "entity"],
)

sync_record_errors_total = Counter(
    "crm_sync_record_errors_total",
    "Per-record reconciliation errors",
    ["provider", "entity", "category"],
)

sync_duration_seconds = Histogram(
    "crm_sync_duration_seconds",
    "Duration of one sync cycle in seconds",
    ["provider"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

token_refreshes_total = Counter(
    "crm_token_refreshes_total",
    "OAuth refresh-token exchanges",
    ["provider", "status"],
)

# ── Scoring Metrics ──────────────────────────────────────────────────────────

deal_scores_total = Counter(
    "deal_scores_total",
    "Deal scoring attempts by outcome",
    ["status"],
)

llm_requests_total = Counter(
    "llm_requests_total",
    "Total LLM API requests",
    ["model", "status"],
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM API request duration in seconds",
    ["model"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

llm_tokens_used_total = Counter(
    "llm_tokens_used_total",
    "Total LLM tokens consumed",
    ["model", "token_type"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    Uses the matched route template when available to bound label cardinality.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── LLM Metrics Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_llm_call(model: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks LLM call metrics.

    Usage:
        async with track_llm_call("scoring") as tracker:
            result = await call_llm(...)
            tracker["prompt_tokens"] = result["usage"]["prompt_tokens"]

    Automatically records duration, request count (success/error) and
    token usage (if set in the tracker dict).
    """
    tracker: dict[str, Any] = {
        "prompt_tokens": 0,
        "completion_tokens": 0,
    }
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        llm_requests_total.labels(model=model, status=status).inc()
        llm_request_duration_seconds.labels(model=model).observe(duration)

        if tracker.get("prompt_tokens"):
            llm_tokens_used_total.labels(model=model, token_type="prompt").inc(
                tracker["prompt_tokens"]
            )
        if tracker.get("completion_tokens"):
            llm_tokens_used_total.labels(model=model, token_type="completion").inc(
                tracker["completion_tokens"]
            )


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Add tenant context to Sentry events."""
        tenant_id = current_tenant_id()
        if tenant_id:
            event.setdefault("tags", {})["tenant_id"] = tenant_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
