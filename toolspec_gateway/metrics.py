"""Prometheus metrics for the ToolSpec gateway.

Labels are kept low-cardinality: no install ids, slugs or agent models.
Set TOOLSPEC_METRICS_ENABLED=0 to skip the /metrics endpoint and middleware.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "toolspec_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "toolspec_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
SUBMISSIONS_TOTAL = Counter(
    "toolspec_submissions_total",
    "Review submissions by outcome",
    ["status"],
)
ACCESS_DECISIONS_TOTAL = Counter(
    "toolspec_access_decisions_total",
    "Install gating decisions",
    ["access", "reason"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "toolspec_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)
LOCKDOWN_ACTIVE = Gauge(
    "toolspec_storage_lockdown_active",
    "1 if the store circuit breaker is open",
)


def record_submission(status: str) -> None:
    SUBMISSIONS_TOTAL.labels(status=str(status)).inc()


def record_access_decision(access: str, reason: Optional[str]) -> None:
    ACCESS_DECISIONS_TOTAL.labels(access=str(access), reason=str(reason or "none")).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach the /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and it returns False,
    /metrics answers 403.
    """
    if not _env_bool("TOOLSPEC_METRICS_ENABLED", True):
        return

    from fastapi import Request
    from fastapi.responses import Response

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or "unmatched"
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
