"""Prometheus ASGI app for /metrics with HTTP and document lifecycle metrics.

HTTP metrics are recorded by PrometheusMiddleware for every request except
the /metrics scrape itself. Business metrics are recorded by the API layer
after an operation completes, so failed operations never count as uploads.

Usage Examples:

    # In api/documents.py
    from docstore.core.metrics import documents_uploaded_total

    documents_uploaded_total.labels(environment=settings.environment).inc()

    # In a repository query
    start = time.perf_counter()
    result = await session.execute(query)
    database_query_duration_seconds.labels(query_type="select").observe(time.perf_counter() - start)
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from fastapi import Request
from prometheus_client import Counter, Histogram, make_asgi_app
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

METRICS_PATH = "/metrics"
UNMATCHED_ROUTE = "UNMATCHED"

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "route", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

documents_uploaded_total = Counter(
    "documents_uploaded_total",
    "Total number of documents uploaded",
    ["environment"],
)

documents_deleted_total = Counter(
    "documents_deleted_total",
    "Total number of documents deleted",
    ["environment"],
)

document_upload_rollbacks_total = Counter(
    "document_upload_rollbacks_total",
    "Uploads whose metadata write failed, by outcome of the compensating delete",
    ["outcome"],
)

document_upload_size_bytes = Histogram(
    "document_upload_size_bytes",
    "Document upload file sizes in bytes",
    buckets=[1e3, 1e4, 1e5, 1e6, 10e6, 50e6, 100e6, 500e6],
)

database_query_duration_seconds = Histogram(
    "database_query_duration_seconds",
    "Database query duration in seconds",
    ["query_type"],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0],
)


def _route_label(request: Request) -> str:
    # Matched route template keeps label cardinality bounded
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or UNMATCHED_ROUTE


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record request count and latency labelled by method, route template and status."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith(METRICS_PATH):
            return await call_next(request)

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.perf_counter() - start
            labels = {
                "method": request.method,
                "route": _route_label(request),
                "status": str(status_code),
            }
            http_requests_total.labels(**labels).inc()
            http_request_duration_seconds.labels(**labels).observe(duration)

        return response


metrics_app = make_asgi_app()
