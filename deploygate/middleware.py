"""Middleware for Prometheus HTTP metrics."""

import re
import time
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from deploygate.metrics import HTTP_REQUESTS_TOTAL, HTTP_REQUEST_DURATION

logger = logging.getLogger(__name__)

_ID_SEGMENT_RE = re.compile(r"/[0-9a-f]{32}|/\d+")


def _route_path(request: Request) -> str:
    """Return the route template (e.g. /api/webhooks/{webhook_id}) instead of
    the resolved path, to avoid high-cardinality metric labels."""
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    # Unmatched paths: collapse hex ids and numbers
    return _ID_SEGMENT_RE.sub("/{id}", request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record Prometheus HTTP metrics for every request."""

    async def dispatch(self, request: Request, call_next):
        method = request.method
        start = time.perf_counter()

        response = await call_next(request)

        duration = time.perf_counter() - start
        # The route is only resolved once the router has run
        path = _route_path(request)
        status = str(response.status_code)

        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status=status).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response
