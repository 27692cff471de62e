"""Metrics middleware for automatic request tracking."""

from time import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from practicegate.core.metrics import active_requests, request_latency_seconds, request_total


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collects latency, request count and in-flight gauge per route.

    Health and metrics endpoints are excluded.
    """

    EXCLUDED_PATHS = {"/metrics", "/health", "/health/ready"}

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in self.EXCLUDED_PATHS:
            return await call_next(request)

        method = request.method
        active_requests.inc()
        start_time = time()
        status_code = "500"

        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            # Route is only resolved once the request has been handled
            endpoint = self._get_endpoint(request)
            request_latency_seconds.labels(endpoint=endpoint, method=method).observe(
                time() - start_time
            )
            request_total.labels(endpoint=endpoint, method=method, status=status_code).inc()
            active_requests.dec()

    def _get_endpoint(self, request: Request) -> str:
        """Route pattern when matched (``/exports/{export_id}``), else the raw path."""
        route = request.scope.get("route")
        if route is not None:
            return route.path
        return request.url.path
