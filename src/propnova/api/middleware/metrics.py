"""Request metrics middleware."""

from time import perf_counter

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from propnova.core.metrics import active_requests, request_latency_seconds, request_total


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records latency, request count by status, and in-flight requests.

    Probe endpoints are excluded. Endpoints are labelled by route template
    (``/billing/checkout/{session_id}/abandon``) so ids never become labels.
    """

    EXCLUDED_PATHS = frozenset({"/metrics", "/health", "/health/ready"})

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        method = request.method
        active_requests.inc()
        start = perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            endpoint = self._get_endpoint(request)
            request_latency_seconds.labels(endpoint=endpoint, method=method).observe(
                perf_counter() - start
            )
            request_total.labels(endpoint=endpoint, method=method, status=status).inc()
            active_requests.dec()

    @staticmethod
    def _get_endpoint(request: Request) -> str:
        route = request.scope.get("route")
        if route is not None:
            return route.path
        return request.url.path
