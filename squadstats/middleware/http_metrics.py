"""
Prometheus HTTP metrics middleware.
"""
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import structlog

from ..metrics.registry import Metrics

log = structlog.get_logger()


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Records request count, duration and in-flight gauge per route template.

    Sits inside the error handler, so a route that raises is counted as a 500
    before it is turned into a JSON response.
    """

    def __init__(self, app, metrics: Metrics):
        super().__init__(app)
        self.metrics = metrics

    @staticmethod
    def _path_label(request: Request) -> str:
        # /v1/stats/{steam_id}, not one label per player
        route = request.scope.get("route")
        return getattr(route, "path", None) or request.url.path

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        service = self.metrics.service_name
        active = self.metrics.http_requests_active.labels(service=service)
        active.inc()
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        except Exception as e:
            log.error("http.request_failed", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            duration = time.perf_counter() - started
            path = self._path_label(request)
            self.metrics.http_requests_total.labels(
                service=service, method=request.method, path=path, status=status
            ).inc()
            self.metrics.http_request_duration.labels(
                service=service, method=request.method, path=path
            ).observe(duration)
            active.dec()
            log.info("http.request", http_status=status, duration_ms=round(duration * 1000, 2))
