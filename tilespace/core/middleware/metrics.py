from starlette.middleware.base import BaseHTTPMiddleware

from tilespace.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count every response by method, route shape and status code."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        http_requests_total.inc(labels={
            "method": request.method,
            "path": normalize_path(request.url.path),
            "status": str(response.status_code),
        })
        return response
