"""
ASGI middleware for tracking HTTP request metrics.
Records request count, duration, and errors.
"""
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from jobtracker.utils.metrics import http_requests_total, http_request_duration_seconds, errors_total

UUID_PATTERN = re.compile(
    r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}',
    flags=re.IGNORECASE,
)
NUMERIC_SEGMENT = re.compile(r'/\d+(?=/|$)')


def normalize_path(path: str, uploads_prefix: str = "/uploads") -> str:
    """
    Normalize path to reduce cardinality.

    Attachment and job ids become {id}; locally served files collapse to
    <uploads_prefix>/{file}.
    """
    if uploads_prefix and path.startswith(uploads_prefix.rstrip("/") + "/"):
        return f"{uploads_prefix.rstrip('/')}/{{file}}"
    path = UUID_PATTERN.sub('{id}', path)
    return NUMERIC_SEGMENT.sub('/{id}', path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP metrics for Prometheus."""

    def __init__(self, app, uploads_prefix: str = "/uploads"):
        super().__init__(app)
        self.uploads_prefix = uploads_prefix

    async def dispatch(self, request: Request, call_next):
        """Process request and record metrics."""
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        method = request.method
        normalized_path = normalize_path(request.url.path, self.uploads_prefix)

        try:
            response = await call_next(request)
        except Exception:
            errors_total.labels(error_type="exception").inc()
            raise

        status_code = response.status_code
        http_requests_total.labels(
            method=method,
            path=normalized_path,
            status=status_code
        ).inc()
        http_request_duration_seconds.labels(
            method=method,
            path=normalized_path
        ).observe(time.time() - start_time)

        # Track errors (4xx and 5xx)
        if status_code >= 400:
            errors_total.labels(error_type=f"{status_code // 100}xx").inc()

        return response
