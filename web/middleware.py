"""
FastAPI middleware for request observability.

Assigns a correlation ID to each request (reusing X-Request-ID when the
caller sends one) and logs start and completion with timing.
"""
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from relay.observability import correlation_context, generate_correlation_id, get_logger

logger = get_logger(__name__)

QUIET_PATHS = ("/api/health",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Correlation ID + request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or generate_correlation_id()
        method = request.method
        path = request.url.path
        quiet = path in QUIET_PATHS

        with correlation_context(correlation_id):
            start_time = time.perf_counter()
            if not quiet:
                logger.info(
                    f"Request started: {method} {path}",
                    extra={"client_ip": request.client.host if request.client else "unknown"},
                )

            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    f"Request failed: {method} {path}",
                    extra={"duration_ms": round(duration_ms, 2), "error": str(e)},
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            response.headers["X-Request-ID"] = correlation_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

            if not quiet:
                level_name = "info" if response.status_code < 400 else "warning"
                getattr(logger, level_name)(
                    f"Request completed: {method} {path}",
                    extra={"status_code": response.status_code, "duration_ms": round(duration_ms, 2)},
                )

        return response
