"""
Request tracing and context propagation middleware

Provides request ID tracking and timing; the ID and start time are kept
on request.state so the response envelope can report them.
"""
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

from .metrics import track_api_request
from .utils import generate_request_id

logger = structlog.get_logger()

# ============================================================================
# Request Tracing Middleware
# ============================================================================

class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request tracing with context propagation

    - Generates or extracts request ID (X-Request-ID)
    - Tracks request timing (X-Response-Time)
    - Binds request_id/method/path to structlog context
    - Counts requests per route template in Prometheus
    """

    async def dispatch(self, request: Request, call_next):
        """Process request with tracing"""

        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        request.state.request_id = request_id
        request.state.start_time = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path
        )

        logger.debug("request_started",
            client_host=request.client.host if request.client else None,
            query_params=dict(request.query_params) if request.query_params else None
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - request.state.start_time) * 1000
            logger.error("request_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2)
            )
            raise

        duration = time.perf_counter() - request.state.start_time
        duration_ms = duration * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        # route template keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        track_api_request(request.method, endpoint, response.status_code, duration)

        logger.info("request_completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )

        structlog.contextvars.unbind_contextvars("request_id", "method", "path")

        return response
