"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and records request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from polytrade.routes.metrics import track_request

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: route, method, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            request_logger.error(
                "request_failed",
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e)
            )
            track_request(request.method, self._endpoint(request), 500, duration)
            raise

        duration = time.time() - start_time

        request_logger.info(
            "request_completed",
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        track_request(request.method, self._endpoint(request), response.status_code, duration)

        return response

    @staticmethod
    def _endpoint(request: Request) -> str:
        # Route template keeps label cardinality bounded (/api/deals/{deal_id})
        route = request.scope.get("route")
        return getattr(route, "path", None) or request.url.path
