"""
Request correlation for API calls and gateway callbacks.
"""
import time
import uuid
from typing import Callable, Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp
import structlog


logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = ("/health", "/metrics")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id (reusing one sent by a proxy or the payment
    gateway) and logs one line per response. 5xx logs at error, 4xx at
    warning, probes at debug.
    """

    def __init__(self, app: ASGIApp, quiet_paths: Iterable[str] = QUIET_PATHS):
        super().__init__(app)
        self.quiet_paths = tuple(quiet_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "http_request_failed",
                duration_ms=self._elapsed(started),
                error_type=type(exc).__name__,
            )
            raise

        log = self._level_for(request.url.path, response.status_code)
        log(
            "http_request_completed",
            status_code=response.status_code,
            duration_ms=self._elapsed(started),
            client_host=request.client.host if request.client else None,
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _level_for(self, path: str, status_code: int):
        if status_code >= 500:
            return logger.error
        if status_code >= 400:
            return logger.warning
        if path.startswith(self.quiet_paths):
            return logger.debug
        return logger.info

    @staticmethod
    def _elapsed(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)
