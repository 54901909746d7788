from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadhub.metrics import observe_http_request, resolve_http_path_label

logger = logging.getLogger("leadhub.request")

# probes hit these constantly; they are counted but logged at debug level
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = _elapsed_ms(started)
            observe_http_request(method=request.method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": request.method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        # resolved after the call so the matched route template is available
        path = resolve_http_path_label(request)
        duration_ms = _elapsed_ms(started)
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=duration_ms / 1000)
        level = logging.DEBUG if path in QUIET_PATHS else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response
