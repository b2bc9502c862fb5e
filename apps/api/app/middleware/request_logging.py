from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

# Probes and scrapes are still counted in metrics but never logged.
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Records one metrics sample and at most one log line per request.

    Import streams keep the connection open long after the headers go out, so the
    duration here covers time to first byte, not the whole stream.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        label = resolve_http_path_label(request)
        fields: dict[str, object] = {"method": request.method, "path": label}

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = _elapsed_ms(started)
            fields.update(status_code=500, duration_ms=duration_ms)
            observe_http_request(method=request.method, path=label, status=500, duration=duration_ms / 1000)
            logger.exception("http.error", extra=fields)
            raise

        duration_ms = _elapsed_ms(started)
        fields.update(status_code=response.status_code, duration_ms=duration_ms)
        observe_http_request(method=request.method, path=label, status=response.status_code, duration=duration_ms / 1000)

        if label not in QUIET_PATHS:
            level = logging.WARNING if response.status_code >= 500 else logging.INFO
            logger.log(level, "http.request", extra=fields)
        return response
