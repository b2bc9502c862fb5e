from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import bound_request_context


CORRELATION_HEADER = "x-correlation-id"
WORKSPACE_HEADER = "x-workspace-id"


def _header(request: Request, name: str) -> str | None:
    value = request.headers.get(name, "").strip()
    return value or None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the caller's correlation id and workspace for the whole request.

    The workspace header is bound verbatim for log and span context only; route handlers
    validate it separately before touching tenant data.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _header(request, CORRELATION_HEADER) or str(uuid.uuid4())
        workspace_id = _header(request, WORKSPACE_HEADER)
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if workspace_id:
                span.set_attribute("workspace_id", workspace_id)

        with bound_request_context(correlation_id=correlation_id, workspace_id=workspace_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
