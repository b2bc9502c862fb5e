from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_rate_limited


logger = logging.getLogger("app.request")

WINDOW_SECONDS = 60

# Only the routes that call the text-generation service are limited.
AI_ROUTE_GROUPS = {
    "/api/crm/import/parse": "import.parse",
    "/api/crm/ai/extract-tasks": "ai.extract_tasks",
}


@dataclass(frozen=True)
class BucketKey:
    subject: str
    workspace: str
    route_group: str


@dataclass(frozen=True)
class Decision:
    allowed: bool
    retry_after: int = 0


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """In-process token buckets, one per caller, workspace and route group."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[BucketKey, _Bucket] = {}

    def take(self, key: BucketKey, capacity: int, window_seconds: int = WINDOW_SECONDS) -> Decision:
        if capacity <= 0:
            return Decision(allowed=False, retry_after=window_seconds)

        now = time.monotonic()
        per_second = capacity / float(window_seconds)

        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return Decision(allowed=True)
            return Decision(allowed=False, retry_after=max(1, math.ceil((1.0 - bucket.tokens) / per_second)))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


class CrmAiRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        route_group = AI_ROUTE_GROUPS.get(request.url.path.rstrip("/"))
        if settings.rate_limit_disabled or route_group is None or request.method.upper() != "POST":
            return await call_next(request)

        key = BucketKey(
            subject=_resolve_subject(request),
            workspace=request.headers.get("x-workspace-id", "").strip() or "-",
            route_group=route_group,
        )
        decision = _limiter.take(key, capacity=settings.rate_limit_crm_ai_per_minute)
        if decision.allowed:
            return await call_next(request)

        observe_rate_limited(route_group)
        logger.warning("rate_limit.exceeded", extra={"path": request.url.path, "route_group": route_group})
        return _limited_response(request, route_group, decision.retry_after)


def _limited_response(request: Request, route_group: str, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    response = JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"route_group": route_group},
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


def _resolve_subject(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return "anonymous"

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            auth_header.removeprefix("Bearer "),
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return "anonymous"
    return str(payload.get("sub") or "anonymous")


def reset_rate_limiter() -> None:
    _limiter.clear()
