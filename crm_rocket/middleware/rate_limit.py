from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_rocket.context import get_correlation_id
from crm_rocket.core.auth import decode_access_token
from crm_rocket.core.config import get_settings

_WINDOW_SECONDS = 60
_BULK_ACTIONS = {"import", "merge", "bulk-delete", "bulk-update"}


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            current = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + elapsed * refill_rate)
            current.last_refill = now

            if current.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - current.tokens) / refill_rate))

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Token buckets per (subject, route group); bulk endpoints draw from a smaller budget."""

    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/crm") or request.method.upper() not in self.mutating_methods:
            return await call_next(request)
        # filter endpoints are POST reads
        if path.endswith("/filter"):
            return await call_next(request)

        route_group, is_bulk = _resolve_route_group(path)
        allowed, retry_after = _limiter.take(
            user_id=_resolve_user_id(request),
            route_group=f"{route_group}:bulk" if is_bulk else route_group,
            capacity=settings.rate_limit_crm_bulk_per_minute if is_bulk else settings.rate_limit_crm_mutations_per_minute,
            window_seconds=_WINDOW_SECONDS,
        )
        if allowed:
            return await call_next(request)

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
                "details": {"retry_after_seconds": retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> tuple[str, bool]:
    # /api/crm/<group>/<action>
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "crm", False
    return parts[2], len(parts) > 3 and parts[3] in _BULK_ACTIONS


def _resolve_user_id(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return "anonymous"
    return decode_access_token(auth_header.removeprefix("Bearer ")).sub


def reset_rate_limiter() -> None:
    _limiter.clear()
