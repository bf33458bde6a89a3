from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from sdr_ops.context import get_correlation_id
from sdr_ops.core.auth import claims_organization_id, read_bearer_claims
from sdr_ops.core.config import get_settings


WINDOW_SECONDS = 60


@dataclass
class TokenBucket:
    capacity: int
    tokens: float
    updated_at: float

    def consume(self, now: float) -> int:
        """Take one token; returns 0 when allowed, otherwise seconds until the next token."""
        per_second = self.capacity / WINDOW_SECONDS
        self.tokens = min(float(self.capacity), self.tokens + max(0.0, now - self.updated_at) * per_second)
        self.updated_at = now
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return 0
        return max(1, math.ceil((1.0 - self.tokens) / per_second))


class MutationRateLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], TokenBucket] = {}

    def check(self, caller_key: str, route_group: str, capacity: int) -> int:
        if capacity <= 0:
            return WINDOW_SECONDS

        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get((caller_key, route_group))
            # capacity changes between settings reloads start a fresh bucket
            if bucket is None or bucket.capacity != capacity:
                bucket = TokenBucket(capacity=capacity, tokens=float(capacity), updated_at=now)
                self._buckets[(caller_key, route_group)] = bucket
            return bucket.consume(now)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


limiter = MutationRateLimiter()


class AutomationMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Throttles writes to the automation API per caller and route group."""

    mutating_methods = frozenset({"POST", "PATCH", "PUT", "DELETE"})
    path_prefixes = ("/api/automation-", "/api/export-review-flags")

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in self.mutating_methods
            or not path.startswith(self.path_prefixes)
        ):
            return await call_next(request)

        retry_after = limiter.check(
            caller_key=caller_key(request),
            route_group=route_group(path),
            capacity=settings.rate_limit_automation_mutations_per_minute,
        )
        if retry_after == 0:
            return await call_next(request)
        return _rate_limited_response(request, retry_after)


def _rate_limited_response(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"retry_after_seconds": retry_after},
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
    )


def route_group(path: str) -> str:
    # /api/automation-rules/{id}/... -> automation-rules
    segments = [segment for segment in path.split("/") if segment]
    return segments[1] if len(segments) > 1 else "automation"


def caller_key(request: Request) -> str:
    claims = read_bearer_claims(request)
    if not claims or not claims.get("sub"):
        return "anonymous"
    return f"{claims_organization_id(claims) or '-'}:{claims['sub']}"


def reset_rate_limiter() -> None:
    limiter.clear()
