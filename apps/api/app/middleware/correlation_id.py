from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id


# Send logs key Mark-Sent replays on this value; keep it short and printable.
_MAX_LENGTH = 128
_ALLOWED = re.compile(r"^[A-Za-z0-9._:\-]+$")


def is_valid_correlation_id(value: str | None) -> bool:
    return bool(value) and len(value) <= _MAX_LENGTH and _ALLOWED.match(value) is not None


def resolve_correlation_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if is_valid_correlation_id(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
