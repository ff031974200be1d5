from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _entity_fields(request: Request) -> dict[str, Any]:
    params = request.path_params or {}
    fields: dict[str, Any] = {}
    for key in ("quotation_id", "opportunity_id"):
        if key in params:
            fields[key] = str(params[key])
    return fields


def _actor_fields(request: Request) -> dict[str, Any]:
    context = getattr(request.state, "context", None)
    user_id = getattr(context, "user_id", None)
    return {"user_id": user_id} if user_id else {}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    **_entity_fields(request),
                    **_actor_fields(request),
                },
            )
            raise

        # Resolved after routing so the label uses the route template.
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(
            method=method,
            path=path,
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **_entity_fields(request),
                **_actor_fields(request),
            },
        )
        return response
